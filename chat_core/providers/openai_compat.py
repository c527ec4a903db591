"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收统一的 CompletionRequest。
2. 将其转换为 {base_url}/chat/completions 的请求 JSON（Bearer 认证）。
3. 调用 HTTP 接口并把网络/限流/认证/服务端错误归类为统一异常。
4. 非流式：解析单个 JSON 文档；流式：按行解析 SSE，遇到 data: [DONE] 结束。

模型列表来自 GET {base_url}/models，请求失败时返回内置目录。

ProviderKind.OPENAI 与 ProviderKind.CUSTOM 都使用本适配器。
支持按 request_id 取消：流在下一个片段边界检查取消标记并停止。
"""

import logging
import time
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, LLMError, NetworkError, RequestCancelledError
from chat_core.domain.models import (
    ChatMessage,
    CompletionRequest,
    CompletionResponse,
    HealthStatus,
    ModelInfo,
    ProviderConfig,
    ProviderInfo,
    StreamChunk,
)
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers import openai_wire
from chat_core.providers.base import CancellationToken
from chat_core.providers.http import check_status, new_client, open_stream, post_json, with_retries
from chat_core.providers.streaming import LINE, iter_frames


OPENAI_MODELS: List[ModelInfo] = [
    ModelInfo("gpt-4o", "GPT-4o", 128000, supports_vision=True, supports_functions=True),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", 128000, supports_vision=True, supports_functions=True),
    ModelInfo("gpt-4-turbo", "GPT-4 Turbo", 128000, supports_vision=True, supports_functions=True),
    ModelInfo("gpt-3.5-turbo", "GPT-3.5 Turbo", 16385, supports_functions=True),
]

_KNOWN_MODELS: Dict[str, ModelInfo] = {m.id: m for m in OPENAI_MODELS}

# /models 不返回上下文长度，未知模型按该值展示
DEFAULT_CONTEXT_LENGTH = 4096

# 流开始前收到的取消，最多保留这么多条
MAX_PENDING_CANCELS = 64


class OpenAICompatibleProvider:
    """OpenAI 兼容协议客户端。"""

    def __init__(self, config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._transport = transport
        self._cancel_tokens: Dict[str, CancellationToken] = {}
        self._pending_cancels: "OrderedDict[str, None]" = OrderedDict()

    def provider_id(self) -> str:
        return self._config.id

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            id=self._config.id,
            name=self._config.name,
            kind=self._config.kind,
            models=list(OPENAI_MODELS),
        )

    def _base(self) -> str:
        return self._config.base_url.rstrip("/")

    def _url(self) -> str:
        return f"{self._base()}/chat/completions"

    async def _fetch_models(self) -> List[Dict[str, Any]]:
        try:
            async with new_client(self._config.timeout_seconds, self._transport) as client:
                resp = await client.get(f"{self._base()}/models", headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(str(e)) from e
        check_status(resp, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code=str(resp.status_code), message=f"Invalid JSON response: {e}") from e
        return list(data.get("data") or [])

    async def list_models(self) -> List[ModelInfo]:
        """GET {base_url}/models；请求失败时返回内置目录。"""
        try:
            entries = await self._fetch_models()
        except LLMError as e:
            log_event(
                logging.WARNING,
                "Model listing failed, using built-in catalogue",
                {"provider_id": self._config.id},
                error=str(e),
            )
            return list(OPENAI_MODELS)
        models = []
        for entry in entries:
            model_id = entry.get("id")
            if model_id:
                models.append(_KNOWN_MODELS.get(model_id) or ModelInfo(model_id, model_id, DEFAULT_CONTEXT_LENGTH))
        return models

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _log_ctx(self, req: CompletionRequest, model: str) -> Dict[str, object]:
        return {"provider_id": self._config.id, "model": model, "request_id": req.request_id}

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """执行一次非流式调用，NetworkError / RateLimitError 按 max_retries 重试。"""
        model = request.model or self._config.default_model
        payload = openai_wire.build_payload(request, model, stream=False)

        async def call() -> CompletionResponse:
            async with new_client(self._config.timeout_seconds, self._transport) as client:
                data = await post_json(client, self._url(), payload, self._headers())
            return openai_wire.parse_response(data)

        log_event(logging.DEBUG, "OpenAI-compatible completion", self._log_ctx(request, model))
        return await with_retries(self._config.max_retries, call)

    async def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self._config.default_model
        payload = openai_wire.build_payload(request, model, stream=True)
        request_id = request.request_id
        token = CancellationToken()
        if request_id:
            if request_id in self._pending_cancels:
                del self._pending_cancels[request_id]
                token.cancel()
            self._cancel_tokens[request_id] = token
        try:
            async with new_client(self._config.timeout_seconds, self._transport) as client:
                async with open_stream(client, self._url(), payload, self._headers()) as resp:
                    async for line in iter_frames(resp, LINE):
                        if token.is_cancelled:
                            raise RequestCancelledError(request_id or "")
                        parsed = openai_wire.parse_sse_line(line)
                        if parsed is openai_wire.DONE:
                            return
                        if parsed is not None:
                            yield parsed
        finally:
            if request_id:
                self._cancel_tokens.pop(request_id, None)

    async def cancel(self, request_id: str) -> None:
        token = self._cancel_tokens.get(request_id)
        if token is not None:
            token.cancel()
            return
        # 流尚未开始：记下取消，超出上限时丢弃最早的记录
        self._pending_cancels[request_id] = None
        self._pending_cancels.move_to_end(request_id)
        while len(self._pending_cancels) > MAX_PENDING_CANCELS:
            self._pending_cancels.popitem(last=False)

    async def health_check(self) -> HealthStatus:
        return await ping_completion(self, self._config.default_model)


async def ping_completion(provider, model: str) -> HealthStatus:
    """用 max_tokens=1 的最小补全检查可用性。"""
    start = time.monotonic()
    try:
        await provider.complete(
            CompletionRequest(messages=[ChatMessage.user("Hi")], model=model, max_tokens=1)
        )
    except Exception as e:
        return HealthStatus(
            is_healthy=False,
            latency_ms=int((time.monotonic() - start) * 1000),
            error_message=str(e),
        )
    return HealthStatus(is_healthy=True, latency_ms=int((time.monotonic() - start) * 1000))
