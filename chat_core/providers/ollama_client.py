"""Ollama 本地模型 Provider 适配器。

- 补全: POST {base_url}/api/chat，请求与响应体均为 JSON；流式为 NDJSON（每行一个对象，无 data: 前缀）。
- 每个对象都可能携带 message.content；最后一个对象带 done: true 以及
  prompt_eval_count / eval_count，作为 token 用量。
- 模型列表: GET {base_url}/api/tags；请求失败时返回内置目录。
- 本地服务无需认证。
"""

import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, LLMError, NetworkError
from chat_core.domain.models import (
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    HealthStatus,
    ModelInfo,
    ProviderConfig,
    ProviderInfo,
    StreamChunk,
    TokenUsage,
)
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.http import check_status, new_client, open_stream, post_json, with_retries
from chat_core.providers.streaming import LINE, iter_frames


DEFAULT_OLLAMA_URL = "http://localhost:11434"

FALLBACK_MODELS: List[ModelInfo] = [
    ModelInfo("llama3.2", "Llama 3.2", 128000),
    ModelInfo("qwen2.5", "Qwen 2.5", 32768),
    ModelInfo("mistral", "Mistral", 32768),
]

# /api/tags 不返回上下文长度，统一按该值展示
DEFAULT_CONTEXT_LENGTH = 4096


def _usage_from(obj: Dict[str, Any]) -> TokenUsage:
    return TokenUsage.of(int(obj.get("prompt_eval_count") or 0), int(obj.get("eval_count") or 0))


class OllamaProvider:
    """Ollama 协议客户端。"""

    def __init__(self, config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._transport = transport

    def provider_id(self) -> str:
        return self._config.id

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            id=self._config.id,
            name=self._config.name,
            kind=self._config.kind,
            models=list(FALLBACK_MODELS),
        )

    def _base(self) -> str:
        return (self._config.base_url or DEFAULT_OLLAMA_URL).rstrip("/")

    def _build_payload(self, req: CompletionRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": req.model or self._config.default_model,
            "messages": [m.to_payload() for m in req.messages],
            "stream": stream,
        }
        options: Dict[str, Any] = {}
        if req.temperature is not None:
            options["temperature"] = req.temperature
        if req.max_tokens is not None:
            options["num_predict"] = req.max_tokens
        if req.stop:
            options["stop"] = list(req.stop)
        if options:
            payload["options"] = options
        return payload

    async def _fetch_tags(self) -> List[Dict[str, Any]]:
        try:
            async with new_client(self._config.timeout_seconds, self._transport) as client:
                resp = await client.get(f"{self._base()}/api/tags")
        except httpx.RequestError as e:
            raise NetworkError(str(e)) from e
        check_status(resp, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code=str(resp.status_code), message=f"Invalid JSON response: {e}") from e
        return list(data.get("models") or [])

    async def list_models(self) -> List[ModelInfo]:
        try:
            tags = await self._fetch_tags()
        except LLMError as e:
            log_event(
                logging.WARNING,
                "Ollama model listing failed, using fallback catalogue",
                {"provider_id": self._config.id},
                error=str(e),
            )
            return list(FALLBACK_MODELS)
        models = []
        for tag in tags:
            name = tag.get("name") or tag.get("model")
            if name:
                models.append(ModelInfo(name, name, DEFAULT_CONTEXT_LENGTH))
        return models

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        payload = self._build_payload(request, stream=False)

        async def call() -> CompletionResponse:
            async with new_client(self._config.timeout_seconds, self._transport) as client:
                data = await post_json(client, f"{self._base()}/api/chat", payload, {})
            return CompletionResponse(
                content=(data.get("message") or {}).get("content") or "",
                finish_reason=FinishReason.STOP,
                usage=_usage_from(data),
            )

        log_event(
            logging.DEBUG,
            "Ollama completion",
            {"provider_id": self._config.id, "model": payload["model"], "request_id": request.request_id},
        )
        return await with_retries(self._config.max_retries, call)

    async def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(request, stream=True)
        async with new_client(self._config.timeout_seconds, self._transport) as client:
            async with open_stream(client, f"{self._base()}/api/chat", payload, {}) as resp:
                async for line in iter_frames(resp, LINE):
                    if not line.strip():
                        continue
                    try:
                        obj = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(obj, dict):
                        continue
                    content = (obj.get("message") or {}).get("content") or ""
                    if obj.get("done"):
                        yield StreamChunk(
                            content=content,
                            finish_reason=FinishReason.STOP,
                            usage=_usage_from(obj),
                        )
                        return
                    if content:
                        yield StreamChunk(content=content)

    async def cancel(self, request_id: str) -> None:
        return None

    async def health_check(self) -> HealthStatus:
        start = time.monotonic()
        try:
            await self._fetch_tags()
        except LLMError as e:
            return HealthStatus(
                is_healthy=False,
                latency_ms=int((time.monotonic() - start) * 1000),
                error_message=str(e),
            )
        return HealthStatus(is_healthy=True, latency_ms=int((time.monotonic() - start) * 1000))
