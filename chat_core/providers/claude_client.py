"""Claude（Anthropic Messages API）Provider 适配器。

与 OpenAI 兼容协议的差异：

- URL: {base_url}/messages，认证头为 x-api-key + anthropic-version。
- 消息数组里不允许 system 角色：system 消息被过滤，非 assistant 角色一律视为 user。
- max_tokens 为必填字段，未指定时使用 4096。
- 非流式响应的正文是所有 content block 文本的拼接。
- 流式响应按空行分隔事件块，每块是带 type 字段的 JSON 信封：
  只有 content_block_delta 产生可见文本，message_delta 携带结束原因与用量，
  message_stop 结束整个流。

不支持中途取消，cancel 为空操作。
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError
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
from chat_core.providers.http import new_client, open_stream, post_json, with_retries
from chat_core.providers.openai_compat import ping_completion
from chat_core.providers.streaming import BLOCK, iter_frames


ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

CLAUDE_MODELS: List[ModelInfo] = [
    ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", 200000, supports_vision=True, supports_functions=True),
    ModelInfo("claude-3-opus-20240229", "Claude 3 Opus", 200000, supports_vision=True, supports_functions=True),
    ModelInfo("claude-3-sonnet-20240229", "Claude 3 Sonnet", 200000, supports_vision=True, supports_functions=True),
]


def map_stop_reason(raw: Optional[str]) -> FinishReason:
    if raw == "max_tokens":
        return FinishReason.LENGTH
    # end_turn / stop_sequence / 其他
    return FinishReason.STOP


class ClaudeProvider:
    """Claude 协议客户端。"""

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
            models=list(CLAUDE_MODELS),
        )

    async def list_models(self) -> List[ModelInfo]:
        # 没有在线列表接口，固定返回内置目录
        return list(CLAUDE_MODELS)

    def _url(self) -> str:
        return f"{self._config.base_url.rstrip('/')}/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._config.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: CompletionRequest, stream: bool) -> Dict[str, Any]:
        messages = [
            {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
            for m in req.messages
            if m.role != "system"
        ]
        payload: Dict[str, Any] = {
            "model": req.model or self._config.default_model,
            "messages": messages,
            "max_tokens": req.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.stop:
            payload["stop_sequences"] = list(req.stop)
        return payload

    @staticmethod
    def _parse_response(data: Dict[str, Any]) -> CompletionResponse:
        blocks = data.get("content") or []
        text = "".join(b.get("text") or "" for b in blocks if isinstance(b, dict))
        usage_raw = data.get("usage") or {}
        return CompletionResponse(
            content=text,
            finish_reason=map_stop_reason(data.get("stop_reason")),
            usage=TokenUsage.of(
                int(usage_raw.get("input_tokens") or 0),
                int(usage_raw.get("output_tokens") or 0),
            ),
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        payload = self._build_payload(request, stream=False)

        async def call() -> CompletionResponse:
            async with new_client(self._config.timeout_seconds, self._transport) as client:
                data = await post_json(client, self._url(), payload, self._headers())
            return self._parse_response(data)

        log_event(
            logging.DEBUG,
            "Claude completion",
            {"provider_id": self._config.id, "model": payload["model"], "request_id": request.request_id},
        )
        return await with_retries(self._config.max_retries, call)

    async def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(request, stream=True)
        input_tokens = 0
        async with new_client(self._config.timeout_seconds, self._transport) as client:
            async with open_stream(client, self._url(), payload, self._headers()) as resp:
                async for block in iter_frames(resp, BLOCK):
                    event = _parse_event_block(block)
                    if event is None:
                        continue
                    kind = event.get("type")
                    if kind == "message_start":
                        usage = (event.get("message") or {}).get("usage") or {}
                        input_tokens = int(usage.get("input_tokens") or 0)
                    elif kind == "content_block_delta":
                        text = (event.get("delta") or {}).get("text") or ""
                        if text:
                            yield StreamChunk(content=text)
                    elif kind == "message_delta":
                        stop_reason = (event.get("delta") or {}).get("stop_reason")
                        output_tokens = int((event.get("usage") or {}).get("output_tokens") or 0)
                        yield StreamChunk(
                            finish_reason=map_stop_reason(stop_reason),
                            usage=TokenUsage.of(input_tokens, output_tokens),
                        )
                    elif kind == "message_stop":
                        return
                    elif kind == "error":
                        err = event.get("error") or {}
                        raise ApiError(
                            code=str(err.get("type") or "stream_error"),
                            message=str(err.get("message") or block),
                        )

    async def cancel(self, request_id: str) -> None:
        return None

    async def health_check(self) -> HealthStatus:
        return await ping_completion(self, self._config.default_model)


def _parse_event_block(block: str) -> Optional[Dict[str, Any]]:
    """从一个事件块中取出 data: 行的 JSON；event: 行与坏 JSON 都忽略。"""
    data_lines = [
        line[5:].strip()
        for line in block.split("\n")
        if line.startswith("data:")
    ]
    if not data_lines:
        return None
    try:
        event = json.loads("\n".join(data_lines))
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None
