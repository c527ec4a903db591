"""OpenAI 兼容协议的 JSON ⇄ 统一模型转换。

OpenAI 兼容适配器与 Dynamic 适配器共用这些纯函数：

- build_payload: CompletionRequest -> 请求 JSON。
- parse_response: 非流式响应 JSON -> CompletionResponse。
- parse_sse_line: 一行 SSE -> StreamChunk / DONE / None（跳过）。
"""

import json
from typing import Any, Dict, Optional, Union

from chat_core.domain.exceptions import ApiError
from chat_core.domain.models import CompletionRequest, CompletionResponse, FinishReason, StreamChunk, TokenUsage


class _Done:
    """流结束哨兵（data: [DONE]）。"""


DONE = _Done()

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "function_call": FinishReason.FUNCTION_CALL,
    "tool_calls": FinishReason.FUNCTION_CALL,
}


def map_finish_reason(raw: Optional[str]) -> FinishReason:
    return _FINISH_REASONS.get(raw or "", FinishReason.STOP)


def build_payload(req: CompletionRequest, model: str, stream: bool) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model,
        "messages": [m.to_payload() for m in req.messages],
        "stream": stream,
    }
    if req.temperature is not None:
        payload["temperature"] = req.temperature
    if req.max_tokens is not None:
        payload["max_tokens"] = req.max_tokens
    if req.stop:
        payload["stop"] = list(req.stop)
    return payload


def _parse_usage(raw: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    if not raw:
        return None
    return TokenUsage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
        total_tokens=int(raw.get("total_tokens") or 0),
    )


def parse_response(data: Dict[str, Any]) -> CompletionResponse:
    choices = data.get("choices") or []
    if not choices:
        raise ApiError(code="NO_CHOICES", message="No choices in response")
    first = choices[0]
    message = first.get("message") or {}
    return CompletionResponse(
        content=message.get("content") or "",
        finish_reason=map_finish_reason(first.get("finish_reason")),
        usage=_parse_usage(data.get("usage")) or TokenUsage(),
    )


def parse_sse_line(line: str) -> Union[StreamChunk, _Done, None]:
    """解析一行 SSE。

    返回 DONE 表示流结束；返回 None 表示该行不产生片段（空行、注释、坏 JSON、无内容）。
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data_str = line[5:].strip()
    if data_str == "[DONE]":
        return DONE
    if not data_str:
        return None
    try:
        data = json.loads(data_str)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    choices = data.get("choices") or []
    first = choices[0] if choices else {}
    content = (first.get("delta") or {}).get("content") or ""
    raw_finish = first.get("finish_reason")
    finish = map_finish_reason(raw_finish) if raw_finish else None
    usage = _parse_usage(data.get("usage"))
    if not content and finish is None and usage is None:
        return None
    return StreamChunk(content=content, finish_reason=finish, usage=usage)
