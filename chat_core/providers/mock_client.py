"""Mock Provider。

未配置可用凭据时使用：回显用户最后一条消息的固定回复，不访问网络。
流式时把回复按固定字符数切片逐段产出。
"""

import asyncio
from typing import AsyncIterator, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.models import (
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    HealthStatus,
    ModelInfo,
    ProviderInfo,
    ProviderKind,
    StreamChunk,
    TokenUsage,
)


MOCK_PROVIDER_ID = "mock"
MOCK_MODEL = ModelInfo("mock-model", "Mock Model", 4096)
MOCK_USAGE = TokenUsage(prompt_tokens=10, completion_tokens=50, total_tokens=60)


def mock_reply(last_message: str) -> str:
    return (
        f"你好！我收到了你的消息：「{last_message}」\n\n"
        "这是一个模拟的回复。要使用真正的 LLM，请在设置中配置 API Key。"
    )


class MockProvider:
    def __init__(self, chunk_size: Optional[int] = None):
        self._chunk_size = max(1, chunk_size or settings.mock_chunk_size)

    def provider_id(self) -> str:
        return MOCK_PROVIDER_ID

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(id=MOCK_PROVIDER_ID, name="Mock Provider", kind=ProviderKind.CUSTOM, models=[MOCK_MODEL])

    async def list_models(self) -> List[ModelInfo]:
        return [MOCK_MODEL]

    @staticmethod
    def _reply_for(request: CompletionRequest) -> str:
        return mock_reply(request.messages[-1].content)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        return CompletionResponse(
            content=self._reply_for(request),
            finish_reason=FinishReason.STOP,
            usage=TokenUsage(**vars(MOCK_USAGE)),
        )

    async def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        reply = self._reply_for(request)
        pieces = [reply[i:i + self._chunk_size] for i in range(0, len(reply), self._chunk_size)]
        for idx, piece in enumerate(pieces):
            # 让出事件循环，模拟逐段到达
            await asyncio.sleep(0)
            if idx == len(pieces) - 1:
                yield StreamChunk(content=piece, finish_reason=FinishReason.STOP, usage=TokenUsage(**vars(MOCK_USAGE)))
            else:
                yield StreamChunk(content=piece)

    async def cancel(self, request_id: str) -> None:
        return None

    async def health_check(self) -> HealthStatus:
        return HealthStatus(is_healthy=True, latency_ms=1)
