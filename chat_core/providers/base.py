"""Provider 抽象接口。

编排层不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每种协议实现一个适配器（OpenAI 兼容、Claude、Ollama、Dynamic、Mock）。
- 适配器之间没有继承关系，由注册表按 ProviderKind 选择构造。
- complete_stream 返回惰性、有限、不可重启的异步序列；重试需要重新调用。
"""

from typing import AsyncIterator, List, Protocol

from chat_core.domain.models import (
    CompletionRequest,
    CompletionResponse,
    HealthStatus,
    ModelInfo,
    ProviderInfo,
    StreamChunk,
)


class LLMProvider(Protocol):
    """LLM Provider 适配器协议。"""

    def provider_id(self) -> str:
        ...

    def provider_info(self) -> ProviderInfo:
        """静态自描述，不做 I/O，不会失败。"""
        ...

    async def list_models(self) -> List[ModelInfo]:
        ...

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        ...

    def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        ...

    async def cancel(self, request_id: str) -> None:
        """尽力而为的取消；不支持中途取消的适配器直接忽略。"""
        ...

    async def health_check(self) -> HealthStatus:
        """探测可达性与延迟，错误写入 HealthStatus 而不是抛出。"""
        ...


class CancellationToken:
    """协作式取消标记，流在每个片段边界检查一次。"""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled
