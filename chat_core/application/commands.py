"""编排层的命令与返回值。"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from chat_core.domain.conversation import Message
from chat_core.domain.events import StreamEvent


@dataclass
class SendMessageCommand:
    session_id: str
    content: str
    provider_id: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class RegenerateCommand:
    """重新生成最后一轮回复。

    user_content 替换历史末尾被移除的那条用户消息，不会再次持久化。
    """

    session_id: str
    user_content: str
    provider_id: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class EventReceiver:
    """事件通道的读端。

    recv() 在后台任务结束且通道已读空后返回 None；
    被取消的请求不会收到 done/error，读端直接结束。
    """

    def __init__(self, queue: "asyncio.Queue[StreamEvent]"):
        self._queue = queue
        self._task: Optional["asyncio.Task[None]"] = None

    def attach(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    async def recv(self) -> Optional[StreamEvent]:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._task is None or self._task.done():
                return None
            getter = asyncio.ensure_future(self._queue.get())
            done, _ = await asyncio.wait({getter, self._task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                return getter.result()
            getter.cancel()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.recv()
            if event is None:
                return
            yield event


@dataclass
class StreamingResponse:
    """流式调用的同步返回：预分配的助手消息（内容为空）+ 事件通道读端。"""

    assistant_message: Message
    request_id: str
    events: EventReceiver


@dataclass
class SendMessageResponse:
    user_message: Message
    assistant_message: Message
