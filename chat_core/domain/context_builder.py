"""上下文构建。

组装发给 Provider 的消息序列：可选的 system 提示词 + 最近 max_messages 条历史 + 当前消息。
更早的历史直接丢弃，不做摘要。
"""

from typing import Iterable, List, Optional, Sequence

from chat_core.domain.conversation import Message
from chat_core.domain.models import ChatMessage


class ContextBuilder:
    def __init__(self, max_messages: int = 50, system_prompt: Optional[str] = None):
        self._max_messages = max(0, max_messages)
        self._system_prompt = system_prompt or None

    @property
    def max_messages(self) -> int:
        return self._max_messages

    def with_system_prompt(self, prompt: Optional[str]) -> "ContextBuilder":
        return ContextBuilder(self._max_messages, prompt)

    def build(self, history: Sequence[Message], current_message: str) -> List[ChatMessage]:
        """构建请求消息列表。

        长度 = (有 system 提示词则 1) + min(len(history), max_messages) + 1。
        """
        messages: List[ChatMessage] = []
        if self._system_prompt:
            messages.append(ChatMessage.system(self._system_prompt))
        recent = list(history)[-self._max_messages:] if self._max_messages else []
        for m in recent:
            messages.append(ChatMessage(role=m.role, content=m.content))
        messages.append(ChatMessage.user(current_message))
        return messages

    @staticmethod
    def estimate_tokens(messages: Iterable[ChatMessage]) -> int:
        """粗略估算 token 数：每条 len/4 + 4，仅供参考。"""
        return sum(len(m.content) // 4 + 4 for m in messages)
