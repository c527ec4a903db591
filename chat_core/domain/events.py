"""流式事件与对外事件。

StreamEvent 是编排层在事件通道上发出的事件：

- "chunk": 一段增量文本。
- "done": 本轮结束，携带完整文本与 token 用量；一定在助手消息持久化之后发出。
- "error": 本轮失败，携带错误信息。

一次请求的事件序列有且仅有一个 done 或 error 作为结尾。

Message*Event 是桥接层推送给 UI 的事件。
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from chat_core.domain.emotion import Emotion


@dataclass
class StreamEvent:
    kind: Literal["chunk", "done", "error"]
    content: str = ""
    full_content: str = ""
    tokens_used: Optional[int] = None
    message: str = ""

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(kind="chunk", content=content)

    @classmethod
    def done(cls, full_content: str, tokens_used: Optional[int]) -> "StreamEvent":
        return cls(kind="done", full_content=full_content, tokens_used=tokens_used)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(kind="error", message=message)

    @property
    def is_terminal(self) -> bool:
        return self.kind != "chunk"


@dataclass
class MessageChunkEvent:
    session_id: str
    content: str
    tokens: Optional[int] = None
    phonemes: Optional[List[Any]] = None
    name: str = field(default="message_chunk", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MessageCompleteEvent:
    session_id: str
    message_id: str
    emotion: Optional[Emotion] = None
    name: str = field(default="message_complete", init=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["emotion"] = self.emotion.value if self.emotion else None
        return data


@dataclass
class MessageErrorEvent:
    session_id: str
    error: str
    name: str = field(default="message_error", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
