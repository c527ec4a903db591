"""会话与消息的持久化模型，以及仓储协议。"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, List, Optional, Protocol, TypeVar
from uuid import uuid4

from .emotion import Emotion
from .models import Role


T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    id: str
    title: str
    preset_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new(cls, title: str, preset_id: Optional[str] = None) -> "Session":
        return cls(id=f"s-{uuid4().hex}", title=title, preset_id=preset_id)

    def touch(self) -> None:
        self.updated_at = _now()


@dataclass
class Message:
    """持久化的一条消息。

    助手消息在流开始前以空内容预分配 id，流结束后通过 finish() 原地覆盖一次。
    """

    id: str
    session_id: str
    role: Role
    content: str
    tokens: Optional[int] = None
    emotion: Optional[Emotion] = None
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def user(cls, session_id: str, content: str) -> "Message":
        return cls(id=f"m-{uuid4().hex}", session_id=session_id, role="user", content=content)

    @classmethod
    def assistant(cls, session_id: str, content: str = "") -> "Message":
        return cls(id=f"m-{uuid4().hex}", session_id=session_id, role="assistant", content=content)

    @classmethod
    def system(cls, session_id: str, content: str) -> "Message":
        return cls(id=f"m-{uuid4().hex}", session_id=session_id, role="system", content=content)

    def finish(self, content: str, emotion: Optional[Emotion], tokens: Optional[int]) -> None:
        self.content = content
        self.emotion = emotion
        self.tokens = tokens


@dataclass
class Pagination:
    page: int = 1
    limit: int = 50

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.limit


@dataclass
class PaginatedResult(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


class MessageRepository(Protocol):
    """消息仓储。get/find 系列找不到时返回 None，写失败抛 StorageError。"""

    async def get(self, message_id: str) -> Optional[Message]:
        ...

    async def save(self, message: Message) -> None:
        ...

    async def delete(self, message_id: str) -> None:
        ...

    async def find_by_session(
        self, session_id: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Message]:
        ...

    async def delete_by_session(self, session_id: str) -> int:
        ...

    async def find_last_by_session(self, session_id: str) -> Optional[Message]:
        ...

    async def count_by_session(self, session_id: str) -> int:
        ...


class SessionRepository(Protocol):
    async def get(self, session_id: str) -> Optional[Session]:
        ...

    async def save(self, session: Session) -> None:
        ...

    async def delete(self, session_id: str) -> None:
        ...

    async def find_all(self) -> List[Session]:
        ...

    async def exists(self, session_id: str) -> bool:
        ...

    async def count(self) -> int:
        ...
