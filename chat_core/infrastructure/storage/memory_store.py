"""内存版会话/消息仓储，进程内使用与测试使用。"""

from typing import Dict, List, Optional

from chat_core.domain.conversation import Message, PaginatedResult, Pagination, Session
from chat_core.domain.exceptions import MessageNotFoundError, SessionNotFoundError
from chat_core.infrastructure.locks import AsyncRWLock


class InMemoryMessageRepository:
    def __init__(self) -> None:
        self._lock = AsyncRWLock()
        self._messages: Dict[str, Message] = {}

    async def get(self, message_id: str) -> Optional[Message]:
        async with self._lock.read():
            return self._messages.get(message_id)

    async def save(self, message: Message) -> None:
        async with self._lock.write():
            self._messages[message.id] = message

    async def delete(self, message_id: str) -> None:
        async with self._lock.write():
            if self._messages.pop(message_id, None) is None:
                raise MessageNotFoundError(message_id)

    def _session_messages(self, session_id: str) -> List[Message]:
        items = [m for m in self._messages.values() if m.session_id == session_id]
        # dict 保持插入顺序，sort 稳定，同一时间戳按插入先后
        items.sort(key=lambda m: m.created_at)
        return items

    async def find_by_session(
        self, session_id: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Message]:
        async with self._lock.read():
            items = self._session_messages(session_id)
        if pagination is None:
            return PaginatedResult(items=items, total=len(items), page=1, limit=max(len(items), 1))
        start = pagination.offset
        return PaginatedResult(
            items=items[start:start + pagination.limit],
            total=len(items),
            page=pagination.page,
            limit=pagination.limit,
        )

    async def delete_by_session(self, session_id: str) -> int:
        async with self._lock.write():
            ids = [mid for mid, m in self._messages.items() if m.session_id == session_id]
            for mid in ids:
                del self._messages[mid]
        return len(ids)

    async def find_last_by_session(self, session_id: str) -> Optional[Message]:
        async with self._lock.read():
            items = self._session_messages(session_id)
        return items[-1] if items else None

    async def count_by_session(self, session_id: str) -> int:
        async with self._lock.read():
            return sum(1 for m in self._messages.values() if m.session_id == session_id)


class InMemorySessionRepository:
    def __init__(self) -> None:
        self._lock = AsyncRWLock()
        self._sessions: Dict[str, Session] = {}

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock.read():
            return self._sessions.get(session_id)

    async def save(self, session: Session) -> None:
        async with self._lock.write():
            self._sessions[session.id] = session

    async def delete(self, session_id: str) -> None:
        async with self._lock.write():
            if self._sessions.pop(session_id, None) is None:
                raise SessionNotFoundError(session_id)

    async def find_all(self) -> List[Session]:
        async with self._lock.read():
            items = list(self._sessions.values())
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    async def exists(self, session_id: str) -> bool:
        async with self._lock.read():
            return session_id in self._sessions

    async def count(self) -> int:
        async with self._lock.read():
            return len(self._sessions)
