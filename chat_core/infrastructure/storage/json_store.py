"""JSON 文件版会话/消息仓储。

目录结构：

    <root>/sessions/<session_id>/meta.json       会话元数据
    <root>/sessions/<session_id>/messages.json   该会话全部消息（数组）

所有写入先写临时文件再 os.replace，保证文件要么是旧内容要么是新内容。
"""

import asyncio
import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message, PaginatedResult, Pagination, Session
from chat_core.domain.emotion import Emotion
from chat_core.domain.exceptions import MessageNotFoundError, SessionNotFoundError, StorageError


def _ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def _write_atomic(path: Path, obj: Any) -> None:
    tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        raise StorageError(str(e), code="STORE_WRITE_ERROR")


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise StorageError(str(e), code="STORE_READ_ERROR")
    except json.JSONDecodeError as e:
        raise StorageError(f"{path.name}: {e}", code="STORE_SERIALIZATION_ERROR")


class _JsonRoot:
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        # 文件读写同步进行，用一把锁串行化同一仓储内的读改写
        self._lock = asyncio.Lock()

    def _session_dir(self, session_id: str) -> Path:
        return self._sessions_root / session_id


class JsonSessionRepository(_JsonRoot):
    def _to_session(self, data: Dict[str, Any]) -> Session:
        return Session(
            id=data["id"],
            title=data.get("title") or "",
            preset_id=data.get("preset_id"),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )

    def _read(self, session_id: str) -> Optional[Session]:
        data = _read_json(self._session_dir(session_id) / "meta.json", None)
        if data is None:
            return None
        try:
            return self._to_session(data)
        except (KeyError, ValueError) as e:
            raise StorageError(f"meta.json: {e}", code="STORE_SERIALIZATION_ERROR")

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._read(session_id)

    async def save(self, session: Session) -> None:
        obj = {
            "id": session.id,
            "title": session.title,
            "preset_id": session.preset_id,
            "created_at": _ts(session.created_at),
            "updated_at": _ts(session.updated_at),
        }
        async with self._lock:
            _write_atomic(self._session_dir(session.id) / "meta.json", obj)

    async def delete(self, session_id: str) -> None:
        sdir = self._session_dir(session_id)
        async with self._lock:
            if not (sdir / "meta.json").exists():
                raise SessionNotFoundError(session_id)
            try:
                shutil.rmtree(sdir)
            except OSError as e:
                raise StorageError(str(e), code="STORE_DELETE_ERROR")

    async def find_all(self) -> List[Session]:
        items: List[Session] = []
        async with self._lock:
            for sdir in sorted(self._sessions_root.glob("*/")):
                session = self._read(sdir.name)
                if session is not None:
                    items.append(session)
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    async def exists(self, session_id: str) -> bool:
        return (self._session_dir(session_id) / "meta.json").exists()

    async def count(self) -> int:
        return len(await self.find_all())


class JsonMessageRepository(_JsonRoot):
    def _path(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "messages.json"

    @staticmethod
    def _to_dict(m: Message) -> Dict[str, Any]:
        return {
            "id": m.id,
            "session_id": m.session_id,
            "role": m.role,
            "content": m.content,
            "tokens": m.tokens,
            "emotion": m.emotion.value if m.emotion else None,
            "created_at": _ts(m.created_at),
        }

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            session_id=data["session_id"],
            role=data["role"],
            content=data.get("content") or "",
            tokens=data.get("tokens"),
            emotion=Emotion(data["emotion"]) if data.get("emotion") else None,
            created_at=_parse_ts(data["created_at"]),
        )

    def _load(self, session_id: str) -> List[Message]:
        raw = _read_json(self._path(session_id), [])
        try:
            return [self._to_message(d) for d in raw]
        except (KeyError, ValueError, TypeError) as e:
            raise StorageError(f"messages.json: {e}", code="STORE_SERIALIZATION_ERROR")

    def _dump(self, session_id: str, messages: List[Message]) -> None:
        _write_atomic(self._path(session_id), [self._to_dict(m) for m in messages])

    def _locate(self, message_id: str) -> Optional[Message]:
        for sdir in self._sessions_root.glob("*/"):
            for m in self._load(sdir.name):
                if m.id == message_id:
                    return m
        return None

    async def get(self, message_id: str) -> Optional[Message]:
        async with self._lock:
            return self._locate(message_id)

    async def save(self, message: Message) -> None:
        async with self._lock:
            messages = self._load(message.session_id)
            for idx, existing in enumerate(messages):
                if existing.id == message.id:
                    messages[idx] = message
                    break
            else:
                messages.append(message)
            self._dump(message.session_id, messages)

    async def delete(self, message_id: str) -> None:
        async with self._lock:
            found = self._locate(message_id)
            if found is None:
                raise MessageNotFoundError(message_id)
            remaining = [m for m in self._load(found.session_id) if m.id != message_id]
            self._dump(found.session_id, remaining)

    async def find_by_session(
        self, session_id: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Message]:
        async with self._lock:
            items = self._load(session_id)
        items.sort(key=lambda m: m.created_at)
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
        async with self._lock:
            items = self._load(session_id)
            if items:
                self._dump(session_id, [])
        return len(items)

    async def find_last_by_session(self, session_id: str) -> Optional[Message]:
        result = await self.find_by_session(session_id)
        return result.items[-1] if result.items else None

    async def count_by_session(self, session_id: str) -> int:
        async with self._lock:
            return len(self._load(session_id))
