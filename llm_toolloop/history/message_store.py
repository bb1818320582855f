"""
Message persistence for llm_toolloop.

The turn controller mirrors its transcript into a ``MessageStore``. The
store is optional and its methods may be plain or coroutine functions.
"""
import json
import logging
import time
from typing import Any, Iterable, List, Optional, Protocol

from ..messages import Message, Role, ToolCall, ToolResult
from .db import Database

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    """Persistence operations consumed by the turn controller."""

    def add_message(self, message: Message, chat_id: str) -> Any:
        ...

    def update_message(
        self,
        message: Message,
        new_content: Optional[str] = None,
        new_tool_result: Optional[ToolResult] = None,
    ) -> Any:
        ...

    def get_messages(self, chat_id: str) -> Any:
        ...

    def delete_message(self, message_id: str) -> Any:
        ...


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _load(text: Optional[str]) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column: %.80s", text)
        return None


class SQLiteMessageStore:
    """SQLite-backed message store."""

    def __init__(self, db: Optional[Database] = None) -> None:
        self._db = db or Database()

    @property
    def db(self) -> Database:
        return self._db

    def ensure_chat(self, chat_id: str, title: Optional[str] = None, model: Optional[str] = None) -> None:
        now = time.time()
        self._db.execute(
            "INSERT INTO chats (chat_id, title, model, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(chat_id) DO UPDATE SET updated_at = excluded.updated_at",
            (chat_id, title, model, now, now)
        )

    def add_message(self, message: Message, chat_id: str) -> None:
        """
        Insert a message, or overwrite it if the id is already stored.

        Args:
            message: Message to persist
            chat_id: Chat the message belongs to
        """
        self.ensure_chat(chat_id, model=message.model)
        self._db.execute(
            "INSERT INTO messages "
            "(message_id, chat_id, role, content, model, tool_call, tool_result, timestamp, metadata) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(message_id) DO UPDATE SET "
            "content = excluded.content, tool_call = excluded.tool_call, "
            "tool_result = excluded.tool_result, timestamp = excluded.timestamp, "
            "metadata = excluded.metadata",
            (
                message.id,
                chat_id,
                message.role.value,
                message.content,
                message.model,
                _dump(message.tool_call.to_dict() if message.tool_call else None),
                _dump(message.tool_result.to_dict() if message.tool_result else None),
                message.created_at,
                _dump(message.metadata or None),
            )
        )

    def update_message(
        self,
        message: Message,
        new_content: Optional[str] = None,
        new_tool_result: Optional[ToolResult] = None,
    ) -> int:
        """
        Update a stored message's content and/or tool result.

        Returns:
            Number of rows changed
        """
        data = {"timestamp": message.created_at}
        if new_content is not None:
            data["content"] = new_content
        if new_tool_result is not None:
            data["tool_result"] = _dump(new_tool_result.to_dict())
        return self._db.update("messages", data, "message_id = ?", (message.id,))

    def get_messages(self, chat_id: str) -> List[Message]:
        rows = self._db.fetch_all(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY seq", (chat_id,)
        )
        return [self._row_to_message(row) for row in rows]

    def delete_message(self, message_id: str) -> bool:
        return self._db.delete("messages", "message_id = ?", (message_id,)) > 0

    def delete_messages(self, message_ids: Iterable[str]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" * len(ids))
        return self._db.delete("messages", f"message_id IN ({placeholders})", tuple(ids))

    def delete_chat(self, chat_id: str) -> bool:
        return self._db.delete("chats", "chat_id = ?", (chat_id,)) > 0

    @staticmethod
    def _row_to_message(row: Any) -> Message:
        return Message(
            id=row["message_id"],
            role=Role(row["role"]),
            content=row["content"] or "",
            created_at=row["timestamp"],
            model=row["model"],
            tool_call=ToolCall.from_dict(_load(row["tool_call"])),
            tool_result=ToolResult.from_dict(_load(row["tool_result"])),
            metadata=_load(row["metadata"]) or {},
        )
