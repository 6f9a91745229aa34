"""Conversation history with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from watch_ai.config import get_config
from watch_ai.exceptions import SessionNotFoundError
from watch_ai.logging import get_logger

log = get_logger(__name__)

TITLE_CHARS = 40


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_conversation_id() -> str:
    return str(uuid.uuid4())


def make_title(messages: list[dict[str, Any]]) -> str:
    """First user message, clipped to 40 characters."""
    for message in messages:
        if message.get("role") == "user" and str(message.get("content") or "").strip():
            text = str(message["content"]).strip()
            return text[:TITLE_CHARS] + ("..." if len(text) > TITLE_CHARS else "")
    return "Untitled"


@dataclass
class Conversation:
    """A stored conversation."""

    id: str
    title: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self, include_messages: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "message_count": len(self.messages),
        }
        if include_messages:
            data["messages"] = self.messages
        return data


class ConversationStore:
    """Keeps the most recent conversations in SQLite."""

    def __init__(self, db_path: Path | str | None = None, history_limit: int | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
            history_limit: Max conversations kept; the oldest are pruned
        """
        config = get_config()
        if db_path is None:
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.history_limit = history_limit if history_limit is not None else config.session.history_limit

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations(updated_at)"
            )
            await self._db.commit()

    @staticmethod
    def _row_to_conversation(row: Any) -> Conversation:
        return Conversation(
            id=row[0],
            title=row[1],
            messages=json.loads(row[2]),
            created_at=row[3],
            updated_at=row[4],
        )

    async def save(
        self,
        conversation_id: str,
        messages: list[dict[str, Any]],
        title: str | None = None,
    ) -> Conversation:
        """Insert or replace a conversation and prune beyond the history limit."""
        await self._ensure_db()

        now = _utcnow_iso()
        async with self._db.execute(
            "SELECT created_at FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        created_at = row[0] if row else now

        conversation = Conversation(
            id=conversation_id,
            title=title or make_title(messages),
            messages=list(messages),
            created_at=created_at,
            updated_at=now,
        )
        await self._db.execute("""
            INSERT OR REPLACE INTO conversations (id, title, messages, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            conversation.id,
            conversation.title,
            json.dumps(conversation.messages),
            conversation.created_at,
            conversation.updated_at,
        ))
        if self.history_limit > 0:
            await self._db.execute("""
                DELETE FROM conversations
                WHERE id NOT IN (
                    SELECT id FROM conversations ORDER BY updated_at DESC LIMIT ?
                )
            """, (self.history_limit,))
        await self._db.commit()
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        """Load a conversation.

        Raises:
            SessionNotFoundError: unknown id
        """
        await self._ensure_db()

        async with self._db.execute(
            "SELECT id, title, messages, created_at, updated_at FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            raise SessionNotFoundError(conversation_id)
        return self._row_to_conversation(row)

    async def list(self, limit: int = 50) -> list[Conversation]:
        """Most recently updated conversations first."""
        await self._ensure_db()

        async with self._db.execute("""
            SELECT id, title, messages, created_at, updated_at
            FROM conversations
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_conversation(row) for row in rows]

    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation.

        Returns:
            True if deleted, False if not found
        """
        await self._ensure_db()

        cursor = await self._db.execute(
            "DELETE FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        await self._db.commit()

        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
