"""SQLite-backed repository for chat messages and content-addressed files."""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from .schemas.chat import ChatTurnMessage, FileMeta

_UPDATABLE_COLUMNS = {
    "content",
    "attachments",
    "reasoning_text",
    "pending",
    "error",
    "stream_id",
}


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


def _encode_content(value: Any) -> tuple[str, bool]:
    if value is None:
        return "", False
    if isinstance(value, str):
        return value, False
    serialized = json.dumps(
        [
            part.model_dump(exclude_none=True) if hasattr(part, "model_dump") else part
            for part in value
        ]
    )
    return serialized, True


def _decode_content(value: str | None, is_structured: bool) -> Any:
    if value is None:
        return ""
    if is_structured:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _row_to_message(row: aiosqlite.Row) -> ChatTurnMessage:
    attachments = json.loads(row["attachments"]) if row["attachments"] else []
    return ChatTurnMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        index=row["position"],
        role=row["role"],
        content=_decode_content(row["content"], bool(row["content_structured"])),
        stream_id=row["stream_id"],
        attachments=attachments,
        reasoning_text=row["reasoning_text"],
        pending=bool(row["pending"]),
        error=row["error"],
        created_at=_normalize_db_timestamp(row["created_at"]),
    )


def _row_to_file_meta(row: aiosqlite.Row) -> FileMeta:
    return FileMeta(
        hash=row["hash"],
        mime_type=row["mime_type"],
        size_bytes=row["size_bytes"],
        name=row["name"],
        created_at=_normalize_db_timestamp(row["created_at"]),
    )


_MESSAGE_COLUMNS = """
    id,
    conversation_id,
    position,
    role,
    content,
    content_structured,
    stream_id,
    attachments,
    reasoning_text,
    pending,
    error,
    created_at
"""


class ChatRepository:
    """Persist conversation messages and the blobs they reference."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                content_structured INTEGER NOT NULL DEFAULT 0,
                stream_id TEXT,
                attachments TEXT,
                reasoning_text TEXT,
                pending INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS files (
                hash TEXT PRIMARY KEY,
                mime_type TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                name TEXT,
                ref_count INTEGER NOT NULL DEFAULT 1,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS file_blobs (
                hash TEXT PRIMARY KEY REFERENCES files(hash) ON DELETE CASCADE,
                data BLOB NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_position
                ON messages(conversation_id, position);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # Messages -----------------------------------------------------------

    async def append_message(
        self, conversation_id: str, message: ChatTurnMessage
    ) -> ChatTurnMessage:
        """Append ``message`` at the end of the conversation and return it stored."""

        assert self._connection is not None
        message_id = message.id or uuid.uuid4().hex
        serialized_content, structured = _encode_content(message.content)

        cursor = await self._connection.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        position = int(row[0]) if row is not None else 0

        await self._connection.execute(
            """
            INSERT INTO messages(
                id,
                conversation_id,
                position,
                role,
                content,
                content_structured,
                stream_id,
                attachments,
                reasoning_text,
                pending,
                error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                conversation_id,
                position,
                message.role,
                serialized_content,
                int(structured),
                message.stream_id,
                json.dumps(list(message.attachments)),
                message.reasoning_text,
                int(message.pending),
                message.error,
            ),
        )
        await self._connection.commit()

        stored = await self.get_message(message_id)
        if stored is None:  # pragma: no cover - defensive
            raise RuntimeError(f"Insert failed for message {message_id}")
        return stored

    async def update_message(self, message_id: str, **changes: Any) -> bool:
        """Apply column changes to a stored message; returns False if it is gone."""

        assert self._connection is not None
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported message fields: {sorted(unknown)}")
        if not changes:
            return await self.get_message(message_id) is not None

        assignments: list[str] = []
        params: list[Any] = []
        for column, value in changes.items():
            if column == "content":
                serialized, structured = _encode_content(value)
                assignments.extend(["content = ?", "content_structured = ?"])
                params.extend([serialized, int(structured)])
            elif column == "attachments":
                assignments.append("attachments = ?")
                params.append(json.dumps(list(value or [])))
            elif column == "pending":
                assignments.append("pending = ?")
                params.append(int(bool(value)))
            else:
                assignments.append(f"{column} = ?")
                params.append(value)
        params.append(message_id)

        cursor = await self._connection.execute(
            f"UPDATE messages SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        await self._connection.commit()
        updated = cursor.rowcount > 0
        await cursor.close()
        return updated

    async def get_message(self, message_id: str) -> ChatTurnMessage | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ? LIMIT 1",
            (message_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return _row_to_message(row)

    async def list_messages(self, conversation_id: str) -> list[ChatTurnMessage]:
        """Return conversation messages ordered by position."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE conversation_id = ?
            ORDER BY position ASC
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [_row_to_message(row) for row in rows]

    async def find_nearest(
        self,
        conversation_id: str,
        index: int,
        role: str,
        direction: Literal["before", "after"],
    ) -> ChatTurnMessage | None:
        """Return the closest message with ``role`` strictly before or after ``index``."""

        assert self._connection is not None
        if direction == "before":
            comparison, order = "<", "DESC"
        elif direction == "after":
            comparison, order = ">", "ASC"
        else:
            raise ValueError(f"Unknown direction: {direction}")

        cursor = await self._connection.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE conversation_id = ? AND role = ? AND position {comparison} ?
            ORDER BY position {order}
            LIMIT 1
            """,
            (conversation_id, role, index),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return _row_to_message(row)

    async def delete_message(self, message_id: str) -> bool:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "DELETE FROM messages WHERE id = ?", (message_id,)
        )
        await self._connection.commit()
        deleted = cursor.rowcount > 0
        await cursor.close()
        return deleted

    # Files --------------------------------------------------------------

    async def store_bytes(
        self, data: bytes, mime_type: str, name: str | None = None
    ) -> FileMeta:
        """Store ``data`` under its SHA-256 hash, bumping the ref count if present."""

        assert self._connection is not None
        file_hash = hashlib.sha256(data).hexdigest()
        cursor = await self._connection.execute(
            """
            INSERT OR IGNORE INTO files(hash, mime_type, size_bytes, name)
            VALUES (?, ?, ?, ?)
            """,
            (file_hash, mime_type, len(data), name),
        )
        inserted = cursor.rowcount > 0
        await cursor.close()
        if inserted:
            await self._connection.execute(
                "INSERT OR IGNORE INTO file_blobs(hash, data) VALUES (?, ?)",
                (file_hash, data),
            )
        else:
            await self._connection.execute(
                "UPDATE files SET ref_count = ref_count + 1 WHERE hash = ?",
                (file_hash,),
            )
        await self._connection.commit()

        meta = await self.get_file_meta(file_hash)
        if meta is None:  # pragma: no cover - defensive
            raise RuntimeError(f"Insert failed for file {file_hash}")
        return meta

    async def get_file_meta(self, file_hash: str) -> FileMeta | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT hash, mime_type, size_bytes, name, created_at
            FROM files
            WHERE hash = ?
            LIMIT 1
            """,
            (file_hash,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return _row_to_file_meta(row)

    async def get_file_blob(self, file_hash: str) -> bytes | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT data FROM file_blobs WHERE hash = ? LIMIT 1",
            (file_hash,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return bytes(row["data"])

    async def get_ref_count(self, file_hash: str) -> int:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT ref_count FROM files WHERE hash = ? LIMIT 1",
            (file_hash,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return int(row["ref_count"]) if row is not None else 0


__all__ = ["ChatRepository"]
