"""
SQLite Chat Repository

CONFIG: chat.storage.type = "sqlite" (default), chat.storage.path
PURPOSE: Durable per-player history across restarts.
FEATURES: WAL journal, request-id idempotency enforced by a unique index.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import aiosqlite

from .models import ChatEvent

logger = logging.getLogger(__name__)

_VISIBLE_FILTER = """
    AND (
        type IN ('user_message', 'assistant_message')
        OR (type = 'system_update' AND
            json_extract(extra, '$.visible_to_model') = 1)
    )
"""


class SQLiteRepo:
    def __init__(self, db_path: str = "chat_history.db") -> None:
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS chat_events (
                        id TEXT PRIMARY KEY,
                        conversation_id TEXT NOT NULL,
                        seq INTEGER NOT NULL,
                        schema_version INTEGER NOT NULL,
                        type TEXT NOT NULL,
                        role TEXT,
                        content TEXT,
                        tool_name TEXT,
                        model TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        extra TEXT,
                        request_id TEXT GENERATED ALWAYS AS (
                            json_extract(extra, '$.request_id')
                        ) VIRTUAL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_conversation_seq
                    ON chat_events(conversation_id, seq)
                """)
                await db.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_request_id
                    ON chat_events(conversation_id, request_id)
                    WHERE request_id IS NOT NULL
                """)
                await db.commit()

            self._initialized = True
            logger.info("SQLite chat history ready at %s", self.db_path)

    @staticmethod
    def _serialize_event(event: ChatEvent) -> dict[str, Any]:
        return {
            "id": event.id,
            "conversation_id": event.conversation_id,
            "seq": event.seq,
            "schema_version": event.schema_version,
            "type": event.type,
            "role": event.role,
            "content": event.content,
            "tool_name": event.tool_name,
            "model": event.model,
            "created_at": event.created_at.isoformat(),
            "extra": json.dumps(event.extra, ensure_ascii=False) if event.extra else None,
        }

    @staticmethod
    def _deserialize_event(row: aiosqlite.Row) -> ChatEvent:
        return ChatEvent(
            id=row["id"],
            conversation_id=row["conversation_id"],
            seq=row["seq"],
            schema_version=row["schema_version"],
            type=row["type"],
            role=row["role"],
            content=row["content"] or "",
            tool_name=row["tool_name"],
            model=row["model"],
            created_at=datetime.fromisoformat(row["created_at"]),
            extra=json.loads(row["extra"]) if row["extra"] else {},
        )

    async def add_event(self, event: ChatEvent) -> bool:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            request_id = event.request_id
            if request_id:
                async with db.execute(
                    "SELECT 1 FROM chat_events WHERE conversation_id = ? AND request_id = ?",
                    (event.conversation_id, request_id),
                ) as cursor:
                    if await cursor.fetchone():
                        return False

            async with db.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_events WHERE conversation_id = ?",
                (event.conversation_id,),
            ) as cursor:
                row = await cursor.fetchone()
                event.seq = row[0] if row else 1

            row_data = self._serialize_event(event)
            columns = ", ".join(row_data)
            placeholders = ", ".join("?" * len(row_data))
            try:
                await db.execute(
                    f"INSERT INTO chat_events ({columns}) VALUES ({placeholders})",
                    list(row_data.values()),
                )
            except aiosqlite.IntegrityError:
                logger.debug("Concurrent duplicate request %s ignored", request_id)
                return False
            await db.commit()
            return True

    async def _select_latest(
        self, conversation_id: str, limit: int | None, where: str = ""
    ) -> list[ChatEvent]:
        # Newest N by seq, returned oldest first
        query = f"SELECT * FROM chat_events WHERE conversation_id = ? {where} ORDER BY seq DESC"
        params: list[Any] = [conversation_id]
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [self._deserialize_event(row) for row in reversed(rows)]

    async def get_events(self, conversation_id: str, limit: int | None = None) -> list[ChatEvent]:
        await self._ensure_initialized()
        return await self._select_latest(conversation_id, limit)

    async def get_conversation_history(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatEvent]:
        await self._ensure_initialized()
        return await self._select_latest(conversation_id, limit, _VISIBLE_FILTER)

    async def get_event_by_request_id(self, conversation_id: str, request_id: str) -> ChatEvent | None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM chat_events WHERE conversation_id = ? AND request_id = ?",
                (conversation_id, request_id),
            ) as cursor:
                row = await cursor.fetchone()
                return self._deserialize_event(row) if row else None

    async def list_conversations(self) -> list[str]:
        await self._ensure_initialized()

        async with (
            aiosqlite.connect(self.db_path) as db,
            db.execute("SELECT DISTINCT conversation_id FROM chat_events") as cursor,
        ):
            rows = await cursor.fetchall()
            return [row[0] for row in rows]

    async def clear_conversation(self, conversation_id: str) -> int:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM chat_events WHERE conversation_id = ?", (conversation_id,)
            )
            await db.commit()
            return cursor.rowcount

    async def close(self) -> None:
        # Connections are opened per operation
        return None
