"""Repository factory: picks the storage backend from ``chat.storage``."""

from __future__ import annotations

import logging
from typing import Any

from .memory_repo import InMemoryRepo
from .repository import ChatRepository
from .sqlite_repo import SQLiteRepo

logger = logging.getLogger(__name__)


def create_repository(storage_config: dict[str, Any]) -> ChatRepository:
    storage_type = storage_config.get("type", "sqlite")
    if storage_type == "memory":
        logger.info("Using in-memory chat history (lost on restart)")
        return InMemoryRepo()
    if storage_type == "sqlite":
        path = storage_config.get("path", "chat_history.db")
        logger.info("Using SQLite chat history at %s", path)
        return SQLiteRepo(path)
    raise ValueError(f"Unknown chat storage type: {storage_type!r}")
