"""
Chat History Module

Per-player chat history with in-memory and SQLite backends.
"""

from __future__ import annotations

from .factory import create_repository
from .memory_repo import InMemoryRepo
from .models import ChatEvent
from .repository import ChatRepository, to_normalized_messages
from .sqlite_repo import SQLiteRepo

__all__ = [
    "ChatEvent",
    "ChatRepository",
    "InMemoryRepo",
    "SQLiteRepo",
    "create_repository",
    "to_normalized_messages",
]
