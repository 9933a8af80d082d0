"""
In-Memory Chat Repository

CONFIG: chat.storage.type = "memory"
PURPOSE: Development and tests; everything is lost on restart.
"""

from __future__ import annotations

import logging

from .models import ChatEvent
from .repository import visible_to_llm

logger = logging.getLogger(__name__)


class InMemoryRepo:
    def __init__(self) -> None:
        self._conversations: dict[str, list[ChatEvent]] = {}
        self._request_index: dict[str, dict[str, ChatEvent]] = {}

    async def add_event(self, event: ChatEvent) -> bool:
        conversation_id = event.conversation_id
        request_id = event.request_id
        requests = self._request_index.setdefault(conversation_id, {})
        if request_id and request_id in requests:
            logger.debug("Duplicate request %s ignored for %s", request_id, conversation_id)
            return False

        events = self._conversations.setdefault(conversation_id, [])
        event.seq = len(events) + 1
        events.append(event)
        if request_id:
            requests[request_id] = event
        return True

    async def get_events(self, conversation_id: str, limit: int | None = None) -> list[ChatEvent]:
        events = self._conversations.get(conversation_id, [])
        return list(events[-limit:]) if limit else list(events)

    async def get_conversation_history(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatEvent]:
        visible = [ev for ev in self._conversations.get(conversation_id, []) if visible_to_llm(ev)]
        return visible[-limit:] if limit else visible

    async def get_event_by_request_id(self, conversation_id: str, request_id: str) -> ChatEvent | None:
        return self._request_index.get(conversation_id, {}).get(request_id)

    async def list_conversations(self) -> list[str]:
        return list(self._conversations)

    async def clear_conversation(self, conversation_id: str) -> int:
        removed = len(self._conversations.pop(conversation_id, []))
        self._request_index.pop(conversation_id, None)
        return removed

    async def close(self) -> None:
        return None
