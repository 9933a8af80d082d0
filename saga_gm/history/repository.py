"""
Chat Repository Interface

The storage protocol shared by the in-memory and SQLite backends, plus the
conversion from stored events to the messages replayed to the model.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from saga_gm.chat.models import NormalizedMessage

from .models import ChatEvent

# Only the dialogue itself is replayed; tool results stay out of the prompt.
_DIALOGUE_TYPES = frozenset({"user_message", "assistant_message"})


def visible_to_llm(event: ChatEvent) -> bool:
    if event.type in _DIALOGUE_TYPES:
        return True
    return event.type == "system_update" and event.extra.get("visible_to_model", False)


def to_normalized_messages(events: Iterable[ChatEvent]) -> list[NormalizedMessage]:
    """Replayable messages for the events a model may see, in stored order."""
    messages: list[NormalizedMessage] = []
    for event in events:
        if not visible_to_llm(event) or not event.content:
            continue
        if event.type == "assistant_message":
            messages.append(NormalizedMessage.assistant(event.content))
        else:
            messages.append(NormalizedMessage.user(event.content))
    return messages


class ChatRepository(Protocol):
    """Storage backend for chat events, keyed by conversation (player) id."""

    async def add_event(self, event: ChatEvent) -> bool:
        """
        Append an event and assign its sequence number.

        Returns False without storing when an event with the same
        ``extra["request_id"]`` already exists in the conversation.
        """
        ...

    async def get_events(self, conversation_id: str, limit: int | None = None) -> list[ChatEvent]:
        """The most recent ``limit`` events (all when None), oldest first."""
        ...

    async def get_conversation_history(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatEvent]:
        """The most recent ``limit`` model-visible events, oldest first."""
        ...

    async def get_event_by_request_id(self, conversation_id: str, request_id: str) -> ChatEvent | None: ...

    async def list_conversations(self) -> list[str]: ...

    async def clear_conversation(self, conversation_id: str) -> int:
        """Delete a conversation; returns the number of removed events."""
        ...

    async def close(self) -> None: ...
