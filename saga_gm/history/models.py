"""
Chat History Data Models

One ``ChatEvent`` per persisted step of a player's conversation with the Game
Master: the player's message, each tool result and the final narrative.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant", "tool"]

EventType = Literal[
    "user_message",
    "assistant_message",
    "tool_result",
    "system_update",
]


class ChatEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    # filled by the repository on insert
    seq: int | None = None
    schema_version: int = 1
    type: EventType
    role: Role | None = None
    content: str = ""
    tool_name: str | None = None
    model: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def request_id(self) -> str | None:
        return self.extra.get("request_id")
