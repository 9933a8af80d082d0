"""Lead-in narration buffer for one generation pass."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_LIMIT = 120


class NarrativeBuffer:
    """
    Holds the opening text of a pass until it is clearly narration.

    Two states only: buffering, then released. Release happens either by a
    flush (limit exceeded, or stream end) or by a discard (a tool call started
    while still buffering). Once released the buffer passes text straight
    through until the pass ends.
    """

    def __init__(self, limit: int = DEFAULT_BUFFER_LIMIT) -> None:
        if limit < 0:
            raise ValueError("narrative buffer limit must be non-negative")
        self.limit = limit
        self.buffer = ""
        self.is_buffering = True

    def push(self, text: str) -> str | None:
        """Accept model text; return whatever should reach the client now."""
        if not text:
            return None
        if not self.is_buffering:
            return text

        self.buffer += text
        if len(self.buffer) > self.limit:
            return self._release()
        return None

    def on_tool_call_start(self) -> str:
        """Discard buffered lead-in; returns the discarded text (may be empty)."""
        if not self.is_buffering:
            return ""
        discarded = self.buffer
        self.buffer = ""
        self.is_buffering = False
        if discarded:
            logger.info(
                "Discarded %d chars of lead-in narration before tool call",
                len(discarded),
            )
        return discarded

    def flush(self) -> str | None:
        """Release any remaining buffered text at stream end."""
        if not self.is_buffering:
            return None
        text = self._release()
        return text or None

    def _release(self) -> str:
        text = self.buffer
        self.buffer = ""
        self.is_buffering = False
        return text
