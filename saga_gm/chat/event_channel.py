"""
Client Output Channel

A queue between the turn that produces ``ClientEvent``s and the HTTP response
that writes them as SSE records. The channel enforces the stream contract:

- nothing is written after the terminal ``done``/``error`` event
- once the client is gone, ``send`` raises ``ClientDisconnectedError`` so the
  producer stops at its next write instead of talking to nobody

With a ``maxsize`` the queue is bounded and ``send`` waits while a slow
client catches up.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from saga_gm.chat.models import ClientEvent

logger = logging.getLogger(__name__)


class ClientDisconnectedError(Exception):
    """The client closed the stream; stop producing output."""


class EventChannel:
    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[ClientEvent | None] = asyncio.Queue(maxsize)
        self._disconnected = False
        self._closed = False
        self.terminal_event: ClientEvent | None = None

    @property
    def is_disconnected(self) -> bool:
        return self._disconnected

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def send(self, event: ClientEvent) -> None:
        if self._disconnected:
            raise ClientDisconnectedError("client disconnected")
        if self.terminal_event is not None or self._closed:
            logger.warning("Dropping %s event written after stream end", event.type)
            return
        if event.is_terminal:
            self.terminal_event = event
        await self._queue.put(event)

    def mark_disconnected(self) -> None:
        if not self._disconnected:
            logger.info("Client disconnected; output channel closed")
        self._disconnected = True
        self.close()

    def close(self) -> None:
        """End the stream after whatever was already queued."""
        if self._closed:
            return
        self._closed = True
        # A full queue has no room for the sentinel; readers stop once it drains.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[ClientEvent]:
        while True:
            if self._closed and self._queue.empty():
                return
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def iter_sse(self) -> AsyncIterator[str]:
        """SSE records in send order, ending when the channel closes."""
        async for event in self.events():
            yield event.to_sse()
