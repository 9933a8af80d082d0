"""
Tool-Call Accumulator

Reassembles complete tool calls from the fragments vendors stream. Fragments
are keyed by a vendor slot (the chat-completions ``index``, the content-block
index, or a synthetic key) and each slot holds ``{id, name, args}``.

Vendor quirks handled here:
- the id may arrive before the name, so ``tool_call_start`` is only emitted
  once a name is known
- some vendors repeat the same id on every chunk of one call; that is a
  continuation, not a new call
- the name may never arrive at all; ids shaped like ``functions.<name>:<n>``
  still carry it
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any

from saga_gm.chat.models import (
    StreamEvent,
    ToolCallArgsDeltaEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
)

logger = logging.getLogger(__name__)

_STRUCTURED_ID = re.compile(r"^functions\.([^:]+)")


@dataclass
class _PendingCall:
    id: str
    name: str = ""
    args: list[str] = field(default_factory=list)
    started: bool = False


def recover_name_from_id(call_id: str) -> str:
    """Extract the tool name from ids like ``functions.add_item:0``."""
    match = _STRUCTURED_ID.match(call_id)
    return match.group(1) if match else ""


def parse_arguments(tool_name: str, raw: str) -> dict[str, Any]:
    """Parse a JSON argument string, falling back to ``{}``."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Malformed JSON arguments for %s, using {}: %s", tool_name, e)
        return {}
    if not isinstance(parsed, dict):
        logger.warning(
            "Arguments for %s are %s, not an object; using {}",
            tool_name,
            type(parsed).__name__,
        )
        return {}
    return parsed


class ToolCallAccumulator:
    """Turns start/delta/finish fragments into ordered, well-formed tool events."""

    def __init__(self) -> None:
        self._pending: dict[Hashable, _PendingCall] = {}

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def feed(
        self,
        slot: Hashable,
        *,
        call_id: str | None = None,
        name: str | None = None,
        args_delta: str | None = None,
    ) -> list[StreamEvent]:
        """
        Record one fragment and return the events it makes ready.

        A fragment carrying a new id for an occupied slot finishes the old call
        first. A fragment without an id continues whatever call owns the slot;
        if the slot is empty the fragment is dropped.
        """
        events: list[StreamEvent] = []
        pending = self._pending.get(slot)

        if call_id and (pending is None or pending.id != call_id):
            if pending is not None:
                events.extend(self.finish(slot))
            pending = _PendingCall(id=call_id)
            self._pending[slot] = pending
        elif pending is None:
            logger.debug("Dropping tool call fragment for unknown slot %r", slot)
            return events

        if name and not pending.name:
            pending.name = name
        if pending.name and not pending.started:
            pending.started = True
            events.append(ToolCallStartEvent(id=pending.id, name=pending.name))
            # Arguments that arrived before the name are released with the start
            if pending.args:
                events.append(
                    ToolCallArgsDeltaEvent(id=pending.id, args_delta="".join(pending.args))
                )

        if args_delta:
            pending.args.append(args_delta)
            if pending.started:
                events.append(ToolCallArgsDeltaEvent(id=pending.id, args_delta=args_delta))

        return events

    def finish(self, slot: Hashable) -> list[StreamEvent]:
        """Close the call in ``slot``, emitting its end event (or dropping it)."""
        pending = self._pending.pop(slot, None)
        if pending is None:
            return []

        name = pending.name or recover_name_from_id(pending.id)
        if not name:
            logger.warning(
                "Dropping tool call %s: no function name was streamed", pending.id
            )
            return []

        events: list[StreamEvent] = []
        if not pending.started:
            events.append(ToolCallStartEvent(id=pending.id, name=name))

        arguments = parse_arguments(name, "".join(pending.args))
        events.append(ToolCallEndEvent(id=pending.id, name=name, arguments=arguments))
        return events

    def finish_all(self) -> list[StreamEvent]:
        """Close every open call in the order the slots were opened."""
        events: list[StreamEvent] = []
        for slot in list(self._pending):
            events.extend(self.finish(slot))
        return events
