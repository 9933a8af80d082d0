"""Tests for the lead-in narration buffer."""

import pytest

from saga_gm.chat.narrative_buffer import DEFAULT_BUFFER_LIMIT, NarrativeBuffer


def test_short_lead_in_is_discarded_on_tool_call():
    buffer = NarrativeBuffer()
    assert buffer.push("I draw my sword...") is None

    discarded = buffer.on_tool_call_start()
    assert discarded == "I draw my sword..."
    assert not buffer.is_buffering
    # Nothing left to release at stream end
    assert buffer.flush() is None


def test_text_passes_through_after_discard():
    buffer = NarrativeBuffer()
    buffer.push("Let me check.")
    buffer.on_tool_call_start()
    assert buffer.push("The goblin staggers back.") == "The goblin staggers back."


def test_exceeding_limit_releases_everything_buffered():
    buffer = NarrativeBuffer(limit=10)
    assert buffer.push("12345") is None
    assert buffer.push("678901") == "12345678901"
    assert not buffer.is_buffering
    assert buffer.push("more") == "more"


def test_tool_call_after_release_discards_nothing():
    buffer = NarrativeBuffer(limit=5)
    assert buffer.push("long enough text") == "long enough text"
    assert buffer.on_tool_call_start() == ""


def test_flush_releases_short_reply_at_stream_end():
    buffer = NarrativeBuffer()
    buffer.push("You nod.")
    assert buffer.flush() == "You nod."
    assert buffer.flush() is None


def test_empty_pushes_are_ignored():
    buffer = NarrativeBuffer()
    assert buffer.push("") is None
    assert buffer.flush() is None


def test_default_limit():
    assert NarrativeBuffer().limit == DEFAULT_BUFFER_LIMIT == 120


def test_negative_limit_rejected():
    with pytest.raises(ValueError):
        NarrativeBuffer(limit=-1)
