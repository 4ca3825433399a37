"""Tests for the live event buffer."""

from __future__ import annotations

import pytest

from eem.script.buffer import EventBuffer

from tests.helpers.fakes import make_activity


class TestEventBuffer:
    def test_capacity_drops_oldest(self):
        buffer = EventBuffer(capacity=2)
        for i in range(3):
            buffer.publish("ide", make_activity(f"event {i}", minutes=i))
        assert [e.content for e in buffer.recent("ide")] == ["event 1", "event 2"]

    def test_tags_are_independent(self):
        buffer = EventBuffer()
        buffer.publish("ide", make_activity("a"))
        buffer.publish("terminal", make_activity("b"))
        assert buffer.tags() == ["ide", "terminal"]
        assert [e.content for e in buffer.recent("terminal")] == ["b"]

    def test_recent_unknown_tag_is_empty(self):
        assert EventBuffer().recent("nothing") == []

    def test_recent_limit(self):
        buffer = EventBuffer()
        buffer.extend("ide", [make_activity(c) for c in "abc"])
        assert [e.content for e in buffer.recent("ide", limit=2)] == ["b", "c"]
        assert buffer.recent("ide", limit=0) == []

    def test_clear(self):
        buffer = EventBuffer()
        buffer.publish("ide", make_activity("a"))
        buffer.publish("web", make_activity("b"))
        buffer.clear("ide")
        assert buffer.tags() == ["web"]
        buffer.clear()
        assert buffer.tags() == []

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            EventBuffer(capacity=0)
