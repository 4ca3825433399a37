"""In-process buffer of recent live events per tag, read by ``listen(tag)``."""

from __future__ import annotations

import threading
from collections import deque

from eem.core.models import ActivityEvent


class EventBuffer:
    """Bounded per-tag deques of the most recent events."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("EventBuffer capacity must be at least 1")
        self.capacity = capacity
        self._buffers: dict[str, deque[ActivityEvent]] = {}
        self._lock = threading.Lock()

    def publish(self, tag: str, event: ActivityEvent) -> None:
        with self._lock:
            buffer = self._buffers.get(tag)
            if buffer is None:
                buffer = self._buffers[tag] = deque(maxlen=self.capacity)
            buffer.append(event)

    def extend(self, tag: str, events: list[ActivityEvent]) -> None:
        for event in events:
            self.publish(tag, event)

    def recent(self, tag: str, limit: int | None = None) -> list[ActivityEvent]:
        """Buffered events for ``tag``, oldest first."""
        with self._lock:
            events = list(self._buffers.get(tag, ()))
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._buffers)

    def clear(self, tag: str | None = None) -> None:
        with self._lock:
            if tag is None:
                self._buffers.clear()
            else:
                self._buffers.pop(tag, None)
