"""Bounded memory of processed message identifiers.

Unread messages stay unread because the listener never sets ``\\Seen``, so
every new-mail search after a reconnect returns messages that were already
ingested. The guard remembers recently processed Message-IDs so those
redeliveries are no-ops. Entries expire after the retention window and the
oldest entries are evicted once capacity is reached.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional


class DedupGuard:
    """LRU set of processed message identifiers with a retention window.

    Messages without an identifier are never deduplicated.
    """

    def __init__(
        self,
        *,
        capacity: int = 10_000,
        retention_seconds: Optional[float] = 7 * 24 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def seen(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        recorded_at = self._entries.get(message_id)
        if recorded_at is None:
            return False
        if self._expired(recorded_at):
            del self._entries[message_id]
            return False
        self._entries.move_to_end(message_id)
        return True

    def record(self, message_id: Optional[str]) -> None:
        if not message_id:
            return
        self._entries[message_id] = self._clock()
        self._entries.move_to_end(message_id)
        self._evict()

    def clear(self) -> int:
        """Forget every identifier; returns how many were dropped."""
        dropped = len(self._entries)
        self._entries.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return isinstance(message_id, str) and self.seen(message_id)

    def _expired(self, recorded_at: float) -> bool:
        if self.retention_seconds is None:
            return False
        return self._clock() - recorded_at > self.retention_seconds

    def _evict(self) -> None:
        while self._entries:
            oldest_id, recorded_at = next(iter(self._entries.items()))
            if len(self._entries) > self.capacity or self._expired(recorded_at):
                del self._entries[oldest_id]
            else:
                break


__all__ = ["DedupGuard"]
