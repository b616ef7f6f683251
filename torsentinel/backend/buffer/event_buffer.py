"""
buffer/event_buffer.py

EventBuffer — bounded, keyed, time-windowed retention of recent events.

Design:
  - One fixed-capacity ring buffer (deque with maxlen) per correlation key.
    The size bound is structural: appending to a full bucket drops the
    oldest entry, so no bucket can ever exceed max_buffer_size.
  - Key precedence: source IP, then destination IP, then circuit id,
    then the shared "general" bucket.
  - Events are stored by reference — never copied or mutated.
  - sweep_expired() is driven by a periodic task; it and insert() never
    interleave because both run on the event loop thread.

Thread safety: NOT thread-safe. Called exclusively from asyncio coroutines.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from ..metrics import METRICS
from ..models import Event

if TYPE_CHECKING:
    from ..engine.rules import Rule

logger = logging.getLogger(__name__)

GENERAL_KEY = "general"

_MAX_BUFFER_SIZE_DEFAULT = 10_000
_CORRELATION_WINDOW_MS_DEFAULT = 300_000


def bucket_key(event: Event) -> str:
    """Correlation key for an event."""
    if event.source_ip:
        return f"source:{event.source_ip}"
    if event.destination_ip:
        return f"dest:{event.destination_ip}"
    if event.circuit_id:
        return f"circuit:{event.circuit_id}"
    return GENERAL_KEY


class EventBuffer:
    """
    Keyed ring buffers of recently observed events.

    Args:
        max_buffer_size:       Capacity of each bucket.
        correlation_window_ms: How long an event stays relevant.
    """

    def __init__(
        self,
        max_buffer_size: int = _MAX_BUFFER_SIZE_DEFAULT,
        correlation_window_ms: int = _CORRELATION_WINDOW_MS_DEFAULT,
    ) -> None:
        if max_buffer_size < 1:
            raise ValueError("max_buffer_size must be >= 1")
        self.max_buffer_size = max_buffer_size
        self.correlation_window_ms = correlation_window_ms
        self._buckets: dict[str, deque[Event]] = {}
        self.stats: dict[str, int] = {
            "events_inserted": 0,
            "events_evicted": 0,
            "events_expired": 0,
            "buckets_removed": 0,
        }
        logger.debug(
            "EventBuffer initialised — max_buffer_size=%d window=%dms",
            max_buffer_size,
            correlation_window_ms,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def insert(self, event: Event) -> str:
        """Append an event to its bucket and return the bucket key."""
        key = bucket_key(event)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = deque(maxlen=self.max_buffer_size)
            self._buckets[key] = bucket
        elif len(bucket) == self.max_buffer_size:
            # deque drops the leftmost entry on append
            self.stats["events_evicted"] += 1
            METRICS.events_evicted.inc()
        bucket.append(event)
        self.stats["events_inserted"] += 1
        return key

    def relevant_events(self, rule: Rule, new_event: Event, now: int) -> list[Event]:
        """
        Candidate set for evaluating `rule` against `new_event`.

        Scans every bucket, skips entries older than the correlation window
        relative to `now`, keeps those passing the rule's per-event filters,
        and finally appends `new_event` itself (exactly once, even though it
        was already inserted).
        """
        cutoff = now - self.correlation_window_ms
        events: list[Event] = []
        for bucket in self._buckets.values():
            for event in bucket:
                if event is new_event or event.timestamp < cutoff:
                    continue
                if rule.matches_event(event):
                    events.append(event)
        events.append(new_event)
        return events

    def sweep_expired(self, now: int) -> int:
        """
        Drop entries older than the correlation window and remove empty buckets.

        Idempotent for a given `now`. Returns the number of events dropped.
        """
        cutoff = now - self.correlation_window_ms
        dropped = 0
        empty: list[str] = []

        for key, bucket in self._buckets.items():
            if not any(e.timestamp < cutoff for e in bucket):
                continue
            kept = [e for e in bucket if e.timestamp >= cutoff]
            dropped += len(bucket) - len(kept)
            if kept:
                self._buckets[key] = deque(kept, maxlen=self.max_buffer_size)
            else:
                empty.append(key)

        for key in empty:
            del self._buckets[key]

        if dropped:
            self.stats["events_expired"] += dropped
            self.stats["buckets_removed"] += len(empty)
            logger.info(
                "Swept %d expired event(s), removed %d bucket(s) (remaining buckets: %d)",
                dropped,
                len(empty),
                len(self._buckets),
            )
        return dropped

    def bucket(self, key: str) -> list[Event]:
        """Snapshot of one bucket, oldest first (empty if unknown)."""
        return list(self._buckets.get(key, ()))

    def keys(self) -> list[str]:
        return list(self._buckets)

    def clear(self) -> None:
        self._buckets.clear()

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def __len__(self) -> int:
        return sum(len(b) for b in self._buckets.values())
