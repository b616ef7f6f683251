"""
backend/metrics.py

Lightweight thread-safe counters for the correlation pipeline.
No external dependencies — uses Python's threading.Lock.

Usage:
    from backend.metrics import METRICS
    METRICS.events_ingested.inc()
    print(METRICS.as_dict())
"""

import threading


class Counter:
    """A thread-safe integer counter."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self._value})"


class Metrics:
    """Singleton holding all pipeline counters."""

    def __init__(self) -> None:
        # --- Ingestion / buffer ---
        self.events_ingested: Counter = Counter()
        """Events accepted by CorrelationService.ingest()."""

        self.events_dropped: Counter = Counter()
        """Events discarded because the ingest queue was full."""

        self.events_evicted: Counter = Counter()
        """Buffered events pushed out of a full bucket."""

        # --- Detection ---
        self.correlations_emitted: Counter = Counter()
        self.rule_errors: Counter = Counter()

        # --- Findings sink ---
        self.persist_failures: Counter = Counter()
        self.alerts_requested: Counter = Counter()

        # --- Federation ---
        self.federation_sent: Counter = Counter()
        self.federation_failed: Counter = Counter()
        self.federation_received: Counter = Counter()
        self.federation_rejected: Counter = Counter()

    def as_dict(self) -> dict:
        """Return all counters as a plain dict (safe for JSON serialisation)."""
        return {
            name: counter.value
            for name, counter in vars(self).items()
            if isinstance(counter, Counter)
        }

    def reset_all(self) -> None:
        """Reset every counter to zero (useful in tests)."""
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                attr.reset()


# Module-level singleton — import from here everywhere
METRICS = Metrics()
