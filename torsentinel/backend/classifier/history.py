"""
classifier/history.py

Read-mostly view of recent traffic consulted by the ThreatClassifier.

Two structures, both fed by record():
  - per-source destination-country observations over a 7-day horizon,
    used as the geographic baseline of a relay (source_node) or host
  - per-destination connection timestamps over a sliding 60 s window,
    used for the connection-rate (DDoS) check

CachedHistory wraps a TrafficHistory and memoises per-source geographic
baselines for GEO_BASELINE_TTL_SECONDS, so a burst of traffic from one
source does not rebuild its top-N country list on every event.

Thread safety: NOT thread-safe. Called only from the event loop.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, OrderedDict, deque
from typing import Protocol

from ..models import Event, now_ms

logger = logging.getLogger(__name__)

GEO_HORIZON_MS = 7 * 24 * 60 * 60 * 1000
RATE_WINDOW_MS = 60_000


def baseline_key(event: Event) -> str | None:
    """Geographic baselines are per relay when known, else per source host."""
    return event.source_node or event.source_ip


class HistoryView(Protocol):
    def top_countries(self, source: str, n: int = 10) -> list[str]: ...

    def country_frequency(self, source: str, country: str) -> float: ...

    def connection_rate(self, destination_ip: str, now: int) -> int: ...


class TrafficHistory:
    """
    Rolling traffic history.

    Args:
        geo_horizon_ms:  How far back geographic observations are kept.
        rate_window_ms:  Width of the connection-rate window.
    """

    def __init__(
        self,
        geo_horizon_ms: int = GEO_HORIZON_MS,
        rate_window_ms: int = RATE_WINDOW_MS,
    ) -> None:
        self.geo_horizon_ms = geo_horizon_ms
        self.rate_window_ms = rate_window_ms
        self._geo: dict[str, deque[tuple[int, str]]] = {}
        self._connections: dict[str, deque[int]] = {}

    def record(self, event: Event) -> None:
        key = baseline_key(event)
        country = event.geo.dest_country_code
        if key and country:
            self._geo.setdefault(key, deque()).append((event.timestamp, country))
            self._trim_geo(key, event.timestamp)

        if event.destination_ip:
            stamps = self._connections.setdefault(event.destination_ip, deque())
            stamps.append(event.timestamp)
            self._trim_connections(event.destination_ip, event.timestamp)

    def country_counts(self, source: str) -> Counter[str]:
        return Counter(country for _, country in self._geo.get(source, ()))

    def top_countries(self, source: str, n: int = 10) -> list[str]:
        """Most frequent destination countries for `source`, most common first."""
        return [country for country, _ in self.country_counts(source).most_common(n)]

    def country_frequency(self, source: str, country: str) -> float:
        """Share of `source`'s observations that went to `country` (0.0 with no history)."""
        counts = self.country_counts(source)
        total = sum(counts.values())
        if total == 0:
            return 0.0
        return counts.get(country, 0) / total

    def connection_rate(self, destination_ip: str, now: int) -> int:
        """Connections to `destination_ip` seen within the rate window ending at `now`."""
        stamps = self._connections.get(destination_ip)
        if not stamps:
            return 0
        cutoff = now - self.rate_window_ms
        return sum(1 for ts in stamps if cutoff < ts <= now)

    def sweep(self, now: int | None = None) -> None:
        """Drop observations that fell out of both horizons."""
        now = now_ms() if now is None else now
        for key in list(self._geo):
            self._trim_geo(key, now)
        for ip in list(self._connections):
            self._trim_connections(ip, now)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _trim_geo(self, key: str, now: int) -> None:
        entries = self._geo[key]
        cutoff = now - self.geo_horizon_ms
        while entries and entries[0][0] < cutoff:
            entries.popleft()
        if not entries:
            del self._geo[key]

    def _trim_connections(self, ip: str, now: int) -> None:
        stamps = self._connections[ip]
        cutoff = now - self.rate_window_ms
        while stamps and stamps[0] <= cutoff:
            stamps.popleft()
        if not stamps:
            del self._connections[ip]


class CachedHistory:
    """
    TrafficHistory wrapper with a TTL cache of per-source top-N baselines.

    Only the geographic baseline is cached; connection rates and
    frequencies are always read live.
    """

    def __init__(
        self,
        history: TrafficHistory,
        ttl_seconds: float = 3600.0,
        maxsize: int = 1000,
    ) -> None:
        self.history = history
        self.ttl_seconds = ttl_seconds
        self.maxsize = maxsize
        self._cache: OrderedDict[tuple[str, int], tuple[float, list[str]]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def record(self, event: Event) -> None:
        self.history.record(event)

    def top_countries(self, source: str, n: int = 10) -> list[str]:
        key = (source, n)
        cached = self._cache.get(key)
        now = time.monotonic()
        if cached is not None and now - cached[0] < self.ttl_seconds:
            self._cache.move_to_end(key)
            self.hits += 1
            return cached[1]

        self.misses += 1
        countries = self.history.top_countries(source, n)
        self._cache[key] = (now, countries)
        self._cache.move_to_end(key)
        if len(self._cache) > self.maxsize:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Geo baseline cache evicted source=%s", evicted[0])
        return countries

    def country_frequency(self, source: str, country: str) -> float:
        return self.history.country_frequency(source, country)

    def connection_rate(self, destination_ip: str, now: int) -> int:
        return self.history.connection_rate(destination_ip, now)

    def sweep(self, now: int | None = None) -> None:
        self.history.sweep(now)

    def invalidate(self, source: str | None = None) -> None:
        if source is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == source]:
            del self._cache[key]
