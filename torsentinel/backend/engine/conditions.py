"""
engine/conditions.py

Typed rule conditions.

Every condition is evaluated in two passes:

    matches(event)  — pass 1, per-event filter that narrows the candidate set.
                      Aggregate conditions (SameValue, WithinWindow,
                      DistinctCountAtLeast) always pass here.
    holds(events)   — pass 2, gate over the whole candidate set.
                      Simple comparisons hold when at least one event satisfies them.

Field names are resolved to accessor functions once, when the condition is
built. An unknown field raises ValueError at construction time rather than
silently evaluating to None on every event.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field as dc_field
from typing import Any, Callable, Iterable, Sequence

from ..models import Event

Accessor = Callable[[Event], Any]

_ACCESSORS: dict[str, Accessor] = {
    "id":                  lambda e: e.id,
    "type":                lambda e: e.type,
    "timestamp":           lambda e: e.timestamp,
    "protocol":            lambda e: e.protocol,
    "source_ip":           lambda e: e.source_ip,
    "destination_ip":      lambda e: e.destination_ip,
    "destination_port":    lambda e: e.destination_port,
    "bytes_sent":          lambda e: e.bytes_sent,
    "bytes_received":      lambda e: e.bytes_received,
    "total_bytes":         lambda e: e.total_bytes,
    "circuit_id":          lambda e: e.circuit_id,
    "tags":                lambda e: e.tags,
    "source_country_code": lambda e: e.geo.source_country_code,
    "dest_country_code":   lambda e: e.geo.dest_country_code,
    "user_agent":          lambda e: e.user_agent,
    "requested_domain":    lambda e: e.requested_domain,
    "reputation_score":    lambda e: e.reputation_score,
    "is_malicious":        lambda e: e.is_malicious,
    "source_node":         lambda e: e.source_node,
}

# Traffic-log spellings accepted in rule files
_ALIASES: dict[str, str] = {
    "sourceIp":                  "source_ip",
    "destinationIp":             "destination_ip",
    "destinationPort":           "destination_port",
    "bytesSent":                 "bytes_sent",
    "bytesReceived":             "bytes_received",
    "circuitId":                 "circuit_id",
    "geoData.sourceCountryCode": "source_country_code",
    "geoData.destCountryCode":   "dest_country_code",
    "userAgent":                 "user_agent",
    "requestedDomain":           "requested_domain",
    "reputationScore":           "reputation_score",
    "isMalicious":               "is_malicious",
    "sourceNode":                "source_node",
}


def canonical_field(name: str) -> str:
    name = _ALIASES.get(name, name)
    if name not in _ACCESSORS:
        raise ValueError(f"unknown event field {name!r}")
    return name


def accessor_for(name: str) -> Accessor:
    return _ACCESSORS[canonical_field(name)]


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Base classes
# ---------------------------------------------------------------------------

class Condition(ABC):
    """A single clause of a correlation rule."""

    aggregate: bool = False
    operator: str = ""

    @abstractmethod
    def matches(self, event: Event) -> bool:
        ...

    @abstractmethod
    def holds(self, events: Sequence[Event]) -> bool:
        ...


@dataclass(frozen=True)
class _FieldCondition(Condition):
    field: str
    _get: Accessor = dc_field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "field", canonical_field(self.field))
        object.__setattr__(self, "_get", _ACCESSORS[self.field])

    def value_of(self, event: Event) -> Any:
        return self._get(event)


class _SimpleCondition(_FieldCondition):
    """Per-event predicate; as a gate, holds if any event satisfies it."""

    def holds(self, events: Sequence[Event]) -> bool:
        return any(self.matches(e) for e in events)


# ---------------------------------------------------------------------------
# Simple comparisons
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Equals(_SimpleCondition):
    value: Any = None
    operator = "equals"

    def matches(self, event: Event) -> bool:
        return self.value_of(event) == self.value


@dataclass(frozen=True)
class NotEquals(_SimpleCondition):
    value: Any = None
    operator = "not_equals"

    def matches(self, event: Event) -> bool:
        return self.value_of(event) != self.value


@dataclass(frozen=True)
class GreaterThan(_SimpleCondition):
    value: float = 0
    operator = "greater"

    def matches(self, event: Event) -> bool:
        n = _as_number(self.value_of(event))
        return n is not None and n > self.value


@dataclass(frozen=True)
class LessThan(_SimpleCondition):
    value: float = 0
    operator = "less"

    def matches(self, event: Event) -> bool:
        n = _as_number(self.value_of(event))
        return n is not None and n < self.value


@dataclass(frozen=True)
class Contains(_SimpleCondition):
    value: str = ""
    operator = "contains"

    def matches(self, event: Event) -> bool:
        v = self.value_of(event)
        if v is None:
            return False
        if isinstance(v, (set, frozenset)):
            return self.value in v
        return self.value in str(v)


@dataclass(frozen=True)
class NotIn(_SimpleCondition):
    values: frozenset = frozenset()
    operator = "not_in"

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(self, "values", frozenset(self.values))

    def matches(self, event: Event) -> bool:
        return self.value_of(event) not in self.values


# ---------------------------------------------------------------------------
# Aggregate conditions — pass-through in pass 1
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SameValue(_FieldCondition):
    aggregate = True
    operator = "same"

    def matches(self, event: Event) -> bool:
        return True

    def holds(self, events: Sequence[Event]) -> bool:
        if not events:
            return False
        first = self.value_of(events[0])
        return all(self.value_of(e) == first for e in events)


@dataclass(frozen=True)
class DistinctCountAtLeast(_FieldCondition):
    n: int = 1
    aggregate = True
    operator = "distinct_count"

    def matches(self, event: Event) -> bool:
        return True

    def holds(self, events: Sequence[Event]) -> bool:
        distinct = {v for v in (self.value_of(e) for e in events) if v is not None}
        return len(distinct) >= self.n


@dataclass(frozen=True)
class WithinWindow(Condition):
    duration_ms: int
    aggregate = True
    operator = "within"

    def matches(self, event: Event) -> bool:
        return True

    def holds(self, events: Sequence[Event]) -> bool:
        if len(events) < 2:
            return True
        timestamps = [e.timestamp for e in events]
        return max(timestamps) - min(timestamps) <= self.duration_ms


# ---------------------------------------------------------------------------
# Construction from rule-file dicts
# ---------------------------------------------------------------------------

def condition_from_dict(d: dict[str, Any]) -> Condition:
    """
    Build a Condition from a rule-file entry, e.g.
        {"field": "sourceIp", "operator": "same"}
        {"field": "timestamp", "operator": "within", "value": 600000}
    """
    op = d.get("operator")
    name = d.get("field", "")
    value = d.get("value")

    if op == "equals":
        return Equals(name, value)
    if op == "not_equals":
        return NotEquals(name, value)
    if op == "greater":
        return GreaterThan(name, float(value))
    if op == "less":
        return LessThan(name, float(value))
    if op == "contains":
        return Contains(name, str(value))
    if op == "not_in":
        return NotIn(name, frozenset(_iterable(value)))
    if op == "same":
        return SameValue(name)
    if op == "distinct_count":
        return DistinctCountAtLeast(name, int(value))
    if op == "within":
        return WithinWindow(int(value))
    raise ValueError(f"unknown condition operator {op!r}")


def _iterable(value: Any) -> Iterable:
    if isinstance(value, (list, tuple, set, frozenset)):
        return value
    raise ValueError(f"not_in expects a list of values, got {value!r}")
