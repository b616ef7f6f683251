"""
backend/models.py

Shared dataclasses for every stage of the engine.
Defining all of them here locks the inter-stage contracts early
so the buffer, classifier, detector, sink and federation layers can be
developed against a stable interface.

All timestamps are integer milliseconds since the Unix epoch.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def ms_from_iso(value: str) -> int:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


# Per-event threat levels share the severity scale.
ThreatLevel = Severity


class ThreatType(str, Enum):
    SCANNING           = "scanning"
    DDOS               = "ddos"
    DATA_EXFILTRATION  = "data_exfiltration"
    GEO_ANOMALY        = "geo_anomaly"
    PROTOCOL_VIOLATION = "protocol_violation"
    MALWARE            = "malware"


class RuleAction(str, Enum):
    RAISE_THREAT = "raise_threat"
    CREATE_ALERT = "create_alert"
    NONE         = "none"


# ---------------------------------------------------------------------------
# Stage 1 — Observation
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class GeoData:
    source_country_code: str | None = None
    dest_country_code: str | None = None


@dataclass(frozen=True, slots=True)
class Event:
    """One recorded network connection/flow. Immutable once created."""

    id: str
    timestamp: int
    """Epoch milliseconds."""

    protocol: str = "TCP"
    """One of: 'TCP' | 'UDP' | 'HTTP' | 'HTTPS' | 'DNS' | 'OTHER'."""

    source_ip: str | None = None
    destination_ip: str | None = None
    destination_port: int | None = None
    bytes_sent: int = 0
    bytes_received: int = 0
    circuit_id: str | None = None
    tags: frozenset[str] = field(default_factory=frozenset)
    geo: GeoData = field(default_factory=GeoData)
    user_agent: str | None = None
    requested_domain: str | None = None
    reputation_score: float | None = None

    type: str | None = None
    """Observation kind assigned upstream, e.g. 'port_scan'."""

    is_malicious: bool = False
    """Set by the ingestion pipeline after classification."""

    source_node: str | None = None
    """Relay fingerprint the traffic was observed on, when known."""

    @property
    def total_bytes(self) -> int:
        return self.bytes_sent + self.bytes_received

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Event":
        """
        Build an Event from an ingestion record.

        Accepts both the camelCase traffic-log layout and snake_case keys.
        Timestamps may be epoch milliseconds or ISO-8601 strings.
        """
        if not isinstance(d, dict):
            raise ValueError(f"observation must be a JSON object, got {type(d).__name__}")

        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if d.get(k) is not None:
                    return d[k]
            return default

        raw_ts = pick("timestamp", default=None)
        if raw_ts is None:
            ts = now_ms()
        elif isinstance(raw_ts, str):
            ts = ms_from_iso(raw_ts)
        else:
            ts = int(raw_ts)

        geo_raw = pick("geo", "geoData", default={}) or {}
        if not isinstance(geo_raw, dict):
            raise ValueError(f"geo must be an object, got {type(geo_raw).__name__}")
        geo = GeoData(
            source_country_code=geo_raw.get("sourceCountryCode", geo_raw.get("source_country_code")),
            dest_country_code=geo_raw.get("destCountryCode", geo_raw.get("dest_country_code")),
        )
        port = pick("destinationPort", "destination_port")
        reputation = pick("reputationScore", "reputation_score")

        return cls(
            id=str(pick("id", "_id", default=None) or uuid.uuid4()),
            timestamp=ts,
            protocol=str(pick("protocol", default="TCP")),
            source_ip=pick("sourceIp", "source_ip"),
            destination_ip=pick("destinationIp", "destination_ip"),
            destination_port=int(port) if port is not None else None,
            bytes_sent=int(pick("bytesSent", "bytes_sent", default=0)),
            bytes_received=int(pick("bytesReceived", "bytes_received", default=0)),
            circuit_id=pick("circuitId", "circuit_id"),
            tags=frozenset(pick("tags", default=[])),
            geo=geo,
            user_agent=pick("userAgent", "user_agent"),
            requested_domain=pick("requestedDomain", "requested_domain"),
            reputation_score=float(reputation) if reputation is not None else None,
            type=pick("type"),
            is_malicious=bool(pick("isMalicious", "is_malicious", default=False)),
            source_node=pick("sourceNode", "source_node"),
        )

    def ref(self) -> dict[str, Any]:
        """Compact reference used when a correlation is serialised."""
        return {"id": self.id, "type": self.type, "timestamp": self.timestamp}

    def __repr__(self) -> str:
        return (
            f"Event({self.id!r} t={self.timestamp} "
            f"{self.source_ip}→{self.destination_ip}:{self.destination_port}/{self.protocol})"
        )


# ---------------------------------------------------------------------------
# Stage 2 — Per-event classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ThreatVerdict:
    """Heuristic classification of a single Event. Returned, never persisted."""

    threat_types: frozenset[ThreatType] = frozenset()
    threat_level: Severity = Severity.LOW

    confidence: float = 0.0
    """Raw sum of per-check increments; values above 1.0 mean 'very high'."""

    is_malicious: bool = False

    anomalies: tuple[str, ...] = ()
    """Machine-readable reason tags, in check order."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_types": sorted(t.value for t in self.threat_types),
            "threat_level": self.threat_level.value,
            "confidence": self.confidence,
            "is_malicious": self.is_malicious,
            "anomalies": list(self.anomalies),
        }


# ---------------------------------------------------------------------------
# Stage 3 — Correlation output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CorrelationMetadata:
    event_count: int = 0
    distinct_sources: int = 0
    distinct_destinations: int = 0
    distinct_protocols: int = 0
    sources: tuple[str, ...] = ()
    destinations: tuple[str, ...] = ()
    protocols: tuple[str, ...] = ()

    @classmethod
    def from_events(cls, events: list[Event] | tuple[Event, ...]) -> "CorrelationMetadata":
        sources = _unique(e.source_ip for e in events)
        destinations = _unique(e.destination_ip for e in events)
        protocols = _unique(e.protocol for e in events)
        return cls(
            event_count=len(events),
            distinct_sources=len(sources),
            distinct_destinations=len(destinations),
            distinct_protocols=len(protocols),
            sources=sources,
            destinations=destinations,
            protocols=protocols,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_count": self.event_count,
            "distinct_sources": self.distinct_sources,
            "distinct_destinations": self.distinct_destinations,
            "distinct_protocols": self.distinct_protocols,
            "sources": list(self.sources),
            "destinations": list(self.destinations),
            "protocols": list(self.protocols),
        }


def _unique(values) -> tuple[str, ...]:
    """First-seen order, None and empty values dropped."""
    seen: dict[str, None] = {}
    for v in values:
        if v:
            seen.setdefault(v, None)
    return tuple(seen)


@dataclass(frozen=True)
class Correlation:
    """
    A finding that a rule's conditions were satisfied by a set of events.

    Created by the CorrelationDetector (federated=False) or by the
    FederationGateway after signature verification (federated=True).
    """

    rule_id: str
    severity: Severity
    confidence: float
    """Always within [0.0, 0.95]."""

    matched_events: tuple[Event, ...] = ()
    metadata: CorrelationMetadata = field(default_factory=CorrelationMetadata)
    rule_name: str = ""
    description: str = ""
    id: str = field(default_factory=lambda: f"corr_{uuid.uuid4().hex}")
    timestamp: int = field(default_factory=now_ms)
    federated: bool = False
    federated_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "events": [e.ref() for e in self.matched_events],
            "metadata": self.metadata.to_dict(),
            "federated": self.federated,
            "federated_from": self.federated_from,
        }

    def __repr__(self) -> str:
        origin = f" from={self.federated_from!r}" if self.federated else ""
        return (
            f"Correlation({self.rule_id!r} {self.severity.value} "
            f"conf={self.confidence:.2f} events={self.metadata.event_count}{origin})"
        )


# ---------------------------------------------------------------------------
# Stage 4 — Alert request handed to the findings sink
# ---------------------------------------------------------------------------

@dataclass
class AlertDraft:
    title: str
    description: str
    severity: Severity
    alert_type: str = "correlation"
    source: str = "correlation_engine"
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "type": self.alert_type,
            "source": self.source,
            "metadata": self.metadata,
            "tags": self.tags,
        }
