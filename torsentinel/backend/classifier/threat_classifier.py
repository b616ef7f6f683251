"""
classifier/threat_classifier.py

ThreatClassifier — heuristic, single-event threat classification.

Each check contributes a threat type, an anomaly tag and a confidence
increment. Confidence is the raw, uncapped sum of increments (it may
exceed 1.0); only correlations are clamped.

    check               increment  own level
    scanning            0.6        medium
    ddos                0.8        high
    data_exfiltration   0.7        high
    geo_anomaly         0.5        medium
    protocol_violation  0.4        medium
    malware             0.9        critical

Final level: malware → critical; ddos or exfiltration → high; two or more
types → medium; one type → that type's level; none → low.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..models import AlertDraft, Event, Severity, ThreatType, ThreatVerdict
from .history import HistoryView, baseline_key

logger = logging.getLogger(__name__)

SCAN_PORTS = frozenset({22, 23, 25, 53, 80, 443, 3389, 8080})
MALWARE_INDICATORS = ("exploit", "shellcode", "command", "control")

# Protocol → ports it is allowed on
_PROTOCOL_PORTS: dict[str, frozenset[int]] = {
    "HTTP": frozenset({80, 8080}),
    "HTTPS": frozenset({443}),
    "DNS": frozenset({53}),
}

# threat type → (anomaly tag, confidence increment, own level), in check order
_CHECKS: dict[ThreatType, tuple[str, float, Severity]] = {
    ThreatType.SCANNING: ("port_scanning", 0.6, Severity.MEDIUM),
    ThreatType.DDOS: ("ddos_pattern", 0.8, Severity.HIGH),
    ThreatType.DATA_EXFILTRATION: ("large_data_transfer", 0.7, Severity.HIGH),
    ThreatType.GEO_ANOMALY: ("unusual_geographic_pattern", 0.5, Severity.MEDIUM),
    ThreatType.PROTOCOL_VIOLATION: ("protocol_anomaly", 0.4, Severity.MEDIUM),
    ThreatType.MALWARE: ("malware_indicators", 0.9, Severity.CRITICAL),
}

_MALICIOUS_CONFIDENCE = 0.3


@dataclass(frozen=True)
class ClassifierThresholds:
    connection_rate: int = 100
    """Connections per minute to one destination before it looks like a flood."""

    data_exfil_bytes: int = 100_000_000
    geo_anomaly: float = 0.1
    geo_top_n: int = 10

    @classmethod
    def from_settings(cls, settings: Any) -> "ClassifierThresholds":
        return cls(
            connection_rate=settings.CONNECTION_RATE_THRESHOLD,
            data_exfil_bytes=settings.DATA_EXFIL_THRESHOLD,
            geo_anomaly=settings.GEO_ANOMALY_THRESHOLD,
        )


class ThreatClassifier:
    """Stateless apart from its thresholds; history is passed per call."""

    def __init__(self, thresholds: ClassifierThresholds | None = None) -> None:
        self.thresholds = thresholds or ClassifierThresholds()

    def classify(self, event: Event, history: HistoryView) -> ThreatVerdict:
        found: list[ThreatType] = []

        if self.is_port_scanning(event):
            found.append(ThreatType.SCANNING)
        if self.is_ddos_pattern(event, history):
            found.append(ThreatType.DDOS)
        if self.is_data_exfiltration(event):
            found.append(ThreatType.DATA_EXFILTRATION)
        if self.is_geographic_anomaly(event, history):
            found.append(ThreatType.GEO_ANOMALY)
        if self.is_protocol_violation(event):
            found.append(ThreatType.PROTOCOL_VIOLATION)
        if self.has_malware_indicators(event):
            found.append(ThreatType.MALWARE)

        confidence = sum(_CHECKS[t][1] for t in found)
        verdict = ThreatVerdict(
            threat_types=frozenset(found),
            threat_level=_final_level(found),
            confidence=confidence,
            is_malicious=bool(found) and confidence > _MALICIOUS_CONFIDENCE,
            anomalies=tuple(_CHECKS[t][0] for t in found),
        )
        if verdict.is_malicious:
            logger.debug(
                "Event %s classified %s conf=%.2f types=%s",
                event.id,
                verdict.threat_level.value,
                confidence,
                [t.value for t in found],
            )
        return verdict

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def is_port_scanning(self, event: Event) -> bool:
        return event.destination_port in SCAN_PORTS

    def is_ddos_pattern(self, event: Event, history: HistoryView) -> bool:
        if not event.destination_ip:
            return False
        rate = history.connection_rate(event.destination_ip, event.timestamp)
        return rate > self.thresholds.connection_rate

    def is_data_exfiltration(self, event: Event) -> bool:
        return event.total_bytes > self.thresholds.data_exfil_bytes

    def is_geographic_anomaly(self, event: Event, history: HistoryView) -> bool:
        source = baseline_key(event)
        country = event.geo.dest_country_code
        if not source or not country:
            return False

        baseline = history.top_countries(source, self.thresholds.geo_top_n)
        if not baseline:
            return False

        unusual = country not in baseline
        frequency = history.country_frequency(source, country)
        return unusual and frequency < self.thresholds.geo_anomaly

    def is_protocol_violation(self, event: Event) -> bool:
        allowed = _PROTOCOL_PORTS.get(event.protocol.upper())
        if allowed is None or event.destination_port is None:
            return False
        return event.destination_port not in allowed

    def has_malware_indicators(self, event: Event) -> bool:
        haystacks = [
            (event.user_agent or "").lower(),
            (event.requested_domain or "").lower(),
        ]
        return any(ind in text for ind in MALWARE_INDICATORS for text in haystacks)


def _final_level(found: list[ThreatType]) -> Severity:
    if ThreatType.MALWARE in found:
        return Severity.CRITICAL
    if ThreatType.DDOS in found or ThreatType.DATA_EXFILTRATION in found:
        return Severity.HIGH
    if len(found) >= 2:
        return Severity.MEDIUM
    if found:
        return _CHECKS[found[0]][2]
    return Severity.LOW


# ---------------------------------------------------------------------------
# Alert drafting
# ---------------------------------------------------------------------------

# First matching type wins
_ALERT_TITLES: list[tuple[ThreatType, str, str]] = [
    (ThreatType.MALWARE, "Malware Activity Detected", "security_breach"),
    (ThreatType.DDOS, "Potential DDoS Attack Detected", "performance_degradation"),
    (ThreatType.DATA_EXFILTRATION, "Suspicious Data Exfiltration", "malicious_traffic"),
    (ThreatType.SCANNING, "Port Scanning Activity Detected", "malicious_traffic"),
    (ThreatType.GEO_ANOMALY, "Unusual Geographic Pattern", "geo_anomaly"),
]


def format_bytes(num: float) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num)
    idx = 0
    while size >= 1024 and idx < len(units) - 1:
        size /= 1024
        idx += 1
    return f"{size:.2f} {units[idx]}"


def build_alert_draft(event: Event, verdict: ThreatVerdict) -> AlertDraft | None:
    """Alert request for a malicious event; None when not worth alerting."""
    if not verdict.is_malicious or verdict.threat_level == Severity.LOW:
        return None

    title, alert_type = "Suspicious Network Activity", "malicious_traffic"
    for threat_type, t, a in _ALERT_TITLES:
        if threat_type in verdict.threat_types:
            title, alert_type = t, a
            break

    # Preserve check order in the human-readable list
    ordered = [t.value for t in _CHECKS if t in verdict.threat_types]
    dest = event.destination_ip or "unknown"
    port = event.destination_port if event.destination_port is not None else "unknown"
    description = (
        f"Suspicious traffic detected to {dest}:{port}. "
        f"Transferred {format_bytes(event.total_bytes)}. "
        f"Threat types: {', '.join(ordered)}. "
        f"Confidence: {round(verdict.confidence * 100)}%"
    )

    return AlertDraft(
        title=title,
        description=description,
        severity=verdict.threat_level,
        alert_type=alert_type,
        source="system",
        metadata={
            "analysis": verdict.to_dict(),
            "event_id": event.id,
            "source_node": event.source_node,
            "traffic": {
                "destination_ip": event.destination_ip,
                "destination_port": event.destination_port,
                "protocol": event.protocol,
                "bytes_transferred": event.total_bytes,
            },
        },
        tags=ordered,
    )
