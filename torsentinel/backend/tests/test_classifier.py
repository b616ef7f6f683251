"""
tests/test_classifier.py

Tests for classifier/threat_classifier.py and classifier/history.py.
"""

from __future__ import annotations

import pytest

from torsentinel.backend.classifier import (
    CachedHistory,
    ClassifierThresholds,
    ThreatClassifier,
    TrafficHistory,
    build_alert_draft,
    format_bytes,
)
from torsentinel.backend.models import Event, GeoData, Severity, ThreatType


BASE_TS = 1_700_000_000_000


def make_event(n: int = 0, ts: int = BASE_TS, **kwargs) -> Event:
    kwargs.setdefault("source_ip", "10.0.0.1")
    kwargs.setdefault("destination_ip", "203.0.113.5")
    return Event(id=f"evt-{n}", timestamp=ts, **kwargs)


@pytest.fixture
def classifier():
    return ThreatClassifier()


@pytest.fixture
def history():
    return TrafficHistory()


# ---------------------------------------------------------------------------
# TrafficHistory
# ---------------------------------------------------------------------------

class TestTrafficHistory:

    def test_top_countries_most_common_first(self, history):
        for i, cc in enumerate(["US", "US", "DE", "US", "DE", "FR"]):
            history.record(make_event(i, geo=GeoData(dest_country_code=cc)))
        assert history.top_countries("10.0.0.1") == ["US", "DE", "FR"]
        assert history.top_countries("10.0.0.1", n=1) == ["US"]

    def test_baseline_prefers_source_node(self, history):
        history.record(make_event(geo=GeoData(dest_country_code="US"), source_node="relay-A"))
        assert history.top_countries("relay-A") == ["US"]
        assert history.top_countries("10.0.0.1") == []

    def test_country_frequency(self, history):
        for i, cc in enumerate(["US", "US", "US", "RU"]):
            history.record(make_event(i, geo=GeoData(dest_country_code=cc)))
        assert history.country_frequency("10.0.0.1", "RU") == 0.25
        assert history.country_frequency("10.0.0.1", "CN") == 0.0
        assert history.country_frequency("unknown", "US") == 0.0

    def test_connection_rate_window(self, history):
        for i in range(5):
            history.record(make_event(i, ts=BASE_TS + i * 10_000))
        # Window (now-60s, now]
        assert history.connection_rate("203.0.113.5", BASE_TS + 40_000) == 5
        assert history.connection_rate("203.0.113.5", BASE_TS + 100_000) == 0
        assert history.connection_rate("198.51.100.1", BASE_TS) == 0

    def test_sweep_drops_old_observations(self, history):
        history.record(make_event(geo=GeoData(dest_country_code="US")))
        history.sweep(now=BASE_TS + 8 * 24 * 3600 * 1000)
        assert history.top_countries("10.0.0.1") == []
        assert history.connection_rate("203.0.113.5", BASE_TS) == 0


class TestCachedHistory:

    def test_baseline_is_cached(self, history):
        cached = CachedHistory(history)
        cached.record(make_event(geo=GeoData(dest_country_code="US")))
        assert cached.top_countries("10.0.0.1") == ["US"]
        cached.record(make_event(1, geo=GeoData(dest_country_code="DE")))
        cached.record(make_event(2, geo=GeoData(dest_country_code="DE")))
        # Still the cached baseline until invalidated
        assert cached.top_countries("10.0.0.1") == ["US"]
        assert cached.hits == 1
        cached.invalidate("10.0.0.1")
        assert cached.top_countries("10.0.0.1") == ["DE", "US"]

    def test_zero_ttl_always_misses(self, history):
        cached = CachedHistory(history, ttl_seconds=0)
        cached.top_countries("x")
        cached.top_countries("x")
        assert cached.misses == 2

    def test_lru_bound(self, history):
        cached = CachedHistory(history, maxsize=2)
        for source in ("a", "b", "c"):
            cached.top_countries(source)
        assert len(cached._cache) == 2


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------

class TestChecks:

    def test_port_scanning(self, classifier):
        assert classifier.is_port_scanning(make_event(destination_port=3389))
        assert not classifier.is_port_scanning(make_event(destination_port=4444))

    def test_ddos_uses_connection_rate(self, history):
        classifier = ThreatClassifier(ClassifierThresholds(connection_rate=3))
        for i in range(4):
            history.record(make_event(i, ts=BASE_TS + i))
        assert classifier.is_ddos_pattern(make_event(9, ts=BASE_TS + 10), history)
        assert not classifier.is_ddos_pattern(make_event(9, destination_ip="198.51.100.1"), history)

    def test_data_exfiltration_counts_both_directions(self, classifier):
        e = make_event(bytes_sent=60_000_000, bytes_received=50_000_000)
        assert classifier.is_data_exfiltration(e)
        assert not classifier.is_data_exfiltration(make_event(bytes_sent=100_000_000))

    def test_geo_anomaly_needs_baseline(self, classifier, history):
        e = make_event(geo=GeoData(dest_country_code="KP"))
        assert not classifier.is_geographic_anomaly(e, history)

    def test_geo_anomaly_for_unseen_country(self, history):
        classifier = ThreatClassifier(ClassifierThresholds(geo_top_n=2))
        for i, cc in enumerate(["US"] * 5 + ["DE"] * 4 + ["FR"]):
            history.record(make_event(i, geo=GeoData(dest_country_code=cc)))
        assert classifier.is_geographic_anomaly(make_event(geo=GeoData(dest_country_code="KP")), history)
        # FR is outside the top 2 but makes up 10% of traffic, not below the threshold
        assert not classifier.is_geographic_anomaly(make_event(geo=GeoData(dest_country_code="FR")), history)
        assert not classifier.is_geographic_anomaly(make_event(geo=GeoData(dest_country_code="US")), history)

    @pytest.mark.parametrize("protocol,port,expected", [
        ("HTTP", 80, False),
        ("HTTP", 8080, False),
        ("HTTP", 443, True),
        ("https", 8443, True),
        ("DNS", 53, False),
        ("DNS", 5353, True),
        ("TCP", 1, False),
        ("HTTP", None, False),
    ])
    def test_protocol_violation(self, classifier, protocol, port, expected):
        e = make_event(protocol=protocol, destination_port=port)
        assert classifier.is_protocol_violation(e) is expected

    def test_malware_indicators(self, classifier):
        assert classifier.has_malware_indicators(make_event(user_agent="Exploit-Kit/1.0"))
        assert classifier.has_malware_indicators(make_event(requested_domain="c2.command.example"))
        assert not classifier.has_malware_indicators(make_event(user_agent="Mozilla/5.0"))


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassify:

    def test_clean_event(self, classifier, history):
        verdict = classifier.classify(make_event(destination_port=4444), history)
        assert verdict.threat_types == frozenset()
        assert verdict.threat_level == Severity.LOW
        assert verdict.confidence == 0.0
        assert not verdict.is_malicious

    def test_single_scan(self, classifier, history):
        verdict = classifier.classify(make_event(destination_port=22), history)
        assert verdict.threat_types == {ThreatType.SCANNING}
        assert verdict.threat_level == Severity.MEDIUM
        assert verdict.confidence == pytest.approx(0.6)
        assert verdict.is_malicious
        assert verdict.anomalies == ("port_scanning",)

    def test_malware_dominates_level_and_confidence_is_uncapped(self, classifier, history):
        e = make_event(
            protocol="HTTP",
            destination_port=443,
            user_agent="shellcode loader",
            bytes_sent=200_000_000,
        )
        verdict = classifier.classify(e, history)
        assert verdict.threat_level == Severity.CRITICAL
        # scanning + exfiltration + protocol + malware
        assert verdict.confidence == pytest.approx(0.6 + 0.7 + 0.4 + 0.9)
        assert verdict.anomalies == (
            "port_scanning",
            "large_data_transfer",
            "protocol_anomaly",
            "malware_indicators",
        )

    def test_two_medium_types_stay_medium(self, classifier, history):
        verdict = classifier.classify(make_event(protocol="HTTP", destination_port=443), history)
        assert verdict.threat_types == {ThreatType.SCANNING, ThreatType.PROTOCOL_VIOLATION}
        assert verdict.threat_level == Severity.MEDIUM

    def test_exfiltration_alone_is_high(self, classifier, history):
        verdict = classifier.classify(make_event(bytes_sent=150_000_000), history)
        assert verdict.threat_level == Severity.HIGH


# ---------------------------------------------------------------------------
# Alert drafting
# ---------------------------------------------------------------------------

class TestAlertDraft:

    def test_format_bytes(self):
        assert format_bytes(0) == "0.00 B"
        assert format_bytes(1536) == "1.50 KB"
        assert format_bytes(150_000_000) == "143.05 MB"

    def test_no_draft_for_clean_event(self, classifier, history):
        e = make_event(destination_port=4444)
        assert build_alert_draft(e, classifier.classify(e, history)) is None

    def test_malware_title_wins(self, classifier, history):
        e = make_event(destination_port=22, user_agent="exploit")
        draft = build_alert_draft(e, classifier.classify(e, history))
        assert draft.title == "Malware Activity Detected"
        assert draft.alert_type == "security_breach"
        assert draft.severity == Severity.CRITICAL
        assert draft.source == "system"
        assert draft.tags == ["scanning", "malware"]

    def test_description_and_metadata(self, classifier, history):
        e = make_event(destination_port=22, bytes_sent=2048, source_node="relay-A")
        draft = build_alert_draft(e, classifier.classify(e, history))
        assert draft.title == "Port Scanning Activity Detected"
        assert draft.description == (
            "Suspicious traffic detected to 203.0.113.5:22. "
            "Transferred 2.00 KB. Threat types: scanning. Confidence: 60%"
        )
        assert draft.metadata["event_id"] == "evt-0"
        assert draft.metadata["source_node"] == "relay-A"
        assert draft.metadata["traffic"]["bytes_transferred"] == 2048
        assert draft.metadata["analysis"]["threat_level"] == "medium"
