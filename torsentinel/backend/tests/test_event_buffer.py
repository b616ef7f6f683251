"""
tests/test_event_buffer.py

Tests for buffer/event_buffer.py — keyed ring buffers, candidate
selection and expiry sweeps.
"""

from __future__ import annotations

import pytest

from torsentinel.backend.buffer.event_buffer import GENERAL_KEY, EventBuffer, bucket_key
from torsentinel.backend.engine.conditions import Equals, SameValue
from torsentinel.backend.engine.rules import Rule
from torsentinel.backend.metrics import METRICS
from torsentinel.backend.models import Event, Severity


BASE_TS = 1_700_000_000_000


def make_event(n: int = 0, ts: int = BASE_TS, **kwargs) -> Event:
    kwargs.setdefault("source_ip", "10.0.0.1")
    return Event(id=f"evt-{n}", timestamp=ts, **kwargs)


def make_rule(*conditions, threshold: int = 1) -> Rule:
    return Rule(
        id="test_rule",
        name="Test rule",
        conditions=conditions or (SameValue("source_ip"),),
        threshold=threshold,
        severity=Severity.LOW,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset_all()
    yield


# ---------------------------------------------------------------------------
# Bucket keys
# ---------------------------------------------------------------------------

class TestBucketKey:

    def test_source_ip_takes_precedence(self):
        e = make_event(source_ip="1.1.1.1", destination_ip="2.2.2.2", circuit_id="c1")
        assert bucket_key(e) == "source:1.1.1.1"

    def test_destination_when_no_source(self):
        e = make_event(source_ip=None, destination_ip="2.2.2.2", circuit_id="c1")
        assert bucket_key(e) == "dest:2.2.2.2"

    def test_circuit_when_no_addresses(self):
        e = make_event(source_ip=None, circuit_id="c1")
        assert bucket_key(e) == "circuit:c1"

    def test_general_fallback(self):
        assert bucket_key(make_event(source_ip=None)) == GENERAL_KEY


# ---------------------------------------------------------------------------
# insert
# ---------------------------------------------------------------------------

class TestInsert:

    def test_insert_returns_key_and_stores_reference(self):
        buf = EventBuffer()
        e = make_event()
        key = buf.insert(e)
        assert key == "source:10.0.0.1"
        assert buf.bucket(key)[0] is e
        assert len(buf) == 1
        assert buf.bucket_count == 1

    def test_bucket_never_exceeds_capacity(self):
        buf = EventBuffer(max_buffer_size=3)
        for i in range(5):
            buf.insert(make_event(i, ts=BASE_TS + i))
        bucket = buf.bucket("source:10.0.0.1")
        assert len(bucket) == 3
        # Oldest entries were evicted first
        assert [e.id for e in bucket] == ["evt-2", "evt-3", "evt-4"]
        assert buf.stats["events_evicted"] == 2
        assert METRICS.events_evicted.value == 2

    def test_separate_sources_get_separate_buckets(self):
        buf = EventBuffer()
        buf.insert(make_event(1, source_ip="1.1.1.1"))
        buf.insert(make_event(2, source_ip="2.2.2.2"))
        assert sorted(buf.keys()) == ["source:1.1.1.1", "source:2.2.2.2"]

    def test_invalid_capacity_rejected(self):
        with pytest.raises(ValueError):
            EventBuffer(max_buffer_size=0)


# ---------------------------------------------------------------------------
# relevant_events
# ---------------------------------------------------------------------------

class TestRelevantEvents:

    def test_new_event_appears_exactly_once(self):
        buf = EventBuffer()
        e = make_event()
        buf.insert(e)
        events = buf.relevant_events(make_rule(), e, now=BASE_TS)
        assert events == [e]

    def test_new_event_appended_last_even_if_filter_rejects_it(self):
        buf = EventBuffer()
        old = make_event(1, type="port_scan")
        new = make_event(2, type="login")
        buf.insert(old)
        buf.insert(new)
        rule = make_rule(Equals("type", "port_scan"))
        events = buf.relevant_events(rule, new, now=BASE_TS)
        assert events == [old, new]

    def test_events_outside_window_skipped(self):
        buf = EventBuffer(correlation_window_ms=1_000)
        stale = make_event(1, ts=BASE_TS - 5_000)
        fresh = make_event(2, ts=BASE_TS - 500)
        new = make_event(3, ts=BASE_TS)
        for e in (stale, fresh, new):
            buf.insert(e)
        events = buf.relevant_events(make_rule(), new, now=BASE_TS)
        assert events == [fresh, new]

    def test_scans_all_buckets(self):
        buf = EventBuffer()
        a = make_event(1, source_ip="1.1.1.1", type="port_scan")
        b = make_event(2, source_ip="2.2.2.2", type="port_scan")
        new = make_event(3, source_ip="3.3.3.3", type="port_scan")
        for e in (a, b, new):
            buf.insert(e)
        events = buf.relevant_events(make_rule(Equals("type", "port_scan")), new, now=BASE_TS)
        assert set(e.id for e in events) == {"evt-1", "evt-2", "evt-3"}


# ---------------------------------------------------------------------------
# sweep_expired
# ---------------------------------------------------------------------------

class TestSweepExpired:

    def test_drops_old_events_and_empty_buckets(self):
        buf = EventBuffer(correlation_window_ms=1_000)
        buf.insert(make_event(1, ts=BASE_TS, source_ip="1.1.1.1"))
        buf.insert(make_event(2, ts=BASE_TS + 5_000, source_ip="2.2.2.2"))

        dropped = buf.sweep_expired(now=BASE_TS + 5_500)
        assert dropped == 1
        assert buf.keys() == ["source:2.2.2.2"]
        assert buf.stats["events_expired"] == 1
        assert buf.stats["buckets_removed"] == 1

    def test_partial_bucket_keeps_fresh_events(self):
        buf = EventBuffer(correlation_window_ms=1_000)
        buf.insert(make_event(1, ts=BASE_TS))
        buf.insert(make_event(2, ts=BASE_TS + 900))
        dropped = buf.sweep_expired(now=BASE_TS + 1_500)
        assert dropped == 1
        assert [e.id for e in buf.bucket("source:10.0.0.1")] == ["evt-2"]

    def test_sweep_is_idempotent(self):
        buf = EventBuffer(correlation_window_ms=1_000)
        buf.insert(make_event(1, ts=BASE_TS))
        buf.insert(make_event(2, ts=BASE_TS + 2_000))
        now = BASE_TS + 2_500
        assert buf.sweep_expired(now) == 1
        assert buf.sweep_expired(now) == 0
        assert len(buf) == 1

    def test_sweep_preserves_capacity(self):
        buf = EventBuffer(max_buffer_size=2, correlation_window_ms=1_000)
        buf.insert(make_event(1, ts=BASE_TS))
        buf.insert(make_event(2, ts=BASE_TS + 2_000))
        buf.sweep_expired(now=BASE_TS + 2_100)
        for i in range(3, 6):
            buf.insert(make_event(i, ts=BASE_TS + 2_000 + i))
        assert len(buf.bucket("source:10.0.0.1")) == 2

    def test_empty_buffer_sweep(self):
        assert EventBuffer().sweep_expired(BASE_TS) == 0

    def test_clear(self):
        buf = EventBuffer()
        buf.insert(make_event())
        buf.clear()
        assert len(buf) == 0
        assert buf.bucket_count == 0
