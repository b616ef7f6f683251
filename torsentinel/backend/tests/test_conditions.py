"""
tests/test_conditions.py

Tests for engine/conditions.py — per-event predicates, aggregate gates and
rule-file construction.
"""

from __future__ import annotations

import pytest

from torsentinel.backend.engine.conditions import (
    Contains,
    DistinctCountAtLeast,
    Equals,
    GreaterThan,
    LessThan,
    NotEquals,
    NotIn,
    SameValue,
    WithinWindow,
    canonical_field,
    condition_from_dict,
)
from torsentinel.backend.models import Event, GeoData


BASE_TS = 1_700_000_000_000


def make_event(n: int = 0, ts: int = BASE_TS, **kwargs) -> Event:
    return Event(id=f"evt-{n}", timestamp=ts, **kwargs)


# ---------------------------------------------------------------------------
# Field names
# ---------------------------------------------------------------------------

class TestFieldNames:

    def test_camel_case_alias_resolves(self):
        assert canonical_field("sourceIp") == "source_ip"
        assert canonical_field("geoData.sourceCountryCode") == "source_country_code"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="unknown event field"):
            Equals("no_such_field", 1)

    def test_condition_stores_canonical_name(self):
        assert SameValue("destinationIp").field == "destination_ip"


# ---------------------------------------------------------------------------
# Simple comparisons
# ---------------------------------------------------------------------------

class TestSimpleConditions:

    def test_equals(self):
        cond = Equals("type", "port_scan")
        assert cond.matches(make_event(type="port_scan"))
        assert not cond.matches(make_event(type="login"))

    def test_not_equals(self):
        cond = NotEquals("protocol", "TCP")
        assert cond.matches(make_event(protocol="UDP"))
        assert not cond.matches(make_event(protocol="TCP"))

    def test_greater_than_ignores_missing_values(self):
        cond = GreaterThan("reputation_score", 0.5)
        assert cond.matches(make_event(reputation_score=0.9))
        assert not cond.matches(make_event(reputation_score=0.1))
        assert not cond.matches(make_event())

    def test_less_than(self):
        cond = LessThan("bytes_sent", 100)
        assert cond.matches(make_event(bytes_sent=10))
        assert not cond.matches(make_event(bytes_sent=100))

    def test_contains_string_and_tags(self):
        assert Contains("user_agent", "curl").matches(make_event(user_agent="curl/8.0"))
        assert not Contains("user_agent", "curl").matches(make_event())
        assert Contains("tags", "tor").matches(make_event(tags=frozenset({"tor", "exit"})))

    def test_not_in_uses_geo_field(self):
        cond = NotIn("source_country_code", {"US", "DE"})
        assert cond.matches(make_event(geo=GeoData(source_country_code="RU")))
        assert not cond.matches(make_event(geo=GeoData(source_country_code="US")))
        assert isinstance(cond.values, frozenset)

    def test_simple_gate_holds_if_any_event_matches(self):
        cond = Equals("type", "port_scan")
        events = [make_event(1, type="login"), make_event(2, type="port_scan")]
        assert cond.holds(events)
        assert not cond.holds([make_event(1, type="login")])


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class TestAggregateConditions:

    def test_aggregates_pass_every_single_event(self):
        e = make_event()
        for cond in (SameValue("source_ip"), DistinctCountAtLeast("protocol", 3), WithinWindow(1_000)):
            assert cond.aggregate is True
            assert cond.matches(e)

    def test_same_value(self):
        cond = SameValue("source_ip")
        same = [make_event(i, source_ip="1.1.1.1") for i in range(3)]
        assert cond.holds(same)
        mixed = same + [make_event(9, source_ip="2.2.2.2")]
        assert not cond.holds(mixed)

    def test_same_value_on_empty_set_is_false(self):
        assert not SameValue("source_ip").holds([])

    def test_distinct_count_ignores_none(self):
        cond = DistinctCountAtLeast("circuit_id", 2)
        events = [make_event(1, circuit_id="a"), make_event(2), make_event(3)]
        assert not cond.holds(events)
        events.append(make_event(4, circuit_id="b"))
        assert cond.holds(events)

    def test_within_window(self):
        cond = WithinWindow(60_000)
        close = [make_event(1, ts=BASE_TS), make_event(2, ts=BASE_TS + 60_000)]
        far = [make_event(1, ts=BASE_TS), make_event(2, ts=BASE_TS + 60_001)]
        assert cond.holds(close)
        assert not cond.holds(far)

    def test_within_window_correlation_window_boundary(self):
        cond = WithinWindow(300_000)
        assert cond.holds([make_event(1, ts=BASE_TS), make_event(2, ts=BASE_TS + 300_000)])
        assert not cond.holds([make_event(1, ts=BASE_TS), make_event(2, ts=BASE_TS + 300_001)])

    def test_within_window_single_event_holds(self):
        assert WithinWindow(1).holds([make_event()])


# ---------------------------------------------------------------------------
# condition_from_dict
# ---------------------------------------------------------------------------

class TestConditionFromDict:

    @pytest.mark.parametrize("entry,cls", [
        ({"field": "type", "operator": "equals", "value": "port_scan"}, Equals),
        ({"field": "type", "operator": "not_equals", "value": "x"}, NotEquals),
        ({"field": "bytesSent", "operator": "greater", "value": 1000}, GreaterThan),
        ({"field": "bytesSent", "operator": "less", "value": 1000}, LessThan),
        ({"field": "userAgent", "operator": "contains", "value": "bot"}, Contains),
        ({"field": "protocol", "operator": "not_in", "value": ["TCP"]}, NotIn),
        ({"field": "sourceIp", "operator": "same"}, SameValue),
        ({"field": "protocol", "operator": "distinct_count", "value": 3}, DistinctCountAtLeast),
        ({"field": "timestamp", "operator": "within", "value": 600000}, WithinWindow),
    ])
    def test_operator_mapping(self, entry, cls):
        assert isinstance(condition_from_dict(entry), cls)

    def test_within_carries_duration(self):
        cond = condition_from_dict({"field": "timestamp", "operator": "within", "value": 600000})
        assert cond.duration_ms == 600_000

    def test_unknown_operator(self):
        with pytest.raises(ValueError, match="unknown condition operator"):
            condition_from_dict({"field": "type", "operator": "regex", "value": ".*"})

    def test_not_in_requires_list(self):
        with pytest.raises(ValueError):
            condition_from_dict({"field": "protocol", "operator": "not_in", "value": "TCP"})
