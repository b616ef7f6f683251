"""
engine/scorer.py

Confidence scoring for detected correlations.

    confidence = clamp(base + count_bonus + specificity_bonus + temporal_bonus, 0, 0.95)

    count_bonus       = 0.1 per matched event beyond the rule threshold
    specificity_bonus = 0.05 per rule condition
    temporal_bonus    = 0.2 if the events span < 1 min, 0.1 if < 5 min

Automated correlation is never reported as certain: the ceiling is 0.95.
"""

from __future__ import annotations

from typing import Sequence

from ..models import Event
from .rules import Rule

MAX_CONFIDENCE = 0.95

_COUNT_STEP = 0.1
_CONDITION_STEP = 0.05
_TIGHT_SPAN_MS = 60_000
_LOOSE_SPAN_MS = 300_000


def count_bonus(rule: Rule, events: Sequence[Event]) -> float:
    return _COUNT_STEP * max(0, len(events) - rule.threshold)


def specificity_bonus(rule: Rule) -> float:
    return _CONDITION_STEP * len(rule.conditions)


def temporal_bonus(events: Sequence[Event]) -> float:
    # A single event carries no temporal evidence
    if len(events) < 2:
        return 0.0
    timestamps = [e.timestamp for e in events]
    span = max(timestamps) - min(timestamps)
    if span < _TIGHT_SPAN_MS:
        return 0.2
    if span < _LOOSE_SPAN_MS:
        return 0.1
    return 0.0


def confidence(rule: Rule, events: Sequence[Event]) -> float:
    raw = (
        rule.base_confidence
        + count_bonus(rule, events)
        + specificity_bonus(rule)
        + temporal_bonus(events)
    )
    return clamp(raw)


def clamp(value: float, low: float = 0.0, high: float = MAX_CONFIDENCE) -> float:
    return max(low, min(value, high))
