"""
engine/detector.py

CorrelationDetector — matches each new event against buffered history,
once per registered rule.

Per rule:
  1. candidates = buffer.relevant_events(rule, event, now)
  2. fewer than rule.threshold candidates → no match
  3. every condition must hold over the candidate set (short-circuits)
  4. match → Correlation(matched_events=candidates), scored by engine.scorer

Rules are isolated: one rule raising never stops the others from being
evaluated for the same event. Several rules matching the same event each
produce their own Correlation; there is no cross-rule deduplication.
"""

from __future__ import annotations

import logging
import time

from ..buffer import EventBuffer
from ..errors import RuleEvaluationError
from ..metrics import METRICS
from ..models import Correlation, CorrelationMetadata, Event, now_ms
from . import scorer
from .rules import Rule, RuleRegistry

logger = logging.getLogger(__name__)

_RULE_TIMEOUT_MS = 50.0


class CorrelationDetector:
    def __init__(self, registry: RuleRegistry, buffer: EventBuffer) -> None:
        self.registry = registry
        self.buffer = buffer
        self.stats: dict[str, int] = {
            "events_processed": 0,
            "rules_evaluated": 0,
            "correlations_found": 0,
            "rule_errors": 0,
        }
        logger.info(
            "CorrelationDetector ready — %d rule(s), window=%dms, max_buffer_size=%d",
            len(registry),
            buffer.correlation_window_ms,
            buffer.max_buffer_size,
        )

    def process(self, event: Event, now: int | None = None) -> list[Correlation]:
        """Insert `event` into the buffer, then run every rule against it."""
        self.buffer.insert(event)
        return self.detect(event, now)

    def detect(self, event: Event, now: int | None = None) -> list[Correlation]:
        """Run every rule against an event that is already buffered."""
        now = now_ms() if now is None else now
        self.stats["events_processed"] += 1
        correlations: list[Correlation] = []

        for rule in self.registry:
            try:
                correlation = self._timed_evaluate(rule, event, now)
            except RuleEvaluationError as exc:
                self.stats["rule_errors"] += 1
                METRICS.rule_errors.inc()
                logger.error("%s (event=%s)", exc, event.id)
                continue

            if correlation is None:
                continue

            correlations.append(correlation)
            self.stats["correlations_found"] += 1
            METRICS.correlations_emitted.inc()
            logger.warning(
                "CORRELATION [%s] rule=%r conf=%.2f events=%d sources=%s",
                correlation.severity.value,
                rule.id,
                correlation.confidence,
                correlation.metadata.event_count,
                list(correlation.metadata.sources[:3]),
            )

        return correlations

    def evaluate(self, rule: Rule, event: Event, now: int) -> Correlation | None:
        """Evaluate a single rule. Returns the Correlation on a match, else None."""
        candidates = self.buffer.relevant_events(rule, event, now)
        if len(candidates) < rule.threshold:
            return None

        for condition in rule.conditions:
            if not condition.holds(candidates):
                return None

        return make_correlation(rule, candidates)

    def _timed_evaluate(self, rule: Rule, event: Event, now: int) -> Correlation | None:
        self.stats["rules_evaluated"] += 1
        t0 = time.monotonic()
        try:
            return self.evaluate(rule, event, now)
        except Exception as exc:
            raise RuleEvaluationError(rule.id, exc) from exc
        finally:
            elapsed_ms = (time.monotonic() - t0) * 1000
            if elapsed_ms > _RULE_TIMEOUT_MS:
                logger.warning("Rule %r took %.1fms", rule.id, elapsed_ms)


def make_correlation(rule: Rule, events: list[Event]) -> Correlation:
    matched = tuple(events)
    return Correlation(
        rule_id=rule.id,
        rule_name=rule.name,
        description=rule.description,
        severity=rule.severity,
        confidence=scorer.confidence(rule, matched),
        matched_events=matched,
        metadata=CorrelationMetadata.from_events(matched),
    )
