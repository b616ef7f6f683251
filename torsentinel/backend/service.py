"""
backend/service.py

CorrelationService — orchestrates one engine instance.

ingest(event):
  1. ThreatClassifier.classify(event, history)   → ThreatVerdict
  2. history.record(event)
  3. malicious verdict → publish "threat", request an alert for it
  4. CorrelationDetector.process(event)          → correlations
     (a malicious verdict reaches the rules as is_malicious=True)
  5. per correlation:
       persist (StorageUnavailable → warning, counted, continue)
       rule action create_alert → request_alert
       publish "correlation"
       federation enabled → share in a background task

receive_federated(payload):
  FederationGateway.receive → persist → publish "federated_correlation".
  Federated correlations are never re-detected and never re-shared.

Everything in ingest() runs synchronously on the event loop thread; only
the periodic sweep and outbound federation deliveries are separate tasks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from .buffer import EventBuffer
from .classifier import (
    CachedHistory,
    ClassifierThresholds,
    ThreatClassifier,
    TrafficHistory,
    build_alert_draft,
)
from .engine import CorrelationDetector, RuleRegistry, load_rules_file
from .errors import StorageUnavailable
from .federation import FederationGateway
from .metrics import METRICS
from .models import AlertDraft, Correlation, Event, RuleAction, ThreatVerdict, now_ms
from .pubsub import TOPIC_CORRELATION, TOPIC_FEDERATED, TOPIC_THREAT
from .storage import FindingsSink

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    verdict: ThreatVerdict
    correlations: list[Correlation] = field(default_factory=list)


def correlation_alert_draft(correlation: Correlation) -> AlertDraft:
    nodes = sorted({e.source_node for e in correlation.matched_events if e.source_node})
    return AlertDraft(
        title=f"Correlated Event: {correlation.rule_name or correlation.rule_id}",
        description=correlation.description,
        severity=correlation.severity,
        alert_type="correlation",
        source="correlation_engine",
        metadata={
            "correlation_id": correlation.id,
            "rule_id": correlation.rule_id,
            "event_count": correlation.metadata.event_count,
            "confidence": correlation.confidence,
            "affected_nodes": nodes,
        },
        tags=["correlated", correlation.rule_id],
    )


class CorrelationService:
    def __init__(
        self,
        detector: CorrelationDetector,
        sink: FindingsSink,
        classifier: ThreatClassifier | None = None,
        history: CachedHistory | TrafficHistory | None = None,
        gateway: FederationGateway | None = None,
        federation_enabled: bool = False,
        sweep_interval_seconds: float = 60.0,
        purge_storage: Any = None,
    ) -> None:
        self.detector = detector
        self.sink = sink
        self.classifier = classifier or ThreatClassifier()
        self.history = history if history is not None else CachedHistory(TrafficHistory())
        self.gateway = gateway
        self.federation_enabled = federation_enabled and gateway is not None
        self.sweep_interval_seconds = sweep_interval_seconds
        # Optional object with purge_expired(now); the repository in production
        self._purge_storage = purge_storage

        self._deliveries: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None
        self.stats: dict[str, int] = {
            "events_ingested": 0,
            "threats_detected": 0,
            "correlations_handled": 0,
            "federated_received": 0,
            "sweeps": 0,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        sink: FindingsSink,
        gateway: FederationGateway | None = None,
        purge_storage: Any = None,
    ) -> "CorrelationService":
        rules = load_rules_file(settings.RULES_FILE) if settings.RULES_FILE else None
        registry = RuleRegistry(rules)
        buffer = EventBuffer(
            max_buffer_size=settings.MAX_BUFFER_SIZE,
            correlation_window_ms=settings.CORRELATION_WINDOW_MS,
        )
        return cls(
            detector=CorrelationDetector(registry, buffer),
            sink=sink,
            classifier=ThreatClassifier(ClassifierThresholds.from_settings(settings)),
            history=CachedHistory(TrafficHistory(), ttl_seconds=settings.GEO_BASELINE_TTL_SECONDS),
            gateway=gateway,
            federation_enabled=settings.FEDERATION_ENABLED,
            sweep_interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
            purge_storage=purge_storage,
        )

    # ------------------------------------------------------------------
    # Local observations
    # ------------------------------------------------------------------

    def ingest(self, event: Event, now: int | None = None) -> IngestResult:
        now = now_ms() if now is None else now
        self.stats["events_ingested"] += 1
        METRICS.events_ingested.inc()

        verdict = self.classifier.classify(event, self.history)
        self.history.record(event)
        if verdict.is_malicious:
            self._handle_threat(event, verdict)

        # Rules see this node's own verdict; the caller's event stays untouched
        if verdict.is_malicious and not event.is_malicious:
            event = replace(event, is_malicious=True)
        correlations = self.detector.process(event, now)
        for correlation in correlations:
            self._handle_correlation(correlation)
        return IngestResult(verdict=verdict, correlations=correlations)

    def _handle_threat(self, event: Event, verdict: ThreatVerdict) -> None:
        self.stats["threats_detected"] += 1
        self.sink.publish(TOPIC_THREAT, {"event_id": event.id, **verdict.to_dict()})
        draft = build_alert_draft(event, verdict)
        if draft is not None:
            self._request_alert(draft)

    def _handle_correlation(self, correlation: Correlation) -> None:
        self.stats["correlations_handled"] += 1
        self._persist(correlation)

        rule = self.detector.registry.by_id(correlation.rule_id)
        if rule is not None and rule.action == RuleAction.CREATE_ALERT:
            self._request_alert(correlation_alert_draft(correlation), correlation.id)

        self.sink.publish(TOPIC_CORRELATION, correlation.to_dict())

        if self.federation_enabled and not correlation.federated:
            self._schedule_share(correlation)

    def _persist(self, correlation: Correlation) -> None:
        try:
            self.sink.persist(correlation)
        except StorageUnavailable as exc:
            METRICS.persist_failures.inc()
            logger.warning("Correlation %s not persisted: %s", correlation.id, exc)

    def _request_alert(self, draft: AlertDraft, correlation_id: str | None = None) -> str | None:
        try:
            return self.sink.request_alert(draft, correlation_id)
        except StorageUnavailable as exc:
            METRICS.persist_failures.inc()
            logger.warning("Alert %r not raised: %s", draft.title, exc)
            return None

    def _schedule_share(self, correlation: Correlation) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop — correlation %s not shared", correlation.id)
            return
        task = loop.create_task(self.gateway.share(correlation))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Federation share failed: %s", task.exception())

    # ------------------------------------------------------------------
    # Federated correlations
    # ------------------------------------------------------------------

    def receive_federated(self, payload: Any) -> Correlation:
        """
        Admit a correlation shared by a peer.

        Raises MalformedMessage / InvalidSignature from the gateway; the
        receiver transport maps them to 400 / 401.
        """
        if self.gateway is None:
            raise RuntimeError("federation gateway not configured")
        correlation = self.gateway.receive(payload)
        self.stats["federated_received"] += 1
        self._persist(correlation)
        self.sink.publish(TOPIC_FEDERATED, correlation.to_dict())
        return correlation

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sweep(self, now: int | None = None) -> int:
        """One maintenance pass: expire buffered events, history and stored rows."""
        now = now_ms() if now is None else now
        dropped = self.detector.buffer.sweep_expired(now)
        self.history.sweep(now)
        if self._purge_storage is not None:
            try:
                self._purge_storage.purge_expired(now)
            except StorageUnavailable as exc:
                logger.warning("Storage purge skipped: %s", exc)
        self.stats["sweeps"] += 1
        return dropped

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("Sweep failed: %s", exc)

    def start(self) -> None:
        """Start the periodic sweeper. Must be called from a running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(), name="sweeper")
            logger.info("Sweeper started — interval=%.0fs", self.sweep_interval_seconds)

    async def shutdown(self) -> None:
        """Stop the sweeper and wait for in-flight federation deliveries."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self._deliveries:
            logger.info("Waiting for %d federation deliveries", len(self._deliveries))
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        logger.info("CorrelationService stopped — stats=%s", self.stats)

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)
