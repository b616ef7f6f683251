"""
storage/sink.py

FindingsSink — where correlations, alerts and notifications go.

    persist(correlation)         raises StorageUnavailable on failure
    request_alert(draft) -> id   raises StorageUnavailable on failure
    publish(topic, payload)      fire-and-forget, never raises

RepositoryFindingsSink is the bundled implementation: SQLite repository
for the first two, an in-process Publisher for the third.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from ..metrics import METRICS
from ..models import AlertDraft, Correlation
from ..pubsub import TOPIC_ALERT, Publisher
from .repository import CorrelationRepository

logger = logging.getLogger(__name__)


class FindingsSink(ABC):
    @abstractmethod
    def persist(self, correlation: Correlation) -> None: ...

    @abstractmethod
    def request_alert(self, draft: AlertDraft, correlation_id: str | None = None) -> str: ...

    @abstractmethod
    def publish(self, topic: str, payload: dict) -> None: ...


class RepositoryFindingsSink(FindingsSink):
    def __init__(self, repository: CorrelationRepository, publisher: Publisher) -> None:
        self.repository = repository
        self.publisher = publisher

    def persist(self, correlation: Correlation) -> None:
        self.repository.save_correlation(correlation)

    def request_alert(self, draft: AlertDraft, correlation_id: str | None = None) -> str:
        alert_id = self.repository.save_alert(draft, correlation_id=correlation_id)
        METRICS.alerts_requested.inc()
        logger.info("Alert %s raised: %s [%s]", alert_id, draft.title, draft.severity.value)
        self.publisher.publish(TOPIC_ALERT, {"alert_id": alert_id, **draft.to_dict()})
        return alert_id

    def publish(self, topic: str, payload: dict) -> None:
        self.publisher.publish(topic, payload)
