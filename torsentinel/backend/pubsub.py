"""
backend/pubsub.py

Publisher — in-process topic fan-out for findings.

Subscribers are plain callables taking (topic, payload). A subscriber may
be sync or async; coroutines are scheduled as tasks so publish() never
waits on a slow consumer. A subscriber that raises is logged and skipped.

Topics published by the engine:
    "correlation"            — locally detected correlation
    "federated_correlation"  — correlation admitted from a peer
    "threat"                 — malicious single-event verdict
    "alert"                  — alert raised through the findings sink

Thread safety: NOT thread-safe. Called exclusively from asyncio coroutines.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

TOPIC_CORRELATION = "correlation"
TOPIC_FEDERATED = "federated_correlation"
TOPIC_THREAT = "threat"
TOPIC_ALERT = "alert"

# Subscribing to this receives every topic
ALL_TOPICS = "*"

Subscriber = Callable[[str, dict], Any]


class Publisher:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()
        self.stats: dict[str, int] = {"published": 0, "delivered": 0, "subscriber_errors": 0}

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        if callback not in self._subscribers[topic]:
            self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        try:
            self._subscribers[topic].remove(callback)
        except ValueError:
            pass

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, payload: dict) -> int:
        """Hand `payload` to every subscriber of `topic`. Returns how many were reached."""
        self.stats["published"] += 1
        targets = list(self._subscribers.get(topic, ())) + list(self._subscribers.get(ALL_TOPICS, ()))
        reached = 0
        for callback in targets:
            try:
                result = callback(topic, payload)
            except Exception as exc:
                self.stats["subscriber_errors"] += 1
                logger.error("Subscriber %r failed on topic %r: %s", callback, topic, exc)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._task_done)
            reached += 1
        self.stats["delivered"] += reached
        return reached

    async def drain(self) -> None:
        """Wait for async subscribers still running."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.stats["subscriber_errors"] += 1
            logger.error("Async subscriber failed: %s", exc)
