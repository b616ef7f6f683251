"""
backend/pipeline.py

The ingest asyncio.Queue and the ring-buffer safe_put() helper used by
observation producers to enqueue without blocking.

    ingest_queue = 10_000  — absorbs observation bursts ahead of
                             CorrelationService.ingest()

safe_put() drops the *oldest* queued item when the queue is full
(ring-buffer semantics) rather than blocking the producer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .metrics import METRICS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queue definition — import from other modules
# ---------------------------------------------------------------------------

# Lazily initialised so tests can create fresh queues without import side effects.
# Call init_queues() once at startup (done inside main.py).

ingest_queue: asyncio.Queue | None = None


def init_queues(ingest_size: int = 10_000) -> asyncio.Queue:
    """
    Initialise the ingest queue and return it.
    Must be called from within a running asyncio event loop.
    """
    global ingest_queue
    ingest_queue = asyncio.Queue(maxsize=ingest_size)
    logger.info("Ingest queue initialised — size=%d", ingest_size)
    return ingest_queue


# ---------------------------------------------------------------------------
# Ring-buffer put helper
# ---------------------------------------------------------------------------

async def safe_put(queue: asyncio.Queue, item: Any) -> bool:
    """
    Non-blocking enqueue with ring-buffer drop semantics.

    If the queue is full, the *oldest* item is discarded to make room,
    METRICS.events_dropped is incremented, and a warning is logged.

    Returns:
        True  — item was enqueued successfully.
        False — item could not be enqueued (another producer refilled the queue).
    """
    if queue.full():
        try:
            queue.get_nowait()  # discard oldest item
            METRICS.events_dropped.inc()
            logger.warning(
                "Ingest queue full (%d/%d) — oldest observation dropped",
                queue.qsize(),
                queue.maxsize,
            )
        except asyncio.QueueEmpty:
            pass  # drained between the full() check and get_nowait()

    try:
        queue.put_nowait(item)
        return True
    except asyncio.QueueFull:
        METRICS.events_dropped.inc()
        logger.error("safe_put: queue still full after drop — observation lost")
        return False
