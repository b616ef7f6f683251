"""
backend/main.py

Process entry point for a TorSentinel node.

    python -m torsentinel.backend.main [--replay observations.jsonl]

Wires storage → publisher → sink → service (+ federation gateway when
FEDERATION_ENABLED) and runs, on one event loop:
  - the ingest consumer (ingest_queue → CorrelationService.ingest)
  - the periodic sweeper (inside the service)
  - the metrics logger
  - the FastAPI receiver under uvicorn
  - optionally a replay producer reading JSON-lines observations
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import NoReturn

import uvicorn

from . import pipeline
from .api.main import create_app, set_service
from .api.ws_manager import ws_manager
from .config import settings
from .federation import FederationGateway
from .metrics import METRICS
from .models import Event
from .pipeline import init_queues
from .pubsub import Publisher
from .service import CorrelationService
from .storage import CorrelationRepository, Database, RepositoryFindingsSink

logger = logging.getLogger("torsentinel.main")


# ---------------------------------------------------------------------------
# Ingest consumer — ingest_queue → CorrelationService.ingest
# ---------------------------------------------------------------------------

async def ingest_consumer(
    service: CorrelationService,
    shutdown_event: asyncio.Event,
) -> None:
    logger.info("Ingest consumer started")
    while not shutdown_event.is_set():
        try:
            item = await asyncio.wait_for(pipeline.ingest_queue.get(), timeout=0.5)
            pipeline.ingest_queue.task_done()
        except asyncio.TimeoutError:
            continue
        except asyncio.CancelledError:
            break

        try:
            event = item if isinstance(item, Event) else Event.from_dict(item)
        except (TypeError, ValueError, KeyError) as exc:
            logger.warning("Discarding unparseable observation: %s", exc)
            continue
        try:
            service.ingest(event)
        except Exception as exc:
            logger.error("Ingest failed for observation %s: %s", event.id, exc, exc_info=True)
    logger.info("Ingest consumer exiting")


# ---------------------------------------------------------------------------
# Replay producer — JSON-lines file → ingest_queue
# ---------------------------------------------------------------------------

async def replay_producer(path: Path, shutdown_event: asyncio.Event) -> None:
    """Feed one observation per line into the ingest queue, yielding between lines."""
    count = 0
    with path.open("r", encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            if shutdown_event.is_set():
                break
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("%s:%d is not JSON: %s", path, line_no, exc)
                continue
            await pipeline.safe_put(pipeline.ingest_queue, record)
            count += 1
            await asyncio.sleep(0)
    logger.info("Replay of %s finished — %d observation(s) queued", path, count)


# ---------------------------------------------------------------------------
# Periodic metrics log
# ---------------------------------------------------------------------------

async def metrics_logger(
    service: CorrelationService,
    repo: CorrelationRepository,
    shutdown_event: asyncio.Event,
    interval: float = 30.0,
) -> None:
    while not shutdown_event.is_set():
        await asyncio.sleep(interval)
        logger.info(
            "METRICS counters=%s confident=%d detector=%s buffer=%s ws=%s",
            METRICS.as_dict(),
            repo.count_correlations(min_confidence=settings.MIN_CONFIDENCE_THRESHOLD),
            service.detector.stats,
            service.detector.buffer.stats,
            ws_manager.all_counts(),
        )


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def run(replay: Path | None = None) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    init_queues(ingest_size=settings.INGEST_QUEUE_SIZE)

    def _signal_handler(_signum, _frame) -> None:
        logger.info("Shutdown signal received")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    # Storage + findings sink
    db = Database(settings.DB_PATH)
    db.init_schema()
    repo = CorrelationRepository(db, ttl_seconds=settings.CORRELATION_TTL_SECONDS)
    publisher = Publisher()
    ws_manager.attach(publisher)
    sink = RepositoryFindingsSink(repo, publisher)

    # Federation
    gateway = None
    if settings.FEDERATION_ENABLED:
        gateway = FederationGateway.from_settings(settings)
        logger.info(
            "Federation enabled — node=%s endpoints=%s encrypted=%s",
            settings.NODE_ID,
            gateway.endpoints,
            gateway.shared_key is not None,
        )

    service = CorrelationService.from_settings(settings, sink, gateway=gateway, purge_storage=repo)
    service.start()

    # FastAPI + uvicorn
    set_service(service, node_id=settings.NODE_ID, federation_api_key=settings.FEDERATION_API_KEY)
    app = create_app()
    uv_config = uvicorn.Config(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="warning",
        loop="none",
    )
    uv_server = uvicorn.Server(uv_config)

    tasks = [
        asyncio.create_task(ingest_consumer(service, shutdown_event), name="ingest"),
        asyncio.create_task(metrics_logger(service, repo, shutdown_event), name="metrics"),
    ]
    if replay is not None:
        tasks.append(asyncio.create_task(replay_producer(replay, shutdown_event), name="replay"))
    tasks.append(asyncio.create_task(uv_server.serve(), name="api"))

    logger.info(
        "TorSentinel node %r — API=http://%s:%d  window=%dms  rules=%s",
        settings.NODE_ID,
        settings.API_HOST,
        settings.API_PORT,
        settings.CORRELATION_WINDOW_MS,
        [r.id for r in service.detector.registry],
    )

    await shutdown_event.wait()

    uv_server.should_exit = True
    for t in tasks[:-1]:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await service.shutdown()
    await publisher.drain()
    db.close()
    logger.info("Final stats — detector=%s counters=%s", service.detector.stats, METRICS.as_dict())
    logger.info("TorSentinel stopped cleanly")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TorSentinel correlation node")
    parser.add_argument("--replay", type=Path, default=None,
                        help="JSON-lines file of observations to ingest at startup")
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def main() -> NoReturn:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.replay is not None and not args.replay.is_file():
        print(f"ERROR: replay file not found: {args.replay}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run(replay=args.replay))
    sys.exit(0)


if __name__ == "__main__":
    main()
