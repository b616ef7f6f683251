"""
api/main.py

FastAPI app for a TorSentinel node:

    POST /api/federation/correlation — federated correlation receiver
    GET  /health                     — liveness + engine counters
    WS   /ws/correlations            — live correlations (local + federated)
    WS   /ws/threats                 — live threat verdicts and alerts
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.websockets import WebSocketDisconnect

from ..metrics import METRICS
from .routes import federation as federation_router
from .serializers import HealthResponse
from .ws_manager import CHANNEL_CORRELATIONS, CHANNEL_THREATS, ws_manager

logger = logging.getLogger(__name__)

_service = None
_node_id: str = ""
_federation_api_key: str | None = None


def set_service(service, node_id: str = "", federation_api_key: str | None = None) -> None:
    global _service, _node_id, _federation_api_key
    _service = service
    _node_id = node_id
    _federation_api_key = federation_api_key


def get_service():
    if _service is None:
        raise RuntimeError("Service not initialised — call set_service() first")
    return _service


def get_federation_api_key() -> str | None:
    return _federation_api_key


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("FastAPI startup")
        yield
        logger.info("FastAPI shutdown")

    app = FastAPI(
        title="TorSentinel — correlation & threat-scoring node",
        version="1.0.0",
        description="Cross-event correlation with signed peer federation",
        lifespan=lifespan,
    )

    app.include_router(federation_router.router, prefix="/api")

    async def _serve_channel(websocket: WebSocket, channel: str) -> None:
        await ws_manager.connect(websocket, channel)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await ws_manager.disconnect(websocket, channel)

    @app.websocket("/ws/correlations")
    async def ws_correlations(websocket: WebSocket):
        await _serve_channel(websocket, CHANNEL_CORRELATIONS)

    @app.websocket("/ws/threats")
    async def ws_threats(websocket: WebSocket):
        await _serve_channel(websocket, CHANNEL_THREATS)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        service = get_service()
        buffer = service.detector.buffer
        return HealthResponse(
            status="ok",
            node_id=_node_id,
            federation_enabled=service.federation_enabled,
            buffered_events=len(buffer),
            buffer_buckets=buffer.bucket_count,
            rules=[r.id for r in service.detector.registry],
            metrics=METRICS.as_dict(),
            ws_connections=ws_manager.all_counts(),
        )

    return app
