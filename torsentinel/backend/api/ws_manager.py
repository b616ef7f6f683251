"""
api/ws_manager.py

WebSocketManager — live subscribers for findings, grouped by channel.

Channels:
    "correlations" — local and federated correlations as they are handled
    "threats"      — malicious single-event verdicts and raised alerts

The manager is attached to the Publisher through as_subscriber(), so every
published finding on a subscribed topic is broadcast to that channel.

Thread safety: designed to be called exclusively from asyncio coroutines.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Awaitable, Callable

from fastapi import WebSocket

from ..pubsub import TOPIC_ALERT, TOPIC_CORRELATION, TOPIC_FEDERATED, TOPIC_THREAT, Publisher

logger = logging.getLogger(__name__)

CHANNEL_CORRELATIONS = "correlations"
CHANNEL_THREATS = "threats"

# topic → channel
TOPIC_CHANNELS = {
    TOPIC_CORRELATION: CHANNEL_CORRELATIONS,
    TOPIC_FEDERATED: CHANNEL_CORRELATIONS,
    TOPIC_THREAT: CHANNEL_THREATS,
    TOPIC_ALERT: CHANNEL_THREATS,
}


class WebSocketManager:
    """Manages a set of named broadcast channels, each with N WebSocket clients."""

    def __init__(self) -> None:
        self._channels: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, channel: str) -> None:
        await websocket.accept()
        self._channels[channel].add(websocket)
        logger.debug("WS connected — channel=%r total=%d", channel, len(self._channels[channel]))

    async def disconnect(self, websocket: WebSocket, channel: str) -> None:
        """Remove a WebSocket from its channel (no-op if not present)."""
        self._channels[channel].discard(websocket)
        logger.debug("WS disconnected — channel=%r remaining=%d", channel, len(self._channels[channel]))

    async def broadcast(self, channel: str, message: dict) -> int:
        """
        Send JSON-encoded *message* to all connections on *channel*.

        Connections that error during send are dropped. Returns the number
        of clients that received the message.
        """
        clients = self._channels.get(channel)
        if not clients:
            return 0

        payload = json.dumps(message, default=str)
        dead: list[WebSocket] = []
        sent = 0
        for ws in list(clients):
            try:
                await ws.send_text(payload)
                sent += 1
            except Exception as exc:
                logger.debug("WS send failed (channel=%r): %s — removing", channel, exc)
                dead.append(ws)

        for ws in dead:
            clients.discard(ws)
        return sent

    def as_subscriber(self) -> Callable[[str, dict], Awaitable[int]]:
        """Publisher callback that forwards each finding to its topic's channel."""
        async def _forward(topic: str, payload: dict) -> int:
            channel = TOPIC_CHANNELS.get(topic)
            if channel is None:
                return 0
            return await self.broadcast(channel, {"topic": topic, "data": payload})
        return _forward

    def attach(self, publisher: Publisher) -> None:
        forward = self.as_subscriber()
        for topic in TOPIC_CHANNELS:
            publisher.subscribe(topic, forward)

    def connection_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def all_counts(self) -> dict[str, int]:
        return {ch: len(conns) for ch, conns in self._channels.items()}


# Global singleton — imported by the app factory and main.py
ws_manager = WebSocketManager()
