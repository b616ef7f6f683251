"""
api/serializers.py

Response models for the receiver API.
"""

from __future__ import annotations

from pydantic import BaseModel


class FederationAckResponse(BaseModel):
    status: str = "accepted"
    correlation_id: str
    federated_from: str


class ErrorResponse(BaseModel):
    detail: str


class HealthResponse(BaseModel):
    status: str
    node_id: str
    federation_enabled: bool
    buffered_events: int
    buffer_buckets: int
    rules: list[str]
    metrics: dict[str, int]
    ws_connections: dict[str, int]
