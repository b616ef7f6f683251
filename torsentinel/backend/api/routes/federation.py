"""
api/routes/federation.py

POST /api/federation/correlation — inbound correlation from a peer node

    400  malformed message or envelope
    401  bad/missing X-Federation-Key, unknown peer, or invalid signature
    503  federation gateway not configured on this node
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException

from ...errors import InvalidSignature, MalformedMessage
from ...service import CorrelationService
from ..serializers import ErrorResponse, FederationAckResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/federation", tags=["federation"])


def _get_service() -> CorrelationService:
    """FastAPI dependency — replaced in tests via set_service()."""
    from ..main import get_service
    return get_service()


def _get_api_key() -> str | None:
    from ..main import get_federation_api_key
    return get_federation_api_key()


@router.post(
    "/correlation",
    response_model=FederationAckResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed message"},
        401: {"model": ErrorResponse, "description": "Rejected"},
        503: {"model": ErrorResponse, "description": "Federation not configured"},
    },
)
async def receive_correlation(
    payload: Any = Body(...),
    x_federation_key: str | None = Header(default=None),
    expected_key: str | None = Depends(_get_api_key),
    service: CorrelationService = Depends(_get_service),
) -> FederationAckResponse:
    """Verify and admit a correlation shared by a peer."""
    if expected_key and not hmac.compare_digest(x_federation_key or "", expected_key):
        logger.warning("Federation request rejected: bad X-Federation-Key")
        raise HTTPException(status_code=401, detail="invalid federation key")

    if service.gateway is None:
        raise HTTPException(status_code=503, detail="federation is not configured")

    try:
        correlation = service.receive_federated(payload)
    except MalformedMessage as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except InvalidSignature as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return FederationAckResponse(
        correlation_id=correlation.id,
        federated_from=correlation.federated_from or "",
    )
