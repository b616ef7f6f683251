"""
federation/gateway.py

FederationGateway — shares local correlations with peer nodes and admits
correlations shared by them.

Outbound (share):
  correlation → CorrelationSummary (sources capped) → FederatedMessage
  → signed → AES-256-GCM envelope when a shared key is configured
  → POST <endpoint>/api/federation/correlation to every endpoint concurrently

  Each delivery has its own timeout. A failing endpoint is logged as a
  FederationDeliveryError warning and never retried; the others are
  unaffected. Federated correlations are never re-shared.

Inbound (receive):
  Received → (decrypt) → parse → Verified → Correlation(federated=True)
  Any failure → Rejected (MalformedMessage / InvalidSignature is raised).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable

import httpx

from ..engine.scorer import clamp
from ..errors import FederationDeliveryError, InvalidSignature, MalformedMessage
from ..metrics import METRICS
from ..models import Correlation, CorrelationMetadata, ms_from_iso
from . import encryption
from .keys import KeyDirectory
from .messages import FederatedMessage, parse_message

logger = logging.getLogger(__name__)

FEDERATION_PATH = "/api/federation/correlation"
API_KEY_HEADER = "X-Federation-Key"


class FederationGateway:
    """
    Args:
        keys:            Local signer and trusted peer verifiers.
        endpoints:       Base URLs of peer nodes.
        shared_key:      32-byte AES key; None sends and accepts plaintext messages.
        api_key:         Sent as X-Federation-Key on every outbound request.
        timeout_seconds: Per-endpoint delivery timeout.
        summary_cap:     Max source addresses included in a shared summary.
        client:          Optional long-lived httpx.AsyncClient (tests inject one).
    """

    def __init__(
        self,
        keys: KeyDirectory,
        endpoints: Iterable[str] = (),
        shared_key: bytes | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 5.0,
        summary_cap: int = 3,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.keys = keys
        self.endpoints = [e.rstrip("/") for e in endpoints]
        self.shared_key = shared_key
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.summary_cap = summary_cap
        self._client = client
        self.stats: dict[str, int] = {
            "shared": 0,
            "delivered": 0,
            "failed": 0,
            "received": 0,
            "rejected": 0,
        }

    @classmethod
    def from_settings(cls, settings: Any, keys: KeyDirectory | None = None) -> "FederationGateway":
        shared_key = None
        if settings.FEDERATION_SHARED_KEY:
            try:
                shared_key = encryption.parse_key(settings.FEDERATION_SHARED_KEY)
            except ValueError:
                logger.warning("FEDERATION_SHARED_KEY is not a 32-byte hex key — messages are sent unencrypted")
        return cls(
            keys=keys or KeyDirectory.from_settings(settings),
            endpoints=settings.FEDERATION_ENDPOINTS,
            shared_key=shared_key,
            api_key=settings.FEDERATION_API_KEY,
            timeout_seconds=settings.FEDERATION_TIMEOUT_SECONDS,
            summary_cap=settings.FEDERATION_SUMMARY_CAP,
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def build_message(self, correlation: Correlation, now: int | None = None) -> FederatedMessage:
        """Signed wire message for a local correlation."""
        if self.keys.signer is None:
            raise FederationDeliveryError("*", "no signing key configured")
        message = FederatedMessage.for_correlation(
            correlation,
            source=self.keys.node_id,
            cap=self.summary_cap,
            now=now,
        )
        message.signature = self.keys.signer.sign(message.signing_bytes())
        return message

    def build_payload(self, correlation: Correlation, now: int | None = None) -> dict[str, Any]:
        wire = self.build_message(correlation, now).to_wire()
        if self.shared_key is None:
            return wire
        return encryption.encrypt(json.dumps(wire), self.shared_key)

    async def share(self, correlation: Correlation) -> dict[str, bool]:
        """
        Deliver `correlation` to every endpoint. Returns {endpoint: delivered}.

        Never raises for delivery problems; an empty dict means nothing was sent.
        """
        if correlation.federated:
            logger.debug("Not re-sharing federated correlation %s", correlation.id)
            return {}
        if not self.endpoints:
            return {}
        if self.keys.signer is None:
            logger.warning("Cannot share %s: no signing key configured", correlation.id)
            return {}

        payload = self.build_payload(correlation)
        self.stats["shared"] += 1

        if self._client is not None:
            results = await self._fan_out(self._client, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds + 1) as client:
                results = await self._fan_out(client, payload)

        delivered = sum(results.values())
        logger.info(
            "Shared correlation %s with %d/%d peer(s)",
            correlation.id,
            delivered,
            len(results),
        )
        return results

    async def _fan_out(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> dict[str, bool]:
        outcomes = await asyncio.gather(
            *(self._deliver(client, endpoint, payload) for endpoint in self.endpoints)
        )
        return dict(zip(self.endpoints, outcomes))

    async def _deliver(self, client: httpx.AsyncClient, endpoint: str, payload: dict[str, Any]) -> bool:
        try:
            await self._post(client, endpoint, payload)
        except FederationDeliveryError as exc:
            self.stats["failed"] += 1
            METRICS.federation_failed.inc()
            logger.warning("%s", exc)
            return False
        self.stats["delivered"] += 1
        METRICS.federation_sent.inc()
        return True

    async def _post(self, client: httpx.AsyncClient, endpoint: str, payload: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers[API_KEY_HEADER] = self.api_key
        try:
            async with asyncio.timeout(self.timeout_seconds):
                resp = await client.post(f"{endpoint}{FEDERATION_PATH}", json=payload, headers=headers)
                resp.raise_for_status()
        except TimeoutError as exc:
            raise FederationDeliveryError(endpoint, f"timed out after {self.timeout_seconds:.1f}s") from exc
        except httpx.HTTPStatusError as exc:
            raise FederationDeliveryError(endpoint, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise FederationDeliveryError(endpoint, str(exc) or type(exc).__name__) from exc

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def receive(self, payload: Any) -> Correlation:
        """
        Verify an inbound payload and turn it into a federated Correlation.

        Raises:
            MalformedMessage:  missing/invalid fields (checked before the signature)
            InvalidSignature:  unknown peer, bad signature or failed decryption
        """
        try:
            message = self._open(payload)
        except (MalformedMessage, InvalidSignature) as exc:
            self.stats["rejected"] += 1
            METRICS.federation_rejected.inc()
            logger.warning("Rejected federated message: %s", exc)
            raise

        self.stats["received"] += 1
        METRICS.federation_received.inc()
        correlation = to_correlation(message)
        logger.info(
            "Received federated correlation %s from %s (%s, conf=%.2f)",
            correlation.id,
            message.source,
            correlation.rule_id,
            correlation.confidence,
        )
        return correlation

    def _open(self, payload: Any) -> FederatedMessage:
        if encryption.is_envelope(payload):
            if self.shared_key is None:
                raise MalformedMessage("encrypted message received but no shared key is configured")
            payload = encryption.decrypt(payload, self.shared_key)

        message = parse_message(payload)
        verifier = self.keys.verifier_for(message.source)
        if not verifier.verify(message.signing_bytes(), message.signature or ""):
            raise InvalidSignature(f"bad signature on message from {message.source!r}")
        return message


def to_correlation(message: FederatedMessage) -> Correlation:
    summary = message.correlation
    sources = tuple(summary.metadata.sources)
    return Correlation(
        id=summary.id,
        rule_id=summary.type,
        rule_name=summary.type,
        description=summary.summary,
        severity=summary.severity,
        confidence=clamp(summary.confidence),
        metadata=CorrelationMetadata(
            event_count=summary.metadata.event_count or 0,
            distinct_sources=len(sources),
            sources=sources,
        ),
        timestamp=ms_from_iso(message.timestamp),
        federated=True,
        federated_from=message.source,
    )
