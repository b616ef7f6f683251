"""
federation/messages.py

Wire models for correlations exchanged between peer nodes.

    {
      "type": "correlation",
      "source": "<node id>",
      "timestamp": "<ISO-8601>",
      "correlation": {
        "id", "type", "severity", "confidence", "summary",
        "metadata": {"eventCount", "sources": [<= 3 addresses]}
      },
      "signature": "<hex>"
    }

The signature covers the canonical JSON (sorted keys, compact separators)
of every field except "signature" itself.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import MalformedMessage
from ..models import Correlation, Severity, iso_from_ms, ms_from_iso, now_ms


class SummaryMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_count: int | None = Field(default=None, alias="eventCount")
    sources: list[str] = []


class CorrelationSummary(BaseModel):
    """Reduced view of a Correlation; matched events never leave the node."""

    id: str
    type: str
    severity: Severity
    confidence: float = Field(ge=0.0)
    summary: str = ""
    metadata: SummaryMetadata = Field(default_factory=SummaryMetadata)

    @classmethod
    def from_correlation(cls, correlation: Correlation, cap: int = 3) -> "CorrelationSummary":
        return cls(
            id=correlation.id,
            type=correlation.rule_id,
            severity=correlation.severity,
            confidence=correlation.confidence,
            summary=correlation.description,
            metadata=SummaryMetadata(
                event_count=correlation.metadata.event_count,
                sources=list(correlation.metadata.sources[:cap]),
            ),
        )


class FederatedMessage(BaseModel):
    type: Literal["correlation"]
    source: str = Field(min_length=1)
    timestamp: str
    correlation: CorrelationSummary
    signature: str | None = None

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, v: str) -> str:
        ms_from_iso(v)
        return v

    @classmethod
    def for_correlation(
        cls,
        correlation: Correlation,
        source: str,
        cap: int = 3,
        now: int | None = None,
    ) -> "FederatedMessage":
        return cls(
            type="correlation",
            source=source,
            timestamp=iso_from_ms(now_ms() if now is None else now),
            correlation=CorrelationSummary.from_correlation(correlation, cap),
        )

    def signing_bytes(self) -> bytes:
        body = self.model_dump(mode="json", by_alias=True, exclude={"signature"})
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def parse_message(payload: Any) -> FederatedMessage:
    """Validate an inbound payload. Raises MalformedMessage on any schema error."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise MalformedMessage(f"message is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessage("message must be a JSON object")
    try:
        message = FederatedMessage.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise MalformedMessage(f"invalid federated message: {', '.join(fields)}") from exc
    if not message.signature:
        raise MalformedMessage("invalid federated message: signature")
    return message
