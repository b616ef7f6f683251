"""
backend/errors.py

Exception taxonomy for the correlation engine.

None of these are process-fatal: each one is caught at the boundary that
owns it and turned into a log line plus a counter.

    RuleEvaluationError     — one rule failed for one event; other rules still run
    StorageUnavailable      — findings sink could not persist; correlation is still published
    FederationDeliveryError — one peer endpoint failed; other endpoints unaffected
    InvalidSignature        — inbound federated message rejected outright
    MalformedMessage        — inbound message missing required fields (checked before signature)
"""

from __future__ import annotations


class SentinelError(Exception):
    """Base class for every engine error."""


class RuleEvaluationError(SentinelError):
    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(f"rule {rule_id!r} failed: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class StorageUnavailable(SentinelError):
    pass


class FederationDeliveryError(SentinelError):
    def __init__(self, endpoint: str, reason: str) -> None:
        super().__init__(f"delivery to {endpoint} failed: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class InvalidSignature(SentinelError):
    pass


class MalformedMessage(SentinelError):
    pass
