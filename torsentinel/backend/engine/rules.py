"""
engine/rules.py

Correlation rules and the read-only registry that holds them.

A Rule is declarative data: an ordered list of typed conditions, a minimum
event count (threshold), a severity, a base confidence and an action.
The registry is filled once at startup — from the built-in seed set or from
a JSON rules file — and never mutated afterwards.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..models import RuleAction, Severity
from .conditions import (
    Condition,
    DistinctCountAtLeast,
    Equals,
    GreaterThan,
    NotIn,
    SameValue,
    WithinWindow,
    condition_from_dict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    conditions: tuple[Condition, ...]
    threshold: int
    severity: Severity
    base_confidence: float = 0.5
    action: RuleAction = RuleAction.CREATE_ALERT
    description: str = ""

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError(f"rule {self.id!r}: threshold must be >= 1")
        if not 0.0 <= self.base_confidence <= 1.0:
            raise ValueError(f"rule {self.id!r}: base_confidence must be within [0, 1]")
        object.__setattr__(self, "conditions", tuple(self.conditions))

    def matches_event(self, event) -> bool:
        """Pass-1 filter: every condition accepts this single event."""
        return all(c.matches(event) for c in self.conditions)

    def __repr__(self) -> str:
        return f"<Rule:{self.id} threshold={self.threshold} {self.severity.value}>"


class RuleRegistry:
    """Read-only collection of rules, in registration order."""

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: dict[str, Rule] = {}
        for rule in default_rules() if rules is None else rules:
            if rule.id in self._rules:
                raise ValueError(f"duplicate rule id {rule.id!r}")
            self._rules[rule.id] = rule
        logger.info(
            "RuleRegistry loaded %d rule(s): %s", len(self._rules), list(self._rules)
        )

    def all(self) -> list[Rule]:
        return list(self._rules.values())

    def by_id(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    @classmethod
    def from_file(cls, path: str | Path) -> "RuleRegistry":
        return cls(load_rules_file(path))


# ---------------------------------------------------------------------------
# Seed rules
# ---------------------------------------------------------------------------

def default_rules() -> list[Rule]:
    """Built-in rule set used when no RULES_FILE is configured."""
    return [
        Rule(
            id="port_scan_correlation",
            name="Temporal Port Scan Detection",
            description="Repeated port scans from the same source",
            conditions=(
                Equals("type", "port_scan"),
                SameValue("source_ip"),
                WithinWindow(600_000),
            ),
            threshold=5,
            severity=Severity.MEDIUM,
            base_confidence=0.8,
            action=RuleAction.CREATE_ALERT,
        ),
        Rule(
            id="geo_anomaly",
            name="Geographic Anomaly",
            description="Large transfers from unusual geographic locations",
            conditions=(
                NotIn("source_country_code", frozenset({"US", "DE", "GB", "CA", "FR"})),
                GreaterThan("bytes_sent", 1_000_000),
            ),
            threshold=3,
            severity=Severity.HIGH,
            action=RuleAction.CREATE_ALERT,
        ),
        Rule(
            id="data_exfil_pattern",
            name="Data Exfiltration Pattern",
            description="Repeated large uploads to the same destination",
            conditions=(
                GreaterThan("bytes_sent", 50_000_000),
                SameValue("destination_ip"),
                WithinWindow(3_600_000),
            ),
            threshold=2,
            severity=Severity.CRITICAL,
            action=RuleAction.CREATE_ALERT,
        ),
        Rule(
            id="protocol_mix_anomaly",
            name="Protocol Mix Anomaly",
            description="Unusual mix of protocols from the same source",
            conditions=(
                SameValue("source_ip"),
                DistinctCountAtLeast("protocol", 5),
            ),
            threshold=1,
            severity=Severity.MEDIUM,
            action=RuleAction.CREATE_ALERT,
        ),
        Rule(
            id="tor_circuit_correlation",
            name="Tor Circuit Correlation",
            description="Malicious events sharing a Tor circuit",
            conditions=(
                Equals("is_malicious", True),
                SameValue("circuit_id"),
            ),
            threshold=2,
            severity=Severity.HIGH,
            action=RuleAction.CREATE_ALERT,
        ),
    ]


# ---------------------------------------------------------------------------
# Rule files
# ---------------------------------------------------------------------------

class RuleSpec(BaseModel):
    """Schema of one entry in a JSON rules file."""

    id: str
    name: str
    description: str = ""
    conditions: list[dict[str, Any]] = Field(min_length=1)
    threshold: int = Field(ge=1)
    severity: Severity
    base_confidence: float = Field(default=0.5, ge=0.0, le=1.0, alias="confidence")
    action: RuleAction = RuleAction.CREATE_ALERT

    model_config = {"populate_by_name": True}

    @field_validator("severity", mode="before")
    @classmethod
    def lower_severity(cls, v):
        return v.lower() if isinstance(v, str) else v

    def to_rule(self) -> Rule:
        return Rule(
            id=self.id,
            name=self.name,
            description=self.description,
            conditions=tuple(condition_from_dict(c) for c in self.conditions),
            threshold=self.threshold,
            severity=self.severity,
            base_confidence=self.base_confidence,
            action=self.action,
        )


def load_rules_file(path: str | Path) -> list[Rule]:
    """
    Load rules from a JSON file holding a list of rule objects.

    Raises ValueError with the offending rule id if any entry is invalid —
    a broken rules file is a startup error, not something to skip silently.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("rules", [])

    rules: list[Rule] = []
    for entry in raw:
        try:
            rules.append(RuleSpec.model_validate(entry).to_rule())
        except (ValidationError, ValueError) as exc:
            rule_id = entry.get("id", "?") if isinstance(entry, dict) else "?"
            raise ValueError(f"invalid rule {rule_id!r} in {path}: {exc}") from exc
    logger.info("Loaded %d rule(s) from %s", len(rules), path)
    return rules
