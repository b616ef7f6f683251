"""engine/__init__.py"""
from .conditions import (
    Condition,
    Contains,
    DistinctCountAtLeast,
    Equals,
    GreaterThan,
    LessThan,
    NotEquals,
    NotIn,
    SameValue,
    WithinWindow,
)
from .detector import CorrelationDetector
from .rules import Rule, RuleRegistry, default_rules, load_rules_file

__all__ = [
    "Condition",
    "Contains",
    "CorrelationDetector",
    "DistinctCountAtLeast",
    "Equals",
    "GreaterThan",
    "LessThan",
    "NotEquals",
    "NotIn",
    "Rule",
    "RuleRegistry",
    "SameValue",
    "WithinWindow",
    "default_rules",
    "load_rules_file",
]
