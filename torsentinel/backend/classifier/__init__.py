"""
classifier/__init__.py

Public API for the per-event threat classifier.
"""

from .history import CachedHistory, HistoryView, TrafficHistory, baseline_key
from .threat_classifier import (
    ClassifierThresholds,
    ThreatClassifier,
    build_alert_draft,
    format_bytes,
)

__all__ = [
    "CachedHistory",
    "ClassifierThresholds",
    "HistoryView",
    "ThreatClassifier",
    "TrafficHistory",
    "baseline_key",
    "build_alert_draft",
    "format_bytes",
]
