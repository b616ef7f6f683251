"""
storage/repository.py

CorrelationRepository — SQLite persistence for correlations and alerts.

Correlations are written once (INSERT OR IGNORE on the correlation id) and
never updated; a replayed federated correlation is silently ignored. Each
row expires CORRELATION_TTL_SECONDS after it was stored.

Write failures raise StorageUnavailable so the caller can degrade; reads
propagate sqlite3 errors unchanged.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import sqlite3
from typing import Any

from ..config import settings
from ..errors import StorageUnavailable
from ..models import AlertDraft, Correlation, Severity, iso_from_ms, now_ms
from .database import Database

logger = logging.getLogger(__name__)

_TIME_RANGES_MS = {
    "1h": 3_600_000,
    "24h": 86_400_000,
    "7d": 604_800_000,
}
_DEFAULT_TIME_RANGE = "24h"
_CONFIDENCE_SAMPLE = 20
_EXPORT_LIMIT = 1000

_CSV_HEADERS = [
    "id", "rule_id", "rule_name", "severity", "confidence",
    "timestamp", "event_count", "source_ips", "destination_ips",
    "federated", "federated_from",
]


class CorrelationRepository:
    def __init__(self, db: Database, ttl_seconds: int | None = None) -> None:
        self._db = db
        self.ttl_seconds = settings.CORRELATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    # ==================================================================
    # Write methods
    # ==================================================================

    def save_correlation(self, correlation: Correlation, now: int | None = None) -> bool:
        """
        Persist a correlation. Returns False if the id was already stored.

        Raises StorageUnavailable when the write fails.
        """
        now = now_ms() if now is None else now
        try:
            cur = self._db.execute(
                """
                INSERT OR IGNORE INTO correlations (
                    id, timestamp, rule_id, rule_name, description,
                    severity, confidence, event_count, metadata, events,
                    federated, federated_from, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    correlation.id,
                    correlation.timestamp,
                    correlation.rule_id,
                    correlation.rule_name,
                    correlation.description,
                    correlation.severity.value,
                    correlation.confidence,
                    correlation.metadata.event_count,
                    json.dumps(correlation.metadata.to_dict()),
                    json.dumps([e.ref() for e in correlation.matched_events]),
                    int(correlation.federated),
                    correlation.federated_from,
                    now + self.ttl_seconds * 1000,
                    now,
                ),
            )
            self._db.commit()
        except sqlite3.Error as exc:
            self._safe_rollback()
            raise StorageUnavailable(f"save_correlation {correlation.id} failed: {exc}") from exc

        inserted = cur.rowcount == 1
        if inserted:
            logger.debug("Stored correlation %s", correlation.id)
        else:
            logger.debug("Correlation %s already stored — ignored", correlation.id)
        return inserted

    def save_alert(
        self,
        draft: AlertDraft,
        correlation_id: str | None = None,
        now: int | None = None,
    ) -> str:
        """Insert an alert and return its id. Raises StorageUnavailable."""
        now = now_ms() if now is None else now
        try:
            cur = self._db.execute(
                """
                INSERT INTO alerts (
                    title, description, severity, alert_type, source,
                    metadata, tags, correlation_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.title,
                    draft.description,
                    draft.severity.value,
                    draft.alert_type,
                    draft.source,
                    json.dumps(draft.metadata, default=str),
                    json.dumps(draft.tags),
                    correlation_id,
                    now,
                ),
            )
            self._db.commit()
        except sqlite3.Error as exc:
            self._safe_rollback()
            raise StorageUnavailable(f"save_alert failed: {exc}") from exc
        return str(cur.lastrowid)

    def purge_expired(self, now: int | None = None) -> int:
        """Delete correlations past their expiry. Returns the number removed."""
        now = now_ms() if now is None else now
        try:
            cur = self._db.execute("DELETE FROM correlations WHERE expires_at <= ?", (now,))
            self._db.commit()
        except sqlite3.Error as exc:
            self._safe_rollback()
            raise StorageUnavailable(f"purge_expired failed: {exc}") from exc
        if cur.rowcount:
            logger.info("Purged %d expired correlation(s)", cur.rowcount)
        return cur.rowcount

    # ==================================================================
    # Read methods
    # ==================================================================

    def get_correlation(self, correlation_id: str) -> dict | None:
        row = self._db.execute(
            "SELECT * FROM correlations WHERE id = ?", (correlation_id,)
        ).fetchone()
        return self._row_to_dict(row) if row else None

    def get_recent_correlations(
        self,
        limit: int = 50,
        severity: str | None = None,
        now: int | None = None,
    ) -> list[dict]:
        return self.search_correlations(severity=severity, limit=limit, now=now)

    def search_correlations(
        self,
        rule_id: str | None = None,
        severity: str | None = None,
        start: int | None = None,
        end: int | None = None,
        federated: bool | None = None,
        min_confidence: float | None = None,
        limit: int = 100,
        now: int | None = None,
    ) -> list[dict]:
        """Unexpired correlations matching every given filter, newest first."""
        where, params = self._build_where(
            rule_id=rule_id,
            severity=severity,
            start=start,
            end=end,
            federated=federated,
            min_confidence=min_confidence,
            now=now_ms() if now is None else now,
        )
        sql = f"""
            SELECT * FROM correlations
            {where}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(max(0, min(limit, _EXPORT_LIMIT)))
        rows = self._db.execute(sql, tuple(params)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def count_correlations(self, now: int | None = None, min_confidence: float | None = None) -> int:
        where, params = self._build_where(
            rule_id=None,
            severity=None,
            start=None,
            end=None,
            federated=None,
            min_confidence=min_confidence,
            now=now_ms() if now is None else now,
        )
        row = self._db.execute(f"SELECT COUNT(*) FROM correlations {where}", tuple(params)).fetchone()
        return row[0] if row else 0

    def get_correlation_statistics(self, time_range: str = _DEFAULT_TIME_RANGE, now: int | None = None) -> dict:
        """
        Severity and rule distributions for correlations newer than `time_range`.

        Unknown ranges fall back to 24h. average_confidence is taken over the
        20 newest correlations in the range.
        """
        now = now_ms() if now is None else now
        if time_range not in _TIME_RANGES_MS:
            logger.debug("Unknown time range %r — using %s", time_range, _DEFAULT_TIME_RANGE)
            time_range = _DEFAULT_TIME_RANGE
        start = now - _TIME_RANGES_MS[time_range]
        live = "timestamp >= ? AND expires_at > ?"

        severity_distribution = {s.value: 0 for s in reversed(list(Severity))}
        for sev, count in self._db.execute(
            f"SELECT severity, COUNT(*) FROM correlations WHERE {live} GROUP BY severity",
            (start, now),
        ).fetchall():
            severity_distribution[sev] = count

        rule_rows = self._db.execute(
            f"""
            SELECT rule_id, COUNT(*) AS cnt FROM correlations
            WHERE {live}
            GROUP BY rule_id ORDER BY cnt DESC
            """,
            (start, now),
        ).fetchall()
        rule_distribution = {r[0]: r[1] for r in rule_rows}

        conf_row = self._db.execute(
            f"""
            SELECT AVG(confidence) FROM (
                SELECT confidence FROM correlations
                WHERE {live}
                ORDER BY timestamp DESC
                LIMIT ?
            )
            """,
            (start, now, _CONFIDENCE_SAMPLE),
        ).fetchone()
        average_confidence = conf_row[0] if conf_row and conf_row[0] is not None else 0.0

        return {
            "time_range": time_range,
            "severity_distribution": severity_distribution,
            "rule_distribution": rule_distribution,
            "total_correlations": sum(severity_distribution.values()),
            "average_confidence": average_confidence,
        }

    def export_correlations(self, fmt: str = "json", **filters: Any) -> str:
        """Serialise up to 1000 matching correlations as JSON or CSV."""
        filters.setdefault("limit", _EXPORT_LIMIT)
        rows = self.search_correlations(**filters)

        if fmt == "json":
            return json.dumps(rows, indent=2)
        if fmt == "csv":
            return _to_csv(rows)
        raise ValueError(f"unsupported export format {fmt!r}")

    def get_alerts(self, limit: int = 100) -> list[dict]:
        rows = self._db.execute(
            "SELECT * FROM alerts ORDER BY created_at DESC, alert_id DESC LIMIT ?",
            (min(limit, 500),),
        ).fetchall()
        alerts = []
        for r in rows:
            d = dict(r)
            d["alert_id"] = str(d["alert_id"])
            d["metadata"] = _loads(d.get("metadata"), {})
            d["tags"] = _loads(d.get("tags"), [])
            alerts.append(d)
        return alerts

    # ==================================================================
    # Internal helpers
    # ==================================================================

    def _safe_rollback(self) -> None:
        try:
            self._db.rollback()
        except sqlite3.Error as exc:
            logger.debug("Rollback failed: %s", exc)

    @staticmethod
    def _build_where(
        rule_id: str | None,
        severity: str | None,
        start: int | None,
        end: int | None,
        federated: bool | None,
        min_confidence: float | None,
        now: int,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = ["expires_at > ?"]
        params: list[Any] = [now]
        if rule_id:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if severity:
            clauses.append("severity = ?")
            params.append(severity.lower())
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(end)
        if federated is not None:
            clauses.append("federated = ?")
            params.append(int(federated))
        if min_confidence is not None:
            clauses.append("confidence >= ?")
            params.append(min_confidence)
        return "WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _row_to_dict(row: Any) -> dict:
        d = dict(row)
        d["metadata"] = _loads(d.get("metadata"), {})
        d["events"] = _loads(d.get("events"), [])
        d["federated"] = bool(d.get("federated"))
        d.pop("created_at", None)
        return d


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


def _to_csv(rows: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(_CSV_HEADERS)
    for r in rows:
        meta = r.get("metadata", {})
        writer.writerow([
            r["id"],
            r["rule_id"],
            r["rule_name"],
            r["severity"],
            r["confidence"],
            iso_from_ms(r["timestamp"]),
            r["event_count"],
            ";".join(meta.get("sources", [])),
            ";".join(meta.get("destinations", [])),
            str(r["federated"]).lower(),
            r.get("federated_from") or "",
        ])
    return buf.getvalue()
