"""
storage/database.py

SQLite connection and schema initialisation for the findings store.

Design decisions:
  - WAL journal mode for concurrent readers + one writer without blocking.
  - check_same_thread=False: the repository is only used from the event
    loop thread, so writes are already serialised.
  - busy_timeout=5000ms: instead of raising SQLITE_BUSY immediately, SQLite
    will spin-wait up to 5 seconds, allowing WAL readers to finish.
  - Correlations carry expires_at (epoch ms); purge_expired() deletes them.
  - ":memory:" is accepted for tests.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time

logger = logging.getLogger(__name__)

_CURRENT_SCHEMA_VERSION = 1


class Database:
    """
    Thin wrapper around a sqlite3 connection.

    Usage:
        db = Database("data/correlations.db")
        db.init_schema()
        repo = CorrelationRepository(db)
        ...
        db.close()
    """

    def __init__(self, db_path: str = "data/correlations.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # rows behave like dicts
        self._configure()
        logger.info("Database opened — path=%r", db_path)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _configure(self) -> None:
        """Apply performance and safety PRAGMAs."""
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.execute("PRAGMA synchronous=NORMAL")  # safe with WAL
        self.conn.commit()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        """Create all tables and indexes if they don't already exist."""
        cur = self.conn.cursor()

        cur.executescript("""
            CREATE TABLE IF NOT EXISTS correlations (
                id              TEXT PRIMARY KEY,
                timestamp       INTEGER NOT NULL,
                rule_id         TEXT NOT NULL,
                rule_name       TEXT NOT NULL,
                description     TEXT NOT NULL,
                severity        TEXT NOT NULL,
                confidence      REAL NOT NULL,
                event_count     INTEGER NOT NULL,
                metadata        TEXT NOT NULL,
                events          TEXT NOT NULL,
                federated       INTEGER NOT NULL DEFAULT 0,
                federated_from  TEXT,
                expires_at      INTEGER NOT NULL,
                created_at      INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS alerts (
                alert_id        INTEGER PRIMARY KEY AUTOINCREMENT,
                title           TEXT NOT NULL,
                description     TEXT NOT NULL,
                severity        TEXT NOT NULL,
                alert_type      TEXT NOT NULL,
                source          TEXT NOT NULL,
                metadata        TEXT NOT NULL,
                tags            TEXT NOT NULL,
                correlation_id  TEXT,
                created_at      INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_correlations_timestamp
                ON correlations(timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_correlations_rule_id
                ON correlations(rule_id);
            CREATE INDEX IF NOT EXISTS idx_correlations_severity
                ON correlations(severity);
            CREATE INDEX IF NOT EXISTS idx_correlations_expires_at
                ON correlations(expires_at);
            CREATE INDEX IF NOT EXISTS idx_alerts_created_at
                ON alerts(created_at DESC);
        """)

        cur.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (_CURRENT_SCHEMA_VERSION, time.time()),
        )
        self.conn.commit()
        logger.info("Schema initialised (version=%d)", _CURRENT_SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Flush and close the SQLite connection."""
        try:
            self.conn.commit()
            self.conn.close()
            logger.info("Database closed — path=%r", self.db_path)
        except sqlite3.Error as exc:
            logger.warning("Error closing database: %s", exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a single parameterized statement."""
        return self.conn.execute(sql, params)

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()
