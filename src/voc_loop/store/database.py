"""SQLite connection, transaction and schema helpers."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path

from voc_loop.errors import PersistenceError
from voc_loop.schemas import as_utc

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    app_id TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT '',
    risk_level TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    process_status TEXT NOT NULL DEFAULT 'pending',
    feedback_time TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    root_cause TEXT NOT NULL DEFAULT '',
    text TEXT NOT NULL DEFAULT '',
    translated_text TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_feedback_app_time ON feedback (app_id, feedback_time);

CREATE TABLE IF NOT EXISTS review_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    period_key TEXT NOT NULL,
    period_start TEXT,
    period_end TEXT,
    title TEXT NOT NULL,
    group_rank INTEGER NOT NULL,
    review_count INTEGER NOT NULL,
    percentage REAL NOT NULL,
    review_ids TEXT NOT NULL,
    root_cause_summary TEXT NOT NULL DEFAULT '',
    action_suggestion TEXT NOT NULL DEFAULT '',
    sample_quotes TEXT NOT NULL DEFAULT '[]',
    processing_status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_review_groups_key ON review_groups (app_id, scope, period_key);

CREATE TABLE IF NOT EXISTS verification_configs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id TEXT NOT NULL,
    issue_type TEXT NOT NULL,
    issue_value TEXT NOT NULL,
    baseline_start TEXT NOT NULL,
    baseline_end TEXT NOT NULL,
    verify_start TEXT NOT NULL,
    verify_end TEXT,
    optimization_desc TEXT NOT NULL DEFAULT '',
    expected_reduction REAL,
    status TEXT NOT NULL DEFAULT 'monitoring',
    created_by TEXT,
    created_at TEXT NOT NULL,
    issue_review_ids TEXT,
    CHECK (baseline_end < verify_start)
);

CREATE TABLE IF NOT EXISTS verification_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL REFERENCES verification_configs (id),
    verify_date TEXT NOT NULL,
    baseline_count INTEGER NOT NULL,
    baseline_total INTEGER NOT NULL,
    verify_count INTEGER NOT NULL,
    verify_total INTEGER NOT NULL,
    baseline_ratio REAL NOT NULL,
    verify_ratio REAL NOT NULL,
    count_change INTEGER NOT NULL,
    ratio_change REAL NOT NULL,
    change_percent REAL NOT NULL,
    conclusion TEXT NOT NULL,
    summary TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_verification_results_config
    ON verification_results (config_id, verify_date);

CREATE TABLE IF NOT EXISTS run_markers (
    kind TEXT NOT NULL,
    unit_key TEXT NOT NULL,
    outcome TEXT NOT NULL,
    observed_count INTEGER,
    detail TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (kind, unit_key)
);

CREATE TABLE IF NOT EXISTS ai_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation TEXT NOT NULL,
    unit_key TEXT NOT NULL,
    model TEXT NOT NULL DEFAULT '',
    request_count INTEGER NOT NULL,
    prompt_tokens INTEGER NOT NULL,
    completion_tokens INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    estimated_cost REAL NOT NULL,
    recorded_at TEXT NOT NULL
);
"""


def encode_timestamp(value: datetime) -> str:
    """Encode a datetime as fixed-width UTC text so string order matches time order."""

    return as_utc(value).strftime(_TIMESTAMP_FORMAT)


def decode_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def encode_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def decode_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def encode_id_set(ids: Iterable[str] | None) -> str | None:
    """Encode an id collection as a sorted JSON array."""

    if ids is None:
        return None
    return json.dumps(sorted(ids), ensure_ascii=False)


def decode_id_set(raw: str | None) -> frozenset[str] | None:
    if raw is None:
        return None
    values = json.loads(raw)
    if not isinstance(values, list):
        raise PersistenceError(f"Stored id list is not a JSON array: {raw[:80]!r}")
    return frozenset(str(item) for item in values)


class Database:
    """File-backed SQLite database with explicit transactions.

    Connections run in autocommit mode; writes go through :meth:`transaction`,
    which holds the database write lock from ``BEGIN IMMEDIATE`` to ``COMMIT``.
    """

    def __init__(self, path: str | Path, *, busy_timeout_seconds: float = 30.0) -> None:
        self.path = Path(path)
        self._busy_timeout_seconds = busy_timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    def initialize(self) -> None:
        """Create tables and indexes when missing."""

        with self.connect() as conn:
            conn.executescript(SCHEMA_SQL)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self.path,
                isolation_level=None,
                timeout=self._busy_timeout_seconds,
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open database {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body as one atomic unit, rolling back on any exception."""

        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException as exc:
                conn.execute("ROLLBACK")
                logger.warning("Transaction rolled back: %s", exc)
                if isinstance(exc, sqlite3.Error):
                    raise PersistenceError(f"Transaction failed and was rolled back: {exc}") from exc
                raise
            conn.execute("COMMIT")
