"""Feedback store interface and its SQLite adapter."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from voc_loop.schemas import FeedbackRecord
from voc_loop.store.database import Database, decode_timestamp, encode_timestamp


@dataclass(frozen=True, slots=True)
class FeedbackQuery:
    """Row filter over feedback; ``None`` fields are unconstrained."""

    app_id: str | None = None
    category: str | None = None
    risk_levels: frozenset[str] | None = None
    statuses: frozenset[str] | None = None
    process_status: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    ids: frozenset[str] | None = None


class FeedbackSource(Protocol):
    """Read-only access to feedback needed by the engine."""

    def fetch(
        self,
        query: FeedbackQuery,
        *,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[FeedbackRecord]:
        """Return records matching the query."""

    def count(self, query: FeedbackQuery) -> int:
        """Return the number of records matching the query."""

    def list_app_ids(self, query: FeedbackQuery) -> list[str]:
        """Return distinct app ids among records matching the query."""


def _where_clause(query: FeedbackQuery) -> tuple[str, list]:
    clauses: list[str] = []
    params: list = []

    if query.app_id is not None:
        clauses.append("app_id = ?")
        params.append(query.app_id)
    if query.category is not None:
        clauses.append("category = ?")
        params.append(query.category)
    if query.process_status is not None:
        clauses.append("process_status = ?")
        params.append(query.process_status)
    for column, values in (
        ("risk_level", query.risk_levels),
        ("status", query.statuses),
        ("id", query.ids),
    ):
        if values is None:
            continue
        if not values:
            clauses.append("0")
            continue
        ordered = sorted(values)
        clauses.append(f"{column} IN ({', '.join('?' for _ in ordered)})")
        params.extend(ordered)
    if query.start is not None:
        clauses.append("feedback_time >= ?")
        params.append(encode_timestamp(query.start))
    if query.end is not None:
        clauses.append("feedback_time <= ?")
        params.append(encode_timestamp(query.end))

    where = " AND ".join(clauses) if clauses else "1"
    return where, params


def _row_to_record(row) -> FeedbackRecord:
    return FeedbackRecord(
        id=row["id"],
        app_id=row["app_id"],
        category=row["category"],
        risk_level=row["risk_level"],
        status=row["status"],
        process_status=row["process_status"],
        timestamp=decode_timestamp(row["feedback_time"]),
        summary=row["summary"],
        root_cause=row["root_cause"],
        text=row["text"],
        translated_text=row["translated_text"],
    )


class FeedbackStore:
    """SQLite-backed feedback table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def upsert_many(self, records: Iterable[FeedbackRecord]) -> int:
        """Insert or replace records by id; return the number written."""

        rows = [
            (
                record.id,
                record.app_id,
                record.category,
                record.risk_level,
                record.status,
                record.process_status,
                encode_timestamp(record.timestamp),
                record.summary,
                record.root_cause,
                record.text,
                record.translated_text,
            )
            for record in records
        ]
        if not rows:
            return 0
        with self._db.transaction() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO feedback
                (id, app_id, category, risk_level, status, process_status, feedback_time,
                 summary, root_cause, text, translated_text)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def fetch(
        self,
        query: FeedbackQuery,
        *,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[FeedbackRecord]:
        where, params = _where_clause(query)
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT * FROM feedback WHERE {where} ORDER BY feedback_time {order}, id {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def count(self, query: FeedbackQuery) -> int:
        where, params = _where_clause(query)
        with self._db.connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM feedback WHERE {where}", params).fetchone()
        return int(row["n"])

    def list_app_ids(self, query: FeedbackQuery) -> list[str]:
        where, params = _where_clause(query)
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT DISTINCT app_id FROM feedback WHERE {where} ORDER BY app_id",
                params,
            ).fetchall()
        return [row["app_id"] for row in rows]
