"""Cluster store: one replace-by-key generation of review groups per unit."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime

from voc_loop.models import LLMUsage
from voc_loop.schemas import ReviewGroup, RunMarker
from voc_loop.store.database import (
    Database,
    decode_id_set,
    decode_timestamp,
    encode_id_set,
    encode_timestamp,
)

logger = logging.getLogger(__name__)

UNIT_KEY_SEPARATOR = "|"


def unit_key(app_id: str, scope: str, period_key: str) -> str:
    """Return the canonical key of a clustering unit."""

    for name, value in (("app_id", app_id), ("scope", scope)):
        if UNIT_KEY_SEPARATOR in value:
            raise ValueError(f"{name} may not contain '{UNIT_KEY_SEPARATOR}': {value!r}")
    return UNIT_KEY_SEPARATOR.join((app_id, scope, period_key))



def _row_to_group(row: sqlite3.Row) -> ReviewGroup:
    return ReviewGroup(
        id=row["id"],
        app_id=row["app_id"],
        scope=row["scope"],
        period_key=row["period_key"],
        period_start=decode_timestamp(row["period_start"]),
        period_end=decode_timestamp(row["period_end"]),
        title=row["title"],
        rank=row["group_rank"],
        review_count=row["review_count"],
        percentage=row["percentage"],
        review_ids=decode_id_set(row["review_ids"]),
        root_cause_summary=row["root_cause_summary"],
        action_suggestion=row["action_suggestion"],
        sample_quotes=json.loads(row["sample_quotes"]),
        processing_status=row["processing_status"],
        created_at=decode_timestamp(row["created_at"]),
    )


def _row_to_marker(row: sqlite3.Row) -> RunMarker:
    return RunMarker(
        kind=row["kind"],
        unit_key=row["unit_key"],
        outcome=row["outcome"],
        observed_count=row["observed_count"],
        detail=row["detail"],
        updated_at=decode_timestamp(row["updated_at"]),
    )


class ClusterStore:
    """Owns review groups, run markers and the AI usage ledger."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def _insert_group(self, conn: sqlite3.Connection, group: ReviewGroup, created_at: str) -> None:
        conn.execute(
            """
            INSERT INTO review_groups
            (app_id, scope, period_key, period_start, period_end, title, group_rank,
             review_count, percentage, review_ids, root_cause_summary, action_suggestion,
             sample_quotes, processing_status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                group.app_id,
                group.scope,
                group.period_key,
                encode_timestamp(group.period_start) if group.period_start else None,
                encode_timestamp(group.period_end) if group.period_end else None,
                group.title,
                group.rank,
                group.review_count,
                group.percentage,
                encode_id_set(group.review_ids),
                group.root_cause_summary,
                group.action_suggestion,
                json.dumps(group.sample_quotes, ensure_ascii=False),
                group.processing_status,
                created_at,
            ),
        )

    def replace_period_clusters(
        self,
        app_id: str,
        scope: str,
        period_key: str,
        groups: Sequence[ReviewGroup],
    ) -> int:
        """Atomically replace the generation stored for one key.

        The previous generation is deleted and ``groups`` inserted inside one
        transaction. On failure the transaction is rolled back and the previous
        generation stays readable. Returns the number of inserted groups.
        """

        for group in groups:
            if (group.app_id, group.scope, group.period_key) != (app_id, scope, period_key):
                raise ValueError(
                    f"Group '{group.title}' belongs to "
                    f"{unit_key(group.app_id, group.scope, group.period_key)}, "
                    f"not {unit_key(app_id, scope, period_key)}."
                )

        created_at = encode_timestamp(datetime.now(UTC))
        with self._db.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM review_groups WHERE app_id = ? AND scope = ? AND period_key = ?",
                (app_id, scope, period_key),
            ).rowcount
            for group in groups:
                self._insert_group(conn, group, created_at)

        logger.info(
            "Replaced generation %s: %d old groups, %d new groups.",
            unit_key(app_id, scope, period_key),
            deleted,
            len(groups),
        )
        return len(groups)

    def list_groups(
        self,
        *,
        app_id: str | None = None,
        scope: str | None = None,
        period_key: str | None = None,
    ) -> list[ReviewGroup]:
        """Return groups matching any subset of filters, ordered by rank."""

        clauses: list[str] = []
        params: list[str] = []
        for column, value in (("app_id", app_id), ("scope", scope), ("period_key", period_key)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = " AND ".join(clauses) if clauses else "1"
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM review_groups WHERE {where} "
                "ORDER BY group_rank ASC, app_id, scope, period_key, id",
                params,
            ).fetchall()
        return [_row_to_group(row) for row in rows]

    def get_group(self, group_id: int) -> ReviewGroup | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM review_groups WHERE id = ?", (group_id,)).fetchone()
        return _row_to_group(row) if row is not None else None

    def record_marker(
        self,
        *,
        kind: str,
        unit: str,
        outcome: str,
        observed_count: int | None = None,
        detail: str = "",
        now: datetime | None = None,
    ) -> RunMarker:
        """Upsert the latest outcome for a unit."""

        marker = RunMarker(
            kind=kind,
            unit_key=unit,
            outcome=outcome,
            observed_count=observed_count,
            detail=detail,
            updated_at=now or datetime.now(UTC),
        )
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO run_markers (kind, unit_key, outcome, observed_count, detail, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (kind, unit_key) DO UPDATE SET
                    outcome = excluded.outcome,
                    observed_count = excluded.observed_count,
                    detail = excluded.detail,
                    updated_at = excluded.updated_at
                """,
                (
                    marker.kind,
                    marker.unit_key,
                    marker.outcome,
                    marker.observed_count,
                    marker.detail,
                    encode_timestamp(marker.updated_at),
                ),
            )
        return marker

    def get_marker(self, kind: str, unit: str) -> RunMarker | None:
        """Return the latest marker for a unit, or ``None`` if it never ran."""

        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM run_markers WHERE kind = ? AND unit_key = ?",
                (kind, unit),
            ).fetchone()
        return _row_to_marker(row) if row is not None else None

    def list_markers(self, kind: str, *, prefix: str = "") -> list[RunMarker]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM run_markers WHERE kind = ? AND substr(unit_key, 1, ?) = ? "
                "ORDER BY unit_key",
                (kind, len(prefix), prefix),
            ).fetchall()
        return [_row_to_marker(row) for row in rows]

    def record_usage(
        self,
        *,
        operation: str,
        unit: str,
        model: str,
        usage: LLMUsage,
        now: datetime | None = None,
    ) -> None:
        """Append the LLM usage spent on one unit."""

        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO ai_usage
                (operation, unit_key, model, request_count, prompt_tokens, completion_tokens,
                 total_tokens, estimated_cost, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation,
                    unit,
                    model,
                    usage.request_count,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    usage.total_tokens,
                    usage.estimated_cost,
                    encode_timestamp(now or datetime.now(UTC)),
                ),
            )

    def usage_totals(self, *, since: datetime | None = None) -> dict[str, dict]:
        """Sum recorded usage per operation, optionally from ``since`` onwards."""

        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT operation, COUNT(*) AS runs, SUM(request_count) AS request_count,
                       SUM(prompt_tokens) AS prompt_tokens,
                       SUM(completion_tokens) AS completion_tokens,
                       SUM(total_tokens) AS total_tokens, SUM(estimated_cost) AS estimated_cost
                FROM ai_usage WHERE recorded_at >= ?
                GROUP BY operation ORDER BY operation
                """,
                (encode_timestamp(since) if since is not None else "",),
            ).fetchall()
        return {
            row["operation"]: {
                "runs": row["runs"],
                "request_count": row["request_count"],
                "prompt_tokens": row["prompt_tokens"],
                "completion_tokens": row["completion_tokens"],
                "total_tokens": row["total_tokens"],
                "estimated_cost": round(row["estimated_cost"], 6),
            }
            for row in rows
        }
