"""Persistence for verification configs and their append-only results."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from voc_loop.schemas import VerificationConfig, VerificationResult
from voc_loop.store.database import (
    Database,
    decode_date,
    decode_id_set,
    decode_timestamp,
    encode_date,
    encode_id_set,
    encode_timestamp,
)


def _row_to_config(row: sqlite3.Row) -> VerificationConfig:
    return VerificationConfig(
        id=row["id"],
        app_id=row["app_id"],
        issue_type=row["issue_type"],
        issue_value=row["issue_value"],
        baseline_start=decode_date(row["baseline_start"]),
        baseline_end=decode_date(row["baseline_end"]),
        verify_start=decode_date(row["verify_start"]),
        verify_end=decode_date(row["verify_end"]),
        optimization_desc=row["optimization_desc"],
        expected_reduction=row["expected_reduction"],
        status=row["status"],
        created_by=row["created_by"],
        created_at=decode_timestamp(row["created_at"]),
        issue_review_ids=decode_id_set(row["issue_review_ids"]),
    )


def _row_to_result(row: sqlite3.Row) -> VerificationResult:
    return VerificationResult(
        id=row["id"],
        config_id=row["config_id"],
        verify_date=decode_timestamp(row["verify_date"]),
        baseline_count=row["baseline_count"],
        baseline_total=row["baseline_total"],
        verify_count=row["verify_count"],
        verify_total=row["verify_total"],
        baseline_ratio=row["baseline_ratio"],
        verify_ratio=row["verify_ratio"],
        count_change=row["count_change"],
        ratio_change=row["ratio_change"],
        change_percent=row["change_percent"],
        conclusion=row["conclusion"],
        summary=row["summary"],
    )


class VerificationStore:
    """Owns verification_configs and verification_results."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def insert_config(self, config: VerificationConfig) -> VerificationConfig:
        """Persist a validated config and return it with its id."""

        created_at = config.created_at or datetime.now(UTC)
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO verification_configs
                (app_id, issue_type, issue_value, baseline_start, baseline_end, verify_start,
                 verify_end, optimization_desc, expected_reduction, status, created_by,
                 created_at, issue_review_ids)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    config.app_id,
                    config.issue_type,
                    config.issue_value,
                    encode_date(config.baseline_start),
                    encode_date(config.baseline_end),
                    encode_date(config.verify_start),
                    encode_date(config.verify_end),
                    config.optimization_desc,
                    config.expected_reduction,
                    config.status,
                    config.created_by,
                    encode_timestamp(created_at),
                    encode_id_set(config.issue_review_ids),
                ),
            )
            config_id = int(cursor.lastrowid)
        return config.model_copy(update={"id": config_id, "created_at": created_at})

    def get_config(self, config_id: int) -> VerificationConfig | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_configs WHERE id = ?", (config_id,)
            ).fetchone()
        return _row_to_config(row) if row is not None else None

    def list_configs(
        self,
        *,
        app_id: str | None = None,
        status: str | None = None,
    ) -> list[VerificationConfig]:
        """Return configs, newest first."""

        clauses: list[str] = []
        params: list[str] = []
        if app_id is not None:
            clauses.append("app_id = ?")
            params.append(app_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = " AND ".join(clauses) if clauses else "1"
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM verification_configs WHERE {where} "
                "ORDER BY created_at DESC, id DESC",
                params,
            ).fetchall()
        return [_row_to_config(row) for row in rows]

    def append_result(self, result: VerificationResult) -> VerificationResult:
        """Append a result and set the config status to its conclusion, atomically."""

        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO verification_results
                (config_id, verify_date, baseline_count, baseline_total, verify_count,
                 verify_total, baseline_ratio, verify_ratio, count_change, ratio_change,
                 change_percent, conclusion, summary)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.config_id,
                    encode_timestamp(result.verify_date),
                    result.baseline_count,
                    result.baseline_total,
                    result.verify_count,
                    result.verify_total,
                    result.baseline_ratio,
                    result.verify_ratio,
                    result.count_change,
                    result.ratio_change,
                    result.change_percent,
                    result.conclusion,
                    result.summary,
                ),
            )
            conn.execute(
                "UPDATE verification_configs SET status = ? WHERE id = ?",
                (result.conclusion, result.config_id),
            )
            result_id = int(cursor.lastrowid)
        return result.model_copy(update={"id": result_id})

    def list_results(self, config_id: int) -> list[VerificationResult]:
        """Return the result history of a config, newest first."""

        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM verification_results WHERE config_id = ? "
                "ORDER BY verify_date DESC, id DESC",
                (config_id,),
            ).fetchall()
        return [_row_to_result(row) for row in rows]

    def latest_result(self, config_id: int) -> VerificationResult | None:
        history = self.list_results(config_id)
        return history[0] if history else None
