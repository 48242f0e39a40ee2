"""Creation and validation of verification configs."""

from __future__ import annotations

import logging
from datetime import date, timedelta

from pydantic import ValidationError as PydanticValidationError

from voc_loop.errors import NotFoundError, ValidationError
from voc_loop.schemas import ISSUE_TYPES, VerificationConfig, VerificationResult
from voc_loop.store.clusters import ClusterStore
from voc_loop.store.verifications import VerificationStore

logger = logging.getLogger(__name__)

QUICK_BASELINE_DAYS = 14


def quick_windows(go_live: date) -> tuple[date, date, date]:
    """Return (baseline_start, baseline_end, verify_start) around a go-live date."""

    return go_live - timedelta(days=QUICK_BASELINE_DAYS), go_live - timedelta(days=1), go_live


def _snapshot_cluster_ids(
    cluster_store: ClusterStore | None,
    *,
    app_id: str,
    issue_value: str,
) -> frozenset[str]:
    if cluster_store is None:
        raise ValidationError("Cluster-based configs require a cluster store.")
    try:
        group_id = int(issue_value)
    except ValueError as exc:
        raise ValidationError(f"Cluster issue_value must be a group id, got {issue_value!r}.") from exc

    group = cluster_store.get_group(group_id)
    if group is None:
        raise ValidationError(f"Review group {group_id} does not exist.")
    if group.app_id != app_id:
        raise ValidationError(f"Review group {group_id} belongs to app '{group.app_id}', not '{app_id}'.")
    return group.review_ids


def validate_config(config: VerificationConfig) -> None:
    """Reject configs whose windows or issue descriptor are inconsistent."""

    if config.baseline_start > config.baseline_end:
        raise ValidationError(
            f"baseline_start {config.baseline_start} is after baseline_end {config.baseline_end}."
        )
    if config.baseline_end >= config.verify_start:
        raise ValidationError(
            f"baseline_end {config.baseline_end} must be before verify_start {config.verify_start}."
        )
    if config.verify_end is not None and config.verify_end < config.verify_start:
        raise ValidationError(
            f"verify_end {config.verify_end} is before verify_start {config.verify_start}."
        )
    if config.expected_reduction is not None and config.expected_reduction < 0:
        raise ValidationError("expected_reduction must be >= 0.")


def create_verification_config(
    *,
    store: VerificationStore,
    cluster_store: ClusterStore | None = None,
    app_id: str,
    issue_type: str,
    issue_value: str,
    baseline_start: date,
    baseline_end: date,
    verify_start: date,
    verify_end: date | None = None,
    optimization_desc: str = "",
    expected_reduction: float | None = None,
    created_by: str | None = None,
) -> VerificationConfig:
    """Validate and persist a config with explicit windows.

    Nothing is written when validation fails. Cluster configs capture the
    referenced group's review ids at creation time.
    """

    if issue_type not in ISSUE_TYPES:
        raise ValidationError(
            f"issue_type must be one of {sorted(ISSUE_TYPES)}, got {issue_type!r}."
        )
    value = str(issue_value).strip()
    if not value:
        raise ValidationError("issue_value must not be empty.")
    if not app_id.strip():
        raise ValidationError("app_id must not be empty.")

    try:
        config = VerificationConfig(
            app_id=app_id.strip(),
            issue_type=issue_type,
            issue_value=value,
            baseline_start=baseline_start,
            baseline_end=baseline_end,
            verify_start=verify_start,
            verify_end=verify_end,
            optimization_desc=optimization_desc,
            expected_reduction=expected_reduction,
            created_by=created_by,
        )
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid verification config: {exc}") from exc

    validate_config(config)
    if config.issue_type == "cluster":
        snapshot = _snapshot_cluster_ids(cluster_store, app_id=config.app_id, issue_value=value)
        config = config.model_copy(update={"issue_review_ids": snapshot})

    saved = store.insert_config(config)
    logger.info(
        "Created verification config %s (%s=%s) for %s.",
        saved.id,
        saved.issue_type,
        saved.issue_value,
        saved.app_id,
    )
    return saved


def quick_create_verification_config(
    *,
    store: VerificationStore,
    cluster_store: ClusterStore | None = None,
    app_id: str,
    issue_type: str,
    issue_value: str,
    go_live_date: date,
    optimization_desc: str = "",
    expected_reduction: float | None = None,
    created_by: str | None = None,
) -> VerificationConfig:
    """Create an open-ended config: two-week baseline before go-live, monitoring from go-live."""

    baseline_start, baseline_end, verify_start = quick_windows(go_live_date)
    return create_verification_config(
        store=store,
        cluster_store=cluster_store,
        app_id=app_id,
        issue_type=issue_type,
        issue_value=issue_value,
        baseline_start=baseline_start,
        baseline_end=baseline_end,
        verify_start=verify_start,
        verify_end=None,
        optimization_desc=optimization_desc,
        expected_reduction=expected_reduction,
        created_by=created_by,
    )


def get_config_or_raise(store: VerificationStore, config_id: int) -> VerificationConfig:
    config = store.get_config(config_id)
    if config is None:
        raise NotFoundError(f"Verification config {config_id} does not exist.")
    return config


def get_verification_history(store: VerificationStore, config_id: int) -> list[VerificationResult]:
    """Return all results of a config, newest first."""

    get_config_or_raise(store, config_id)
    return store.list_results(config_id)
