"""Orchestration of clustering and verification units, singly and in batches."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable, Sequence
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from voc_loop.errors import InsufficientDataError, NotFoundError, VocLoopError
from voc_loop.io import unit_lock
from voc_loop.models import LLMUsage
from voc_loop.pipeline.clustering import SemanticClusteringCapability, cluster_feedback
from voc_loop.pipeline.periods import ANALYZED, EligibilityFilter, Period
from voc_loop.pipeline.reconcile import reconcile_coverage
from voc_loop.pipeline.verification import run_verification
from voc_loop.schemas import ReviewGroup, VerificationResult
from voc_loop.store.clusters import ClusterStore, unit_key
from voc_loop.store.feedback import FeedbackQuery, FeedbackSource
from voc_loop.store.verifications import VerificationStore

logger = logging.getLogger(__name__)

_NANOID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


def generate_run_id(size: int = 12) -> str:
    """Generate a nanoid-style run identifier."""

    return "".join(secrets.choice(_NANOID_ALPHABET) for _ in range(size))


@dataclass(frozen=True, slots=True)
class ClusteringRunResult:
    """What one successful clustering unit persisted."""

    app_id: str
    scope: str
    period_key: str
    eligible_count: int
    submitted_count: int
    residual_count: int
    stale_id_count: int
    reported_uncategorized: int
    groups: tuple[ReviewGroup, ...]
    usage: LLMUsage = field(default_factory=LLMUsage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible_count": self.eligible_count,
            "submitted_count": self.submitted_count,
            "group_count": len(self.groups),
            "residual_count": self.residual_count,
            "stale_id_count": self.stale_id_count,
            "reported_uncategorized": self.reported_uncategorized,
            "usage": self.usage.to_dict(),
        }


@dataclass(slots=True)
class UnitOutcome:
    unit: str
    outcome: str
    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"unit": self.unit, "outcome": self.outcome, "detail": self.detail, **self.data}


@dataclass(slots=True)
class BatchResult:
    """Aggregate tally of a batch run with per-unit detail."""

    kind: str
    run_id: str = field(default_factory=generate_run_id)
    units: list[UnitOutcome] = field(default_factory=list)
    usage: LLMUsage = field(default_factory=LLMUsage)

    def _tally(self, outcome: str) -> int:
        return sum(1 for unit in self.units if unit.outcome == outcome)

    @property
    def success(self) -> int:
        return self._tally("success")

    @property
    def skipped(self) -> int:
        return self._tally("insufficient_data")

    @property
    def failed(self) -> int:
        return self._tally("failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "run_id": self.run_id,
            "success": self.success,
            "skipped": self.skipped,
            "failed": self.failed,
            "usage": self.usage.to_dict(),
            "units": [unit.to_dict() for unit in self.units],
        }


def _describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _capability_usage(capability: SemanticClusteringCapability) -> LLMUsage:
    """Read optional cumulative usage from a clustering capability."""

    usage_fn = getattr(capability, "usage", None)
    if not callable(usage_fn):
        return LLMUsage()
    usage = usage_fn()
    return usage if isinstance(usage, LLMUsage) else LLMUsage()


def _record_unsuccessful(
    cluster_store: ClusterStore,
    *,
    kind: str,
    unit: str,
    outcome: str,
    detail: str,
    observed_count: int | None = None,
    usage: LLMUsage | None = None,
    model: str = "",
) -> None:
    """Record a skipped or failed unit while its error is propagating.

    Write errors are logged rather than raised so the caller re-raises the
    unit's own error.
    """

    try:
        if usage is not None and usage.request_count:
            cluster_store.record_usage(operation=kind, unit=unit, model=model, usage=usage)
        cluster_store.record_marker(
            kind=kind,
            unit=unit,
            outcome=outcome,
            observed_count=observed_count,
            detail=detail,
        )
    except VocLoopError as exc:
        logger.error("Could not record %s outcome for %s: %s", kind, unit, _describe_error(exc))


def _eligible_records(feedback: FeedbackSource, eligibility: EligibilityFilter, **kwargs):
    return [
        record
        for record in feedback.fetch(eligibility.to_query(), **kwargs)
        if eligibility.matches(record)
    ]


def _cluster_unit(
    *,
    app_id: str,
    scope: str,
    period: Period,
    feedback: FeedbackSource,
    cluster_store: ClusterStore,
    capability: SemanticClusteringCapability,
    min_cluster_size: int,
    max_reviews: int,
    snippet_chars: int,
) -> ClusteringRunResult:
    key = unit_key(app_id, scope, period.period_key)
    eligibility = EligibilityFilter.for_unit(app_id, scope, period)

    eligible_count = feedback.count(eligibility.to_query())
    if eligible_count < min_cluster_size:
        raise InsufficientDataError(eligible_count, min_cluster_size, unit=key)

    batch = _eligible_records(feedback, eligibility, limit=max_reviews, newest_first=True)
    if len(batch) < min_cluster_size:
        raise InsufficientDataError(len(batch), min_cluster_size, unit=key)

    outcome = cluster_feedback(
        batch,
        capability=capability,
        scope=scope,
        period_label=period.label(),
        max_reviews=max_reviews,
        snippet_chars=snippet_chars,
    )

    # Coverage is checked against the whole eligible set as it is now, not the submitted batch.
    eligible_ids = {record.id for record in _eligible_records(feedback, eligibility)}
    generation = reconcile_coverage(
        outcome.groups,
        eligible_ids,
        app_id=app_id,
        scope=scope,
        period=period,
    )
    cluster_store.replace_period_clusters(app_id, scope, period.period_key, generation.groups)

    return ClusteringRunResult(
        app_id=app_id,
        scope=scope,
        period_key=period.period_key,
        eligible_count=generation.eligible_count,
        submitted_count=len(outcome.submitted_ids),
        residual_count=generation.residual_count,
        stale_id_count=generation.stale_id_count,
        reported_uncategorized=outcome.uncategorized,
        groups=generation.groups,
    )


def run_clustering_unit(
    *,
    app_id: str,
    scope: str,
    period: Period,
    feedback: FeedbackSource,
    cluster_store: ClusterStore,
    capability: SemanticClusteringCapability,
    min_cluster_size: int = 3,
    max_reviews: int = 300,
    snippet_chars: int = 200,
    lock_dir: str | Path | None = None,
) -> ClusteringRunResult:
    """Cluster one (app, scope, period) unit and replace its stored generation.

    Raises ``InsufficientDataError`` when fewer than ``min_cluster_size``
    eligible records exist; the previous generation is left untouched. Any
    other failure also leaves the previous generation in place. Every attempt
    records a run marker so "never run", "too little data" and "failed" stay
    distinguishable, and LLM usage spent on the unit is appended to the usage
    ledger whether or not it succeeded.
    """

    key = unit_key(app_id, scope, period.period_key)
    model = getattr(capability, "model", "")
    guard = unit_lock(lock_dir, key) if lock_dir is not None else nullcontext()
    with guard:
        usage_before = _capability_usage(capability)
        try:
            result = _cluster_unit(
                app_id=app_id,
                scope=scope,
                period=period,
                feedback=feedback,
                cluster_store=cluster_store,
                capability=capability,
                min_cluster_size=min_cluster_size,
                max_reviews=max_reviews,
                snippet_chars=snippet_chars,
            )
        except InsufficientDataError as exc:
            _record_unsuccessful(
                cluster_store,
                kind="clustering",
                unit=key,
                outcome="insufficient_data",
                observed_count=exc.count,
                detail=str(exc),
            )
            raise
        except Exception as exc:
            _record_unsuccessful(
                cluster_store,
                kind="clustering",
                unit=key,
                outcome="failed",
                detail=_describe_error(exc),
                usage=_capability_usage(capability) - usage_before,
                model=model,
            )
            raise

        result = replace(result, usage=_capability_usage(capability) - usage_before)
        cluster_store.record_marker(
            kind="clustering",
            unit=key,
            outcome="success",
            observed_count=result.eligible_count,
            detail=f"{len(result.groups)} groups, {result.residual_count} residual",
        )
        if result.usage.request_count:
            cluster_store.record_usage(
                operation="clustering", unit=key, model=model, usage=result.usage
            )
    logger.info(
        "Clustered %s: %d eligible, %d groups, %d tokens.",
        key,
        result.eligible_count,
        len(result.groups),
        result.usage.total_tokens,
    )
    return result


def run_all_clustering(
    *,
    period: Period,
    feedback: FeedbackSource,
    cluster_store: ClusterStore,
    capability: SemanticClusteringCapability,
    scopes: Sequence[str],
    app_ids: Iterable[str] | None = None,
    min_cluster_size: int = 3,
    max_reviews: int = 300,
    snippet_chars: int = 200,
    lock_dir: str | Path | None = None,
) -> BatchResult:
    """Cluster every app and scope for one period, isolating failures per unit.

    Without ``app_ids``, every app with analyzed feedback in the period is
    processed. The batch itself raises only when its units cannot be
    enumerated.
    """

    if app_ids is None:
        app_ids = feedback.list_app_ids(
            FeedbackQuery(process_status=ANALYZED, start=period.start, end=period.end)
        )
    units = [
        (app_id, scope, unit_key(app_id, scope, period.period_key))
        for app_id in app_ids
        for scope in scopes
    ]

    batch = BatchResult(kind="clustering")
    usage_before = _capability_usage(capability)
    for app_id, scope, key in units:
        try:
            result = run_clustering_unit(
                app_id=app_id,
                scope=scope,
                period=period,
                feedback=feedback,
                cluster_store=cluster_store,
                capability=capability,
                min_cluster_size=min_cluster_size,
                max_reviews=max_reviews,
                snippet_chars=snippet_chars,
                lock_dir=lock_dir,
            )
        except InsufficientDataError as exc:
            logger.info("Skipping %s: %s", key, exc)
            batch.units.append(
                UnitOutcome(
                    unit=key,
                    outcome="insufficient_data",
                    detail=str(exc),
                    data={"observed_count": exc.count},
                )
            )
        except Exception as exc:
            logger.error("Clustering %s failed: %s", key, _describe_error(exc))
            batch.units.append(UnitOutcome(unit=key, outcome="failed", detail=_describe_error(exc)))
        else:
            batch.units.append(UnitOutcome(unit=key, outcome="success", data=result.to_dict()))
    batch.usage = _capability_usage(capability) - usage_before

    logger.info(
        "Clustering batch %s finished: %d success, %d skipped, %d failed, %d tokens.",
        batch.run_id,
        batch.success,
        batch.skipped,
        batch.failed,
        batch.usage.total_tokens,
    )
    return batch


def verification_unit_key(config_id: int) -> str:
    return f"config:{config_id}"


def run_verification_unit(
    config_id: int,
    *,
    feedback: FeedbackSource,
    store: VerificationStore,
    cluster_store: ClusterStore,
    now: datetime | None = None,
) -> VerificationResult:
    """Run one config and record its verification marker.

    A config that does not exist raises ``NotFoundError`` and leaves no marker.
    """

    key = verification_unit_key(config_id)
    try:
        result = run_verification(config_id, feedback=feedback, store=store, now=now)
    except NotFoundError:
        raise
    except Exception as exc:
        _record_unsuccessful(
            cluster_store,
            kind="verification",
            unit=key,
            outcome="failed",
            detail=_describe_error(exc),
        )
        raise

    cluster_store.record_marker(
        kind="verification",
        unit=key,
        outcome="success",
        observed_count=result.verify_total,
        detail=result.conclusion,
    )
    return result


def run_all_verifications(
    *,
    feedback: FeedbackSource,
    store: VerificationStore,
    cluster_store: ClusterStore,
    app_id: str | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """Run every config (optionally of one app), isolating failures per config."""

    current = now or datetime.now(UTC)
    batch = BatchResult(kind="verification")
    for config in store.list_configs(app_id=app_id):
        key = verification_unit_key(config.id)
        try:
            result = run_verification_unit(
                config.id,
                feedback=feedback,
                store=store,
                cluster_store=cluster_store,
                now=current,
            )
        except Exception as exc:
            logger.error("Verification %s failed: %s", key, _describe_error(exc))
            batch.units.append(UnitOutcome(unit=key, outcome="failed", detail=_describe_error(exc)))
            continue

        batch.units.append(
            UnitOutcome(
                unit=key,
                outcome="success",
                detail=result.summary,
                data={"conclusion": result.conclusion, "change_percent": result.change_percent},
            )
        )

    logger.info(
        "Verification batch %s finished: %d success, %d failed.",
        batch.run_id,
        batch.success,
        batch.failed,
    )
    return batch
