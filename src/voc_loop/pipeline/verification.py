"""Before/after comparison of an issue's frequency around a shipped fix."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from fractions import Fraction

from voc_loop.pipeline.periods import ANALYZED, end_of_day, start_of_day
from voc_loop.pipeline.verification_configs import get_config_or_raise
from voc_loop.schemas import FeedbackRecord, VerificationConfig, VerificationResult
from voc_loop.store.feedback import FeedbackQuery, FeedbackSource
from voc_loop.store.verifications import VerificationStore

logger = logging.getLogger(__name__)

RESOLVED_AT_OR_BELOW = -50.0
IMPROVED_AT_OR_BELOW = -20.0
WORSENED_AT_OR_ABOVE = 20.0

# Policy when the baseline had no occurrences but the verification window does.
ZERO_BASELINE_CHANGE_PERCENT = 100.0

CONCLUSION_LABELS = {
    "resolved": "Resolved",
    "improved": "Improved",
    "no_change": "No significant change",
    "worsened": "Worsened",
}
PENDING_LABEL = "Pending verification"


@dataclass(frozen=True, slots=True)
class WindowStats:
    """Issue occurrences and population size in one window."""

    count: int
    total: int

    @property
    def ratio(self) -> float:
        return self.count / self.total if self.total else 0.0


def classify_change(change_percent: float | Fraction) -> str:
    """Map a percentage change to a conclusion using fixed thresholds.

    Pass the unrounded change; rounding first moves values next to a
    threshold onto it.
    """

    if change_percent <= RESOLVED_AT_OR_BELOW:
        return "resolved"
    if change_percent <= IMPROVED_AT_OR_BELOW:
        return "improved"
    if change_percent < WORSENED_AT_OR_ABOVE:
        return "no_change"
    return "worsened"


def exact_change_percent(baseline: WindowStats, verify: WindowStats) -> Fraction:
    """Relative change of the issue ratio, computed exactly from the counts."""

    baseline_ratio = Fraction(baseline.count, baseline.total) if baseline.total else Fraction(0)
    verify_ratio = Fraction(verify.count, verify.total) if verify.total else Fraction(0)
    if baseline_ratio > 0:
        return (verify_ratio - baseline_ratio) / baseline_ratio * 100
    if verify_ratio == 0:
        return Fraction(0)
    return Fraction(ZERO_BASELINE_CHANGE_PERCENT)


def compute_change_percent(baseline: WindowStats, verify: WindowStats) -> float:
    """Relative change of the issue ratio, rounded to two decimals for storage."""

    return round(float(exact_change_percent(baseline, verify)), 2)


def describe_conclusion(conclusion: str, change_percent: float) -> str:
    label = CONCLUSION_LABELS.get(conclusion, conclusion)
    if conclusion in {"resolved", "improved"}:
        return f"{label} (down {abs(change_percent):.1f}%)"
    if conclusion == "worsened":
        return f"{label} (up {change_percent:.1f}%)"
    return f"{label} ({change_percent:+.1f}%)"


def _matches_keyword(record: FeedbackRecord, keyword: str) -> bool:
    needle = keyword.casefold()
    return any(
        needle in field.casefold()
        for field in (record.text, record.translated_text, record.summary)
        if field
    )


def count_window(
    feedback: FeedbackSource,
    config: VerificationConfig,
    *,
    start: datetime,
    end: datetime,
) -> WindowStats:
    """Count the issue and the analyzed population of the app in [start, end]."""

    population = FeedbackQuery(
        app_id=config.app_id,
        process_status=ANALYZED,
        start=start,
        end=end,
    )
    total = feedback.count(population)
    if total == 0:
        return WindowStats(count=0, total=0)

    if config.issue_type == "category":
        count = feedback.count(replace(population, category=config.issue_value))
    elif config.issue_type == "keyword":
        records = feedback.fetch(population)
        count = sum(1 for record in records if _matches_keyword(record, config.issue_value))
    else:
        captured = config.issue_review_ids or frozenset()
        count = feedback.count(replace(population, ids=frozenset(captured)))
    return WindowStats(count=count, total=total)


def build_result(
    config: VerificationConfig,
    *,
    baseline: WindowStats,
    verify: WindowStats,
    verify_date: datetime,
) -> VerificationResult:
    baseline_ratio = baseline.ratio
    verify_ratio = verify.ratio
    conclusion = classify_change(exact_change_percent(baseline, verify))
    change_percent = compute_change_percent(baseline, verify)
    summary = (
        f"{describe_conclusion(conclusion, change_percent)}. "
        f"Baseline {baseline.count}/{baseline.total} ({baseline_ratio:.2%}) "
        f"vs verification {verify.count}/{verify.total} ({verify_ratio:.2%})."
    )
    return VerificationResult(
        config_id=config.id,
        verify_date=verify_date,
        baseline_count=baseline.count,
        baseline_total=baseline.total,
        verify_count=verify.count,
        verify_total=verify.total,
        baseline_ratio=baseline_ratio,
        verify_ratio=verify_ratio,
        count_change=verify.count - baseline.count,
        ratio_change=verify_ratio - baseline_ratio,
        change_percent=change_percent,
        conclusion=conclusion,
        summary=summary,
    )


def run_verification(
    config_id: int,
    *,
    feedback: FeedbackSource,
    store: VerificationStore,
    now: datetime | None = None,
) -> VerificationResult:
    """Compare baseline and verification windows, append a result, update status.

    An open-ended verification window runs up to ``now``.
    """

    config = get_config_or_raise(store, config_id)
    current = now or datetime.now(UTC)
    verify_end = end_of_day(config.verify_end) if config.verify_end is not None else current

    baseline = count_window(
        feedback,
        config,
        start=start_of_day(config.baseline_start),
        end=end_of_day(config.baseline_end),
    )
    verify = count_window(
        feedback,
        config,
        start=start_of_day(config.verify_start),
        end=verify_end,
    )
    result = store.append_result(
        build_result(config, baseline=baseline, verify=verify, verify_date=current)
    )
    logger.info("Verification config %s: %s", config_id, result.summary)
    return result
