"""Coverage reconciliation: every eligible id ends up in exactly one group."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from voc_loop.pipeline.clustering import ProposedGroup
from voc_loop.pipeline.periods import Period
from voc_loop.schemas import ReviewGroup

logger = logging.getLogger(__name__)

RESIDUAL_TITLE = "Uncategorized residual issues"
RESIDUAL_ROOT_CAUSE = "Scattered feedback that semantic clustering did not place in any group."
RESIDUAL_ACTION = "Spot-check manually or mark as low priority."


@dataclass(frozen=True, slots=True)
class ReconciledGeneration:
    """Coverage-complete set of groups ready to persist."""

    groups: tuple[ReviewGroup, ...]
    eligible_count: int
    residual_count: int
    stale_id_count: int


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def reconcile_coverage(
    proposed: Sequence[ProposedGroup],
    eligible_ids: Iterable[str],
    *,
    app_id: str,
    scope: str,
    period: Period,
) -> ReconciledGeneration:
    """Turn capability groups into a generation covering exactly ``eligible_ids``.

    Ids that left the eligible set since they were submitted are removed from
    their group, and groups left empty are dropped. Unassigned eligible ids go
    to a residual group ranked after every other group.
    """

    eligible = frozenset(eligible_ids)
    total = len(eligible)
    groups: list[ReviewGroup] = []
    assigned: set[str] = set()
    stale = 0

    for item in sorted(proposed, key=lambda group: group.rank):
        ids = item.review_ids & eligible
        stale += len(item.review_ids) - len(ids)
        if not ids:
            logger.warning("Dropping cluster '%s': none of its ids are still eligible.", item.title)
            continue
        assigned.update(ids)
        groups.append(
            ReviewGroup(
                app_id=app_id,
                scope=scope,
                period_key=period.period_key,
                period_start=period.start,
                period_end=period.end,
                title=item.title,
                rank=item.rank,
                review_count=len(ids),
                percentage=_percentage(len(ids), total),
                review_ids=ids,
                root_cause_summary=item.root_cause_summary,
                action_suggestion=item.action_suggestion,
                sample_quotes=list(item.sample_quotes),
            )
        )

    leftover = eligible - assigned
    if leftover:
        next_rank = max((group.rank for group in groups), default=0) + 1
        groups.append(
            ReviewGroup(
                app_id=app_id,
                scope=scope,
                period_key=period.period_key,
                period_start=period.start,
                period_end=period.end,
                title=RESIDUAL_TITLE,
                rank=next_rank,
                review_count=len(leftover),
                percentage=_percentage(len(leftover), total),
                review_ids=frozenset(leftover),
                root_cause_summary=RESIDUAL_ROOT_CAUSE,
                action_suggestion=RESIDUAL_ACTION,
            )
        )
        logger.info(
            "Residual group holds %d of %d eligible ids (rank %d).",
            len(leftover),
            total,
            next_rank,
        )

    return ReconciledGeneration(
        groups=tuple(groups),
        eligible_count=total,
        residual_count=len(leftover),
        stale_id_count=stale,
    )
