"""Read-only rollups for dashboards."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

from voc_loop.pipeline.periods import month_key
from voc_loop.pipeline.verification import CONCLUSION_LABELS, PENDING_LABEL, describe_conclusion
from voc_loop.store.clusters import UNIT_KEY_SEPARATOR, ClusterStore
from voc_loop.store.verifications import VerificationStore


def build_cluster_summary(
    *,
    cluster_store: ClusterStore,
    app_id: str,
    year: int,
    month: int,
    top_k: int = 5,
) -> dict[str, Any]:
    """Top-K ranked groups per scope for one app and month, with each scope's last run outcome."""

    if top_k <= 0:
        raise ValueError(f"top_k must be positive, got {top_k}.")

    period_key = month_key(year, month)
    groups_by_scope: dict[str, list] = defaultdict(list)
    for group in cluster_store.list_groups(app_id=app_id, period_key=period_key):
        groups_by_scope[group.scope].append(group)

    # Unit keys are "app|scope|period"; neither app ids nor scopes may contain the separator.
    prefix = f"{app_id}{UNIT_KEY_SEPARATOR}"
    suffix = f"{UNIT_KEY_SEPARATOR}{period_key}"
    markers = {
        marker.unit_key[len(prefix) : -len(suffix)]: marker
        for marker in cluster_store.list_markers("clustering", prefix=prefix)
        if marker.unit_key.endswith(suffix)
    }

    by_scope: dict[str, dict[str, Any]] = {}
    for scope in sorted(set(groups_by_scope) | set(markers)):
        groups = groups_by_scope.get(scope, [])
        marker = markers.get(scope)
        by_scope[scope] = {
            "total_groups": len(groups),
            "total_reviews": sum(group.review_count for group in groups),
            "last_run": (
                {
                    "outcome": marker.outcome,
                    "observed_count": marker.observed_count,
                    "detail": marker.detail,
                    "updated_at": marker.updated_at.isoformat(),
                }
                if marker is not None
                else None
            ),
            "groups": [
                {
                    "id": group.id,
                    "rank": group.rank,
                    "title": group.title,
                    "count": group.review_count,
                    "percentage": group.percentage,
                    "root_cause": group.root_cause_summary,
                    "suggestion": group.action_suggestion,
                }
                for group in groups[:top_k]
            ],
        }

    return {
        "app_id": app_id,
        "year": year,
        "month": month,
        "period_key": period_key,
        "by_scope": by_scope,
    }


def build_verification_summary(
    *,
    store: VerificationStore,
    app_id: str,
) -> list[dict[str, Any]]:
    """Latest result per config of an app, newest config first."""

    rows: list[dict[str, Any]] = []
    for config in store.list_configs(app_id=app_id):
        latest = store.latest_result(config.id)
        if latest is None:
            conclusion_label = PENDING_LABEL
            conclusion_text = PENDING_LABEL
        else:
            conclusion_label = CONCLUSION_LABELS[latest.conclusion]
            conclusion_text = describe_conclusion(latest.conclusion, latest.change_percent)
        rows.append(
            {
                "id": config.id,
                "issue_type": config.issue_type,
                "issue_value": config.issue_value,
                "optimization": config.optimization_desc,
                "status": config.status,
                "latest_conclusion": latest.conclusion if latest else None,
                "change_percent": latest.change_percent if latest else None,
                "verify_date": latest.verify_date.isoformat() if latest else None,
                "conclusion_label": conclusion_label,
                "conclusion_text": conclusion_text,
            }
        )
    return rows
