"""Clustering orchestration against an external semantic-clustering capability."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from voc_loop.errors import ExternalCapabilityError
from voc_loop.models import LLMJsonClient, LLMUsage
from voc_loop.prompts import build_clustering_system_prompt, build_clustering_user_prompt
from voc_loop.schemas import FeedbackRecord

logger = logging.getLogger(__name__)


class SemanticClusteringCapability(Protocol):
    """Groups feedback items by meaning.

    Returns ``{"clusters": [...], "uncategorized": int}``. Coverage of the
    submitted items is not guaranteed.
    """

    def cluster(self, items: list[dict], *, scope: str, period_label: str) -> dict:
        """Cluster a bounded batch of reduced feedback items."""


class _ClusterPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    rank: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=200)
    count: int = Field(ge=0)
    percentage: float = Field(ge=0.0, le=100.0)
    reviewIds: list[str | int]
    rootCauseSummary: str
    actionSuggestion: str
    sampleQuotes: list[str] = Field(max_length=3)


class _ClusterResponsePayload(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    clusters: list[_ClusterPayload]
    uncategorized: int = Field(ge=0)


class LLMClusteringCapability:
    """Clustering capability backed by a JSON-returning LLM client."""

    def __init__(self, llm_client: LLMJsonClient, *, min_cluster_size: int = 3) -> None:
        self._llm_client = llm_client
        self._min_cluster_size = min_cluster_size

    @property
    def model(self) -> str:
        return getattr(self._llm_client, "model", "")

    def usage(self) -> LLMUsage:
        """Cumulative usage of the wrapped client; empty when it does not track any."""

        usage_fn = getattr(self._llm_client, "usage", None)
        return usage_fn() if callable(usage_fn) else LLMUsage()

    def cluster(self, items: list[dict], *, scope: str, period_label: str) -> dict:
        return self._llm_client.complete_json(
            system_prompt=build_clustering_system_prompt(min_cluster_size=self._min_cluster_size),
            user_prompt=build_clustering_user_prompt(
                items=items,
                scope=scope,
                period_label=period_label,
            ),
            schema_name="feedback_clusters",
            json_schema=_ClusterResponsePayload.model_json_schema(),
            strict_schema=True,
        )


@dataclass(frozen=True, slots=True)
class ProposedGroup:
    """One validated cluster returned by the capability."""

    rank: int
    title: str
    review_ids: frozenset[str]
    root_cause_summary: str
    action_suggestion: str
    sample_quotes: tuple[str, ...]
    reported_count: int
    reported_percentage: float


@dataclass(frozen=True, slots=True)
class ClusteringOutcome:
    """Validated capability output for one unit."""

    groups: tuple[ProposedGroup, ...]
    uncategorized: int
    submitted_ids: frozenset[str]


def build_cluster_items(records: Sequence[FeedbackRecord], *, snippet_chars: int = 200) -> list[dict]:
    """Reduce records to the fields the capability needs."""

    return [
        {
            "id": record.id,
            "summary": record.summary,
            "rootCause": record.root_cause or record.summary,
            "translatedSnippet": (record.translated_text or record.text)[:snippet_chars],
            "category": record.category,
            "riskLevel": record.risk_level,
        }
        for record in records
    ]


def _validate_assignment(
    parsed: _ClusterResponsePayload,
    submitted_ids: frozenset[str],
) -> tuple[ProposedGroup, ...]:
    """Check ranks are unique and ids are submitted and assigned at most once."""

    seen: set[str] = set()
    ranks: set[int] = set()
    groups: list[ProposedGroup] = []
    for cluster in parsed.clusters:
        if not cluster.title.strip():
            raise ExternalCapabilityError(f"Cluster ranked {cluster.rank} has a blank title.")
        if cluster.rank in ranks:
            raise ExternalCapabilityError(f"Rank {cluster.rank} is used by more than one cluster.")
        ranks.add(cluster.rank)
        ids = [str(item) for item in cluster.reviewIds]
        unknown = sorted(set(ids) - submitted_ids)
        if unknown:
            raise ExternalCapabilityError(
                f"Cluster '{cluster.title}' references ids that were not submitted: "
                f"{unknown[:10]}"
            )
        duplicated: set[str] = set()
        for item in ids:
            if item in seen:
                duplicated.add(item)
            seen.add(item)
        if duplicated:
            raise ExternalCapabilityError(
                f"Cluster '{cluster.title}' repeats ids already assigned: "
                f"{sorted(duplicated)[:10]}"
            )
        groups.append(
            ProposedGroup(
                rank=cluster.rank,
                title=cluster.title.strip(),
                review_ids=frozenset(ids),
                root_cause_summary=cluster.rootCauseSummary.strip(),
                action_suggestion=cluster.actionSuggestion.strip(),
                sample_quotes=tuple(quote.strip() for quote in cluster.sampleQuotes),
                reported_count=cluster.count,
                reported_percentage=cluster.percentage,
            )
        )
    return tuple(groups)


def cluster_feedback(
    records: Sequence[FeedbackRecord],
    *,
    capability: SemanticClusteringCapability,
    scope: str,
    period_label: str,
    max_reviews: int = 300,
    snippet_chars: int = 200,
) -> ClusteringOutcome:
    """Send up to ``max_reviews`` records to the capability and validate its answer.

    Any capability exception, malformed payload, unknown id or id assigned to
    more than one cluster raises ``ExternalCapabilityError``.
    """

    if max_reviews <= 0:
        raise ValueError(f"max_reviews must be positive, got {max_reviews}.")
    batch = list(records[:max_reviews])
    if not batch:
        raise ValueError("cluster_feedback requires at least one record.")

    items = build_cluster_items(batch, snippet_chars=snippet_chars)
    submitted_ids = frozenset(item["id"] for item in items)
    logger.info("Submitting %d items for clustering (%s, %s).", len(items), scope, period_label)

    try:
        payload = capability.cluster(items, scope=scope, period_label=period_label)
    except Exception as exc:
        raise ExternalCapabilityError(f"Clustering capability call failed: {exc}") from exc

    if not isinstance(payload, dict):
        raise ExternalCapabilityError(
            f"Clustering response must be a JSON object, got {type(payload).__name__}."
        )
    try:
        parsed = _ClusterResponsePayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise ExternalCapabilityError(
            f"Clustering response failed schema validation: {exc}"
        ) from exc

    groups = _validate_assignment(parsed, submitted_ids)
    logger.info(
        "Capability returned %d clusters, %d uncategorized.", len(groups), parsed.uncategorized
    )
    return ClusteringOutcome(
        groups=groups,
        uncategorized=parsed.uncategorized,
        submitted_ids=submitted_ids,
    )
