"""Prompts for semantic clustering of feedback."""

from __future__ import annotations

import json

CLUSTERING_SYSTEM_PROMPT = """You are a voice-of-customer analyst.
You receive user feedback items that were already triaged as medium or high risk.
Group items that describe the same underlying problem.

Return strict JSON with exactly this shape:
{
  "clusters": [
    {
      "rank": <integer starting at 1, ordered by number of items descending>,
      "title": "<short, specific problem title, max 20 words>",
      "count": <number of items in the cluster>,
      "percentage": <share of the submitted items, 0-100>,
      "reviewIds": ["<id copied exactly from input>", ...],
      "rootCauseSummary": "<2-3 sentences on the underlying cause>",
      "actionSuggestion": "<concrete, actionable improvement>",
      "sampleQuotes": ["<short user quote>", ...]
    }
  ],
  "uncategorized": <number of items not placed in any cluster>
}

Rules:
- Produce between 5 and 15 clusters when the data allows it.
- Every cluster must contain at least {min_cluster_size} items.
- Items with low similarity to every cluster (below roughly 70%) stay uncategorized.
- Each id may appear in at most one cluster. Never invent ids.
- At most 3 sample quotes per cluster.
"""


def build_clustering_system_prompt(*, min_cluster_size: int) -> str:
    return CLUSTERING_SYSTEM_PROMPT.replace("{min_cluster_size}", str(min_cluster_size))


def build_clustering_user_prompt(
    *,
    items: list[dict],
    scope: str,
    period_label: str,
) -> str:
    """Build user prompt carrying the item batch for one clustering unit."""

    return (
        f"Cluster the following {len(items)} feedback items.\n"
        f"scope: {scope}\n"
        f"period: {period_label}\n"
        "Items:\n"
        f"{json.dumps(items, ensure_ascii=False, indent=2)}\n"
    )
