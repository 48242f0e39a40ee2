"""Tests for clustering orchestration against the capability."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from voc_loop.errors import ExternalCapabilityError
from voc_loop.pipeline.clustering import (
    LLMClusteringCapability,
    build_cluster_items,
    cluster_feedback,
)
from voc_loop.schemas import FeedbackRecord


def _feedback(feedback_id: str, **overrides) -> FeedbackRecord:
    payload = {
        "id": feedback_id,
        "app_id": "app-1",
        "category": "Tech_Bug",
        "risk_level": "High",
        "process_status": "analyzed",
        "timestamp": datetime(2025, 10, 8, 12, tzinfo=UTC),
        "summary": f"summary {feedback_id}",
        "root_cause": f"cause {feedback_id}",
        "text": f"text {feedback_id}",
    }
    payload.update(overrides)
    return FeedbackRecord(**payload)


def _cluster(rank: int, ids: list, *, title: str = "Login crash") -> dict:
    return {
        "rank": rank,
        "title": title,
        "count": len(ids),
        "percentage": 10.0,
        "reviewIds": ids,
        "rootCauseSummary": "Token refresh fails.",
        "actionSuggestion": "Fix token refresh.",
        "sampleQuotes": ["It crashes on login"],
    }


class _FakeCapability:
    def __init__(self, payload) -> None:
        self.payload = payload
        self.calls: list[list[dict]] = []

    def cluster(self, items: list[dict], *, scope: str, period_label: str):
        self.calls.append(items)
        return self.payload


class _FailingCapability:
    def cluster(self, items: list[dict], *, scope: str, period_label: str):
        raise TimeoutError("capability timed out")


class _FakeLLMClient:
    def __init__(self) -> None:
        self.kwargs: dict = {}

    def complete_json(self, *, system_prompt: str, user_prompt: str, **kwargs) -> dict:
        self.kwargs = {"system_prompt": system_prompt, "user_prompt": user_prompt, **kwargs}
        return {"clusters": [], "uncategorized": 0}


def _run(records, capability, **kwargs):
    return cluster_feedback(
        records,
        capability=capability,
        scope="Tech_Bug",
        period_label="2025-10-06 ~ 2025-10-12",
        **kwargs,
    )


def test_cluster_feedback_returns_validated_groups():
    records = [_feedback(str(index)) for index in range(1, 7)]
    capability = _FakeCapability(
        {
            "clusters": [_cluster(1, ["1", "2", "3"]), _cluster(2, [4, 5], title="Slow sync")],
            "uncategorized": 1,
        }
    )

    outcome = _run(records, capability)

    assert [group.rank for group in outcome.groups] == [1, 2]
    assert outcome.groups[0].review_ids == frozenset({"1", "2", "3"})
    assert outcome.groups[1].review_ids == frozenset({"4", "5"})
    assert outcome.uncategorized == 1
    assert outcome.submitted_ids == frozenset(str(index) for index in range(1, 7))


def test_cluster_feedback_submits_at_most_max_reviews():
    records = [_feedback(str(index)) for index in range(1, 11)]
    capability = _FakeCapability({"clusters": [], "uncategorized": 4})

    outcome = _run(records, capability, max_reviews=4)

    assert len(capability.calls[0]) == 4
    assert outcome.submitted_ids == frozenset({"1", "2", "3", "4"})


def test_unknown_ids_are_rejected():
    capability = _FakeCapability({"clusters": [_cluster(1, ["1", "99"])], "uncategorized": 0})
    with pytest.raises(ExternalCapabilityError, match="not submitted"):
        _run([_feedback("1"), _feedback("2")], capability)


def test_ids_in_two_clusters_are_rejected():
    capability = _FakeCapability(
        {"clusters": [_cluster(1, ["1", "2"]), _cluster(2, ["2", "3"])], "uncategorized": 0}
    )
    with pytest.raises(ExternalCapabilityError, match="repeats"):
        _run([_feedback(str(index)) for index in range(1, 4)], capability)


def test_repeated_id_within_one_cluster_is_rejected():
    capability = _FakeCapability({"clusters": [_cluster(1, ["1", "1"])], "uncategorized": 0})
    with pytest.raises(ExternalCapabilityError):
        _run([_feedback("1"), _feedback("2")], capability)


def test_duplicate_ranks_are_rejected():
    capability = _FakeCapability(
        {"clusters": [_cluster(1, ["1"]), _cluster(1, ["2"], title="Slow sync")], "uncategorized": 0}
    )
    with pytest.raises(ExternalCapabilityError, match="Rank 1"):
        _run([_feedback("1"), _feedback("2")], capability)


def test_capability_exception_is_wrapped():
    with pytest.raises(ExternalCapabilityError, match="timed out"):
        _run([_feedback("1")], _FailingCapability())


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"clusters": [{"rank": 1, "title": "Missing fields"}], "uncategorized": 0},
        {"clusters": [], "uncategorized": 0, "extra": True},
        {"clusters": [], "uncategorized": -1},
        {"clusters": [_cluster(1, ["1"], title="   ")], "uncategorized": 0},
        {
            "clusters": [_cluster(1, ["1"]) | {"sampleQuotes": ["a", "b", "c", "d"]}],
            "uncategorized": 0,
        },
    ],
)
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(ExternalCapabilityError):
        _run([_feedback("1")], _FakeCapability(payload))


def test_empty_batch_is_rejected():
    with pytest.raises(ValueError):
        _run([], _FakeCapability({"clusters": [], "uncategorized": 0}))


def test_build_cluster_items_reduces_records():
    records = [
        _feedback("1", translated_text="x" * 300),
        _feedback("2", root_cause="", translated_text="", text="original"),
    ]

    items = build_cluster_items(records, snippet_chars=50)

    assert items[0]["translatedSnippet"] == "x" * 50
    assert items[0]["rootCause"] == "cause 1"
    assert items[1]["rootCause"] == "summary 2"
    assert items[1]["translatedSnippet"] == "original"
    assert set(items[0]) == {"id", "summary", "rootCause", "translatedSnippet", "category", "riskLevel"}


def test_llm_capability_requests_structured_output():
    client = _FakeLLMClient()
    capability = LLMClusteringCapability(client, min_cluster_size=4)

    result = capability.cluster([{"id": "1"}], scope="all", period_label="2025-10")

    assert result == {"clusters": [], "uncategorized": 0}
    assert client.kwargs["schema_name"] == "feedback_clusters"
    assert client.kwargs["json_schema"]["additionalProperties"] is False
    assert "at least 4 items" in client.kwargs["system_prompt"]
    assert '"id": "1"' in client.kwargs["user_prompt"]
