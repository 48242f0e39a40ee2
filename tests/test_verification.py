"""Tests for before/after verification."""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path

import pytest

from voc_loop.errors import NotFoundError
from voc_loop.pipeline.verification import (
    WindowStats,
    build_result,
    classify_change,
    compute_change_percent,
    describe_conclusion,
    exact_change_percent,
    run_verification,
)
from voc_loop.pipeline.verification_configs import create_verification_config
from voc_loop.schemas import FeedbackRecord
from voc_loop.store import Database, FeedbackStore, VerificationStore


@pytest.fixture
def stores(tmp_path: Path) -> tuple[FeedbackStore, VerificationStore]:
    database = Database(tmp_path / "voc.sqlite3")
    return FeedbackStore(database), VerificationStore(database)


def _records(prefix: str, day: date, *, total: int, matching: int, **matching_fields) -> list:
    records = []
    for index in range(total):
        fields = {"category": "Other", "text": "works fine"}
        if index < matching:
            fields.update(matching_fields)
        records.append(
            FeedbackRecord(
                id=f"{prefix}-{index}",
                app_id="app-1",
                risk_level="Low",
                status="closed",
                process_status="analyzed",
                timestamp=datetime(day.year, day.month, day.day, 10, tzinfo=UTC),
                **fields,
            )
        )
    return records


def _config(store, **overrides):
    kwargs = {
        "store": store,
        "app_id": "app-1",
        "issue_type": "category",
        "issue_value": "Payment",
        "baseline_start": date(2025, 10, 1),
        "baseline_end": date(2025, 10, 14),
        "verify_start": date(2025, 10, 15),
        "verify_end": date(2025, 10, 28),
    }
    kwargs.update(overrides)
    return create_verification_config(**kwargs)


class TestClassification:
    @pytest.mark.parametrize(
        ("change", "expected"),
        [
            (-100.0, "resolved"),
            (-50.01, "resolved"),
            (-50.0, "resolved"),
            (-49.99, "improved"),
            (-20.0, "improved"),
            (-19.99, "no_change"),
            (0.0, "no_change"),
            (19.99, "no_change"),
            (20.0, "worsened"),
            (250.0, "worsened"),
        ],
    )
    def test_thresholds(self, change, expected):
        assert classify_change(change) == expected

    def test_change_percent_is_rounded(self):
        assert compute_change_percent(WindowStats(10, 100), WindowStats(4, 100)) == -60.0
        assert compute_change_percent(WindowStats(3, 10), WindowStats(1, 10)) == -66.67

    def test_zero_baseline_policies(self):
        assert compute_change_percent(WindowStats(0, 0), WindowStats(0, 0)) == 0.0
        assert compute_change_percent(WindowStats(0, 100), WindowStats(5, 100)) == 100.0

    def test_exact_change_has_no_float_noise(self):
        change = exact_change_percent(WindowStats(10, 100), WindowStats(8, 100))
        assert change == -20
        assert classify_change(change) == "improved"

    @pytest.mark.parametrize(
        ("baseline_count", "verify_count", "stored", "expected"),
        [
            (25000, 20001, -20.0, "no_change"),
            (25000, 20000, -20.0, "improved"),
            (25000, 29999, 20.0, "no_change"),
            (25000, 30000, 20.0, "worsened"),
            (25000, 12501, -50.0, "improved"),
            (25000, 12500, -50.0, "resolved"),
        ],
    )
    def test_conclusion_uses_unrounded_change(self, baseline_count, verify_count, stored, expected):
        result = build_result(
            _StubConfig(),
            baseline=WindowStats(baseline_count, 100000),
            verify=WindowStats(verify_count, 100000),
            verify_date=datetime(2025, 10, 20, tzinfo=UTC),
        )
        assert result.change_percent == stored
        assert result.conclusion == expected

    def test_window_ratio_with_empty_population(self):
        assert WindowStats(count=0, total=0).ratio == 0.0

    def test_empty_windows_conclude_no_change(self):
        result = build_result(
            _StubConfig(),
            baseline=WindowStats(0, 0),
            verify=WindowStats(0, 0),
            verify_date=datetime(2025, 10, 20, tzinfo=UTC),
        )
        assert result.change_percent == 0.0
        assert result.conclusion == "no_change"

    def test_worked_example_is_resolved(self):
        result = build_result(
            _StubConfig(),
            baseline=WindowStats(50, 500),
            verify=WindowStats(20, 500),
            verify_date=datetime(2025, 10, 20, tzinfo=UTC),
        )
        assert result.change_percent == -60.0
        assert result.conclusion == "resolved"
        assert result.count_change == -30
        assert result.summary.startswith("Resolved (down 60.0%).")

    def test_describe_conclusion(self):
        assert describe_conclusion("resolved", -60.0) == "Resolved (down 60.0%)"
        assert describe_conclusion("worsened", 25.0) == "Worsened (up 25.0%)"
        assert describe_conclusion("no_change", 5.0) == "No significant change (+5.0%)"


class _StubConfig:
    id = 1


def test_category_issue_resolved(stores):
    feedback, store = stores
    feedback.upsert_many(
        _records("b", date(2025, 10, 5), total=100, matching=10, category="Payment")
        + _records("v", date(2025, 10, 20), total=100, matching=4, category="Payment")
    )
    config = _config(store)

    result = run_verification(config.id, feedback=feedback, store=store)

    assert (result.baseline_count, result.baseline_total) == (10, 100)
    assert (result.verify_count, result.verify_total) == (4, 100)
    assert result.baseline_ratio == pytest.approx(0.1)
    assert result.verify_ratio == pytest.approx(0.04)
    assert result.count_change == -6
    assert result.change_percent == -60.0
    assert result.conclusion == "resolved"
    assert store.get_config(config.id).status == "resolved"


def test_population_is_analyzed_feedback_of_the_app_only(stores):
    feedback, store = stores
    baseline = _records("b", date(2025, 10, 5), total=10, matching=2, category="Payment")
    verify = _records("v", date(2025, 10, 20), total=10, matching=2, category="Payment")
    noise = [
        record.model_copy(update={"id": f"n-{index}", "process_status": "pending"})
        for index, record in enumerate(baseline)
    ] + [
        record.model_copy(update={"id": f"o-{index}", "app_id": "app-2"})
        for index, record in enumerate(verify)
    ]
    feedback.upsert_many(baseline + verify + noise)

    result = run_verification(_config(store).id, feedback=feedback, store=store)

    assert result.baseline_total == 10
    assert result.verify_total == 10
    assert result.conclusion == "no_change"


def test_keyword_matches_case_insensitively_across_text_fields(stores):
    feedback, store = stores
    baseline = _records("b", date(2025, 10, 5), total=10, matching=0)
    baseline[0] = baseline[0].model_copy(update={"text": "App CRASHES on start"})
    baseline[1] = baseline[1].model_copy(update={"translated_text": "crash after update"})
    baseline[2] = baseline[2].model_copy(update={"summary": "Crash in checkout"})
    baseline[3] = baseline[3].model_copy(update={"root_cause": "crash"})
    verify = _records("v", date(2025, 10, 20), total=10, matching=0)
    verify[0] = verify[0].model_copy(update={"text": "still crashing"})
    feedback.upsert_many(baseline + verify)

    config = _config(store, issue_type="keyword", issue_value="Crash")
    result = run_verification(config.id, feedback=feedback, store=store)

    assert result.baseline_count == 3
    assert result.verify_count == 1
    assert result.change_percent == pytest.approx(-66.67)
    assert result.conclusion == "resolved"


def test_cluster_issue_counts_captured_ids(stores):
    feedback, store = stores
    baseline = _records("b", date(2025, 10, 5), total=10, matching=0)
    verify = _records("v", date(2025, 10, 20), total=10, matching=0)
    feedback.upsert_many(baseline + verify)
    config = store.insert_config(
        _config(store).model_copy(
            update={
                "id": None,
                "issue_type": "cluster",
                "issue_value": "7",
                "issue_review_ids": frozenset({"b-0", "b-1", "v-0", "v-1", "v-2"}),
            }
        )
    )

    result = run_verification(config.id, feedback=feedback, store=store)

    assert result.baseline_count == 2
    assert result.verify_count == 3
    assert result.change_percent == 50.0
    assert result.conclusion == "worsened"


def test_zero_baseline_with_occurrences_is_worsened(stores):
    feedback, store = stores
    feedback.upsert_many(
        _records("b", date(2025, 10, 5), total=10, matching=0)
        + _records("v", date(2025, 10, 20), total=10, matching=1, category="Payment")
    )
    result = run_verification(_config(store).id, feedback=feedback, store=store)
    assert result.change_percent == 100.0
    assert result.conclusion == "worsened"


def test_empty_windows_are_recorded_as_no_change(stores):
    feedback, store = stores
    config = _config(store)
    result = run_verification(config.id, feedback=feedback, store=store)
    assert (result.baseline_total, result.verify_total) == (0, 0)
    assert result.conclusion == "no_change"
    assert store.get_config(config.id).status == "no_change"


def test_open_ended_window_runs_until_now(stores):
    feedback, store = stores
    feedback.upsert_many(
        _records("b", date(2025, 10, 5), total=10, matching=5, category="Payment")
        + _records("v", date(2025, 10, 20), total=10, matching=5, category="Payment")
        + _records("late", date(2025, 11, 20), total=10, matching=0)
    )
    config = _config(store, verify_end=None)

    result = run_verification(
        config.id,
        feedback=feedback,
        store=store,
        now=datetime(2025, 10, 25, tzinfo=UTC),
    )

    assert result.verify_total == 10
    assert result.verify_date == datetime(2025, 10, 25, tzinfo=UTC)


def test_runs_append_history_and_status_follows_latest(stores):
    feedback, store = stores
    feedback.upsert_many(
        _records("b", date(2025, 10, 5), total=10, matching=5, category="Payment")
        + _records("v", date(2025, 10, 20), total=10, matching=1, category="Payment")
    )
    config = _config(store, verify_end=None)

    first = run_verification(
        config.id, feedback=feedback, store=store, now=datetime(2025, 10, 21, tzinfo=UTC)
    )
    feedback.upsert_many(
        _records("w", date(2025, 10, 22), total=30, matching=30, category="Payment")
    )
    second = run_verification(
        config.id, feedback=feedback, store=store, now=datetime(2025, 10, 23, tzinfo=UTC)
    )

    assert first.conclusion == "resolved"
    assert second.conclusion == "worsened"
    history = store.list_results(config.id)
    assert [item.id for item in history] == [second.id, first.id]
    assert store.get_config(config.id).status == "worsened"


def test_missing_config_raises_not_found(stores):
    feedback, store = stores
    with pytest.raises(NotFoundError):
        run_verification(99, feedback=feedback, store=store)
