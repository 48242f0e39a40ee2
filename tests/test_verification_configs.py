"""Tests for verification config creation and validation."""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path

import pytest

from voc_loop.errors import NotFoundError, ValidationError
from voc_loop.pipeline.verification_configs import (
    create_verification_config,
    get_verification_history,
    quick_create_verification_config,
    quick_windows,
)
from voc_loop.schemas import ReviewGroup
from voc_loop.store import ClusterStore, Database, VerificationStore


@pytest.fixture
def stores(tmp_path: Path) -> tuple[VerificationStore, ClusterStore]:
    database = Database(tmp_path / "voc.sqlite3")
    return VerificationStore(database), ClusterStore(database)


def _create(store, **overrides):
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


def test_quick_windows_use_two_week_baseline():
    assert quick_windows(date(2025, 10, 15)) == (
        date(2025, 10, 1),
        date(2025, 10, 14),
        date(2025, 10, 15),
    )


def test_quick_create_is_open_ended_and_monitoring(stores):
    store, _ = stores
    config = quick_create_verification_config(
        store=store,
        app_id="app-1",
        issue_type="keyword",
        issue_value="crash",
        go_live_date=date(2025, 10, 15),
        optimization_desc="Patched login flow",
    )

    saved = store.get_config(config.id)
    assert saved.baseline_start == date(2025, 10, 1)
    assert saved.baseline_end == date(2025, 10, 14)
    assert saved.verify_start == date(2025, 10, 15)
    assert saved.verify_end is None
    assert saved.status == "monitoring"
    assert saved.optimization_desc == "Patched login flow"


def test_create_strips_issue_value(stores):
    store, _ = stores
    config = _create(store, issue_value="  Payment  ")
    assert config.issue_value == "Payment"


@pytest.mark.parametrize(
    "overrides",
    [
        {"baseline_start": date(2025, 10, 15), "baseline_end": date(2025, 10, 14)},
        {"baseline_end": date(2025, 10, 15)},
        {"baseline_end": date(2025, 10, 20)},
        {"verify_end": date(2025, 10, 10)},
        {"issue_type": "sentiment"},
        {"issue_value": "   "},
        {"app_id": " "},
        {"expected_reduction": -5.0},
    ],
)
def test_invalid_configs_are_rejected_without_writes(stores, overrides):
    store, _ = stores
    with pytest.raises(ValidationError):
        _create(store, **overrides)
    assert store.list_configs() == []


def _store_group(cluster_store: ClusterStore, *, app_id: str = "app-1") -> ReviewGroup:
    cluster_store.replace_period_clusters(
        app_id,
        "all",
        "2025-10",
        [
            ReviewGroup(
                app_id=app_id,
                scope="all",
                period_key="2025-10",
                period_start=datetime(2025, 10, 1, tzinfo=UTC),
                period_end=datetime(2025, 10, 31, tzinfo=UTC),
                title="Payment timeouts",
                rank=1,
                review_count=3,
                percentage=30.0,
                review_ids=frozenset({"r1", "r2", "r3"}),
            )
        ],
    )
    return cluster_store.list_groups(app_id=app_id)[0]


def test_cluster_config_captures_review_ids(stores):
    store, cluster_store = stores
    group = _store_group(cluster_store)

    config = _create(store, cluster_store=cluster_store, issue_type="cluster", issue_value=str(group.id))

    assert store.get_config(config.id).issue_review_ids == frozenset({"r1", "r2", "r3"})

    # Later regenerations do not change what the config tracks.
    cluster_store.replace_period_clusters("app-1", "all", "2025-10", [])
    assert store.get_config(config.id).issue_review_ids == frozenset({"r1", "r2", "r3"})


@pytest.mark.parametrize("issue_value", ["not-a-number", "999"])
def test_cluster_config_requires_existing_group(stores, issue_value):
    store, cluster_store = stores
    with pytest.raises(ValidationError):
        _create(store, cluster_store=cluster_store, issue_type="cluster", issue_value=issue_value)
    assert store.list_configs() == []


def test_cluster_config_rejects_group_of_other_app(stores):
    store, cluster_store = stores
    group = _store_group(cluster_store, app_id="app-2")
    with pytest.raises(ValidationError, match="belongs to app"):
        _create(store, cluster_store=cluster_store, issue_type="cluster", issue_value=str(group.id))


def test_cluster_config_requires_cluster_store(stores):
    store, _ = stores
    with pytest.raises(ValidationError):
        _create(store, issue_type="cluster", issue_value="1")


def test_history_of_missing_config_raises(stores):
    store, _ = stores
    with pytest.raises(NotFoundError):
        get_verification_history(store, 404)


def test_history_of_fresh_config_is_empty(stores):
    store, _ = stores
    config = _create(store)
    assert get_verification_history(store, config.id) == []
