"""Tests for save/lock filesystem helpers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from voc_loop.io import UnitLockError, save_json, unit_lock
from voc_loop.io.save import lock_filename


def test_save_json_overwrites_atomically(tmp_path: Path):
    json_path = tmp_path / "reports" / "batch.json"
    save_json(json_path, {"value": 1})
    assert json.loads(json_path.read_text(encoding="utf-8"))["value"] == 1

    save_json(json_path, {"value": 2, "label": "Résolu"})
    payload = json.loads(json_path.read_text(encoding="utf-8"))
    assert payload == {"value": 2, "label": "Résolu"}
    assert [path.name for path in json_path.parent.iterdir()] == ["batch.json"]


def test_lock_filename_sanitizes_unit_key():
    assert lock_filename("app|Tech_Bug|2025-W40") == "app_Tech_Bug_2025-W40.lock"


def test_unit_lock_prevents_double_acquire(tmp_path: Path):
    key = "app-1|all|2025-10"

    with unit_lock(tmp_path, key) as lock_path, pytest.raises(UnitLockError), unit_lock(tmp_path, key):
        pass

    assert not lock_path.exists()

    with unit_lock(tmp_path, key) as lock_path:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
        assert payload["unit_key"] == key


def test_unit_lock_allows_different_keys(tmp_path: Path):
    with unit_lock(tmp_path, "app-1|all|2025-10"), unit_lock(tmp_path, "app-2|all|2025-10"):
        assert len(list(tmp_path.glob("*.lock"))) == 2
