"""Utilities for writing reports and guarding clustering units."""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def ensure_directory(path: str | Path) -> Path:
    """Create a directory if it does not exist and return it."""

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _atomic_write_text(path: Path, content: str) -> None:
    """Atomically replace file contents via temp-write + rename."""

    ensure_directory(path.parent)
    temp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            with suppress(OSError):
                temp_path.unlink()


def save_json(path: str | Path, payload: dict[str, Any]) -> Path:
    """Save a JSON object to disk."""

    file_path = Path(path)
    content = json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n"
    _atomic_write_text(file_path, content)
    return file_path


class UnitLockError(RuntimeError):
    """Raised when a clustering unit is already being written by another worker."""


def lock_filename(unit_key: str) -> str:
    """Map a unit key such as ``app|Tech_Bug|2025-W40`` to a safe lock file name."""

    return f"{_UNSAFE_KEY_CHARS.sub('_', unit_key).strip('_')}.lock"


def _load_lock_payload(lock_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


@contextmanager
def unit_lock(lock_dir: str | Path, unit_key: str) -> Iterator[Path]:
    """Acquire an exclusive lock for one (app, scope, period) key.

    Replacing a generation is delete-then-insert, so two workers must never
    write the same key concurrently.
    """

    root = ensure_directory(lock_dir)
    lock_path = root / lock_filename(unit_key)
    payload = {
        "unit_key": unit_key,
        "pid": os.getpid(),
        "acquired_at_utc": datetime.now(UTC).isoformat(),
    }

    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as exc:
        existing = _load_lock_payload(lock_path)
        raise UnitLockError(
            f"Unit '{unit_key}' is already locked. "
            f"Lock path: {lock_path}. "
            f"Owner pid: {existing.get('pid')!r}. "
            f"Acquired at: {existing.get('acquired_at_utc')!r}."
        ) from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=True) + "\n")
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove lock file: %s", lock_path, exc_info=True)
