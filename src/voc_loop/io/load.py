"""Loaders for feedback datasets."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from voc_loop.schemas import FeedbackRecord


class FeedbackDatasetError(ValueError):
    """Raised when a feedback dataset fails schema or integrity checks."""


def _parse_line(line: str, *, line_number: int, file_path: Path) -> FeedbackRecord:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise FeedbackDatasetError(
            f"Invalid JSON on line {line_number} of {file_path}: {exc.msg}"
        ) from exc

    if not isinstance(payload, dict):
        raise FeedbackDatasetError(
            f"Expected object on line {line_number} of {file_path}, "
            f"got {type(payload).__name__}."
        )

    try:
        return FeedbackRecord.model_validate(payload)
    except PydanticValidationError as exc:
        raise FeedbackDatasetError(
            f"Feedback schema validation failed on line {line_number} of {file_path}: {exc}"
        ) from exc


def iter_feedback_jsonl(
    path: str | Path,
    *,
    chunk_size: int = 500,
) -> Iterator[list[FeedbackRecord]]:
    """Iterate validated feedback records in fixed-size chunks.

    Feedback ids must be unique within the file.
    """

    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}.")

    file_path = Path(path)
    if not file_path.exists():
        raise FeedbackDatasetError(f"Feedback file does not exist: {file_path}")

    emitted = 0
    chunk: list[FeedbackRecord] = []
    seen_ids: set[str] = set()

    with file_path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped:
                continue

            record = _parse_line(stripped, line_number=line_number, file_path=file_path)
            if record.id in seen_ids:
                raise FeedbackDatasetError(
                    f"Duplicate feedback id '{record.id}' found on line {line_number} "
                    f"of {file_path}."
                )
            seen_ids.add(record.id)
            chunk.append(record)
            emitted += 1

            if len(chunk) >= chunk_size:
                yield chunk
                chunk = []

    if chunk:
        yield chunk

    if emitted == 0:
        raise FeedbackDatasetError(f"No feedback records found in file: {file_path}")


def load_feedback_jsonl(path: str | Path) -> list[FeedbackRecord]:
    """Load and validate all feedback records from a JSONL file."""

    records: list[FeedbackRecord] = []
    for chunk in iter_feedback_jsonl(path):
        records.extend(chunk)
    return records
