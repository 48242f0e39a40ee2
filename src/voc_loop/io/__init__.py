"""I/O utilities for reading feedback datasets and writing reports."""

from voc_loop.io.load import FeedbackDatasetError, iter_feedback_jsonl, load_feedback_jsonl
from voc_loop.io.save import UnitLockError, ensure_directory, save_json, unit_lock

__all__ = [
    "FeedbackDatasetError",
    "UnitLockError",
    "ensure_directory",
    "iter_feedback_jsonl",
    "load_feedback_jsonl",
    "save_json",
    "unit_lock",
]
