"""SQLite-backed persistence for feedback, clusters and verifications."""

from voc_loop.store.clusters import ClusterStore, unit_key
from voc_loop.store.database import Database
from voc_loop.store.feedback import FeedbackQuery, FeedbackSource, FeedbackStore
from voc_loop.store.verifications import VerificationStore

__all__ = [
    "ClusterStore",
    "Database",
    "FeedbackQuery",
    "FeedbackSource",
    "FeedbackStore",
    "VerificationStore",
    "unit_key",
]
