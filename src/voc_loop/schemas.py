"""Core data schemas for the feedback loop engine."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

IssueType = Literal["category", "keyword", "cluster"]
VerificationStatus = Literal["monitoring", "resolved", "improved", "no_change", "worsened"]
Conclusion = Literal["resolved", "improved", "no_change", "worsened"]
RunOutcome = Literal["success", "insufficient_data", "failed"]

ISSUE_TYPES: frozenset[str] = frozenset({"category", "keyword", "cluster"})
SCOPE_ALL = "all"


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive values as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class FeedbackRecord(BaseModel):
    """One analyzed piece of user feedback (owned by the feedback store)."""

    id: str
    app_id: str
    category: str = ""
    risk_level: str = ""
    status: str = "pending"
    process_status: str = "pending"
    timestamp: datetime
    summary: str = ""
    root_cause: str = ""
    text: str = ""
    translated_text: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("app_id")
    @classmethod
    def _validate_app_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("app_id must be non-empty.")
        if "|" in value:
            raise ValueError(f"app_id may not contain '|': {value!r}")
        return value


class ReviewGroup(BaseModel):
    """One cluster of a generation for an (app, scope, period) key."""

    id: int | None = None
    app_id: str
    scope: str
    period_key: str
    period_start: datetime | None = None
    period_end: datetime | None = None
    title: str
    rank: int = Field(ge=1)
    review_count: int = Field(ge=0)
    percentage: float = Field(ge=0.0)
    review_ids: frozenset[str]
    root_cause_summary: str = ""
    action_suggestion: str = ""
    sample_quotes: list[str] = Field(default_factory=list, max_length=3)
    processing_status: str = "pending"
    created_at: datetime | None = None


class VerificationConfig(BaseModel):
    """A tracked issue with its baseline and verification windows."""

    id: int | None = None
    app_id: str
    issue_type: IssueType
    issue_value: str
    baseline_start: date
    baseline_end: date
    verify_start: date
    verify_end: date | None = None
    optimization_desc: str = ""
    expected_reduction: float | None = None
    status: VerificationStatus = "monitoring"
    created_by: str | None = None
    created_at: datetime | None = None
    issue_review_ids: frozenset[str] | None = None


class VerificationResult(BaseModel):
    """One append-only verification run outcome."""

    id: int | None = None
    config_id: int
    verify_date: datetime
    baseline_count: int
    baseline_total: int
    verify_count: int
    verify_total: int
    baseline_ratio: float
    verify_ratio: float
    count_change: int
    ratio_change: float
    change_percent: float
    conclusion: Conclusion
    summary: str


class RunMarker(BaseModel):
    """Latest outcome of a clustering or verification unit."""

    kind: Literal["clustering", "verification"]
    unit_key: str
    outcome: RunOutcome
    observed_count: int | None = None
    detail: str = ""
    updated_at: datetime
