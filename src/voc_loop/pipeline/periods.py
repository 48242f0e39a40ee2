"""Period windows and the eligibility predicate shared by clustering steps."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

from voc_loop.schemas import SCOPE_ALL, FeedbackRecord, as_utc
from voc_loop.store.feedback import FeedbackQuery

OPEN_STATUSES: frozenset[str] = frozenset({"pending", "confirmed", "reported", "in_progress"})
ELIGIBLE_RISK_LEVELS: frozenset[str] = frozenset({"High", "Medium"})
ANALYZED = "analyzed"

_END_OF_DAY = time(23, 59, 59, 999000)


class PeriodError(ValueError):
    """Raised when a period request is invalid."""


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def end_of_day(day: date) -> datetime:
    """Return 23:59:59.999 UTC of ``day``."""

    return datetime.combine(day, _END_OF_DAY, tzinfo=UTC)


def week_key(year: int, week: int) -> str:
    return f"{year}-W{week:02d}"


def month_key(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


@dataclass(frozen=True, slots=True)
class Period:
    """Inclusive time window plus the key its clustering generation is stored under."""

    granularity: str
    start: datetime
    end: datetime
    period_key: str

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= as_utc(timestamp) <= self.end

    def label(self) -> str:
        return f"{self.start.date().isoformat()} ~ {self.end.date().isoformat()}"


def iso_week_of(day: date) -> tuple[int, int]:
    """Return (ISO year, ISO week) for a date.

    The week containing the Thursday decides which year a week belongs to.
    """

    iso = day.isocalendar()
    return iso.year, iso.week


def week_period(week: int, year: int) -> Period:
    """Return Monday 00:00 to Sunday 23:59:59.999 of an ISO week."""

    try:
        monday = date.fromisocalendar(year, week, 1)
    except ValueError as exc:
        raise PeriodError(f"Invalid ISO week {week} for year {year}.") from exc
    return Period(
        granularity="week",
        start=start_of_day(monday),
        end=end_of_day(monday + timedelta(days=6)),
        period_key=week_key(year, week),
    )


def month_period(month: int, year: int) -> Period:
    if not 1 <= month <= 12:
        raise PeriodError(f"Month must be within 1..12, got {month}.")
    if year < 1:
        raise PeriodError(f"Year must be positive, got {year}.")
    last_day = calendar.monthrange(year, month)[1]
    return Period(
        granularity="month",
        start=start_of_day(date(year, month, 1)),
        end=end_of_day(date(year, month, last_day)),
        period_key=month_key(year, month),
    )


def range_period(start_date: date, end_date: date) -> Period:
    """Return an explicit window, keyed by the ISO week of its start date."""

    if end_date < start_date:
        raise PeriodError(f"end_date {end_date} is before start_date {start_date}.")
    year, week = iso_week_of(start_date)
    return Period(
        granularity="range",
        start=start_of_day(start_date),
        end=end_of_day(end_date),
        period_key=week_key(year, week),
    )


def resolve_period(
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    week: int | None = None,
    month: int | None = None,
    year: int | None = None,
    today: date | None = None,
) -> Period:
    """Resolve a period request; with no arguments, the current calendar month."""

    current = today or datetime.now(UTC).date()

    if start_date is not None or end_date is not None:
        if start_date is None or end_date is None:
            raise PeriodError("start_date and end_date must be supplied together.")
        if week is not None or month is not None:
            raise PeriodError("An explicit range cannot be combined with week or month.")
        return range_period(start_date, end_date)

    if week is not None and month is not None:
        raise PeriodError("Specify either week or month, not both.")
    if week is not None:
        return week_period(week, year if year is not None else iso_week_of(current)[0])
    if month is not None:
        return month_period(month, year if year is not None else current.year)
    if year is not None:
        raise PeriodError("year requires week or month.")
    return month_period(current.month, current.year)


@dataclass(frozen=True, slots=True)
class EligibilityFilter:
    """The population a clustering unit is computed over.

    The orchestrator and the reconciler both derive their id sets from the
    same instance, so they always agree on what "eligible" means.
    """

    app_id: str
    scope: str
    start: datetime
    end: datetime
    process_status: str = ANALYZED
    risk_levels: frozenset[str] = ELIGIBLE_RISK_LEVELS
    statuses: frozenset[str] = OPEN_STATUSES

    @classmethod
    def for_unit(cls, app_id: str, scope: str, period: Period) -> EligibilityFilter:
        return cls(app_id=app_id, scope=scope, start=period.start, end=period.end)

    def matches(self, record: FeedbackRecord) -> bool:
        return (
            record.app_id == self.app_id
            and record.process_status == self.process_status
            and record.risk_level in self.risk_levels
            and record.status in self.statuses
            and (self.scope == SCOPE_ALL or record.category == self.scope)
            and self.start <= record.timestamp <= self.end
        )

    def to_query(self) -> FeedbackQuery:
        return FeedbackQuery(
            app_id=self.app_id,
            category=None if self.scope == SCOPE_ALL else self.scope,
            risk_levels=self.risk_levels,
            statuses=self.statuses,
            process_status=self.process_status,
            start=self.start,
            end=self.end,
        )
