"""Resolution of relative dashboard periods.

A period token such as ``previous_month`` is turned into a concrete
``ReportWindow`` (inclusive start/end timestamps plus the chart bucket
granularity) and a ``CachePolicy`` whose lifetime ends exactly when the
token's meaning rolls over:

- ``current_*`` windows are still accumulating, lifetime is zero (never cached)
- ``previous_*`` and ``two_*_ago`` windows are closed, their lifetime is the
  time remaining until the end of the *current* unit, because that is the
  instant at which "previous" starts pointing at a different window

All arithmetic is done in UTC. Window ends are the last millisecond of the
unit, the resolution MongoDB stores dates with.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from billing_reports.errors import InvalidPeriod

END_OF_UNIT_OFFSET = timedelta(milliseconds=1)
SUNDAY = 6


class PeriodUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class Granularity(str, Enum):
    """Chart bucket key; values are the projected field each bucket groups by."""

    HOUR = "$hour"
    PERIOD_IN_DAY = "$period_in_day"
    DAY = "$day"
    WEEK = "$week"
    MONTH = "$month"


UNIT_GRANULARITY = {
    PeriodUnit.DAY: Granularity.HOUR,
    PeriodUnit.WEEK: Granularity.PERIOD_IN_DAY,
    PeriodUnit.MONTH: Granularity.DAY,
    PeriodUnit.QUARTER: Granularity.WEEK,
    PeriodUnit.YEAR: Granularity.MONTH,
}


class PeriodToken(str, Enum):
    CURRENT_DAY = "current_day"
    PREVIOUS_DAY = "previous_day"
    TWO_DAYS_AGO = "two_days_ago"
    CURRENT_WEEK = "current_week"
    PREVIOUS_WEEK = "previous_week"
    TWO_WEEKS_AGO = "two_weeks_ago"
    CURRENT_MONTH = "current_month"
    PREVIOUS_MONTH = "previous_month"
    TWO_MONTHS_AGO = "two_months_ago"
    CURRENT_QUARTER = "current_quarter"
    PREVIOUS_QUARTER = "previous_quarter"
    TWO_QUARTERS_AGO = "two_quarters_ago"
    CURRENT_YEAR = "current_year"
    PREVIOUS_YEAR = "previous_year"
    TWO_YEARS_AGO = "two_years_ago"

    @property
    def unit(self) -> PeriodUnit:
        return _TOKEN_SHAPE[self][0]

    @property
    def offset(self) -> int:
        """How many whole units back from the current one the window lies."""
        return _TOKEN_SHAPE[self][1]

    @property
    def is_current(self) -> bool:
        return self.offset == 0

    @classmethod
    def parse(cls, value: "str | PeriodToken") -> "PeriodToken":
        """Accept a token, its value, or a phrase like ``"two months ago"``.

        Raises:
            InvalidPeriod: when the value names no known period.
        """
        if isinstance(value, PeriodToken):
            return value
        if not isinstance(value, str):
            raise InvalidPeriod(f"incorrect dashboard period: {value!r}")

        normalized = "_".join(value.strip().lower().replace("-", " ").split())
        normalized = _ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidPeriod(f"incorrect dashboard period: {value!r}") from None


_TOKEN_SHAPE: dict[PeriodToken, tuple[PeriodUnit, int]] = {
    PeriodToken.CURRENT_DAY: (PeriodUnit.DAY, 0),
    PeriodToken.PREVIOUS_DAY: (PeriodUnit.DAY, 1),
    PeriodToken.TWO_DAYS_AGO: (PeriodUnit.DAY, 2),
    PeriodToken.CURRENT_WEEK: (PeriodUnit.WEEK, 0),
    PeriodToken.PREVIOUS_WEEK: (PeriodUnit.WEEK, 1),
    PeriodToken.TWO_WEEKS_AGO: (PeriodUnit.WEEK, 2),
    PeriodToken.CURRENT_MONTH: (PeriodUnit.MONTH, 0),
    PeriodToken.PREVIOUS_MONTH: (PeriodUnit.MONTH, 1),
    PeriodToken.TWO_MONTHS_AGO: (PeriodUnit.MONTH, 2),
    PeriodToken.CURRENT_QUARTER: (PeriodUnit.QUARTER, 0),
    PeriodToken.PREVIOUS_QUARTER: (PeriodUnit.QUARTER, 1),
    PeriodToken.TWO_QUARTERS_AGO: (PeriodUnit.QUARTER, 2),
    PeriodToken.CURRENT_YEAR: (PeriodUnit.YEAR, 0),
    PeriodToken.PREVIOUS_YEAR: (PeriodUnit.YEAR, 1),
    PeriodToken.TWO_YEARS_AGO: (PeriodUnit.YEAR, 2),
}

_ALIASES = {
    "two_quarter_ago": PeriodToken.TWO_QUARTERS_AGO.value,
    "today": PeriodToken.CURRENT_DAY.value,
    "yesterday": PeriodToken.PREVIOUS_DAY.value,
}

# Each dashboard compares a period with the one right before it.
PREVIOUS_PERIODS: dict[PeriodToken, PeriodToken] = {
    PeriodToken.CURRENT_DAY: PeriodToken.PREVIOUS_DAY,
    PeriodToken.PREVIOUS_DAY: PeriodToken.TWO_DAYS_AGO,
    PeriodToken.CURRENT_WEEK: PeriodToken.PREVIOUS_WEEK,
    PeriodToken.PREVIOUS_WEEK: PeriodToken.TWO_WEEKS_AGO,
    PeriodToken.CURRENT_MONTH: PeriodToken.PREVIOUS_MONTH,
    PeriodToken.PREVIOUS_MONTH: PeriodToken.TWO_MONTHS_AGO,
    PeriodToken.CURRENT_QUARTER: PeriodToken.PREVIOUS_QUARTER,
    PeriodToken.PREVIOUS_QUARTER: PeriodToken.TWO_QUARTERS_AGO,
    PeriodToken.CURRENT_YEAR: PeriodToken.PREVIOUS_YEAR,
    PeriodToken.PREVIOUS_YEAR: PeriodToken.TWO_YEARS_AGO,
}


def predecessor(token: "str | PeriodToken") -> PeriodToken:
    """Return the period a dashboard compares `token` against.

    Raises:
        InvalidPeriod: for the oldest (``two_*_ago``) tier.
    """
    parsed = PeriodToken.parse(token)
    try:
        return PREVIOUS_PERIODS[parsed]
    except KeyError:
        raise InvalidPeriod(f"period {parsed.value!r} has no previous period") from None


@dataclass(frozen=True)
class ReportWindow:
    """Inclusive time window and the chart bucket it is split into."""

    start: datetime
    end: datetime
    granularity: Granularity

    @property
    def days(self) -> int:
        """Number of calendar days the window spans."""
        return (self.end - self.start + END_OF_UNIT_OFFSET).days


@dataclass(frozen=True)
class CachePolicy:
    """How long a report computed for a window may be served from cache."""

    lifetime: timedelta
    key: str = ""

    @property
    def cacheable(self) -> bool:
        return self.lifetime > timedelta(0)

    def with_key(self, key: str) -> "CachePolicy":
        return replace(self, key=key)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _add_months(moment: datetime, months: int) -> datetime:
    """Shift a first-of-month timestamp by whole months."""
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1)


def beginning_of(unit: PeriodUnit, moment: datetime, week_start: int = SUNDAY) -> datetime:
    """Return the first instant of the `unit` containing `moment`."""
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit is PeriodUnit.DAY:
        return day
    if unit is PeriodUnit.WEEK:
        return day - timedelta(days=(day.weekday() - week_start) % 7)
    if unit is PeriodUnit.MONTH:
        return day.replace(day=1)
    if unit is PeriodUnit.QUARTER:
        return day.replace(month=(day.month - 1) // 3 * 3 + 1, day=1)
    return day.replace(month=1, day=1)


def shift(unit: PeriodUnit, start: datetime, units: int) -> datetime:
    """Move the beginning of a unit by `units` whole units (negative = back)."""
    if unit is PeriodUnit.DAY:
        return start + timedelta(days=units)
    if unit is PeriodUnit.WEEK:
        return start + timedelta(weeks=units)
    if unit is PeriodUnit.MONTH:
        return _add_months(start, units)
    if unit is PeriodUnit.QUARTER:
        return _add_months(start, units * 3)
    return _add_months(start, units * 12)


def end_of(unit: PeriodUnit, moment: datetime, week_start: int = SUNDAY) -> datetime:
    """Return the last millisecond of the `unit` containing `moment`."""
    start = beginning_of(unit, moment, week_start)
    return shift(unit, start, 1) - END_OF_UNIT_OFFSET


def resolve(
    token: "str | PeriodToken",
    now: datetime,
    week_start: int = SUNDAY,
) -> tuple[ReportWindow, CachePolicy]:
    """Map a period token to its report window and cache policy template.

    The returned policy carries no key yet; callers derive the key from the
    final match criteria with `CachePolicy.with_key`.

    Raises:
        InvalidPeriod: if `token` is not a known period.
    """
    parsed = PeriodToken.parse(token)
    unit = parsed.unit
    now = _as_utc(now)

    current_start = beginning_of(unit, now, week_start)
    start = shift(unit, current_start, -parsed.offset)
    end = shift(unit, start, 1) - END_OF_UNIT_OFFSET
    window = ReportWindow(start=start, end=end, granularity=UNIT_GRANULARITY[unit])

    if parsed.is_current:
        return window, CachePolicy(lifetime=timedelta(0))

    current_end = shift(unit, current_start, 1) - END_OF_UNIT_OFFSET
    return window, CachePolicy(lifetime=current_end - now)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PeriodResolver:
    """Resolves period tokens against an injectable clock."""

    def __init__(
        self,
        week_start: int = SUNDAY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.week_start = week_start
        self.clock = clock

    def resolve(
        self,
        token: "str | PeriodToken",
        now: datetime | None = None,
    ) -> tuple[ReportWindow, CachePolicy]:
        return resolve(token, now if now is not None else self.clock(), self.week_start)

    def predecessor(self, token: "str | PeriodToken") -> PeriodToken:
        return predecessor(token)
