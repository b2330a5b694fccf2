# mlm_system/utils/periods.py
"""
Commission period keys and their half-open UTC windows [start, end).

Monthly:  "2024-10"
Weekly:   "2024-W43" (ISO week), or legacy "2024-10-W4" = 4th week whose
          Monday falls in October 2024; normalized to ISO form.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from mlm_system.errors import ValidationError

RUN_TYPES = ("weekly", "monthly")

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_ISO_WEEK_RE = re.compile(r"^(\d{4})-W(\d{2})$")
_MONTH_WEEK_RE = re.compile(r"^(\d{4})-(\d{2})-W(\d)$")


@dataclass(frozen=True)
class Period:
    runType: str
    key: str
    start: datetime
    end: datetime

    @property
    def year(self) -> int:
        """Calendar year the period starts in (protection window year)."""
        return self.start.year

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def _first_of_next_month(year: int, month: int) -> datetime:
    if month == 12:
        return datetime(year + 1, 1, 1)
    return datetime(year, month + 1, 1)


def parse_period(runType: str, periodKey: str) -> Period:
    """
    Parse a period key into its window.

    Raises:
        ValidationError: unknown run type or malformed key
    """
    if runType not in RUN_TYPES:
        raise ValidationError(f"Unknown run type: {runType!r}")
    if not periodKey:
        raise ValidationError("Period key is required")

    if runType == "monthly":
        match = _MONTH_RE.match(periodKey)
        if not match:
            raise ValidationError(f"Monthly period key must look like YYYY-MM, got {periodKey!r}")
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid month in period key {periodKey!r}")
        start = datetime(year, month, 1)
        return Period(runType, periodKey, start, _first_of_next_month(year, month))

    match = _ISO_WEEK_RE.match(periodKey)
    if match:
        year, week = int(match.group(1)), int(match.group(2))
        try:
            start = datetime.fromisocalendar(year, week, 1)
        except ValueError:
            raise ValidationError(f"Invalid ISO week in period key {periodKey!r}")
        return Period(runType, periodKey, start, start + timedelta(days=7))

    match = _MONTH_WEEK_RE.match(periodKey)
    if match:
        year, month, nth = int(match.group(1)), int(match.group(2)), int(match.group(3))
        if not 1 <= month <= 12 or nth < 1:
            raise ValidationError(f"Invalid weekly period key {periodKey!r}")
        first = datetime(year, month, 1)
        firstMonday = first + timedelta(days=(7 - first.weekday()) % 7)
        start = firstMonday + timedelta(days=7 * (nth - 1))
        if start.month != month:
            raise ValidationError(f"Month {year}-{month:02d} has no week {nth}")
        isoYear, isoWeek, _ = start.isocalendar()
        return Period(runType, f"{isoYear}-W{isoWeek:02d}", start, start + timedelta(days=7))

    raise ValidationError(f"Weekly period key must look like YYYY-Www, got {periodKey!r}")


def period_key_for(runType: str, moment: datetime) -> str:
    """Period key containing the given moment."""
    if runType == "monthly":
        return moment.strftime("%Y-%m")
    if runType == "weekly":
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    raise ValidationError(f"Unknown run type: {runType!r}")


def previous_period_key(runType: str, moment: datetime) -> str:
    """Key of the last period that closed at or before the given moment."""
    if runType == "monthly":
        lastDay = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0) - timedelta(days=1)
        return period_key_for(runType, lastDay)
    if runType == "weekly":
        monday = (moment - timedelta(days=moment.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
        return period_key_for(runType, monday - timedelta(days=1))
    raise ValidationError(f"Unknown run type: {runType!r}")
