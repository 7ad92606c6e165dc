"""Assign reconciled records to calendar-day buckets.

Day boundaries are local midnights in the configured IANA timezone, so a
day can be 23 or 25 hours long around DST changes.  Interval records that
cross a midnight are split and their value divided in proportion to the
time spent on each side; point records land on the day containing their
timestamp.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.timeline.base import DateRange, NormalizedRecord
from src.timeline.config_loader import PipelineConfig
from src.timeline.errors import InvalidCalendarConfigError

logger = logging.getLogger("cadence.timeline.bucketer")

SUPPORTED_CALENDARS = frozenset({"gregorian", "iso8601"})


@dataclass(frozen=True)
class CalendarConfig:
    """Caller-supplied calendar and timezone for day bucketing.

    Attributes:
        timezone: IANA timezone name, e.g. 'America/New_York'.
        calendar: Calendar identifier; only gregorian is supported.
    """

    timezone: str = "UTC"
    calendar: str = "gregorian"

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "CalendarConfig":
        return cls(timezone=config.calendar.timezone, calendar=config.calendar.calendar)

    @property
    def tzinfo(self) -> tzinfo:
        """Resolve the timezone.

        Raises:
            InvalidCalendarConfigError: Unknown timezone or calendar.
        """
        if str(self.calendar).strip().lower() not in SUPPORTED_CALENDARS:
            raise InvalidCalendarConfigError(f"Unsupported calendar: {self.calendar!r}")
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
            raise InvalidCalendarConfigError(f"Unknown timezone: {self.timezone!r}") from exc

    def validate(self) -> tzinfo:
        return self.tzinfo


def local_day_bounds(day: date, calendar: CalendarConfig) -> tuple[datetime, datetime]:
    """Return the UTC instants of local midnight at the start and end of ``day``."""
    tz = calendar.tzinfo
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def range_bounds(date_range: DateRange, calendar: CalendarConfig) -> tuple[datetime, datetime]:
    """Return the UTC interval spanning every local day in ``date_range``."""
    start, _ = local_day_bounds(date_range.start, calendar)
    _, end = local_day_bounds(date_range.end, calendar)
    return start, end


def local_date(instant: datetime, tz: tzinfo) -> date:
    """Calendar date of a UTC instant in ``tz``."""
    return instant.astimezone(tz).date()


def split_by_day(record: NormalizedRecord, tz: tzinfo) -> list[tuple[date, NormalizedRecord]]:
    """Split one record at local midnights.

    Point and zero-duration records are returned whole on the day of their
    instant.  Otherwise each piece carries the share of the value matching
    its share of the record's duration.
    """
    if record.metric_type.is_point or record.is_instant:
        return [(local_date(record.instant, tz), record)]

    first_day = local_date(record.start_time, tz)
    # The end instant is exclusive; an interval ending exactly at midnight
    # does not touch the next day.
    last_day = local_date(record.end_time - timedelta(microseconds=1), tz)
    if first_day == last_day:
        return [(first_day, record)]

    total = record.duration_seconds
    pieces: list[tuple[date, NormalizedRecord]] = []
    day = first_day
    while day <= last_day:
        day_start = datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)
        day_end = datetime.combine(
            day + timedelta(days=1), time.min, tzinfo=tz
        ).astimezone(timezone.utc)
        piece_start = max(record.start_time, day_start)
        piece_end = min(record.end_time, day_end)
        if piece_end > piece_start:
            share = (piece_end - piece_start).total_seconds() / total
            pieces.append(
                (
                    day,
                    replace(
                        record,
                        value=record.value * share,
                        start_time=piece_start,
                        end_time=piece_end,
                    ),
                )
            )
        day += timedelta(days=1)
    return pieces


def bucket_records(
    records: Iterable[NormalizedRecord], calendar: CalendarConfig
) -> dict[date, list[NormalizedRecord]]:
    """Group records (or their per-day pieces) by local calendar date.

    Args:
        records:  Reconciled records, any metric type.
        calendar: Calendar/timezone configuration.

    Returns:
        Mapping date → records, in ascending date order, each list ordered
        by start time.

    Raises:
        InvalidCalendarConfigError: If the calendar cannot be resolved.
    """
    tz = calendar.tzinfo
    buckets: dict[date, list[NormalizedRecord]] = {}
    for record in records:
        for day, piece in split_by_day(record, tz):
            buckets.setdefault(day, []).append(piece)

    ordered = {
        day: sorted(buckets[day], key=lambda r: (r.start_time, r.end_time))
        for day in sorted(buckets)
    }
    logger.debug("Bucketed records into %d days (%s)", len(ordered), calendar.timezone)
    return ordered
