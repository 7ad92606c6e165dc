"""Canonical data models and the sample source interface for Cadence.

Every data source yields RawSample instances; the pipeline turns them into
NormalizedRecord instances and finally into DailySummary / TrendSeries.
These types are the single contract between the core, the data source and
whatever storage the caller owns.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterator, Sequence, Union

from src.timeline.errors import InvalidRangeError

logger = logging.getLogger("cadence.timeline")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MetricType(str, Enum):
    """Closed set of metric types handled by the pipeline.

    Shapes:
        STEPS       cumulative count over an interval
        HEART_RATE  point sample (rate)
        SLEEP       duration of a sleep-state interval
        WORKOUT     duration of a workout interval
    """

    STEPS = "steps"
    HEART_RATE = "heart_rate"
    SLEEP = "sleep"
    WORKOUT = "workout"

    @property
    def canonical_unit(self) -> str:
        return _CANONICAL_UNITS[self]

    @property
    def is_point(self) -> bool:
        return self is MetricType.HEART_RATE


_CANONICAL_UNITS: dict[MetricType, str] = {
    MetricType.STEPS: "count",
    MetricType.HEART_RATE: "bpm",
    MetricType.SLEEP: "s",
    MetricType.WORKOUT: "s",
}

ALL_METRICS: tuple[MetricType, ...] = tuple(MetricType)


class FillPolicy(str, Enum):
    """Gap-fill policy applied as the final stage of trend computation."""

    NONE = "none"
    CARRY_FORWARD = "carry_forward"
    ZERO_FILL = "zero_fill"


class Availability(str, Enum):
    """How a summary or trend field obtained its value."""

    MEASURED = "measured"
    ABSENT = "absent"
    FILLED = "filled"


class DiagnosticKind(str, Enum):
    AUTHORIZATION_DENIED = "authorization_denied"
    SOURCE_UNAVAILABLE = "source_unavailable"


# ---------------------------------------------------------------------------
# Raw and normalized samples
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawSample:
    """One un-normalized measurement as yielded by a data source.

    Attributes:
        metric_type:     MetricType or a platform identifier string
                         (e.g. 'HKQuantityTypeIdentifierStepCount').
        value:           Numeric value in ``unit``.
        unit:            Unit string as reported by the source.
        start_time:      Interval start (naive = UTC).
        end_time:        Interval end (naive = UTC); equals start for points.
        source_id:       Recording source ('phone', 'watch', 'manual', ...).
        source_priority: Conflict rank, higher wins.  None = use the
                         configured source_priorities table.
        observed_at:     When the source recorded the sample (defaults to
                         end_time during normalization).
        state:           Category value, e.g. sleep stage ('asleep', 'awake').
    """

    metric_type: MetricType | str
    value: float
    unit: str
    start_time: datetime
    end_time: datetime
    source_id: str
    source_priority: int | None = None
    observed_at: datetime | None = None
    state: str | None = None


@dataclass(frozen=True)
class NormalizedRecord:
    """Canonical record: canonical unit, timezone-aware UTC timestamps.

    Invariant: ``start_time <= end_time``.
    """

    metric_type: MetricType
    value: float
    start_time: datetime
    end_time: datetime
    source_id: str
    source_priority: int = 0
    observed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def is_instant(self) -> bool:
        return self.start_time == self.end_time

    @property
    def instant(self) -> datetime:
        """Timestamp used for point metrics."""
        return self.start_time


# ---------------------------------------------------------------------------
# Tagged aggregate values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Measured:
    """Value computed from at least one contributing record."""

    value: float
    availability = Availability.MEASURED


@dataclass(frozen=True)
class Absent:
    """No contributing record; distinct from a measured zero."""

    reason: str | None = None
    availability = Availability.ABSENT


@dataclass(frozen=True)
class Filled:
    """Substitute produced by an explicit gap-fill policy."""

    value: float
    policy: FillPolicy
    availability = Availability.FILLED


MetricValue = Union[Measured, Absent, Filled]

ABSENT = Absent()


def value_to_dict(value: MetricValue) -> dict:
    """Plain-data form of a MetricValue for caller-owned storage."""
    if isinstance(value, Measured):
        return {"status": "measured", "value": value.value}
    if isinstance(value, Filled):
        return {"status": "filled", "value": value.value, "policy": value.policy.value}
    return {"status": "absent", "reason": value.reason}


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates.

    Raises:
        InvalidRangeError: If ``end`` is before ``start``.
    """

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise InvalidRangeError(
                f"Range end {self.end.isoformat()} is before start {self.start.isoformat()}"
            )

    def __iter__(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    def __contains__(self, day: object) -> bool:
        return isinstance(day, date) and self.start <= day <= self.end

    @classmethod
    def single(cls, day: date) -> "DateRange":
        return cls(day, day)


@dataclass
class DailySummary:
    """Per-day summary for one user.

    Attributes:
        date:                   Calendar day in the configured timezone.
        total_steps:            Sum of reconciled step counts.
        total_workout_duration: Workout seconds attributed to the day.
        average_heart_rate:     Time-weighted mean bpm.
        total_sleep_duration:   Sleep seconds attributed to the day.
    """

    date: date
    total_steps: MetricValue = ABSENT
    total_workout_duration: MetricValue = ABSENT
    average_heart_rate: MetricValue = ABSENT
    total_sleep_duration: MetricValue = ABSENT

    def value_for(self, metric_type: MetricType) -> MetricValue:
        return getattr(self, SUMMARY_FIELDS[metric_type])

    @property
    def availability(self) -> dict[MetricType, Availability]:
        return {m: self.value_for(m).availability for m in MetricType}

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            **{
                name: value_to_dict(getattr(self, name))
                for name in SUMMARY_FIELDS.values()
            },
        }


# MetricType → DailySummary attribute
SUMMARY_FIELDS: dict[MetricType, str] = {
    MetricType.STEPS: "total_steps",
    MetricType.WORKOUT: "total_workout_duration",
    MetricType.HEART_RATE: "average_heart_rate",
    MetricType.SLEEP: "total_sleep_duration",
}


@dataclass(frozen=True)
class TrendPoint:
    date: date
    metric_type: MetricType
    value: MetricValue

    @property
    def is_gap(self) -> bool:
        return isinstance(self.value, Absent)


@dataclass
class TrendSeries:
    """Ordered per-day values of one metric over a contiguous date range.

    Absent days stay in the series as gap markers unless a fill policy
    was applied, in which case they carry ``Filled`` values.
    """

    metric_type: MetricType
    start: date
    end: date
    points: list[TrendPoint] = field(default_factory=list)
    fill_policy: FillPolicy = FillPolicy.NONE

    def gaps(self) -> list[date]:
        return [p.date for p in self.points if p.is_gap]

    def measured(self) -> list[TrendPoint]:
        return [p for p in self.points if isinstance(p.value, Measured)]

    def to_dict(self) -> dict:
        return {
            "metric_type": self.metric_type.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "fill_policy": self.fill_policy.value,
            "points": [
                {"date": p.date.isoformat(), **value_to_dict(p.value)}
                for p in self.points
            ],
        }


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Diagnostic:
    """A per-metric failure that degraded the metric to absent."""

    metric_type: MetricType
    kind: DiagnosticKind
    message: str

    def to_dict(self) -> dict:
        return {
            "metric_type": self.metric_type.value,
            "kind": self.kind.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class SampleIssue:
    """A raw sample dropped during normalization."""

    metric: str
    source_id: str
    error: str
    message: str


# ---------------------------------------------------------------------------
# Abstract data source
# ---------------------------------------------------------------------------


class SampleSource(ABC):
    """Abstract base class for raw sample providers.

    The platform query/authorization layer lives behind this interface.
    Implementations must return every sample overlapping
    ``[start_time, end_time)`` for the requested metric type.
    """

    #: Unique slug for logging.
    SOURCE_ID: str = "unknown"

    @abstractmethod
    async def fetch_raw_samples(
        self,
        metric_type: MetricType,
        start_time: datetime,
        end_time: datetime,
    ) -> Sequence[RawSample]:
        """Fetch raw samples for one metric type.

        Args:
            metric_type: Metric to fetch.
            start_time:  UTC start of the window (inclusive).
            end_time:    UTC end of the window (exclusive).

        Returns:
            Raw samples in any order.

        Raises:
            AuthorizationDeniedError: Read access not granted for the metric.
            SourceUnavailableError:   The source could not answer.
            InvalidRangeError:        ``end_time`` is before ``start_time``.
        """
