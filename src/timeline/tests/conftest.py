"""Shared fixtures and sample builders for timeline pipeline tests."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Sequence

import pytest

from src.timeline.base import MetricType, NormalizedRecord, RawSample, SampleSource
from src.timeline.config_loader import PipelineConfig, load_pipeline_config
from src.timeline.errors import AuthorizationDeniedError, SourceUnavailableError

TEST_DATE = date(2026, 2, 23)

UTC = timezone.utc


def utc(hour: int, minute: int = 0, day: date = TEST_DATE, second: int = 0) -> datetime:
    """Aware UTC datetime on ``day``."""
    return datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=UTC)


def make_sample(
    metric: MetricType | str,
    value: float,
    start: datetime,
    end: datetime | None = None,
    unit: str | None = None,
    source: str = "phone",
    priority: int | None = 1,
    observed_at: datetime | None = None,
    state: str | None = None,
) -> RawSample:
    if unit is None:
        unit = metric.canonical_unit if isinstance(metric, MetricType) else "count"
    return RawSample(
        metric_type=metric,
        value=value,
        unit=unit,
        start_time=start,
        end_time=end if end is not None else start,
        source_id=source,
        source_priority=priority,
        observed_at=observed_at,
        state=state,
    )


def make_record(
    metric: MetricType,
    value: float,
    start: datetime,
    end: datetime | None = None,
    source: str = "phone",
    priority: int = 1,
    observed_at: datetime | None = None,
) -> NormalizedRecord:
    end = end if end is not None else start
    return NormalizedRecord(
        metric_type=metric,
        value=value,
        start_time=start,
        end_time=end,
        source_id=source,
        source_priority=priority,
        observed_at=observed_at or end,
    )


class StubSource(SampleSource):
    """Programmable source: per-metric samples, errors, or a blocking fetch.

    Attributes:
        calls:        Metric types fetched, in call order.
        in_flight:    Fetches currently executing.
        max_in_flight: Highest concurrency observed.
    """

    SOURCE_ID = "stub"

    def __init__(
        self,
        samples: dict[MetricType, Sequence[RawSample]] | None = None,
        errors: dict[MetricType, BaseException] | None = None,
        block: set[MetricType] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.samples = samples or {}
        self.errors = errors or {}
        self.block = block or set()
        self.delay = delay
        self.calls: list[MetricType] = []
        self.completed: list[MetricType] = []
        self.cancelled: list[MetricType] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_raw_samples(self, metric_type, start_time, end_time):
        self.calls.append(metric_type)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if metric_type in self.block:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if metric_type in self.errors:
                raise self.errors[metric_type]
            self.completed.append(metric_type)
            return list(self.samples.get(metric_type, ()))
        except asyncio.CancelledError:
            self.cancelled.append(metric_type)
            raise
        finally:
            self.in_flight -= 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Load the bundled pipeline config for tests."""
    return load_pipeline_config()


@pytest.fixture
def steps_samples() -> list[RawSample]:
    """Phone and watch both counting the same morning walk."""
    return [
        make_sample(MetricType.STEPS, 500, utc(8), utc(8, 30), source="watch", priority=2),
        make_sample(MetricType.STEPS, 900, utc(8), utc(9), source="phone", priority=1),
    ]


@pytest.fixture
def heart_rate_samples() -> list[RawSample]:
    """Watch samples every 5 minutes from 10:00 to 10:20."""
    return [
        make_sample(MetricType.HEART_RATE, bpm, utc(10, minute), source="watch", priority=2)
        for minute, bpm in zip(range(0, 25, 5), (60, 64, 70, 66, 62))
    ]


@pytest.fixture
def denied() -> AuthorizationDeniedError:
    return AuthorizationDeniedError("read access not granted")


@pytest.fixture
def unavailable() -> SourceUnavailableError:
    return SourceUnavailableError("health store timed out")


def days(n: int, start: date = TEST_DATE) -> list[date]:
    return [start + timedelta(days=i) for i in range(n)]
