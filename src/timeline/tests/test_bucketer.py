"""Tests for timezone-correct day bucketing."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from src.timeline.base import DateRange, MetricType
from src.timeline.bucketer import (
    CalendarConfig,
    bucket_records,
    local_day_bounds,
    range_bounds,
    split_by_day,
)
from src.timeline.config_loader import PipelineConfig
from src.timeline.errors import InvalidCalendarConfigError
from src.timeline.tests.conftest import TEST_DATE, make_record, utc

NEXT_DATE = TEST_DATE + timedelta(days=1)
NEW_YORK = CalendarConfig(timezone="America/New_York")


class TestCalendarConfig:
    def test_unknown_timezone_rejected(self) -> None:
        with pytest.raises(InvalidCalendarConfigError, match="Mars/Olympus_Mons"):
            CalendarConfig(timezone="Mars/Olympus_Mons").validate()

    def test_unsupported_calendar_rejected(self) -> None:
        with pytest.raises(InvalidCalendarConfigError, match="hebrew"):
            CalendarConfig(timezone="UTC", calendar="hebrew").validate()

    def test_bucketing_with_bad_timezone_fails(self) -> None:
        with pytest.raises(InvalidCalendarConfigError):
            bucket_records([], CalendarConfig(timezone="Not/AZone"))

    def test_from_pipeline_config(self, pipeline_config: PipelineConfig) -> None:
        calendar = CalendarConfig.from_config(pipeline_config)
        assert calendar.timezone == "UTC"
        assert calendar.calendar == "gregorian"


class TestDayBounds:
    def test_utc_day_is_24_hours(self) -> None:
        start, end = local_day_bounds(TEST_DATE, CalendarConfig())
        assert start == utc(0)
        assert end - start == timedelta(hours=24)

    def test_spring_forward_day_is_23_hours(self) -> None:
        start, end = local_day_bounds(date(2026, 3, 8), NEW_YORK)
        assert start == datetime(2026, 3, 8, 5, tzinfo=timezone.utc)
        assert end - start == timedelta(hours=23)

    def test_fall_back_day_is_25_hours(self) -> None:
        start, end = local_day_bounds(date(2026, 11, 1), NEW_YORK)
        assert end - start == timedelta(hours=25)

    def test_range_bounds_cover_every_day(self) -> None:
        start, end = range_bounds(DateRange(TEST_DATE, NEXT_DATE), CalendarConfig())
        assert (start, end) == (utc(0), utc(0, day=NEXT_DATE + timedelta(days=1)))


class TestSplitByDay:
    def test_sleep_across_midnight_splits_thirty_thirty(self) -> None:
        sleep = make_record(MetricType.SLEEP, 3600, utc(23, 30), utc(0, 30, day=NEXT_DATE))

        buckets = bucket_records([sleep], CalendarConfig())

        assert list(buckets) == [TEST_DATE, NEXT_DATE]
        assert buckets[TEST_DATE][0].value == pytest.approx(1800.0)
        assert buckets[NEXT_DATE][0].value == pytest.approx(1800.0)
        assert buckets[TEST_DATE][0].end_time == utc(0, day=NEXT_DATE)
        assert buckets[NEXT_DATE][0].start_time == utc(0, day=NEXT_DATE)

    def test_steps_split_proportionally(self) -> None:
        steps = make_record(MetricType.STEPS, 600, utc(23), utc(1, day=NEXT_DATE))
        pieces = split_by_day(steps, timezone.utc)
        assert [(d, p.value) for d, p in pieces] == [
            (TEST_DATE, pytest.approx(300.0)),
            (NEXT_DATE, pytest.approx(300.0)),
        ]

    def test_interval_ending_at_midnight_stays_on_one_day(self) -> None:
        workout = make_record(MetricType.WORKOUT, 1800, utc(23, 30), utc(0, day=NEXT_DATE))
        assert split_by_day(workout, timezone.utc) == [(TEST_DATE, workout)]

    def test_multi_day_record_spans_every_day(self) -> None:
        sleep = make_record(
            MetricType.SLEEP, 172800, utc(0), utc(0, day=TEST_DATE + timedelta(days=2))
        )
        pieces = split_by_day(sleep, timezone.utc)
        assert [d for d, _ in pieces] == [TEST_DATE, NEXT_DATE]
        assert [p.value for _, p in pieces] == [pytest.approx(86400.0)] * 2

    def test_point_record_assigned_by_local_instant(self) -> None:
        # 03:00 UTC is 22:00 the previous evening in New York.
        hr = make_record(MetricType.HEART_RATE, 58, utc(3))
        buckets = bucket_records([hr], NEW_YORK)
        assert list(buckets) == [TEST_DATE - timedelta(days=1)]

    def test_point_record_with_span_not_split(self) -> None:
        hr = make_record(MetricType.HEART_RATE, 58, utc(23, 59), utc(0, 1, day=NEXT_DATE))
        assert split_by_day(hr, timezone.utc) == [(TEST_DATE, hr)]

    def test_split_across_dst_change_uses_local_midnight(self) -> None:
        # 23:00 EST on Mar 7 to 05:00 EDT on Mar 8: one hour before midnight,
        # four after.
        sleep = make_record(
            MetricType.SLEEP,
            18000,
            datetime(2026, 3, 8, 4, tzinfo=timezone.utc),
            datetime(2026, 3, 8, 9, tzinfo=timezone.utc),
        )
        buckets = bucket_records([sleep], NEW_YORK)
        assert buckets[date(2026, 3, 7)][0].value == pytest.approx(3600.0)
        assert buckets[date(2026, 3, 8)][0].value == pytest.approx(14400.0)

    def test_buckets_sorted_by_date_and_start(self) -> None:
        late = make_record(MetricType.STEPS, 10, utc(20), utc(21))
        early = make_record(MetricType.STEPS, 20, utc(6), utc(7))
        tomorrow = make_record(MetricType.STEPS, 30, utc(6, day=NEXT_DATE), utc(7, day=NEXT_DATE))

        buckets = bucket_records([tomorrow, late, early], CalendarConfig())

        assert list(buckets) == [TEST_DATE, NEXT_DATE]
        assert buckets[TEST_DATE] == [early, late]

    def test_value_conserved_across_pieces(self) -> None:
        record = make_record(MetricType.WORKOUT, 5400, utc(23, 15), utc(0, 45, day=NEXT_DATE))
        pieces = split_by_day(record, timezone.utc)
        assert sum(p.value for _, p in pieces) == pytest.approx(5400.0)
