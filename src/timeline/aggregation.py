"""Reduce bucketed records into daily summaries and trend series.

Per-metric daily reduction:
    steps       — sum of bucketed step counts
    heart rate  — time-weighted average of the day's samples
    sleep       — sum of intra-day sleep seconds
    workout     — sum of intra-day workout seconds

A metric with no contributing record on a day is ``Absent``, never zero.
Trend gap filling is a separate, final stage (``apply_fill_policy``) that
never feeds back into the raw daily values.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Mapping, Sequence

from src.timeline.base import (
    ABSENT,
    Absent,
    DailySummary,
    DateRange,
    FillPolicy,
    Filled,
    Measured,
    MetricType,
    MetricValue,
    NormalizedRecord,
    SUMMARY_FIELDS,
    TrendPoint,
    TrendSeries,
)
from src.timeline.config_loader import PipelineConfig, get_pipeline_config
from src.timeline.errors import InvalidFillPolicyError

logger = logging.getLogger("cadence.timeline.aggregation")

DayBuckets = Mapping[date, Sequence[NormalizedRecord]]


# ---------------------------------------------------------------------------
# Daily reduction
# ---------------------------------------------------------------------------


def _time_weighted_average(records: Sequence[NormalizedRecord], weight_cap_seconds: float) -> float:
    """Average point samples, each weighted by the time it represents.

    A sample represents half the gap to each neighbour, each half capped at
    ``weight_cap_seconds / 2`` so one sample before a long gap does not
    dominate the day.  If every weight is zero the plain mean is returned.
    """
    ordered = sorted(records, key=lambda r: (r.instant, r.source_id))
    half_cap = weight_cap_seconds / 2.0
    times = [r.instant.timestamp() for r in ordered]

    weights: list[float] = []
    for i in range(len(ordered)):
        left = min((times[i] - times[i - 1]) / 2.0, half_cap) if i > 0 else 0.0
        right = min((times[i + 1] - times[i]) / 2.0, half_cap) if i + 1 < len(ordered) else 0.0
        weights.append(left + right)

    total_weight = math.fsum(weights)
    if total_weight <= 0:
        return math.fsum(r.value for r in ordered) / len(ordered)
    return math.fsum(r.value * w for r, w in zip(ordered, weights)) / total_weight


def reduce_day(
    metric_type: MetricType,
    records: Sequence[NormalizedRecord],
    config: PipelineConfig | None = None,
) -> MetricValue:
    """Reduce one day's records of one metric to a tagged value.

    Args:
        metric_type: Metric being reduced.
        records:     Bucketed records for the day (may be empty).
        config:      PipelineConfig (loaded from singleton if None).

    Returns:
        ``Measured`` if any record contributed, otherwise ``Absent``.
    """
    if not records:
        return ABSENT

    if metric_type is MetricType.HEART_RATE:
        cfg = config or get_pipeline_config()
        return Measured(
            _time_weighted_average(records, cfg.aggregation.heart_rate_max_sample_weight_seconds)
        )

    # Steps, sleep and workouts are all additive over the day.
    return Measured(math.fsum(r.value for r in records))


def daily_values(
    metric_type: MetricType,
    buckets: DayBuckets,
    date_range: DateRange,
    config: PipelineConfig | None = None,
) -> dict[date, MetricValue]:
    """Reduce every day of ``date_range`` for one metric."""
    return {
        day: reduce_day(metric_type, buckets.get(day, ()), config)
        for day in date_range
    }


def summarize_day(
    day: date,
    buckets_by_metric: Mapping[MetricType, DayBuckets],
    config: PipelineConfig | None = None,
    unavailable: Mapping[MetricType, str] | None = None,
) -> DailySummary:
    """Build the DailySummary for one day.

    Args:
        day:               Calendar day.
        buckets_by_metric: Per-metric day buckets; metrics missing here are
                           absent in the summary.
        config:            PipelineConfig (loaded from singleton if None).
        unavailable:       Metric → reason for metrics whose fetch failed.

    Returns:
        DailySummary with every field Measured or Absent.
    """
    unavailable = unavailable or {}
    summary = DailySummary(date=day)
    for metric_type, attr in SUMMARY_FIELDS.items():
        if metric_type in unavailable:
            value: MetricValue = Absent(reason=unavailable[metric_type])
        elif metric_type in buckets_by_metric:
            value = reduce_day(metric_type, buckets_by_metric[metric_type].get(day, ()), config)
        else:
            value = ABSENT
        setattr(summary, attr, value)
    return summary


# ---------------------------------------------------------------------------
# Trend series
# ---------------------------------------------------------------------------


def build_trend(
    metric_type: MetricType,
    date_range: DateRange,
    day_values: Mapping[date, MetricValue],
) -> TrendSeries:
    """Assemble one point per day; days without a value become gap markers."""
    points = [
        TrendPoint(date=day, metric_type=metric_type, value=day_values.get(day, ABSENT))
        for day in date_range
    ]
    return TrendSeries(
        metric_type=metric_type,
        start=date_range.start,
        end=date_range.end,
        points=points,
    )


def resolve_fill_policy(policy: FillPolicy | str | None) -> FillPolicy:
    """Resolve a fill policy name; None means NONE.

    Raises:
        InvalidFillPolicyError: Unknown policy name.
    """
    try:
        return FillPolicy(policy or FillPolicy.NONE)
    except ValueError:
        raise InvalidFillPolicyError(f"Unknown fill policy: {policy!r}") from None


def apply_fill_policy(series: TrendSeries, policy: FillPolicy | str | None) -> TrendSeries:
    """Return a copy of ``series`` with gaps filled according to ``policy``.

    CARRY_FORWARD repeats the last measured value; leading gaps stay gaps.
    ZERO_FILL substitutes zero for every metric; the point is still tagged
    ``Filled``, so a filled zero never reads as a measured one.

    Raises:
        InvalidFillPolicyError: See ``resolve_fill_policy``.
    """
    policy = resolve_fill_policy(policy)
    if policy is FillPolicy.NONE:
        return series

    points: list[TrendPoint] = []
    last_measured: float | None = None
    for point in series.points:
        if isinstance(point.value, Measured):
            last_measured = point.value.value
            points.append(point)
        elif not point.is_gap:
            points.append(point)
        elif policy is FillPolicy.ZERO_FILL:
            points.append(TrendPoint(point.date, point.metric_type, Filled(0.0, policy)))
        elif last_measured is not None:
            points.append(TrendPoint(point.date, point.metric_type, Filled(last_measured, policy)))
        else:
            points.append(point)

    filled = sum(1 for p in points if isinstance(p.value, Filled))
    logger.debug(
        "Applied %s to %s trend: %d of %d points filled",
        policy.value, series.metric_type.value, filled, len(points),
    )
    return TrendSeries(
        metric_type=series.metric_type,
        start=series.start,
        end=series.end,
        points=points,
        fill_policy=policy,
    )


def rolling_average(series: TrendSeries, window: int) -> TrendSeries:
    """Trailing mean over the last ``window`` days of measured values.

    Only ``Measured`` points contribute.  A day whose window holds no
    measured value is a gap, keeping its own absence reason if it had one.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")

    points: list[TrendPoint] = []
    for i, point in enumerate(series.points):
        values = [
            p.value.value
            for p in series.points[max(0, i - window + 1): i + 1]
            if isinstance(p.value, Measured)
        ]
        if values:
            value: MetricValue = Measured(math.fsum(values) / len(values))
        else:
            value = point.value if point.is_gap else ABSENT
        points.append(TrendPoint(point.date, point.metric_type, value))

    return TrendSeries(
        metric_type=series.metric_type,
        start=series.start,
        end=series.end,
        points=points,
    )
