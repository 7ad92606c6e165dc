"""Metric identifier resolution and unit conversion.

Turns one RawSample into one NormalizedRecord in the metric's canonical
unit (count, bpm, seconds) with timezone-aware UTC timestamps.  The
conversion table is explicit per metric type; nothing is inferred.
Distance-based step proxies in particular are rejected, not estimated.

``normalize_sample`` is pure.  ``normalize_batch`` wraps it for a whole
fetch result: sample-level failures are logged and returned as
SampleIssue entries instead of aborting the batch.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from src.timeline.base import MetricType, NormalizedRecord, RawSample, SampleIssue
from src.timeline.config_loader import PipelineConfig, get_pipeline_config
from src.timeline.errors import (
    MalformedSampleError,
    SampleError,
    UnsupportedMetricError,
    UnsupportedUnitError,
)

logger = logging.getLogger("cadence.timeline.normalizer")

# ---------------------------------------------------------------------------
# Metric identifier aliases
# All aliases are stored lowercase; matching is also done lowercase.
# ---------------------------------------------------------------------------

METRIC_ALIASES: dict[MetricType, list[str]] = {
    MetricType.STEPS: [
        "steps", "step", "step_count", "stepcount", "steps_count",
        "hkquantitytypeidentifierstepcount",
        "com.google.step_count.delta",
    ],
    MetricType.HEART_RATE: [
        "heart_rate", "heartrate", "hr", "pulse",
        "hkquantitytypeidentifierheartrate",
        "com.google.heart_rate.bpm",
    ],
    MetricType.SLEEP: [
        "sleep", "sleep_session", "sleep_analysis", "sleepanalysis",
        "hkcategorytypeidentifiersleepanalysis",
        "com.google.sleep.segment",
    ],
    MetricType.WORKOUT: [
        "workout", "workouts", "exercise", "activity_session",
        "hkworkouttypeidentifier",
        "com.google.activity.segment",
    ],
}

_ALIAS_INDEX: dict[str, MetricType] = {
    alias: metric for metric, aliases in METRIC_ALIASES.items() for alias in aliases
}

# ---------------------------------------------------------------------------
# Conversion table: metric → unit (lowercase) → factor to canonical unit
# ---------------------------------------------------------------------------

_DURATION_FACTORS: dict[str, float] = {
    "s": 1.0, "sec": 1.0, "secs": 1.0, "second": 1.0, "seconds": 1.0,
    "ms": 0.001, "millisecond": 0.001, "milliseconds": 0.001,
    "min": 60.0, "mins": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hrs": 3600.0, "hour": 3600.0, "hours": 3600.0,
}

UNIT_CONVERSIONS: dict[MetricType, dict[str, float]] = {
    MetricType.STEPS: {"count": 1.0, "steps": 1.0, "step": 1.0},
    MetricType.HEART_RATE: {
        "bpm": 1.0, "count/min": 1.0, "beats/min": 1.0, "/min": 1.0,
        "count/s": 60.0, "hz": 60.0,
    },
    MetricType.SLEEP: _DURATION_FACTORS,
    MetricType.WORKOUT: _DURATION_FACTORS,
}

# Units refused for steps: converting distance to steps needs a stride model.
_DISTANCE_UNITS = frozenset({"m", "km", "mi", "ft", "yd", "meter", "meters", "mile", "miles"})


def resolve_metric_type(identifier: MetricType | str) -> MetricType:
    """Map a metric identifier to its MetricType.

    Raises:
        UnsupportedMetricError: If the identifier is not in the alias table.
    """
    if isinstance(identifier, MetricType):
        return identifier
    key = str(identifier).strip().lower()
    try:
        return _ALIAS_INDEX[key]
    except KeyError:
        raise UnsupportedMetricError(f"Unsupported metric identifier: {identifier!r}") from None


def conversion_factor(metric_type: MetricType, unit: str) -> float:
    """Return the multiplier from ``unit`` to the canonical unit.

    Raises:
        UnsupportedUnitError: If there is no conversion for the unit.
    """
    key = (unit or "").strip().lower()
    if metric_type is MetricType.STEPS and key in _DISTANCE_UNITS:
        raise UnsupportedUnitError(
            f"Distance unit {unit!r} is not a step count; step proxies are not converted"
        )
    try:
        return UNIT_CONVERSIONS[metric_type][key]
    except KeyError:
        raise UnsupportedUnitError(
            f"Unit {unit!r} has no conversion to {metric_type.canonical_unit!r} "
            f"for {metric_type.value}"
        ) from None


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_sample(
    sample: RawSample,
    config: PipelineConfig | None = None,
    expected: MetricType | None = None,
) -> NormalizedRecord:
    """Convert one raw sample into a canonical record.

    Args:
        sample:   The raw sample.
        config:   Pipeline config (source priorities, asleep states).
        expected: If given, the metric type the sample must resolve to.

    Returns:
        NormalizedRecord in canonical units.

    Raises:
        MalformedSampleError:   Inverted timestamps, non-finite or negative value.
        UnsupportedMetricError: Unknown identifier, unexpected metric, or a
                                sleep state that is not sleep.
        UnsupportedUnitError:   No conversion for the unit.
    """
    cfg = config or get_pipeline_config()
    metric_type = resolve_metric_type(sample.metric_type)

    if expected is not None and metric_type is not expected:
        raise UnsupportedMetricError(
            f"Sample resolves to {metric_type.value}, expected {expected.value}"
        )

    if not isinstance(sample.start_time, datetime) or not isinstance(sample.end_time, datetime):
        raise MalformedSampleError("Sample timestamps must be datetimes")
    start = to_utc(sample.start_time)
    end = to_utc(sample.end_time)
    if end < start:
        raise MalformedSampleError(
            f"Sample ends before it starts ({end.isoformat()} < {start.isoformat()})"
        )

    try:
        raw_value = float(sample.value)
    except (TypeError, ValueError):
        raise MalformedSampleError(f"Sample value is not numeric: {sample.value!r}") from None
    if not math.isfinite(raw_value):
        raise MalformedSampleError(f"Sample value is not finite: {raw_value!r}")
    if raw_value < 0:
        raise MalformedSampleError(f"Sample value is negative: {raw_value!r}")

    if metric_type is MetricType.SLEEP and sample.state is not None:
        if sample.state.strip().lower() not in cfg.aggregation.asleep_states:
            raise UnsupportedMetricError(
                f"Sleep state {sample.state!r} is not a sleep interval"
            )

    value = raw_value * conversion_factor(metric_type, sample.unit)

    priority = sample.source_priority
    if priority is None:
        priority = cfg.source_priority(sample.source_id)

    observed = to_utc(sample.observed_at) if sample.observed_at is not None else end

    return NormalizedRecord(
        metric_type=metric_type,
        value=value,
        start_time=start,
        end_time=end,
        source_id=sample.source_id,
        source_priority=int(priority),
        observed_at=observed,
    )


@dataclass
class NormalizationResult:
    """Records that normalized cleanly plus the samples that were dropped."""

    records: list[NormalizedRecord] = field(default_factory=list)
    issues: list[SampleIssue] = field(default_factory=list)


def normalize_batch(
    samples: Iterable[RawSample],
    config: PipelineConfig | None = None,
    expected: MetricType | None = None,
) -> NormalizationResult:
    """Normalize a batch of samples, dropping (and recording) bad ones."""
    cfg = config or get_pipeline_config()
    result = NormalizationResult()

    for sample in samples:
        try:
            result.records.append(normalize_sample(sample, cfg, expected))
        except SampleError as exc:
            metric = (
                sample.metric_type.value
                if isinstance(sample.metric_type, MetricType)
                else str(sample.metric_type)
            )
            logger.warning(
                "Dropped %s sample from %s: %s", metric, sample.source_id, exc
            )
            result.issues.append(
                SampleIssue(
                    metric=metric,
                    source_id=sample.source_id,
                    error=type(exc).__name__,
                    message=str(exc),
                )
            )

    if result.issues:
        logger.info(
            "Normalized %d samples, dropped %d",
            len(result.records), len(result.issues),
        )
    return result
