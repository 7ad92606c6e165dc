"""Cadence health timeline core.

This package reconciles overlapping health measurements from several
recording sources into one normalized timeline per metric and derives
per-day summaries and multi-day trend series from it.

Subpackages:
    sources/ — SampleSource implementations (in-memory, Apple Health export)

Core modules:
    base            — Canonical data models and the SampleSource ABC
    errors          — Exception hierarchy
    config_loader   — Load/validate/hot-reload timeline_config.yaml
    normalizer      — Metric identifier resolution and unit conversion
    reconciliation  — Multi-source conflict resolution
    bucketer        — Timezone-correct day bucketing
    aggregation     — Daily reduction, trend series, gap filling
    query           — Concurrent per-metric fan-out and response assembly
"""

from src.timeline.base import (
    Absent,
    DailySummary,
    DateRange,
    FillPolicy,
    Filled,
    Measured,
    MetricType,
    NormalizedRecord,
    RawSample,
    SampleSource,
    TrendSeries,
)
from src.timeline.bucketer import CalendarConfig
from src.timeline.config_loader import PipelineConfig, get_pipeline_config
from src.timeline.query import TimelineService

__all__ = [
    "Absent",
    "CalendarConfig",
    "DailySummary",
    "DateRange",
    "FillPolicy",
    "Filled",
    "Measured",
    "MetricType",
    "NormalizedRecord",
    "PipelineConfig",
    "RawSample",
    "SampleSource",
    "TimelineService",
    "TrendSeries",
    "get_pipeline_config",
]
