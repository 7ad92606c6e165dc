"""Query façade: fan out per-metric fetches and assemble the response.

For a requested date range and set of metric types the service issues one
fetch per metric against the SampleSource, runs each result through
normalize → reconcile → bucket on its own, then joins them for aggregation.
Fetches run concurrently, bounded by ``query.max_concurrent_fetches``;
requests beyond the bound wait for a slot.

Failure policy:
    - AuthorizationDenied / SourceUnavailable for one metric degrade that
      metric to Absent and add one Diagnostic; the other metrics are kept.
    - Authorization denied for every requested metric fails the request.
    - An invalid range or calendar fails the request before any output.
    - Caller cancellation cancels every in-flight fetch and propagates
      ``asyncio.CancelledError``; completed per-metric work is discarded.

Usage::

    service = TimelineService(source, calendar=CalendarConfig("Europe/Berlin"))
    response = await service.compute_summary(date(2026, 2, 23))
    response.summary.total_steps        # Measured(8412.0) or Absent(...)
    response.diagnostics                # per-metric failures
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from src.timeline.aggregation import (
    apply_fill_policy,
    build_trend,
    daily_values,
    resolve_fill_policy,
    rolling_average,
    summarize_day,
)
from src.timeline.base import (
    ALL_METRICS,
    Absent,
    DailySummary,
    DateRange,
    Diagnostic,
    DiagnosticKind,
    FillPolicy,
    MetricType,
    MetricValue,
    NormalizedRecord,
    SampleIssue,
    SampleSource,
    TrendSeries,
)
from src.timeline.bucketer import CalendarConfig, bucket_records, range_bounds
from src.timeline.config_loader import PipelineConfig, get_pipeline_config
from src.timeline.errors import (
    AuthorizationDeniedError,
    InvalidRangeError,
    SourceUnavailableError,
)
from src.timeline.normalizer import normalize_batch
from src.timeline.reconciliation import reconcile

logger = logging.getLogger("cadence.timeline.query")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MetricPipelineResult:
    """Output of one metric's normalize → reconcile → bucket run."""

    metric_type: MetricType
    records: list[NormalizedRecord] = field(default_factory=list)
    buckets: dict[date, list[NormalizedRecord]] = field(default_factory=dict)
    issues: list[SampleIssue] = field(default_factory=list)


@dataclass
class QueryResult:
    """Joined per-metric results for one request.

    Attributes:
        date_range:    Requested calendar range.
        buckets:       Metric → day → reconciled (partial) records, for
                       metrics that were fetched successfully.
        records:       Metric → reconciled timeline, for caller storage.
        diagnostics:   One entry per metric that failed.
        sample_issues: Samples dropped during normalization.
    """

    date_range: DateRange
    buckets: dict[MetricType, dict[date, list[NormalizedRecord]]] = field(default_factory=dict)
    records: dict[MetricType, list[NormalizedRecord]] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    sample_issues: list[SampleIssue] = field(default_factory=list)

    @property
    def unavailable(self) -> dict[MetricType, str]:
        return {d.metric_type: d.kind.value for d in self.diagnostics}


@dataclass
class SummaryResponse:
    summary: DailySummary
    diagnostics: list[Diagnostic] = field(default_factory=list)
    sample_issues: list[SampleIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summary": self.summary.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "dropped_samples": len(self.sample_issues),
        }


@dataclass
class SummaryRangeResponse:
    summaries: list[DailySummary] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    sample_issues: list[SampleIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summaries": [s.to_dict() for s in self.summaries],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "dropped_samples": len(self.sample_issues),
        }


@dataclass
class TrendResponse:
    series: TrendSeries
    diagnostics: list[Diagnostic] = field(default_factory=list)
    sample_issues: list[SampleIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "series": self.series.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "dropped_samples": len(self.sample_issues),
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TimelineService:
    """Drive the pipeline for summary and trend requests.

    The service holds configuration only; every request builds and discards
    its own records.
    """

    def __init__(
        self,
        source: SampleSource,
        config: PipelineConfig | None = None,
        calendar: CalendarConfig | None = None,
        max_concurrent: int | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            source:         Raw sample provider.
            config:         PipelineConfig (loaded from singleton if None).
            calendar:       Bucketing calendar; defaults to the config's.
            max_concurrent: Fetch concurrency bound; defaults to the config's.
        """
        self._source = source
        self._config = config or get_pipeline_config()
        self._calendar = calendar or CalendarConfig.from_config(self._config)
        self._max_concurrent = max_concurrent or self._config.query.max_concurrent_fetches
        if self._max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self._max_concurrent}")

    @property
    def calendar(self) -> CalendarConfig:
        return self._calendar

    async def fetch_buckets(
        self,
        date_range: DateRange,
        metric_types: Iterable[MetricType] = ALL_METRICS,
    ) -> QueryResult:
        """Fetch, normalize, reconcile and bucket every requested metric.

        Raises:
            InvalidCalendarConfigError: The calendar cannot be resolved.
            InvalidRangeError:          The source rejected the range.
            AuthorizationDeniedError:   Every requested metric was denied.
            asyncio.CancelledError:     The caller cancelled the request.
        """
        self._calendar.validate()
        metrics = tuple(dict.fromkeys(MetricType(m) for m in metric_types))
        if not metrics:
            raise ValueError("At least one metric type must be requested")

        start_utc, end_utc = range_bounds(date_range, self._calendar)
        logger.info(
            "Fetching %s for %s..%s (%s)",
            ",".join(m.value for m in metrics),
            date_range.start, date_range.end, self._calendar.timezone,
        )

        semaphore = asyncio.Semaphore(self._max_concurrent)
        outcomes = await asyncio.gather(
            *(self._run_metric(m, start_utc, end_utc, semaphore) for m in metrics),
            return_exceptions=True,
        )

        result = QueryResult(date_range=date_range)
        denied = 0
        for metric, outcome in zip(metrics, outcomes):
            if isinstance(outcome, MetricPipelineResult):
                result.buckets[metric] = outcome.buckets
                result.records[metric] = outcome.records
                result.sample_issues.extend(outcome.issues)
            elif isinstance(outcome, asyncio.CancelledError):
                logger.info("Fetch for %s was cancelled; abandoning request", metric.value)
                raise outcome
            elif isinstance(outcome, InvalidRangeError):
                raise outcome
            elif isinstance(outcome, AuthorizationDeniedError):
                denied += 1
                logger.warning("Authorization denied for %s: %s", metric.value, outcome)
                result.diagnostics.append(
                    Diagnostic(metric, DiagnosticKind.AUTHORIZATION_DENIED, str(outcome))
                )
            elif isinstance(outcome, SourceUnavailableError):
                logger.warning("Source unavailable for %s: %s", metric.value, outcome)
                result.diagnostics.append(
                    Diagnostic(metric, DiagnosticKind.SOURCE_UNAVAILABLE, str(outcome))
                )
            elif isinstance(outcome, Exception):
                logger.error(
                    "Unexpected error fetching %s: %s", metric.value, outcome, exc_info=outcome
                )
                result.diagnostics.append(
                    Diagnostic(
                        metric,
                        DiagnosticKind.SOURCE_UNAVAILABLE,
                        f"{type(outcome).__name__}: {outcome}",
                    )
                )
            else:
                raise outcome

        if denied == len(metrics):
            raise AuthorizationDeniedError(
                "Authorization denied for every requested metric type: "
                + ", ".join(m.value for m in metrics)
            )

        logger.info(
            "Query complete: %d/%d metrics, %d diagnostics, %d dropped samples",
            len(result.buckets), len(metrics), len(result.diagnostics), len(result.sample_issues),
        )
        return result

    async def _run_metric(
        self,
        metric_type: MetricType,
        start_utc: datetime,
        end_utc: datetime,
        semaphore: asyncio.Semaphore,
    ) -> MetricPipelineResult:
        """Fetch one metric within the concurrency bound, then process it."""
        async with semaphore:
            samples = await self._source.fetch_raw_samples(metric_type, start_utc, end_utc)

        normalized = normalize_batch(samples, self._config, expected=metric_type)
        records = reconcile(normalized.records, metric_type, self._config)
        buckets = bucket_records(records, self._calendar)
        logger.debug(
            "%s: %d samples → %d records → %d days",
            metric_type.value, len(samples), len(records), len(buckets),
        )
        return MetricPipelineResult(
            metric_type=metric_type,
            records=records,
            buckets=buckets,
            issues=normalized.issues,
        )

    async def compute_summary(
        self,
        day: date,
        metric_types: Iterable[MetricType] = ALL_METRICS,
    ) -> SummaryResponse:
        """Compute the DailySummary for one calendar day."""
        result = await self.fetch_buckets(DateRange.single(day), metric_types)
        summary = summarize_day(day, result.buckets, self._config, result.unavailable)
        return SummaryResponse(
            summary=summary,
            diagnostics=result.diagnostics,
            sample_issues=result.sample_issues,
        )

    async def compute_summaries(
        self,
        date_range: DateRange,
        metric_types: Iterable[MetricType] = ALL_METRICS,
    ) -> SummaryRangeResponse:
        """Compute one DailySummary per day of ``date_range`` from a single fetch."""
        result = await self.fetch_buckets(date_range, metric_types)
        summaries = [
            summarize_day(day, result.buckets, self._config, result.unavailable)
            for day in date_range
        ]
        return SummaryRangeResponse(
            summaries=summaries,
            diagnostics=result.diagnostics,
            sample_issues=result.sample_issues,
        )

    async def compute_trend(
        self,
        metric_type: MetricType,
        date_range: DateRange,
        fill_policy: FillPolicy | str | None = None,
        rolling_window: int | None = None,
    ) -> TrendResponse:
        """Compute the TrendSeries of one metric over ``date_range``.

        Args:
            metric_type:    Metric to trend.
            date_range:     Inclusive calendar range.
            fill_policy:    Gap-fill policy; None uses the configured default.
            rolling_window: If given, replace daily values with the trailing mean
                            over this many days of measured values.  Gap
                            filling runs on the averaged series.

        Raises:
            InvalidFillPolicyError: Unknown policy name.
            ValueError:             ``rolling_window`` below 1.
        """
        metric_type = MetricType(metric_type)
        policy = resolve_fill_policy(
            fill_policy if fill_policy is not None else self._config.fill_policy
        )
        if rolling_window is not None and rolling_window < 1:
            raise ValueError(f"rolling_window must be >= 1, got {rolling_window}")

        result = await self.fetch_buckets(date_range, (metric_type,))
        if metric_type in result.unavailable:
            reason = Absent(reason=result.unavailable[metric_type])
            values: dict[date, MetricValue] = {day: reason for day in date_range}
        else:
            values = daily_values(
                metric_type, result.buckets[metric_type], date_range, self._config
            )
        series = build_trend(metric_type, date_range, values)
        if rolling_window is not None:
            series = rolling_average(series, rolling_window)
        series = apply_fill_policy(series, policy)
        return TrendResponse(
            series=series,
            diagnostics=result.diagnostics,
            sample_issues=result.sample_issues,
        )
