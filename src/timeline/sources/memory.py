"""In-memory sample source.

Holds raw samples already loaded by the caller (an export file, a test
fixture, a platform query result) and answers range queries over them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from src.timeline.base import MetricType, RawSample, SampleSource
from src.timeline.errors import InvalidRangeError, UnsupportedMetricError
from src.timeline.normalizer import resolve_metric_type, to_utc

logger = logging.getLogger("cadence.timeline.sources.memory")


def _overlaps(sample: RawSample, start: datetime, end: datetime) -> bool:
    s = to_utc(sample.start_time)
    e = to_utc(sample.end_time)
    if s == e:
        return start <= s < end
    return s < end and e > start


class InMemorySampleSource(SampleSource):
    """Serve raw samples grouped per metric type.

    Usage::

        source = InMemorySampleSource.from_samples(samples)
        steps = await source.fetch_raw_samples(MetricType.STEPS, start, end)
    """

    SOURCE_ID = "memory"

    def __init__(self, by_metric: Mapping[MetricType, Iterable[RawSample]] | None = None) -> None:
        self._samples: dict[MetricType, list[RawSample]] = {m: [] for m in MetricType}
        for metric_type, samples in (by_metric or {}).items():
            self._samples[MetricType(metric_type)].extend(samples)

    @classmethod
    def from_samples(cls, samples: Iterable[RawSample]) -> "InMemorySampleSource":
        """Group samples by their resolved metric type.

        Samples with an unknown metric identifier are skipped and logged.
        """
        source = cls()
        skipped = 0
        for sample in samples:
            try:
                metric_type = resolve_metric_type(sample.metric_type)
            except UnsupportedMetricError:
                skipped += 1
                continue
            source._samples[metric_type].append(sample)
        if skipped:
            logger.info("Skipped %d samples with unsupported metric identifiers", skipped)
        return source

    def add(self, metric_type: MetricType, samples: Iterable[RawSample]) -> None:
        self._samples[MetricType(metric_type)].extend(samples)

    def count(self, metric_type: MetricType) -> int:
        return len(self._samples[MetricType(metric_type)])

    async def fetch_raw_samples(
        self,
        metric_type: MetricType,
        start_time: datetime,
        end_time: datetime,
    ) -> Sequence[RawSample]:
        start = to_utc(start_time)
        end = to_utc(end_time)
        if end < start:
            raise InvalidRangeError(
                f"Fetch window ends before it starts ({end.isoformat()} < {start.isoformat()})"
            )
        return [s for s in self._samples[MetricType(metric_type)] if _overlaps(s, start, end)]
