"""Multi-source reconciliation into one non-overlapping timeline per metric.

Competing sources often record the same activity: a phone and a watch both
count the same walk, a manual entry overlaps an automatic one.  Summing them
double counts.  This module picks, for every instant of the timeline, the
single record that wins under an explicit total order:

    1. higher source priority
    2. larger covered duration
    3. tie-break policy (default: most recent observation wins)
    4. deterministic fall-backs (source id, value, start, end)

Interval metrics (steps, sleep, workouts) are swept over their boundaries;
each elementary span goes to the winning record, whose value is attributed
in proportion to the share of its own duration the span covers.  Heart-rate
samples are points: a sample is superseded when a higher-precedence sample
from another source sits within the configured match window of its
timestamp.

Output depends only on the set of input records, never on their order.
"""

from __future__ import annotations

import heapq
import logging
import math
from bisect import bisect_right
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from src.timeline.base import MetricType, NormalizedRecord
from src.timeline.config_loader import PipelineConfig, get_pipeline_config

logger = logging.getLogger("cadence.timeline.reconciliation")

TieBreakFn = Callable[[NormalizedRecord], Any]


# ---------------------------------------------------------------------------
# Precedence order
# ---------------------------------------------------------------------------


def _observed_ts(record: NormalizedRecord) -> float:
    return (record.observed_at or record.end_time).timestamp()


def most_recent_observation(record: NormalizedRecord) -> float:
    """Tie-break value: later observations rank higher."""
    return _observed_ts(record)


def earliest_observation(record: NormalizedRecord) -> float:
    """Tie-break value: earlier observations rank higher."""
    return -_observed_ts(record)


class TieBreak(str, Enum):
    MOST_RECENT = "most_recent"
    EARLIEST = "earliest"


_TIE_BREAK_FNS: dict[TieBreak, TieBreakFn] = {
    TieBreak.MOST_RECENT: most_recent_observation,
    TieBreak.EARLIEST: earliest_observation,
}


def resolve_tie_break(
    tie_break: TieBreak | str | TieBreakFn | None,
    config: PipelineConfig | None = None,
) -> TieBreakFn:
    """Return a tie-break callable from a policy name, enum, or callable.

    None falls back to ``reconciliation.tie_break`` from the config.
    """
    if callable(tie_break):
        return tie_break
    if tie_break is None:
        tie_break = (config or get_pipeline_config()).reconciliation.tie_break
    return _TIE_BREAK_FNS[TieBreak(tie_break)]


def precedence_key(
    record: NormalizedRecord, tie_break: TieBreakFn = most_recent_observation
) -> tuple:
    """Sort key under which the greater record wins a conflict."""
    return (
        record.source_priority,
        record.duration_seconds,
        tie_break(record),
        record.source_id,
        record.value,
        -record.start_time.timestamp(),
        -record.end_time.timestamp(),
    )


def compare_precedence(
    a: NormalizedRecord,
    b: NormalizedRecord,
    tie_break: TieBreakFn = most_recent_observation,
) -> int:
    """Return 1 if ``a`` wins over ``b``, -1 if ``b`` wins, 0 if equivalent."""
    ka = precedence_key(a, tie_break)
    kb = precedence_key(b, tie_break)
    return (ka > kb) - (ka < kb)


def _arrival_independent_order(record: NormalizedRecord) -> tuple:
    return (
        record.start_time,
        -record.source_priority,
        record.end_time,
        record.source_id,
        record.value,
        _observed_ts(record),
    )


class _Ranked:
    """Heap entry ordered so the highest-precedence record sits on top."""

    __slots__ = ("key", "index")

    def __init__(self, key: tuple, index: int) -> None:
        self.key = key
        self.index = index

    def __lt__(self, other: "_Ranked") -> bool:
        return (self.key, -self.index) > (other.key, -other.index)


# ---------------------------------------------------------------------------
# Interval metrics
# ---------------------------------------------------------------------------


def _reconcile_intervals(
    records: list[NormalizedRecord], tie_break: TieBreakFn
) -> list[NormalizedRecord]:
    """Sweep interval boundaries and attribute each span to its winner."""
    spans = [r for r in records if not r.is_instant]
    instants = [r for r in records if r.is_instant]

    boundaries = sorted({t for r in spans for t in (r.start_time, r.end_time)})
    heap: list[_Ranked] = []
    # [span index, piece start, piece end]
    pieces: list[list] = []
    next_span = 0

    for seg_start, seg_end in zip(boundaries, boundaries[1:]):
        while next_span < len(spans) and spans[next_span].start_time <= seg_start:
            heapq.heappush(heap, _Ranked(precedence_key(spans[next_span], tie_break), next_span))
            next_span += 1
        while heap and spans[heap[0].index].end_time <= seg_start:
            heapq.heappop(heap)
        if not heap:
            continue

        winner = heap[0].index
        if pieces and pieces[-1][0] == winner and pieces[-1][2] == seg_start:
            pieces[-1][2] = seg_end
        else:
            pieces.append([winner, seg_start, seg_end])

    output: list[NormalizedRecord] = []
    for index, start, end in pieces:
        source = spans[index]
        if start == source.start_time and end == source.end_time:
            output.append(source)
            continue
        share = (end - start).total_seconds() / source.duration_seconds
        output.append(replace(source, value=source.value * share, start_time=start, end_time=end))

    output.extend(_uncovered_instants(instants, pieces, tie_break))
    output.sort(key=lambda r: (r.start_time, r.end_time))

    superseded = len(spans) - len({p[0] for p in pieces})
    if superseded:
        logger.debug("Reconciliation superseded %d of %d interval records", superseded, len(spans))
    return output


def _uncovered_instants(
    instants: list[NormalizedRecord], pieces: list[list], tie_break: TieBreakFn
) -> list[NormalizedRecord]:
    """Keep zero-duration records that no interval covers, one per instant."""
    piece_starts = [p[1] for p in pieces]
    best: dict[datetime, NormalizedRecord] = {}

    for record in instants:
        t = record.instant
        pos = bisect_right(piece_starts, t) - 1
        if pos >= 0 and pieces[pos][1] <= t < pieces[pos][2]:
            continue
        current = best.get(t)
        if current is None or precedence_key(record, tie_break) > precedence_key(current, tie_break):
            best[t] = record

    return list(best.values())


# ---------------------------------------------------------------------------
# Point metrics
# ---------------------------------------------------------------------------


def _reconcile_points(
    records: list[NormalizedRecord], tie_break: TieBreakFn, window_seconds: float
) -> list[NormalizedRecord]:
    """Nearest-timestamp precedence for point samples.

    Samples are accepted highest precedence first.  A candidate is dropped
    when an accepted sample from a different source lies within the match
    window, or an accepted sample from the same source has the same instant.
    Accepted samples are indexed in a grid of window-sized cells so only the
    neighbouring cells need checking.
    """
    ranked = sorted(records, key=lambda r: precedence_key(r, tie_break), reverse=True)
    grid: dict[float, list[NormalizedRecord]] = {}
    accepted: list[NormalizedRecord] = []

    for record in ranked:
        ts = record.instant.timestamp()
        if window_seconds > 0:
            cell = math.floor(ts / window_seconds)
            neighbours = (cell - 1, cell, cell + 1)
        else:
            cell = ts
            neighbours = (cell,)

        conflict = False
        for key in neighbours:
            for other in grid.get(key, ()):
                gap = abs(other.instant.timestamp() - ts)
                if gap == 0 or (other.source_id != record.source_id and gap <= window_seconds):
                    conflict = True
                    break
            if conflict:
                break
        if conflict:
            continue

        grid.setdefault(cell, []).append(record)
        accepted.append(record)

    accepted.sort(key=lambda r: (r.instant, r.source_id))
    if len(accepted) < len(records):
        logger.debug(
            "Point reconciliation kept %d of %d samples", len(accepted), len(records)
        )
    return accepted


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def reconcile(
    records: Iterable[NormalizedRecord],
    metric_type: MetricType | None = None,
    config: PipelineConfig | None = None,
    tie_break: TieBreak | str | TieBreakFn | None = None,
) -> list[NormalizedRecord]:
    """Produce an ordered, non-overlapping timeline for one metric type.

    Args:
        records:     Normalized records, all of the same metric type.
        metric_type: Expected metric type (inferred from records if None).
        config:      PipelineConfig (loaded from singleton if None).
        tie_break:   Policy for equal priority and coverage; defaults to the
                     configured ``reconciliation.tie_break``.

    Returns:
        Records ordered by start time with no two overlapping.

    Raises:
        ValueError: If the records mix metric types.
    """
    cfg = config or get_pipeline_config()
    items = sorted(records, key=_arrival_independent_order)
    if not items:
        return []

    metric = metric_type or items[0].metric_type
    mixed = {r.metric_type for r in items if r.metric_type is not metric}
    if mixed:
        raise ValueError(
            f"Cannot reconcile {metric.value} with {sorted(m.value for m in mixed)}"
        )

    tie_break_fn = resolve_tie_break(tie_break, cfg)
    if metric.is_point:
        result = _reconcile_points(
            items, tie_break_fn, cfg.reconciliation.heart_rate_match_window_seconds
        )
    else:
        result = _reconcile_intervals(items, tie_break_fn)

    logger.debug(
        "Reconciled %s: %d records in, %d out", metric.value, len(items), len(result)
    )
    return result
