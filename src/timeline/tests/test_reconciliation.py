"""Tests for multi-source reconciliation."""

from __future__ import annotations

import itertools
import random

import pytest

from src.timeline.base import MetricType
from src.timeline.config_loader import PipelineConfig
from src.timeline.normalizer import normalize_batch
from src.timeline.reconciliation import (
    TieBreak,
    compare_precedence,
    earliest_observation,
    precedence_key,
    reconcile,
    resolve_tie_break,
)
from src.timeline.tests.conftest import make_record, utc

STEPS = MetricType.STEPS
HR = MetricType.HEART_RATE


def assert_non_overlapping(records) -> None:
    for a, b in zip(records, records[1:]):
        assert a.end_time <= b.start_time


class TestPrecedence:
    def test_priority_dominates_duration(self) -> None:
        short_high = make_record(STEPS, 10, utc(8), utc(8, 5), priority=2)
        long_low = make_record(STEPS, 900, utc(8), utc(9), priority=1)
        assert compare_precedence(short_high, long_low) == 1
        assert compare_precedence(long_low, short_high) == -1

    def test_duration_breaks_priority_tie(self) -> None:
        longer = make_record(STEPS, 600, utc(8), utc(9), source="phone")
        shorter = make_record(STEPS, 300, utc(8), utc(8, 30), source="watch")
        assert compare_precedence(longer, shorter) == 1

    def test_most_recent_observation_breaks_coverage_tie(self) -> None:
        older = make_record(STEPS, 100, utc(8), utc(9), source="a", observed_at=utc(9, 5))
        newer = make_record(STEPS, 120, utc(8), utc(9), source="b", observed_at=utc(12))
        assert compare_precedence(newer, older) == 1
        assert compare_precedence(newer, older, tie_break=earliest_observation) == -1

    def test_identical_records_compare_equal(self) -> None:
        a = make_record(STEPS, 100, utc(8), utc(9))
        assert compare_precedence(a, make_record(STEPS, 100, utc(8), utc(9))) == 0

    def test_sorting_by_key_is_total(self) -> None:
        records = [
            make_record(STEPS, v, utc(8), utc(9), source=s, observed_at=utc(9))
            for v, s in [(1, "a"), (2, "a"), (1, "b")]
        ]
        keys = [precedence_key(r) for r in records]
        assert len(set(keys)) == 3

    def test_resolve_tie_break_from_config(self, pipeline_config: PipelineConfig) -> None:
        fn = resolve_tie_break(None, pipeline_config)
        assert fn is resolve_tie_break(TieBreak.MOST_RECENT)

    def test_resolve_tie_break_accepts_callable(self) -> None:
        custom = lambda record: record.value  # noqa: E731
        assert resolve_tie_break(custom) is custom


class TestIntervalReconciliation:
    def test_watch_span_wins_phone_keeps_proportional_remainder(
        self, pipeline_config: PipelineConfig
    ) -> None:
        watch = make_record(STEPS, 500, utc(8), utc(8, 30), source="watch", priority=2)
        phone = make_record(STEPS, 900, utc(8), utc(9), source="phone", priority=1)

        result = reconcile([phone, watch], STEPS, pipeline_config)

        assert [(r.source_id, r.start_time, r.end_time) for r in result] == [
            ("watch", utc(8), utc(8, 30)),
            ("phone", utc(8, 30), utc(9)),
        ]
        assert result[1].value == pytest.approx(450.0)
        assert sum(r.value for r in result) == pytest.approx(950.0)

    def test_equal_priority_overlap_not_summed(self, pipeline_config: PipelineConfig) -> None:
        phone = make_record(STEPS, 600, utc(8), utc(9), source="phone")
        watch = make_record(STEPS, 300, utc(8, 15), utc(8, 45), source="watch")

        result = reconcile([watch, phone], STEPS, pipeline_config)

        assert result == [phone]

    def test_exact_duplicates_collapse(self, pipeline_config: PipelineConfig) -> None:
        record = make_record(STEPS, 250, utc(8), utc(8, 30))
        assert reconcile([record, record], STEPS, pipeline_config) == [record]

    def test_high_priority_inside_low_priority_splits_it(
        self, pipeline_config: PipelineConfig
    ) -> None:
        phone = make_record(STEPS, 1200, utc(8), utc(10), source="phone", priority=1)
        manual = make_record(STEPS, 100, utc(8, 30), utc(9), source="manual", priority=3)

        result = reconcile([phone, manual], STEPS, pipeline_config)

        assert [(r.source_id, r.value) for r in result] == [
            ("phone", pytest.approx(300.0)),
            ("manual", 100),
            ("phone", pytest.approx(600.0)),
        ]
        assert_non_overlapping(result)

    def test_disjoint_records_pass_through(self, pipeline_config: PipelineConfig) -> None:
        a = make_record(STEPS, 100, utc(8), utc(9), source="phone")
        b = make_record(STEPS, 200, utc(10), utc(11), source="watch", priority=2)
        assert reconcile([b, a], STEPS, pipeline_config) == [a, b]

    def test_most_recent_wins_equal_priority_and_coverage(
        self, pipeline_config: PipelineConfig
    ) -> None:
        first = make_record(MetricType.SLEEP, 3600, utc(1), utc(2), source="a", observed_at=utc(3))
        revised = make_record(MetricType.SLEEP, 3000, utc(1), utc(2), source="b", observed_at=utc(7))

        assert reconcile([first, revised], MetricType.SLEEP, pipeline_config) == [revised]
        assert reconcile(
            [first, revised], MetricType.SLEEP, pipeline_config, tie_break="earliest"
        ) == [first]

    def test_covered_instant_dropped_uncovered_kept(self, pipeline_config: PipelineConfig) -> None:
        span = make_record(STEPS, 600, utc(8), utc(9), source="phone")
        covered = make_record(STEPS, 40, utc(8, 15), source="manual", priority=3)
        lone = make_record(STEPS, 30, utc(11), source="manual", priority=3)

        result = reconcile([lone, covered, span], STEPS, pipeline_config)

        assert result == [span, lone]

    def test_co_instant_duplicates_resolve_by_priority(
        self, pipeline_config: PipelineConfig
    ) -> None:
        low = make_record(STEPS, 30, utc(11), source="phone", priority=1)
        high = make_record(STEPS, 35, utc(11), source="watch", priority=2)
        assert reconcile([low, high], STEPS, pipeline_config) == [high]

    def test_order_independent(self, pipeline_config: PipelineConfig) -> None:
        records = [
            make_record(STEPS, 900, utc(8), utc(9), source="phone", priority=1),
            make_record(STEPS, 500, utc(8), utc(8, 30), source="watch", priority=2),
            make_record(STEPS, 420, utc(8, 45), utc(9, 30), source="band", priority=1),
            make_record(STEPS, 80, utc(8, 50), utc(9, 10), source="manual", priority=3),
            make_record(STEPS, 75, utc(9, 20), source="phone"),
        ]
        expected = reconcile(records, STEPS, pipeline_config)
        for perm in itertools.permutations(records):
            assert reconcile(list(perm), STEPS, pipeline_config) == expected
        assert_non_overlapping(expected)

    def test_pieces_never_exceed_source_totals(self, pipeline_config: PipelineConfig) -> None:
        rng = random.Random(7)
        records = []
        for i in range(40):
            start = utc(6, rng.randrange(0, 60))
            end = utc(7 + rng.randrange(0, 3), rng.randrange(0, 60))
            records.append(
                make_record(STEPS, rng.randrange(0, 2000), start, end,
                            source=f"s{i % 4}", priority=rng.randrange(0, 3))
            )

        result = reconcile(records, STEPS, pipeline_config)

        assert_non_overlapping(result)
        assert all(r.value >= 0 for r in result)
        assert sum(r.value for r in result) <= sum(r.value for r in records) + 1e-6

    def test_mixed_metrics_rejected(self, pipeline_config: PipelineConfig) -> None:
        with pytest.raises(ValueError, match="Cannot reconcile"):
            reconcile(
                [make_record(STEPS, 1, utc(8), utc(9)), make_record(HR, 60, utc(8))],
                config=pipeline_config,
            )

    def test_empty_input(self, pipeline_config: PipelineConfig) -> None:
        assert reconcile([], STEPS, pipeline_config) == []


class TestPointReconciliation:
    def test_higher_priority_sample_supersedes_nearby_sample(
        self, pipeline_config: PipelineConfig
    ) -> None:
        watch = make_record(HR, 62, utc(10), source="watch", priority=2)
        phone_near = make_record(HR, 75, utc(10, 0, second=10), source="phone", priority=1)
        phone_far = make_record(HR, 70, utc(10, 2), source="phone", priority=1)

        result = reconcile([phone_near, phone_far, watch], HR, pipeline_config)

        assert result == [watch, phone_far]

    def test_same_source_dense_samples_all_kept(self, pipeline_config: PipelineConfig) -> None:
        samples = [
            make_record(HR, 60 + i, utc(10, 0, second=5 * i), source="watch", priority=2)
            for i in range(6)
        ]
        assert reconcile(list(reversed(samples)), HR, pipeline_config) == samples

    def test_same_source_same_instant_deduplicated(self, pipeline_config: PipelineConfig) -> None:
        a = make_record(HR, 60, utc(10), source="watch", observed_at=utc(10, 1))
        b = make_record(HR, 61, utc(10), source="watch", observed_at=utc(10, 5))
        assert reconcile([a, b], HR, pipeline_config) == [b]

    def test_window_edge_inclusive(self, pipeline_config: PipelineConfig) -> None:
        watch = make_record(HR, 62, utc(10), source="watch", priority=2)
        edge = make_record(HR, 75, utc(10, 0, second=30), source="phone", priority=1)
        past = make_record(HR, 75, utc(10, 0, second=31), source="phone", priority=1)
        assert reconcile([edge, watch], HR, pipeline_config) == [watch]
        assert reconcile([past, watch], HR, pipeline_config) == [watch, past]

    def test_order_independent(self, pipeline_config: PipelineConfig) -> None:
        records = [
            make_record(HR, 60, utc(10), source="watch", priority=2),
            make_record(HR, 61, utc(10, 0, second=20), source="phone", priority=2),
            make_record(HR, 62, utc(10, 0, second=40), source="band", priority=2),
            make_record(HR, 63, utc(10, 1), source="phone", priority=1),
        ]
        expected = reconcile(records, HR, pipeline_config)
        for perm in itertools.permutations(records):
            assert reconcile(list(perm), HR, pipeline_config) == expected


class TestEndToEndWithNormalizer:
    def test_phone_and_watch_walk_from_raw_samples(
        self, steps_samples, pipeline_config: PipelineConfig
    ) -> None:
        normalized = normalize_batch(steps_samples, pipeline_config)
        result = reconcile(normalized.records, STEPS, pipeline_config)
        assert sum(r.value for r in result) == pytest.approx(950.0)
