"""
Test DirectRunner - the in-process engine capabilities.
"""

from datetime import timedelta

import pyarrow as pa
import pytest

from windrow.aggregates import AggregateCall, AggregationAdaptor
from windrow.config import RunnerConfig
from windrow.errors import PreconditionViolation
from windrow.metrics import WindrowMetrics
from windrow.runner import Collection, DirectRunner, WindowedValue
from windrow.windows import (
    GLOBAL_WINDOW,
    FixedWindows,
    IntervalWindow,
    Sessions,
    WindowingStrategy,
)


class SumInts:
    """Minimal combine function over plain ints."""

    def create_accumulator(self):
        return 0

    def add_input(self, accumulator, value):
        return accumulator + value

    def merge_accumulators(self, accumulators):
        return sum(accumulators)

    def extract_output(self, accumulator):
        return accumulator


def stamped(values_and_times):
    return Collection(
        [WindowedValue(value, timestamp=ts) for value, ts in values_and_times],
        name="stamped",
    )


class TestCollection:

    def test_of_places_values_in_global_window(self):
        collection = Collection.of([1, 2])
        elements = list(collection)
        assert [e.value for e in elements] == [1, 2]
        assert all(e.windows == (GLOBAL_WINDOW,) for e in elements)
        assert collection.windowing_strategy == WindowingStrategy()

    def test_from_batches(self, sample_arrow_batch):
        collection = Collection.from_batches([sample_arrow_batch], sample_arrow_batch.schema)
        assert len(collection.values()) == 5

    def test_derive_keeps_metadata(self):
        collection = Collection.of([], is_bounded=False)
        derived = collection.derive([], "next")
        assert not derived.is_bounded
        assert derived.name == "next"


class TestRunnerStages:

    def test_needs_a_partition(self):
        with pytest.raises(PreconditionViolation):
            DirectRunner(RunnerConfig(partitions=0))

    def test_window_into_requires_timestamps(self):
        runner = DirectRunner()
        windowed = runner.window_into(Collection.of([1]), FixedWindows(size=timedelta(seconds=1)))
        with pytest.raises(PreconditionViolation):
            list(windowed)

    def test_window_into_updates_strategy(self):
        runner = DirectRunner()
        policy = FixedWindows(size=timedelta(seconds=10))
        windowed = runner.window_into(stamped([(1, 2_000)]), policy)
        assert windowed.windowing_strategy.window_fn == policy
        assert list(windowed)[0].windows == (IntervalWindow(0, 10_000),)

    def test_with_timestamps(self):
        runner = DirectRunner()
        collection = runner.with_timestamps(Collection.of([5_000]), lambda v: v)
        assert list(collection)[0].timestamp == 5_000

    def test_stages_are_lazy(self):
        consumed = []

        def source():
            for i in range(3):
                consumed.append(i)
                yield i

        runner = DirectRunner()
        keyed = runner.with_keys(Collection.of(source()), lambda v: v % 2)
        assert consumed == []
        assert sorted(e.value for e in keyed) == [(0, 0), (0, 2), (1, 1)]


class TestCombinePerKey:

    @pytest.mark.parametrize("partitions", [1, 2, 4, 7])
    def test_result_independent_of_partitions(self, partitions):
        runner = DirectRunner(RunnerConfig(partitions=partitions))
        keyed = runner.with_keys(Collection.of(range(10)), lambda v: v % 3)
        combined = runner.combine_per_key(keyed, SumInts())
        assert sorted(e.value for e in combined) == [(0, 18), (1, 12), (2, 15)]

    def test_without_combiner_lifting(self):
        runner = DirectRunner(RunnerConfig(partitions=4, combiner_lifting=False))
        keyed = runner.with_keys(Collection.of([1, 2, 3]), lambda v: 'k')
        assert [e.value for e in runner.combine_per_key(keyed, SumInts())] == [('k', 6)]

    def test_per_window_results_stamped_with_max_timestamp(self):
        runner = DirectRunner()
        windowed = runner.window_into(
            stamped([(1, 2_000), (1, 8_000), (1, 12_000)]),
            FixedWindows(size=timedelta(seconds=10)),
        )
        combined = list(runner.combine_per_key(runner.with_keys(windowed, lambda v: 'a'), SumInts()))
        by_window = {e.windows[0]: (e.value, e.timestamp) for e in combined}
        assert by_window == {
            IntervalWindow(0, 10_000): (('a', 2), 9_999),
            IntervalWindow(10_000, 20_000): (('a', 1), 19_999),
        }

    def test_sessions_merge_per_key(self):
        runner = DirectRunner(RunnerConfig(partitions=3))
        windowed = runner.window_into(
            stamped([('a', 0), ('a', 3_000), ('b', 4_000), ('a', 20_000)]),
            Sessions(gap=timedelta(seconds=5)),
        )
        keyed = runner.with_keys(windowed, lambda v: v)
        combined = runner.combine_per_key(
            runner.par_do(keyed, lambda kv, w: (kv[0], 1)), SumInts()
        )
        result = sorted((e.value, e.windows[0]) for e in combined)
        assert result == [
            (('a', 1), IntervalWindow(20_000, 25_000)),
            (('a', 2), IntervalWindow(0, 8_000)),
            (('b', 1), IntervalWindow(4_000, 9_000)),
        ]

    def test_metrics_recorded(self):
        metrics = WindrowMetrics()
        runner = DirectRunner(RunnerConfig(partitions=2), metrics=metrics)
        keyed = runner.with_keys(Collection.of([1, 2, 3, 4]), lambda v: 'k', name="keys")
        list(runner.combine_per_key(keyed, SumInts(), name="sum"))
        assert metrics.value('windrow_rows_read_total', operator='keys') == 4
        assert metrics.value('windrow_groups_emitted_total', operator='sum') == 1
        assert metrics.value('windrow_partial_accumulators_merged_total', operator='sum') == 2

    def test_adaptor_as_combine_fn(self, sales_schema, sales_rows):
        adaptor = AggregationAdaptor([AggregateCall('sum', (1,), 'total', pa.int64())], sales_schema)
        runner = DirectRunner()
        keyed = runner.with_keys(Collection.of(sales_rows), lambda row: row['user'])
        result = {k: v['total'] for k, v in runner.combine_per_key(keyed, adaptor).values()}
        assert result == {'a': 15, 'b': 7}


class TestFlatten:

    def test_concatenates(self):
        runner = DirectRunner()
        flat = runner.flatten([Collection.of([1]), Collection.of([2], is_bounded=False)])
        assert flat.values() == [1, 2]
        assert not flat.is_bounded

    def test_rejects_mixed_windowing(self):
        runner = DirectRunner()
        windowed = Collection.of(
            [], windowing_strategy=WindowingStrategy(window_fn=FixedWindows(size=timedelta(seconds=1)))
        )
        with pytest.raises(PreconditionViolation):
            runner.flatten([Collection.of([]), windowed])

    def test_nothing_to_flatten(self):
        with pytest.raises(PreconditionViolation):
            DirectRunner().flatten([])
