"""
Test WindowedAggregate - the windowed GROUP BY plan node.

Verifies:
- Plain and windowed aggregation end to end on the direct runner
- Sliding overlap, session merging and grouping sets
- Explain output and copy semantics
- Unbounded global-window input is rejected before any row is read
"""

from datetime import datetime, timedelta

import pyarrow as pa
import pytest

from windrow.aggregates import AggregateCall
from windrow.config import RunnerConfig
from windrow.errors import ConfigurationError, PreconditionViolation, SchemaError
from windrow.operators import (
    AggregationTransform,
    ProjectNode,
    SourceNode,
    WindowedAggregate,
    aggregate,
    build_aggregate,
)
from windrow.row import Row
from windrow.runner import Collection, DirectRunner
from windrow.transforms import UNSUPPORTED_WINDOWING_MESSAGE
from windrow.windows import (
    AfterCount,
    FixedWindows,
    Sessions,
    SlidingWindows,
    WindowingStrategy,
)

EPOCH = datetime(1970, 1, 1)
SUM_AMT = AggregateCall('sum', (1,), 'total', pa.int64())


def at(seconds, millis=0):
    return EPOCH + timedelta(seconds=seconds, milliseconds=millis)


def as_dicts(rows):
    return sorted((row.to_dict() for row in rows), key=repr)


class TestPlainGroupBy:

    def test_sum_by_user(self, sales_schema, sales_rows):
        node = WindowedAggregate(SourceNode(sales_schema, sales_rows), (0,), (SUM_AMT,))
        assert as_dicts(node.execute()) == [
            {'user': 'a', 'total': 15},
            {'user': 'b', 'total': 7},
        ]

    def test_empty_input_yields_no_rows(self, sales_schema):
        node = WindowedAggregate(SourceNode(sales_schema, []), (0,), (SUM_AMT,))
        assert node.execute() == []

    def test_empty_group_set_is_one_group(self, sales_schema, sales_rows):
        node = WindowedAggregate(SourceNode(sales_schema, sales_rows), (), (SUM_AMT,))
        assert [row.values for row in node.execute()] == [(22,)]

    def test_null_keys_group_together(self, sales_schema):
        rows = [Row(sales_schema, [None, 1]), Row(sales_schema, [None, 2])]
        node = WindowedAggregate(SourceNode(sales_schema, rows), (0,), (SUM_AMT,))
        assert [row.values for row in node.execute()] == [(None, 3)]

    @pytest.mark.parametrize("partitions", [1, 3, 8])
    def test_partitions_do_not_change_result(self, sales_schema, sales_rows, partitions):
        node = WindowedAggregate(SourceNode(sales_schema, sales_rows), (0,), (SUM_AMT,))
        runner = DirectRunner(RunnerConfig(partitions=partitions))
        assert as_dicts(node.execute(runner)) == [
            {'user': 'a', 'total': 15},
            {'user': 'b', 'total': 7},
        ]

    def test_to_table(self, sales_schema, sales_rows):
        node = WindowedAggregate(SourceNode(sales_schema, sales_rows), (0,), (SUM_AMT,))
        table = node.to_table()
        assert table.schema.names == ['user', 'total']
        assert table.num_rows == 2

    def test_from_table(self, sample_arrow_table):
        call = AggregateCall.infer('sum', (1,), 'total', sample_arrow_table.schema)
        node = WindowedAggregate(SourceNode.from_table(sample_arrow_table), (0,), (call,))
        totals = {row['user_id']: row['total'] for row in node.execute()}
        assert totals == {1: 175.0, 2: 300.0, 3: 1200.0}


class TestFixedWindows:
    """Fixed 10s windows over events at 2s, 8s and 12s."""

    def test_one_row_per_window_and_key(self, event_schema, event_rows, ten_second_windows):
        node = WindowedAggregate(
            SourceNode(event_schema, event_rows),
            group_set=(0, 2),
            agg_calls=(SUM_AMT,),
            window_policy=ten_second_windows,
            window_field_index=2,
        )
        assert node.schema.names == ['user', 'total', 'ts']
        assert as_dicts(node.execute()) == [
            {'user': 'a', 'total': 1, 'ts': at(19, 999)},
            {'user': 'a', 'total': 2, 'ts': at(9, 999)},
        ]

    def test_window_timestamp_inside_window(self, event_schema, event_rows, ten_second_windows):
        node = WindowedAggregate(
            SourceNode(event_schema, event_rows), (0, 2), (SUM_AMT,),
            window_policy=ten_second_windows, window_field_index=2,
        )
        for row in node.execute():
            assert row['ts'] in (at(9, 999), at(19, 999))

    def test_integer_event_time(self):
        schema = pa.schema([('ts', pa.int64()), ('k', pa.string()), ('v', pa.int64())])
        rows = [Row(schema, [1_000, 'x', 1]), Row(schema, [11_000, 'x', 2])]
        node = WindowedAggregate(
            SourceNode(schema, rows), (0, 1),
            (AggregateCall('sum', (2,), 'total', pa.int64()),),
            window_policy=FixedWindows(size=timedelta(seconds=10)), window_field_index=0,
        )
        assert sorted(row.values for row in node.execute()) == [(9_999, 'x', 1), (19_999, 'x', 2)]

    def test_null_event_time_fails(self, event_schema, ten_second_windows):
        node = WindowedAggregate(
            SourceNode(event_schema, [Row(event_schema, ['a', 1, None])]), (0, 2), (SUM_AMT,),
            window_policy=ten_second_windows, window_field_index=2,
        )
        with pytest.raises(SchemaError):
            node.execute()

    def test_policy_needs_window_field(self, event_schema, ten_second_windows):
        with pytest.raises(SchemaError):
            WindowedAggregate(
                SourceNode(event_schema, []), (0,), (SUM_AMT,), window_policy=ten_second_windows,
            )


class TestSlidingAndSessions:

    def test_sliding_counts_row_in_every_overlapping_window(self, event_schema):
        rows = [Row(event_schema, ['a', 1, at(7)])]
        node = WindowedAggregate(
            SourceNode(event_schema, rows), (0, 2), (SUM_AMT,),
            window_policy=SlidingWindows(size=timedelta(seconds=10), period=timedelta(seconds=5)),
            window_field_index=2,
        )
        result = node.execute()
        assert sorted(row['ts'] for row in result) == [at(9, 999), at(14, 999)]
        assert all(row['total'] == 1 for row in result)

    def test_sessions(self, event_schema):
        rows = [
            Row(event_schema, ['a', 1, at(0)]),
            Row(event_schema, ['a', 2, at(3)]),
            Row(event_schema, ['b', 5, at(4)]),
            Row(event_schema, ['a', 4, at(30)]),
        ]
        node = WindowedAggregate(
            SourceNode(event_schema, rows), (0, 2), (SUM_AMT,),
            window_policy=Sessions(gap=timedelta(seconds=5)), window_field_index=2,
        )
        assert as_dicts(node.execute(DirectRunner(RunnerConfig(partitions=2)))) == [
            {'user': 'a', 'total': 3, 'ts': at(7, 999)},
            {'user': 'a', 'total': 4, 'ts': at(34, 999)},
            {'user': 'b', 'total': 5, 'ts': at(8, 999)},
        ]


class TestGroupingSets:

    @pytest.fixture
    def schema(self):
        return pa.schema([('region', pa.string()), ('user', pa.string()), ('amt', pa.int64())])

    @pytest.fixture
    def rows(self, schema):
        return [
            Row(schema, ['eu', 'a', 1]),
            Row(schema, ['eu', 'b', 2]),
            Row(schema, ['us', 'a', 4]),
        ]

    def test_rollup(self, schema, rows):
        node = WindowedAggregate(
            SourceNode(schema, rows), (0, 1), (AggregateCall('sum', (2,), 'total', pa.int64()),),
            group_sets=((0, 1), (0,), ()),
        )
        assert as_dicts(node.execute()) == as_dicts([
            Row(node.schema, ['eu', 'a', 1]),
            Row(node.schema, ['eu', 'b', 2]),
            Row(node.schema, ['us', 'a', 4]),
            Row(node.schema, ['eu', None, 3]),
            Row(node.schema, ['us', None, 4]),
            Row(node.schema, [None, None, 7]),
        ])

    def test_grouping_set_outside_group_set(self, schema, rows):
        with pytest.raises(SchemaError):
            WindowedAggregate(
                SourceNode(schema, rows), (0,), (AggregateCall('sum', (2,), 't', pa.int64()),),
                group_sets=((1,),),
            )

    def test_explain_lists_groups(self, schema):
        node = WindowedAggregate(
            SourceNode(schema, []), (0, 1), (AggregateCall('count', (), 'n', pa.int64()),),
            group_sets=((0, 1), (0,)),
        )
        assert node.explain() == 'WindowedAggregate(group=[{0, 1}], groups=[[{0, 1}, {0}]], n=[COUNT()])'


class TestUnboundedInput:
    """Unbounded input must be windowed (or carry a trigger)."""

    def test_global_window_rejected_before_consumption(self, sales_schema):
        consumed = []

        def endless():
            while True:
                consumed.append(1)
                yield Row(sales_schema, ['a', 1])

        node = WindowedAggregate(SourceNode(sales_schema, endless(), is_bounded=False), (0,), (SUM_AMT,))
        with pytest.raises(ConfigurationError) as exc_info:
            node.execute()
        assert str(exc_info.value) == UNSUPPORTED_WINDOWING_MESSAGE
        assert consumed == []

    def test_windowed_unbounded_accepted(self, event_schema, event_rows, ten_second_windows):
        node = WindowedAggregate(
            SourceNode(event_schema, iter(event_rows), is_bounded=False), (0, 2), (SUM_AMT,),
            window_policy=ten_second_windows, window_field_index=2,
        )
        assert len(node.execute()) == 2

    def test_trigger_accepted(self, sales_schema, sales_rows):
        source = SourceNode(
            sales_schema, sales_rows, is_bounded=False,
            windowing_strategy=WindowingStrategy(trigger=AfterCount(2)),
        )
        assert len(WindowedAggregate(source, (0,), (SUM_AMT,)).execute()) == 2

    def test_source_rejects_window_fn(self, sales_schema, sales_rows):
        strategy = WindowingStrategy(window_fn=FixedWindows(size=timedelta(milliseconds=10)))
        with pytest.raises(ConfigurationError, match="GlobalWindows"):
            SourceNode(sales_schema, sales_rows, is_bounded=False, windowing_strategy=strategy)


class TestExplainAndCopy:

    @pytest.fixture
    def node(self, event_schema, ten_second_windows):
        return WindowedAggregate(
            SourceNode(event_schema, []), (0, 2), (SUM_AMT,),
            window_policy=ten_second_windows, window_field_index=2,
        )

    def test_explain(self, node):
        assert node.explain() == (
            'WindowedAggregate(group=[{0, 2}], total=[SUM($1)], window=[Fixed(#2, PT10S, PT0S)])'
        )

    def test_explain_terms_order(self, node):
        assert [name for name, _ in node.explain_terms()] == ['input', 'group', 'total', 'window']

    def test_explain_without_window(self, sales_schema):
        node = WindowedAggregate(SourceNode(sales_schema, []), (0,), (SUM_AMT,))
        assert node.explain() == 'WindowedAggregate(group=[{0}], total=[SUM($1)])'

    def test_explain_sliding_and_session(self, event_schema):
        sliding = WindowedAggregate(
            SourceNode(event_schema, []), (0, 2), (SUM_AMT,),
            window_policy=SlidingWindows(size=timedelta(seconds=10), period=timedelta(seconds=5)),
            window_field_index=2,
        )
        assert sliding.explain_terms()[-1] == ('window', 'Sliding(#2, PT5S, PT10S, PT0S)')
        sessions = WindowedAggregate(
            SourceNode(event_schema, []), (0, 2), (SUM_AMT,),
            window_policy=Sessions(gap=timedelta(minutes=1)), window_field_index=2,
        )
        assert sessions.explain_terms()[-1] == ('window', 'Session(#2, PT60S)')

    def test_copy_preserves_window(self, node, event_schema, event_rows):
        clone = node.copy(input=SourceNode(event_schema, event_rows))
        assert clone.window_policy == node.window_policy
        assert clone.window_field_index == node.window_field_index
        assert clone.schema.equals(node.schema)
        assert len(clone.execute()) == 2

    def test_copy_with_new_aggregates(self, node):
        count = AggregateCall('count', (), 'n', pa.int64())
        clone = node.copy(agg_calls=[count])
        assert clone.agg_calls == (count,)
        assert clone.window_policy is node.window_policy
        assert node.agg_calls == (SUM_AMT,)

    def test_node_is_immutable(self, node):
        with pytest.raises(AttributeError):
            node.window_field_index = 0


class TestAggregationTransform:

    def test_wrong_number_of_inputs(self, sales_schema):
        node = WindowedAggregate(SourceNode(sales_schema, []), (0,), (SUM_AMT,))
        transform = node.build_transform()
        assert isinstance(transform, AggregationTransform)
        with pytest.raises(PreconditionViolation, match="Wrong number of inputs"):
            transform.expand([Collection.of([]), Collection.of([])])
        with pytest.raises(PreconditionViolation):
            transform.expand([])


class TestBuildAggregate:
    """Name-based planning through build_aggregate/aggregate."""

    def test_aggregate_by_name(self, sales_schema, sales_rows):
        result = aggregate(sales_rows, sales_schema, ['user'], [('sum', 'amt', 'total')])
        assert as_dicts(result) == [{'user': 'a', 'total': 15}, {'user': 'b', 'total': 7}]

    def test_count_star_and_dict_spec(self, sales_schema, sales_rows):
        result = aggregate(
            sales_rows, sales_schema, ['user'],
            [('count', None, 'n'), {'kind': 'max', 'field': 'amt', 'name': 'top'}],
        )
        assert as_dicts(result) == [
            {'user': 'a', 'n': 2, 'top': 10},
            {'user': 'b', 'n': 1, 'top': 7},
        ]

    def test_windowed_puts_event_time_first(self, event_schema, event_rows, ten_second_windows):
        node = build_aggregate(
            SourceNode(event_schema, event_rows), ['user'], [('sum', 'amt', 'total')],
            window=ten_second_windows, window_field='ts',
        )
        assert isinstance(node.input, ProjectNode)
        assert node.schema.names == ['ts', 'user', 'total']
        assert node.explain() == (
            'WindowedAggregate(group=[{0, 1}], total=[SUM($2)], window=[Fixed(#0, PT10S, PT0S)])'
        )
        assert sorted(row.values for row in node.execute()) == [
            (at(9, 999), 'a', 2),
            (at(19, 999), 'a', 1),
        ]

    def test_aggregate_call_args_remapped(self, event_schema, event_rows, ten_second_windows):
        node = build_aggregate(
            SourceNode(event_schema, event_rows), ['user'], [SUM_AMT],
            window=ten_second_windows, window_field='ts',
        )
        assert node.agg_calls[0].args == (2,)

    def test_windowed_grouping_sets(self, event_schema, event_rows, ten_second_windows):
        result = aggregate(
            event_rows, event_schema, ['user'], [('count', None, 'n')],
            window=ten_second_windows, window_field='ts', grouping_sets=[['user'], []],
        )
        assert sorted((row['user'] or '', row['n']) for row in result) == [
            ('', 1), ('', 2), ('a', 1), ('a', 2),
        ]

    def test_window_needs_field(self, event_schema, ten_second_windows):
        with pytest.raises(SchemaError):
            build_aggregate(SourceNode(event_schema, []), ['user'], [], window=ten_second_windows)

    def test_unknown_field(self, sales_schema):
        with pytest.raises(SchemaError, match="nope"):
            aggregate([], sales_schema, ['nope'], [])

    def test_explicit_output_type(self, sales_schema, sales_rows):
        result = aggregate(
            sales_rows, sales_schema, ['user'],
            [{'kind': 'avg', 'fields': ['amt'], 'name': 'mean', 'type': pa.int64()}],
        )
        assert as_dicts(result) == [{'user': 'a', 'mean': 7}, {'user': 'b', 'mean': 7}]
