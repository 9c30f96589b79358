# -*- coding: utf-8 -*-
"""
Windowed grouped-aggregation operator.

``WindowedAggregate`` is the plan node a planner inserts for a GROUP BY,
optionally windowed by TUMBLE/HOP/SESSION on an event-time field. It is
an immutable value: every schema, the aggregation adaptor and all field
references are checked when it is built, and ``copy`` returns a new node.

Expanding the node composes engine stages:

    assignEventTimestamp -> windowInto -> (validate) -> exCombineBy
        -> combineBy -> mergeRecord

Example:
    source = SourceNode(schema, rows)
    node = WindowedAggregate(
        input=source,
        group_set=(0, 2),
        agg_calls=(AggregateCall('sum', (1,), 'total', pa.int64()),),
        window_policy=FixedWindows(size=timedelta(seconds=10)),
        window_field_index=2,
    )
    node.explain()
    # WindowedAggregate(group=[{0, 2}], total=[SUM($1)], window=[Fixed(#2, PT10S, PT0S)])
    rows = node.execute()
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pyarrow as pa

from .aggregates import AggregateCall, AggregateRegistry, AggregationAdaptor
from .errors import ConfigurationError, PreconditionViolation, SchemaError
from .row import Row, rows_from_table, rows_to_table
from .runner import Collection, DirectRunner
from .schema import NO_WINDOW_FIELD, AggregationSchemas, check_field_set, derive_schemas
from .transforms import KeyExtractor, MergeAggregationRecord, WindowSupportValidator
from .windows import (
    Window,
    WindowKind,
    WindowingStrategy,
    WindowPolicy,
    WindowTimestampFn,
    format_window,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceNode:
    """
    Leaf plan node over in-memory rows or Arrow batches.

    ``rows`` may be any iterable, including a generator standing in for
    an unbounded stream (``is_bounded=False``). Source rows have no event
    time, so only the trigger of ``windowing_strategy`` may be changed;
    windowing is set on the aggregate itself.
    """
    schema: pa.Schema
    rows: Iterable[Row] = field(default=(), compare=False)
    is_bounded: bool = True
    windowing_strategy: WindowingStrategy = field(default_factory=WindowingStrategy)
    name: str = "source"

    def __post_init__(self):
        window_fn = self.windowing_strategy.window_fn
        if getattr(window_fn, 'kind', None) is not WindowKind.GLOBAL:
            raise ConfigurationError(
                f"Source '{self.name}' can only use GlobalWindows, got {type(window_fn).__name__}; "
                f"set window_policy on the aggregate instead"
            )

    @classmethod
    def from_table(cls, table: pa.Table, is_bounded: bool = True, name: str = "source") -> 'SourceNode':
        return cls(table.schema, rows_from_table(table), is_bounded=is_bounded, name=name)

    @classmethod
    def from_dicts(cls, schema: pa.Schema, dicts: Iterable[Mapping[str, Any]],
                   is_bounded: bool = True, name: str = "source") -> 'SourceNode':
        rows = [Row.from_dict(schema, d) for d in dicts]
        return cls(schema, rows, is_bounded=is_bounded, name=name)

    def expand(self, runner: DirectRunner) -> List[Collection]:
        return [Collection.of(
            self.rows,
            schema=self.schema,
            is_bounded=self.is_bounded,
            windowing_strategy=self.windowing_strategy,
            name=self.name,
        )]


@dataclass(frozen=True)
class ProjectNode:
    """Reorders (or drops) the child's fields."""
    input: Any
    fields: Tuple[int, ...]
    name: str = "project"

    def __post_init__(self):
        object.__setattr__(self, 'fields', tuple(self.fields))
        check_field_set(self.input.schema, self.fields, "projection")

    @property
    def schema(self) -> pa.Schema:
        input_schema = self.input.schema
        return pa.schema([input_schema.field(idx) for idx in self.fields])

    def expand(self, runner: DirectRunner) -> List[Collection]:
        schema = self.schema
        fields = self.fields

        def project(row: Row, window: Window) -> Row:
            return row.project(fields, schema)

        inputs = self.input.expand(runner)
        if isinstance(inputs, Collection):
            inputs = [inputs]
        return [runner.par_do(c, project, name=self.name, schema=schema) for c in inputs]


class AggregationTransform:
    """
    The expanded form of a :class:`WindowedAggregate`.

    Holds the pure functions handed to the engine and wires them into
    stages on ``expand``.
    """

    def __init__(self, schemas: AggregationSchemas, adaptor: AggregationAdaptor,
                 window_policy: Optional[WindowPolicy] = None,
                 grouping_variants: Sequence[Optional[frozenset]] = (None,),
                 name: str = "WindowedAggregate"):
        self.schemas = schemas
        self.adaptor = adaptor
        self.window_policy = window_policy
        self.window_field_index = schemas.window_field_index
        self.name = name

        self.key_extractors = tuple(
            KeyExtractor(schemas.key_schema, schemas.key_field_ids, schemas.input_schema, active)
            for active in grouping_variants
        )
        self.merge_record = MergeAggregationRecord(schemas.output_schema, self.window_field_index)

    def _merge(self, key_and_aggregates: Tuple[Row, Row], window: Window) -> Row:
        key, aggregates = key_and_aggregates
        return self.merge_record(key, aggregates, window)

    def expand(self, inputs: Sequence[Collection], runner: Optional[DirectRunner] = None) -> Collection:
        """
        Build the output collection from exactly one input collection.

        Raises:
            PreconditionViolation: If not given exactly one input
            ConfigurationError: If the input is unbounded and left in the
                global window with the default trigger
        """
        if len(inputs) != 1:
            raise PreconditionViolation(
                f"Wrong number of inputs for {self.name}: expected 1, got {len(inputs)}"
            )
        runner = runner or DirectRunner()
        upstream = inputs[0]
        windowed = upstream

        if self.window_policy is not None:
            upstream = runner.with_timestamps(
                upstream, WindowTimestampFn(self.window_field_index), name="assignEventTimestamp"
            )
            windowed = runner.window_into(upstream, self.window_policy, name="windowInto")

        WindowSupportValidator().validate(windowed)

        if len(self.key_extractors) > 1:
            # Every grouping set reads the same windowed input.
            elements = list(windowed)
            variants = [windowed.derive(elements, windowed.name) for _ in self.key_extractors]
        else:
            variants = [windowed]

        outputs = []
        for extractor, collection in zip(self.key_extractors, variants):
            keyed = runner.with_keys(collection, extractor, name="exCombineBy")
            aggregated = runner.combine_per_key(keyed, self.adaptor, name="combineBy")
            outputs.append(runner.par_do(
                aggregated, self._merge, name="mergeRecord", schema=self.schemas.output_schema
            ))

        if len(outputs) == 1:
            return outputs[0]
        return runner.flatten(outputs, name="mergeGroupingSets")


@dataclass(frozen=True)
class WindowedAggregate:
    """
    Windowed GROUP BY plan node.

    Attributes:
        input: Child plan node (exposes ``schema`` and ``expand(runner)``)
        group_set: Group field indices; includes the window field when windowed
        agg_calls: Aggregate calls, in output order
        group_sets: Grouping-set variants (rollup/cube); empty for a plain GROUP BY
        window_policy: Fixed/Sliding/Session policy, or None for no windowing stage
        window_field_index: Field carrying event time in the input and the
            window's representative timestamp in the output
        output_schema: Planner row type; derived when None
    """
    input: Any
    group_set: Tuple[int, ...]
    agg_calls: Tuple[AggregateCall, ...]
    group_sets: Tuple[Tuple[int, ...], ...] = ()
    window_policy: Optional[WindowPolicy] = None
    window_field_index: int = NO_WINDOW_FIELD
    output_schema: Optional[pa.Schema] = None
    registry: Optional[AggregateRegistry] = field(default=None, compare=False, repr=False)
    schemas: AggregationSchemas = field(init=False, compare=False, repr=False)
    adaptor: AggregationAdaptor = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, 'group_set', tuple(self.group_set))
        object.__setattr__(self, 'agg_calls', tuple(self.agg_calls))
        object.__setattr__(self, 'group_sets', tuple(tuple(s) for s in self.group_sets))

        input_schema = self.input.schema
        if self.window_policy is not None and self.window_field_index == NO_WINDOW_FIELD:
            raise SchemaError("A windowed aggregation needs a window field index")
        check_field_set(input_schema, self.group_set, "group")
        for variant in self.group_sets:
            check_field_set(input_schema, variant, "grouping set")
            extra = set(variant) - set(self.group_set)
            if extra:
                raise SchemaError(
                    f"Grouping set {list(variant)} references fields {sorted(extra)} "
                    f"outside the group set {list(self.group_set)}"
                )

        schemas = derive_schemas(
            input_schema,
            self.group_set,
            self.agg_calls,
            window_field_index=self.effective_window_field_index,
            output_schema=self.output_schema,
        )
        object.__setattr__(self, 'schemas', schemas)
        object.__setattr__(self, 'adaptor', AggregationAdaptor(self.agg_calls, input_schema, self.registry))

        logger.debug(f"Built {self.explain_name()} over {input_schema.names}")

    @property
    def effective_window_field_index(self) -> int:
        """Window field used for derivation; -1 when no policy is set."""
        if self.window_policy is None:
            return NO_WINDOW_FIELD
        return self.window_field_index

    @property
    def row_type(self) -> pa.Schema:
        return self.schemas.output_schema

    @property
    def schema(self) -> pa.Schema:
        """Output schema, so a node can be the input of another node."""
        return self.schemas.output_schema

    def explain_name(self) -> str:
        return type(self).__name__

    def copy(self, input: Any = None, group_set: Optional[Sequence[int]] = None,
             group_sets: Optional[Sequence[Sequence[int]]] = None,
             agg_calls: Optional[Sequence[AggregateCall]] = None) -> 'WindowedAggregate':
        """
        Same operator over a new child, optionally with new grouping and
        aggregates. Window policy and window field index always carry over.
        """
        changes = {}
        if input is not None:
            changes['input'] = input
        if group_set is not None:
            changes['group_set'] = tuple(group_set)
        if group_sets is not None:
            changes['group_sets'] = tuple(tuple(s) for s in group_sets)
        if agg_calls is not None:
            changes['agg_calls'] = tuple(agg_calls)
        return replace(self, **changes)

    def _grouping_variants(self) -> List[Optional[frozenset]]:
        if not self.group_sets:
            return [None]
        variants = []
        for variant in self.group_sets:
            if tuple(variant) == self.group_set:
                variants.append(None)
            else:
                variants.append(frozenset(variant))
        return variants

    def explain_terms(self) -> List[Tuple[str, Any]]:
        """
        Ordered ``(name, value)`` plan items.

        Raises:
            ConfigurationError: If the window policy is of an unknown kind
        """
        terms: List[Tuple[str, Any]] = [
            ('input', getattr(self.input, 'name', type(self.input).__name__)),
            ('group', _format_field_set(self.group_set)),
        ]
        if self.group_sets and list(self.group_sets) != [self.group_set]:
            terms.append(('groups', '[' + ', '.join(_format_field_set(s) for s in self.group_sets) + ']'))
        for call in self.agg_calls:
            terms.append((call.name, str(call)))
        if self.window_policy is not None:
            terms.append(('window', format_window(self.window_policy, self.window_field_index)))
        return terms

    def explain(self) -> str:
        items = ', '.join(f"{name}=[{value}]" for name, value in self.explain_terms() if name != 'input')
        return f"{self.explain_name()}({items})"

    def build_transform(self) -> AggregationTransform:
        return AggregationTransform(
            self.schemas,
            self.adaptor,
            window_policy=self.window_policy,
            grouping_variants=self._grouping_variants(),
            name=self.explain_name(),
        )

    def expand(self, runner: DirectRunner) -> List[Collection]:
        inputs = self.input.expand(runner)
        if isinstance(inputs, Collection):
            inputs = [inputs]
        return [self.build_transform().expand(inputs, runner)]

    def execute(self, runner: Optional[DirectRunner] = None) -> List[Row]:
        """Run the operator with ``runner`` (a fresh DirectRunner by default)."""
        runner = runner or DirectRunner()
        (output,) = self.expand(runner)
        return output.values()

    def to_table(self, runner: Optional[DirectRunner] = None) -> pa.Table:
        return rows_to_table(self.execute(runner), self.schemas.output_schema)


def _format_field_set(indices: Sequence[int]) -> str:
    return '{' + ', '.join(str(i) for i in indices) + '}'


AggregateSpec = Union[AggregateCall, Tuple[str, Optional[str], str], Mapping[str, Any]]


def _resolve_field(schema: pa.Schema, name: str) -> int:
    idx = schema.get_field_index(name)
    if idx < 0:
        raise SchemaError(f"No field named '{name}' in schema {schema.names}")
    return idx


def _build_call(spec: AggregateSpec, schema: pa.Schema,
                registry: Optional[AggregateRegistry]) -> AggregateCall:
    if isinstance(spec, AggregateCall):
        return spec
    if isinstance(spec, Mapping):
        kind = spec['kind']
        fields = spec.get('fields')
        if fields is None:
            fields = [spec['field']] if spec.get('field') else []
        name = spec.get('name') or f"{kind}_{'_'.join(fields) or 'all'}"
    else:
        kind, field_name, name = spec
        fields = [field_name] if field_name else []
    args = tuple(_resolve_field(schema, f) for f in fields)
    if isinstance(spec, Mapping) and spec.get('type') is not None:
        return AggregateCall(kind.lower(), args, name, spec['type'])
    return AggregateCall.infer(kind, args, name, schema, registry)


def build_aggregate(source: Any, group_by: Sequence[str], aggregates: Sequence[AggregateSpec],
                    window: Optional[WindowPolicy] = None, window_field: Optional[str] = None,
                    grouping_sets: Optional[Sequence[Sequence[str]]] = None,
                    registry: Optional[AggregateRegistry] = None) -> WindowedAggregate:
    """
    Plan a windowed aggregation from field names.

    When windowed, the input is first projected so the event-time field
    comes first; the output then reads ``(window, keys..., aggregates...)``.
    AggregateCall specs keep indices into the unprojected ``source``
    schema and are remapped.
    """
    schema = source.schema
    group_fields = [_resolve_field(schema, name) for name in group_by]
    variants = [[_resolve_field(schema, name) for name in names] for names in grouping_sets or ()]
    window_field_index = NO_WINDOW_FIELD

    if window is not None:
        if window_field is None:
            raise SchemaError("A windowed aggregation needs a window_field")
        event_time = _resolve_field(schema, window_field)
        order = [event_time] + [i for i in range(len(schema)) if i != event_time]
        position = {original: new for new, original in enumerate(order)}
        if event_time != 0:
            aggregates = [
                replace(spec, args=tuple(position[i] for i in spec.args))
                if isinstance(spec, AggregateCall) else spec
                for spec in aggregates
            ]
            source = ProjectNode(source, tuple(order), name="eventTimeFirst")
            schema = source.schema
        group_fields = [0] + [position[i] for i in group_fields if i != event_time]
        variants = [[0] + [position[i] for i in v if i != event_time] for v in variants]
        window_field_index = 0

    return WindowedAggregate(
        input=source,
        group_set=tuple(group_fields),
        agg_calls=tuple(_build_call(spec, schema, registry) for spec in aggregates),
        group_sets=tuple(tuple(v) for v in variants),
        window_policy=window,
        window_field_index=window_field_index,
        registry=registry,
    )


def aggregate(rows: Iterable[Row], schema: pa.Schema, group_by: Sequence[str],
              aggregates: Sequence[AggregateSpec], window: Optional[WindowPolicy] = None,
              window_field: Optional[str] = None,
              grouping_sets: Optional[Sequence[Sequence[str]]] = None, is_bounded: bool = True,
              runner: Optional[DirectRunner] = None,
              registry: Optional[AggregateRegistry] = None) -> List[Row]:
    """
    Name-based entry point.

    Args:
        rows: Input rows over ``schema``
        group_by: Key field names
        aggregates: ``(kind, field, name)`` tuples, dicts or AggregateCalls;
            ``field`` None means no argument (``count``)
        window: Window policy, or None
        window_field: Event-time field name, required with ``window``
        grouping_sets: Key-name subsets for rollup/cube style output

    Example:
        aggregate(rows, schema, ['user'], [('sum', 'amt', 'total')])
        # [Row(user='a', total=15), Row(user='b', total=7)]
    """
    node = build_aggregate(
        SourceNode(schema, rows, is_bounded=is_bounded),
        group_by, aggregates, window=window, window_field=window_field,
        grouping_sets=grouping_sets, registry=registry,
    )
    return node.execute(runner)
