# -*- coding: utf-8 -*-
"""
Schema derivation for the windowed aggregation operator.

Given the input schema, the group set, the aggregate calls and the window
field, works out the four schemas the operator moves rows between:

    input      the child's row type
    key        input projected at the group fields (window field excluded)
    aggregate  one field per aggregate call, in call order
    output     the planner's row type: keys, window field, aggregates

All functions are pure; deriving twice from the same inputs gives equal
schemas.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import pyarrow as pa

from .errors import SchemaError, TypeMismatchError

logger = logging.getLogger(__name__)

NO_WINDOW_FIELD = -1


def check_field_set(schema: pa.Schema, indices: Sequence[int], what: str = "field set") -> List[int]:
    """
    Validate a field set against ``schema``.

    Raises:
        SchemaError: If an index is out of range or listed twice
    """
    seen = set()
    checked = []
    for idx in indices:
        if not isinstance(idx, int) or isinstance(idx, bool):
            raise SchemaError(f"{what} index {idx!r} is not an integer")
        if idx < 0 or idx >= len(schema):
            raise SchemaError(
                f"{what} index {idx} out of range for schema with {len(schema)} fields "
                f"{schema.names}"
            )
        if idx in seen:
            raise SchemaError(f"{what} index {idx} listed more than once")
        seen.add(idx)
        checked.append(idx)
    return checked


def key_field_ids(group_set: Sequence[int], window_field_index: int = NO_WINDOW_FIELD) -> List[int]:
    """Group fields that form the key: the group set minus the window field."""
    return [idx for idx in group_set if idx != window_field_index]


def derive_key_schema(input_schema: pa.Schema, key_ids: Sequence[int]) -> pa.Schema:
    check_field_set(input_schema, key_ids, "group")
    return pa.schema([input_schema.field(idx) for idx in key_ids])


def derive_aggregate_schema(agg_calls: Sequence) -> pa.Schema:
    return pa.schema([call.output_field for call in agg_calls])


def derive_output_schema(
    input_schema: pa.Schema,
    group_set: Sequence[int],
    agg_calls: Sequence,
    window_field_index: int = NO_WINDOW_FIELD,
) -> pa.Schema:
    """
    Default output row type.

    Key fields in group-set order, then aggregates, with the window field
    inserted at ``window_field_index``; the same layout the merge stage
    writes.
    """
    check_field_set(input_schema, group_set, "group")
    fields = [input_schema.field(idx) for idx in key_field_ids(group_set, window_field_index)]
    fields.extend(call.output_field for call in agg_calls)
    if window_field_index != NO_WINDOW_FIELD:
        fields.insert(window_field_index, input_schema.field(window_field_index))
    return pa.schema(fields)


def is_event_time_type(arrow_type: pa.DataType) -> bool:
    return (
        pa.types.is_timestamp(arrow_type)
        or pa.types.is_date(arrow_type)
        or pa.types.is_integer(arrow_type)
    )


@dataclass(frozen=True)
class AggregationSchemas:
    """Every schema the operator needs, derived once at construction."""
    input_schema: pa.Schema
    key_schema: pa.Schema
    aggregate_schema: pa.Schema
    output_schema: pa.Schema
    key_field_ids: Tuple[int, ...]
    window_field_index: int = NO_WINDOW_FIELD

    @property
    def windowed(self) -> bool:
        return self.window_field_index != NO_WINDOW_FIELD


def derive_schemas(
    input_schema: pa.Schema,
    group_set: Sequence[int],
    agg_calls: Sequence,
    window_field_index: int = NO_WINDOW_FIELD,
    output_schema: Optional[pa.Schema] = None,
) -> AggregationSchemas:
    """
    Derive key, aggregate and output schemas.

    Args:
        input_schema: Child row type
        group_set: Group field indices, window field included when windowed
        agg_calls: Aggregate calls (anything exposing ``output_field``)
        window_field_index: Position of the window field, or -1 when unwindowed
        output_schema: Planner-provided output row type (derived when None)

    Raises:
        SchemaError: On out-of-range/duplicate indices or an output schema
            whose width does not match keys + window field + aggregates
        TypeMismatchError: If the window field cannot carry event time
    """
    check_field_set(input_schema, group_set, "group")
    keys = key_field_ids(group_set, window_field_index)
    key_schema = derive_key_schema(input_schema, keys)
    aggregate_schema = derive_aggregate_schema(agg_calls)
    windowed = window_field_index != NO_WINDOW_FIELD

    if windowed and (window_field_index < 0 or window_field_index >= len(input_schema)):
        raise SchemaError(
            f"Window field index {window_field_index} out of range for input schema "
            f"{input_schema.names}"
        )

    if output_schema is None:
        output_schema = derive_output_schema(input_schema, group_set, agg_calls, window_field_index)

    expected_width = len(keys) + len(aggregate_schema) + (1 if windowed else 0)
    if len(output_schema) != expected_width:
        raise SchemaError(
            f"Output schema has {len(output_schema)} fields, expected {expected_width} "
            f"({len(keys)} keys, {len(aggregate_schema)} aggregates"
            f"{', 1 window field' if windowed else ''})"
        )

    if windowed:
        if window_field_index >= len(output_schema):
            raise SchemaError(
                f"Window field index {window_field_index} out of range for output schema "
                f"{output_schema.names}"
            )
        input_type = input_schema.field(window_field_index).type
        if not is_event_time_type(input_type):
            raise TypeMismatchError(
                f"Window field '{input_schema.field(window_field_index).name}' has type "
                f"{input_type}; expected a timestamp, date or integer field"
            )
        output_type = output_schema.field(window_field_index).type
        if not (pa.types.is_timestamp(output_type) or pa.types.is_integer(output_type)):
            raise TypeMismatchError(
                f"Output window field '{output_schema.field(window_field_index).name}' has "
                f"type {output_type}; expected a timestamp or integer field"
            )

    logger.debug(
        f"Derived schemas: key={key_schema.names} aggregates={aggregate_schema.names} "
        f"output={output_schema.names}"
    )

    return AggregationSchemas(
        input_schema=input_schema,
        key_schema=key_schema,
        aggregate_schema=aggregate_schema,
        output_schema=output_schema,
        key_field_ids=tuple(keys),
        window_field_index=window_field_index,
    )
