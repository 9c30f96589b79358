# -*- coding: utf-8 -*-
"""
Row-level functions the aggregation operator hands to the engine.

    KeyExtractor             row -> group key
    MergeAggregationRecord   (key, aggregates, window) -> output row
    WindowSupportValidator   guard run once before grouping

The first two are pure and may be called on any worker in any order.
"""

import logging
from enum import Enum
from typing import Collection, Optional, Sequence

import pyarrow as pa

from .errors import ConfigurationError, PreconditionViolation, SchemaError
from .row import Row
from .schema import NO_WINDOW_FIELD
from .windows import IntervalWindow, Window, from_epoch_millis

logger = logging.getLogger(__name__)


class KeyExtractor:
    """
    Projects the group key out of an input row.

    ``key_field_ids`` already excludes the window field. When
    ``active_fields`` is given (a grouping-set variant), key fields outside
    it are nulled so every variant shares one key schema.
    """

    def __init__(self, key_schema: pa.Schema, key_field_ids: Sequence[int],
                 input_schema: Optional[pa.Schema] = None,
                 active_fields: Optional[Collection[int]] = None):
        if len(key_schema) != len(key_field_ids):
            raise SchemaError(
                f"Key schema has {len(key_schema)} fields but {len(key_field_ids)} key indices given"
            )
        if input_schema is not None:
            for idx in key_field_ids:
                if idx < 0 or idx >= len(input_schema):
                    raise SchemaError(
                        f"Key field index {idx} out of range for schema {input_schema.names}"
                    )
        self.key_schema = key_schema
        self.key_field_ids = tuple(key_field_ids)
        self.active_fields = None if active_fields is None else frozenset(active_fields)

    def __call__(self, row: Row) -> Row:
        if self.active_fields is None:
            return row.project(self.key_field_ids, self.key_schema)
        return Row(
            self.key_schema,
            [row[idx] if idx in self.active_fields else None for idx in self.key_field_ids],
        )

    def __repr__(self):
        return f"KeyExtractor({list(self.key_field_ids)})"


class MergeAggregationRecord:
    """
    Rebuilds output rows from (key, aggregate values, window).

    Output layout is key values, then aggregate values, with the window's
    representative timestamp inserted at ``window_field_index`` when
    windowing is active. Nothing else writes the window field.
    """

    def __init__(self, output_schema: pa.Schema, window_field_index: int = NO_WINDOW_FIELD):
        self.output_schema = output_schema
        self.window_field_index = window_field_index
        self._window_type = (
            output_schema.field(window_field_index).type
            if window_field_index != NO_WINDOW_FIELD else None
        )

    def __call__(self, key: Row, aggregates: Row, window: Window) -> Row:
        values = list(key.values)
        values.extend(aggregates.values)
        if self.window_field_index != NO_WINDOW_FIELD:
            if not isinstance(window, IntervalWindow):
                raise PreconditionViolation(
                    f"Windowed aggregation produced a result in {window!r}; "
                    f"expected an interval window"
                )
            values.insert(
                self.window_field_index,
                from_epoch_millis(window.max_timestamp(), self._window_type),
            )
        return Row(self.output_schema, values)

    def __repr__(self):
        return f"MergeAggregationRecord(window_field={self.window_field_index})"


class ValidationState(Enum):
    UNCHECKED = "unchecked"
    CHECKED = "checked"


UNSUPPORTED_WINDOWING_MESSAGE = (
    "Please explicitly specify windowing in the query using HOP/TUMBLE/SESSION "
    "functions (the default trigger will be used in this case). "
    "Unbounded input with global windowing and default trigger is not supported "
    "in windowed aggregations: the watermark that closes the global window is "
    "only reached when the stream ends, so no result would ever be emitted."
)


class WindowSupportValidator:
    """
    Rejects unbounded input under one global window with the default trigger.

    Runs once per operator expansion, before grouping; later calls are
    no-ops. Bounded input, an explicit window function or a non-default
    trigger all pass.
    """

    def __init__(self):
        self.state = ValidationState.UNCHECKED

    def validate(self, collection) -> None:
        """
        Check the windowing of the collection about to be grouped.

        Raises:
            ConfigurationError: If the collection is unbounded, globally
                windowed and uses the default trigger
        """
        if self.state is ValidationState.CHECKED:
            return
        self.state = ValidationState.CHECKED

        strategy = collection.windowing_strategy
        if strategy.is_global_with_default_trigger() and not collection.is_bounded:
            logger.warning(f"Rejecting unbounded global-window aggregation over {collection!r}")
            raise ConfigurationError(UNSUPPORTED_WINDOWING_MESSAGE)
