# -*- coding: utf-8 -*-
"""
Direct runner: an in-process engine for windowed aggregation.

The aggregation operator never implements shuffles or watermarks itself;
it composes four engine capabilities:

    window_into       attach windows to every element
    with_keys         pair each element with its group key
    combine_per_key   incremental per-(key, window) combine
    par_do            row-producing function over (value, window)

``DirectRunner`` provides them over in-memory collections. It evaluates a
collection to completion, so the end of input is the final watermark and
every window fires exactly once. Combining happens in two phases: each
partition builds partial accumulators, then partials are merged per
(key, window), the same shape a distributed engine's combiner lifting
takes. Session windows are merged per key between the two phases.

Collections are single pass: stages chain generators and nothing is
consumed until a combine or the caller iterates.
"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass, replace
from itertools import chain
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pyarrow as pa

from .config import RunnerConfig
from .errors import PreconditionViolation
from .metrics import WindrowMetrics
from .row import rows_from_batches
from .windows import (
    GLOBAL_WINDOW,
    Window,
    WindowFn,
    WindowingStrategy,
    assign_windows,
    merge_session_windows,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowedValue:
    """An element with its event time and the windows it belongs to."""
    value: Any
    timestamp: Optional[int] = None
    windows: Tuple[Window, ...] = (GLOBAL_WINDOW,)


class Collection:
    """
    A stream of windowed elements plus what the engine knows about it.

    Attributes:
        schema: Row schema of the element values, when they are rows
        is_bounded: False for streams that never end
        windowing_strategy: Window function and trigger in effect
    """

    def __init__(self, elements: Iterable[WindowedValue], schema: Optional[pa.Schema] = None,
                 is_bounded: bool = True, windowing_strategy: Optional[WindowingStrategy] = None,
                 name: str = "collection"):
        self._elements = elements
        self.schema = schema
        self.is_bounded = is_bounded
        self.windowing_strategy = windowing_strategy or WindowingStrategy()
        self.name = name

    @classmethod
    def of(cls, rows: Iterable[Any], schema: Optional[pa.Schema] = None, is_bounded: bool = True,
           windowing_strategy: Optional[WindowingStrategy] = None, name: str = "source") -> 'Collection':
        """Source collection: every value in the global window, no event time yet."""
        elements = (WindowedValue(row) for row in rows)
        return cls(elements, schema, is_bounded, windowing_strategy, name)

    @classmethod
    def from_batches(cls, batches: Iterable[pa.RecordBatch], schema: pa.Schema,
                     is_bounded: bool = True, name: str = "source") -> 'Collection':
        return cls.of(rows_from_batches(batches), schema, is_bounded, name=name)

    def derive(self, elements: Iterable[WindowedValue], name: str, **overrides) -> 'Collection':
        """New collection carrying this one's metadata unless overridden."""
        return Collection(
            elements,
            schema=overrides.get('schema', self.schema),
            is_bounded=overrides.get('is_bounded', self.is_bounded),
            windowing_strategy=overrides.get('windowing_strategy', self.windowing_strategy),
            name=name,
        )

    def __iter__(self) -> Iterator[WindowedValue]:
        return iter(self._elements)

    def values(self) -> List[Any]:
        return [element.value for element in self]

    def __repr__(self):
        bounded = "bounded" if self.is_bounded else "unbounded"
        return f"Collection({self.name}, {bounded}, {self.windowing_strategy})"


class DirectRunner:
    """
    Executes engine capabilities in process.

    Example:
        runner = DirectRunner()
        keyed = runner.with_keys(source, key_fn)
        combined = runner.combine_per_key(keyed, adaptor)
        rows = runner.par_do(combined, lambda kv, w: merge(kv[0], kv[1], w)).values()
    """

    def __init__(self, config: Optional[RunnerConfig] = None, metrics: Optional[WindrowMetrics] = None):
        self.config = config or RunnerConfig()
        if self.config.partitions < 1:
            raise PreconditionViolation(f"Runner needs at least one partition, got {self.config.partitions}")
        self.metrics = metrics

    def with_timestamps(self, collection: Collection, timestamp_fn: Callable[[Any], int],
                        name: str = "assignEventTimestamp") -> Collection:
        """
        Set each element's event time from its value.

        Skew against the element's previous timestamp is unbounded: no
        element is ever rejected for being early or late.
        """
        def stamped():
            for element in collection:
                yield replace(element, timestamp=timestamp_fn(element.value))

        return collection.derive(stamped(), name)

    def window_into(self, collection: Collection, window_fn: WindowFn,
                    name: str = "windowInto") -> Collection:
        """Assign windows from each element's event time."""
        def windowed():
            for element in collection:
                if element.timestamp is None:
                    raise PreconditionViolation(
                        f"{name}: element has no event time; assign timestamps before windowing"
                    )
                windows = assign_windows(window_fn, element.timestamp)
                if self.metrics:
                    self.metrics.record_windows_assigned(name, len(windows))
                yield replace(element, windows=windows)

        strategy = collection.windowing_strategy.with_window_fn(window_fn)
        return collection.derive(windowed(), name, windowing_strategy=strategy)

    def with_keys(self, collection: Collection, key_fn: Callable[[Any], Any],
                  name: str = "withKeys") -> Collection:
        """Turn each value into a ``(key, value)`` pair."""
        def keyed():
            for element in collection:
                if self.metrics:
                    self.metrics.record_rows_read(name)
                yield replace(element, value=(key_fn(element.value), element.value))

        return collection.derive(keyed(), name)

    def combine_per_key(self, collection: Collection, combine_fn, name: str = "combineBy") -> Collection:
        """
        Combine ``(key, value)`` elements per key and window.

        ``combine_fn`` provides create_accumulator/add_input/
        merge_accumulators/extract_output. Output elements are
        ``(key, output)`` pairs, one per (key, window), stamped with the
        window's max timestamp.
        """
        window_fn = collection.windowing_strategy.window_fn
        partitions = self.config.partitions if self.config.combiner_lifting else 1

        # Phase 1: partial accumulators per partition
        partials: List[Dict[Tuple[Any, Window], Any]] = [{} for _ in range(partitions)]
        timer = self.metrics.time_stage(name, "partial") if self.metrics else nullcontext()
        with timer:
            for position, element in enumerate(collection):
                key, value = element.value
                table = partials[position % partitions]
                for window in element.windows:
                    slot = (key, window)
                    accumulator = table[slot] if slot in table else combine_fn.create_accumulator()
                    table[slot] = combine_fn.add_input(accumulator, value)

        gathered: Dict[Tuple[Any, Window], List[Any]] = {}
        for table in partials:
            for slot, accumulator in table.items():
                gathered.setdefault(slot, []).append(accumulator)

        if getattr(window_fn, 'is_merging', False):
            gathered = self._merge_windows(gathered)

        # Phase 2: merge partials and extract
        def combined():
            for (key, window), accumulators in gathered.items():
                if self.metrics and len(accumulators) > 1:
                    self.metrics.record_partials_merged(name, len(accumulators))
                accumulator = combine_fn.merge_accumulators(accumulators)
                if self.metrics:
                    self.metrics.record_groups_emitted(name)
                yield WindowedValue(
                    (key, combine_fn.extract_output(accumulator)),
                    timestamp=window.max_timestamp(),
                    windows=(window,),
                )

        logger.debug(f"{name}: {len(gathered)} groups from {partitions} partition(s)")
        return collection.derive(combined(), name)

    @staticmethod
    def _merge_windows(gathered: Dict[Tuple[Any, Window], List[Any]]) -> Dict[Tuple[Any, Window], List[Any]]:
        """Fold the accumulators of overlapping session windows together, per key."""
        windows_by_key: Dict[Any, List[Window]] = {}
        for key, window in gathered:
            windows_by_key.setdefault(key, []).append(window)

        merged: Dict[Tuple[Any, Window], List[Any]] = {}
        for key, windows in windows_by_key.items():
            for merged_window, members in merge_session_windows(windows):
                accumulators = merged.setdefault((key, merged_window), [])
                for member in sorted(members):
                    accumulators.extend(gathered[(key, member)])
        return merged

    def par_do(self, collection: Collection, fn: Callable[[Any, Window], Any],
               name: str = "parDo", schema: Optional[pa.Schema] = None) -> Collection:
        """Apply a row-producing function to every (value, window) pair."""
        def mapped():
            for element in collection:
                for window in element.windows:
                    yield WindowedValue(fn(element.value, window), element.timestamp, (window,))

        return collection.derive(mapped(), name, schema=schema or collection.schema)

    def flatten(self, collections: Sequence[Collection], name: str = "flatten") -> Collection:
        """Concatenate collections that share a windowing strategy."""
        if not collections:
            raise PreconditionViolation(f"{name}: nothing to flatten")
        first = collections[0]
        for other in collections[1:]:
            if other.windowing_strategy != first.windowing_strategy:
                raise PreconditionViolation(
                    f"{name}: cannot flatten collections with different windowing "
                    f"({first.windowing_strategy} vs {other.windowing_strategy})"
                )
        return first.derive(
            chain.from_iterable(collections),
            name,
            is_bounded=all(c.is_bounded for c in collections),
        )
