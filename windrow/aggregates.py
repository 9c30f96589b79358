# -*- coding: utf-8 -*-
"""
Aggregate functions and the aggregation adaptor.

Every aggregate kind implements :class:`CombineFn`:

    create_accumulator()          fresh, empty state
    add_input(acc, args)          fold one row's argument tuple in
    merge_accumulators(accs)      combine partial states
    extract_output(acc)           final value

Accumulators are immutable values and every method is pure, so the
engine may build partial accumulators on any worker, in any order, and
merge them later (combiner lifting). Built-in kinds are commutative and
associative; a user-defined kind registered in an
:class:`AggregateRegistry` must document whether input order matters.

:class:`AggregationAdaptor` runs N aggregate calls in lock-step and keeps
one tuple of sub-accumulators per (key, window).
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pyarrow as pa

from .errors import ConfigurationError, SchemaError, TypeMismatchError
from .row import Row
from .schema import derive_aggregate_schema

logger = logging.getLogger(__name__)


def is_numeric(arrow_type: pa.DataType) -> bool:
    return (
        pa.types.is_integer(arrow_type)
        or pa.types.is_floating(arrow_type)
        or pa.types.is_decimal(arrow_type)
    )


def is_orderable(arrow_type: pa.DataType) -> bool:
    return (
        is_numeric(arrow_type)
        or pa.types.is_boolean(arrow_type)
        or pa.types.is_string(arrow_type)
        or pa.types.is_large_string(arrow_type)
        or pa.types.is_binary(arrow_type)
        or pa.types.is_temporal(arrow_type)
    )


# ============================================================================
# CombineFn interface
# ============================================================================

class CombineFn(ABC):
    """
    Incremental aggregate function.

    Subclasses set ``name``, ``min_args`` and ``max_args`` and implement
    the four accumulator methods. ``check_input_types`` runs at
    construction so type errors surface before any data flows.
    """

    name = "combine"
    min_args = 1
    max_args = 1
    numeric_output = False

    def __init__(self, input_types: Sequence[pa.DataType], output_type: Optional[pa.DataType] = None):
        self.input_types = tuple(input_types)
        if not self.min_args <= len(self.input_types) <= self.max_args:
            raise ConfigurationError(
                f"{self.name.upper()} takes {self._arity_text()} argument(s), "
                f"got {len(self.input_types)}"
            )
        self.check_input_types(self.input_types)
        self.output_type = output_type if output_type is not None else self.infer_output_type(self.input_types)
        self.check_output_type(self.output_type)

    def _arity_text(self) -> str:
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"

    def check_input_types(self, input_types: Tuple[pa.DataType, ...]) -> None:
        """Raise TypeMismatchError if the function cannot take these types."""

    def check_output_type(self, output_type: pa.DataType) -> None:
        """Raise TypeMismatchError if the result cannot be written as ``output_type``."""
        if self.numeric_output and not is_numeric(output_type):
            raise TypeMismatchError(
                f"{self.name.upper()} produces a number, cannot write it as {output_type}"
            )

    def _to_output(self, value: Any) -> Any:
        # Integer outputs truncate fractional results toward zero.
        if isinstance(value, float) and pa.types.is_integer(self.output_type):
            return int(value)
        return value

    @classmethod
    def infer_output_type(cls, input_types: Sequence[pa.DataType]) -> pa.DataType:
        return input_types[0]

    @abstractmethod
    def create_accumulator(self) -> Any:
        ...

    @abstractmethod
    def add_input(self, accumulator: Any, args: Tuple[Any, ...]) -> Any:
        ...

    @abstractmethod
    def merge_accumulators(self, accumulators: Iterable[Any]) -> Any:
        ...

    @abstractmethod
    def extract_output(self, accumulator: Any) -> Any:
        ...

    def _require(self, predicate: Callable[[pa.DataType], bool], expected: str) -> None:
        for arrow_type in self.input_types:
            if not predicate(arrow_type):
                raise TypeMismatchError(
                    f"{self.name.upper()} expects {expected} input, got {arrow_type}"
                )

    def __repr__(self):
        args = ', '.join(str(t) for t in self.input_types)
        return f"{type(self).__name__}({args}) -> {self.output_type}"


# ============================================================================
# Built-in functions
# ============================================================================

class CountFn(CombineFn):
    """COUNT() counts rows; COUNT(x) counts non-null x."""

    name = "count"
    min_args = 0
    max_args = 1
    numeric_output = True

    @classmethod
    def infer_output_type(cls, input_types):
        return pa.int64()

    def create_accumulator(self):
        return 0

    def add_input(self, accumulator, args):
        if args and args[0] is None:
            return accumulator
        return accumulator + 1

    def merge_accumulators(self, accumulators):
        return sum(accumulators)

    def extract_output(self, accumulator):
        return accumulator


class SumFn(CombineFn):
    """SUM(x); null when every input is null."""

    name = "sum"
    numeric_output = True

    def check_input_types(self, input_types):
        self._require(is_numeric, "numeric")

    @classmethod
    def infer_output_type(cls, input_types):
        arrow_type = input_types[0]
        if pa.types.is_integer(arrow_type):
            return pa.int64()
        if pa.types.is_floating(arrow_type):
            return pa.float64()
        return arrow_type

    def create_accumulator(self):
        return None

    def add_input(self, accumulator, args):
        value = args[0]
        if value is None:
            return accumulator
        if accumulator is None:
            return value
        return accumulator + value

    def merge_accumulators(self, accumulators):
        total = None
        for accumulator in accumulators:
            if accumulator is None:
                continue
            total = accumulator if total is None else total + accumulator
        return total

    def extract_output(self, accumulator):
        return self._to_output(accumulator)


class _ExtremumFn(CombineFn):

    def check_input_types(self, input_types):
        self._require(is_orderable, "orderable")

    def pick(self, a, b):
        raise NotImplementedError

    def create_accumulator(self):
        return None

    def add_input(self, accumulator, args):
        value = args[0]
        if value is None:
            return accumulator
        if accumulator is None:
            return value
        return self.pick(accumulator, value)

    def merge_accumulators(self, accumulators):
        result = None
        for accumulator in accumulators:
            if accumulator is None:
                continue
            result = accumulator if result is None else self.pick(result, accumulator)
        return result

    def extract_output(self, accumulator):
        return accumulator


class MinFn(_ExtremumFn):
    name = "min"

    def pick(self, a, b):
        return b if b < a else a


class MaxFn(_ExtremumFn):
    name = "max"

    def pick(self, a, b):
        return b if b > a else a


class AvgFn(CombineFn):
    """
    AVG(x). Accumulator is (count, total).

    An integer output type truncates toward zero, a floating one divides
    exactly.
    """

    name = "avg"
    numeric_output = True

    def check_input_types(self, input_types):
        self._require(is_numeric, "numeric")

    @classmethod
    def infer_output_type(cls, input_types):
        if pa.types.is_decimal(input_types[0]):
            return input_types[0]
        return pa.float64()

    def create_accumulator(self):
        return (0, 0)

    def add_input(self, accumulator, args):
        value = args[0]
        if value is None:
            return accumulator
        count, total = accumulator
        return (count + 1, total + value)

    def merge_accumulators(self, accumulators):
        count, total = 0, 0
        for acc_count, acc_total in accumulators:
            count += acc_count
            total += acc_total
        return (count, total)

    def extract_output(self, accumulator):
        count, total = accumulator
        if count == 0:
            return None
        if pa.types.is_integer(self.output_type):
            quotient = int(abs(total) // count)
            return quotient if total >= 0 else -quotient
        if pa.types.is_decimal(self.output_type):
            return total / count
        return float(total) / count


class VarianceFn(CombineFn):
    """
    Population/sample variance and standard deviation.

    Accumulator is (count, sum, sum of squares), which merges by addition.
    """

    name = "var_pop"
    numeric_output = True
    sample = False
    stddev = False

    def check_input_types(self, input_types):
        self._require(is_numeric, "numeric")

    @classmethod
    def infer_output_type(cls, input_types):
        return pa.float64()

    def create_accumulator(self):
        return (0, 0, 0)

    def add_input(self, accumulator, args):
        value = args[0]
        if value is None:
            return accumulator
        count, total, squares = accumulator
        return (count + 1, total + value, squares + value * value)

    def merge_accumulators(self, accumulators):
        count, total, squares = 0, 0, 0
        for acc_count, acc_total, acc_squares in accumulators:
            count += acc_count
            total += acc_total
            squares += acc_squares
        return (count, total, squares)

    def extract_output(self, accumulator):
        count, total, squares = accumulator
        divisor = count - 1 if self.sample else count
        if count == 0 or divisor <= 0:
            return None
        variance = (float(squares) - float(total) * float(total) / count) / divisor
        variance = max(variance, 0.0)
        return self._to_output(math.sqrt(variance) if self.stddev else variance)


class VarSampFn(VarianceFn):
    name = "var_samp"
    sample = True


class StddevPopFn(VarianceFn):
    name = "stddev_pop"
    stddev = True


class StddevSampFn(VarianceFn):
    name = "stddev_samp"
    sample = True
    stddev = True


# ============================================================================
# Registry
# ============================================================================

CombineFnFactory = Callable[[Sequence[pa.DataType], Optional[pa.DataType]], CombineFn]


class AggregateRegistry:
    """
    Registry of aggregate kinds.

    New kinds are added by implementing :class:`CombineFn` and registering
    a factory, not by branching inside the adaptor.

    Example:
        registry = AggregateRegistry.with_builtins()
        registry.register('product', ProductFn)
        fn = registry.create('product', [pa.int64()])
    """

    def __init__(self):
        self._factories: Dict[str, CombineFnFactory] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def with_builtins(cls) -> 'AggregateRegistry':
        registry = cls()
        for fn_class in BUILTIN_FUNCTIONS:
            registry.register(fn_class.name, fn_class, metadata={'builtin': True})
        return registry

    def register(self, name: str, factory: CombineFnFactory, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Register an aggregate kind.

        Args:
            name: Kind name, matched case-insensitively
            factory: Callable taking (input_types, output_type) and returning a CombineFn
            metadata: Optional description (commutativity, etc.)
        """
        key = name.lower()
        if key in self._factories:
            logger.warning(f"Overwriting existing aggregate function: {key}")
        self._factories[key] = factory
        self._metadata[key] = dict(metadata or {})
        logger.debug(f"Registered aggregate function: {key}")

    def unregister(self, name: str) -> None:
        self._factories.pop(name.lower(), None)
        self._metadata.pop(name.lower(), None)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._factories

    def list_functions(self) -> List[str]:
        return sorted(self._factories)

    def get_metadata(self, name: str) -> Dict[str, Any]:
        return self._metadata.get(name.lower(), {})

    def factory(self, name: str) -> CombineFnFactory:
        key = name.lower()
        if key not in self._factories:
            raise ConfigurationError(
                f"Unknown aggregate function: {name}. "
                f"Available: {', '.join(self.list_functions())}"
            )
        return self._factories[key]

    def create(self, name: str, input_types: Sequence[pa.DataType],
               output_type: Optional[pa.DataType] = None) -> CombineFn:
        return self.factory(name)(list(input_types), output_type)


BUILTIN_FUNCTIONS = (
    CountFn, SumFn, MinFn, MaxFn, AvgFn,
    VarianceFn, VarSampFn, StddevPopFn, StddevSampFn,
)

_default_registry: Optional[AggregateRegistry] = None


def get_default_registry() -> AggregateRegistry:
    """Process-wide registry holding the built-in kinds."""
    global _default_registry
    if _default_registry is None:
        _default_registry = AggregateRegistry.with_builtins()
    return _default_registry


# ============================================================================
# Aggregate calls
# ============================================================================

@dataclass(frozen=True)
class AggregateCall:
    """
    One aggregate in the operator's select list.

    Attributes:
        kind: Function kind ('sum', 'count', ... or a registered name)
        args: Input field indices into the input schema
        name: Output field name
        type: Output field type
    """
    kind: str
    args: Tuple[int, ...]
    name: str
    type: pa.DataType

    def __post_init__(self):
        object.__setattr__(self, 'args', tuple(self.args))

    @classmethod
    def infer(cls, kind: str, args: Sequence[int], name: str, input_schema: pa.Schema,
              registry: Optional[AggregateRegistry] = None) -> 'AggregateCall':
        """Build a call whose output type is inferred from the input fields."""
        registry = registry or get_default_registry()
        input_types = _input_types(input_schema, args, name)
        fn = registry.create(kind, input_types)
        return cls(kind=kind.lower(), args=tuple(args), name=name, type=fn.output_type)

    @property
    def output_field(self) -> pa.Field:
        return pa.field(self.name, self.type)

    def __str__(self):
        args = ', '.join(f"${idx}" for idx in self.args)
        return f"{self.kind.upper()}({args})"


def _input_types(input_schema: pa.Schema, args: Sequence[int], name: str) -> List[pa.DataType]:
    types = []
    for idx in args:
        if idx < 0 or idx >= len(input_schema):
            raise SchemaError(
                f"Aggregate '{name}' references field {idx}, out of range for schema "
                f"{input_schema.names}"
            )
        types.append(input_schema.field(idx).type)
    return types


# ============================================================================
# Aggregation adaptor
# ============================================================================

class AggregationAdaptor:
    """
    Composite combiner running every aggregate call in lock-step.

    The accumulator is a tuple with one sub-accumulator per call; each
    call only ever sees the fields it references.

    Example:
        adaptor = AggregationAdaptor([AggregateCall('sum', (1,), 'total', pa.int64())], schema)
        acc = adaptor.create_accumulator()
        acc = adaptor.add_input(acc, row)
        adaptor.extract_output(acc)  # Row(total=...)
    """

    def __init__(self, agg_calls: Sequence[AggregateCall], input_schema: pa.Schema,
                 registry: Optional[AggregateRegistry] = None):
        self.agg_calls = tuple(agg_calls)
        self.input_schema = input_schema
        self.aggregate_schema = derive_aggregate_schema(self.agg_calls)
        registry = registry or get_default_registry()

        fns = []
        for call in self.agg_calls:
            input_types = _input_types(input_schema, call.args, call.name)
            try:
                fn = registry.create(call.kind, input_types, call.type)
            except TypeMismatchError as e:
                raise TypeMismatchError(f"Aggregate '{call.name}' = {call}: {e}") from e
            fns.append(fn)
        self.combine_fns = tuple(fns)

        logger.debug(f"Aggregation adaptor over {[str(c) for c in self.agg_calls]}")

    def create_accumulator(self) -> tuple:
        return tuple(fn.create_accumulator() for fn in self.combine_fns)

    def add_input(self, accumulator: tuple, row: Row) -> tuple:
        return tuple(
            fn.add_input(sub, tuple(row[idx] for idx in call.args))
            for fn, call, sub in zip(self.combine_fns, self.agg_calls, accumulator)
        )

    def merge_accumulators(self, accumulators: Iterable[tuple]) -> tuple:
        accumulators = list(accumulators)
        if not accumulators:
            return self.create_accumulator()
        return tuple(
            fn.merge_accumulators([acc[i] for acc in accumulators])
            for i, fn in enumerate(self.combine_fns)
        )

    def merge(self, left: tuple, right: tuple) -> tuple:
        return self.merge_accumulators([left, right])

    def extract_output(self, accumulator: tuple) -> Row:
        return Row(
            self.aggregate_schema,
            [fn.extract_output(sub) for fn, sub in zip(self.combine_fns, accumulator)],
        )

    def aggregate(self, rows: Iterable[Row]) -> Row:
        """Fold ``rows`` from scratch and extract the result."""
        accumulator = self.create_accumulator()
        for row in rows:
            accumulator = self.add_input(accumulator, row)
        return self.extract_output(accumulator)
