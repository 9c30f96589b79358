# -*- coding: utf-8 -*-
"""Windrow - windowed grouped aggregation over Arrow rows."""

__version__ = "0.1.0"

from .aggregates import (
    AggregateCall,
    AggregateRegistry,
    AggregationAdaptor,
    CombineFn,
    get_default_registry,
)
from .config import WindrowConfig, get_config
from .errors import (
    ConfigurationError,
    PreconditionViolation,
    SchemaError,
    TypeMismatchError,
    WindrowError,
)
from .metrics import WindrowMetrics
from .operators import (
    AggregationTransform,
    ProjectNode,
    SourceNode,
    WindowedAggregate,
    aggregate,
    build_aggregate,
)
from .row import Row
from .runner import Collection, DirectRunner
from .windows import (
    AfterCount,
    AfterProcessingTime,
    DefaultTrigger,
    FixedWindows,
    GlobalWindows,
    IntervalWindow,
    Sessions,
    SlidingWindows,
    WindowingStrategy,
    hopping,
    session,
    tumbling,
)

__all__ = [
    # Rows and operator
    'Row', 'SourceNode', 'ProjectNode', 'WindowedAggregate', 'AggregationTransform',
    'aggregate', 'build_aggregate',

    # Aggregates
    'AggregateCall', 'AggregateRegistry', 'AggregationAdaptor', 'CombineFn',
    'get_default_registry',

    # Windows
    'FixedWindows', 'SlidingWindows', 'Sessions', 'GlobalWindows', 'IntervalWindow',
    'WindowingStrategy', 'DefaultTrigger', 'AfterCount', 'AfterProcessingTime',
    'tumbling', 'hopping', 'session',

    # Engine
    'Collection', 'DirectRunner',

    # Ambient
    'WindrowConfig', 'get_config', 'WindrowMetrics',
    'WindrowError', 'ConfigurationError', 'SchemaError', 'TypeMismatchError',
    'PreconditionViolation',
]
