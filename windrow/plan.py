# -*- coding: utf-8 -*-
"""
JSON plan documents.

A plan document describes one windowed aggregation by field name:

    {
      "name": "clicks_per_user",
      "input": [
        {"name": "user", "type": "string"},
        {"name": "amt", "type": "int64"},
        {"name": "ts", "type": "timestamp[ms]"}
      ],
      "group_by": ["user"],
      "aggregates": [{"kind": "sum", "fields": ["amt"], "name": "total"}],
      "window": {"kind": "fixed", "field": "ts", "size": 10}
    }

Durations are seconds or ISO-8601 strings ("PT10S").
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Iterable, List, Literal, Optional, Union

import orjson
import pyarrow as pa
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .operators import SourceNode, WindowedAggregate, build_aggregate
from .row import Row
from .windows import FixedWindows, Sessions, SlidingWindows, WindowPolicy

logger = logging.getLogger(__name__)


# ============================================================================
# Type names
# ============================================================================

_SIMPLE_TYPES = {
    'bool': pa.bool_(),
    'int8': pa.int8(),
    'int16': pa.int16(),
    'int32': pa.int32(),
    'int64': pa.int64(),
    'float32': pa.float32(),
    'float64': pa.float64(),
    'double': pa.float64(),
    'string': pa.string(),
    'binary': pa.binary(),
    'date32': pa.date32(),
}

_TIMESTAMP_UNITS = ('s', 'ms', 'us', 'ns')


def parse_type(name: str) -> pa.DataType:
    """
    Arrow type from its name.

    Example:
        parse_type('int64')                  # int64
        parse_type('timestamp[ms]')          # timestamp[ms]
        parse_type('timestamp[ms, tz=UTC]')  # timestamp[ms, tz=UTC]
    """
    text = name.strip().lower()
    if text in _SIMPLE_TYPES:
        return _SIMPLE_TYPES[text]
    if text.startswith('timestamp[') and text.endswith(']'):
        parts = [p.strip() for p in name.strip()[len('timestamp['):-1].split(',')]
        unit = parts[0].lower()
        if unit not in _TIMESTAMP_UNITS:
            raise ValueError(f"Unknown timestamp unit '{parts[0]}'")
        tz = None
        if len(parts) == 2 and parts[1].lower().startswith('tz='):
            tz = parts[1][3:]
        elif len(parts) > 1:
            raise ValueError(f"Cannot parse type '{name}'")
        return pa.timestamp(unit, tz=tz)
    raise ValueError(
        f"Unknown type '{name}'. Known: {', '.join(sorted(_SIMPLE_TYPES))}, timestamp[unit]"
    )


# ============================================================================
# Data Models
# ============================================================================

class FieldSpec(BaseModel):
    """One input column."""
    name: str
    type: str
    nullable: bool = True

    @field_validator("type")
    @classmethod
    def _known_type(cls, v):
        parse_type(v)
        return v

    def to_field(self) -> pa.Field:
        return pa.field(self.name, parse_type(self.type), nullable=self.nullable)


class AggregateSpec(BaseModel):
    """One aggregate call; ``type`` overrides the inferred output type."""
    kind: str
    fields: List[str] = Field(default_factory=list)
    name: str
    type: Optional[str] = None

    @field_validator("type")
    @classmethod
    def _known_type(cls, v):
        if v is not None:
            parse_type(v)
        return v

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'fields': list(self.fields),
            'name': self.name,
            'type': parse_type(self.type) if self.type else None,
        }


class WindowSpec(BaseModel):
    """TUMBLE (fixed), HOP (sliding) or SESSION over ``field``."""
    kind: Literal["fixed", "sliding", "session"]
    field: str
    size: Optional[timedelta] = None
    period: Optional[timedelta] = None
    offset: timedelta = timedelta(0)
    gap: Optional[timedelta] = None

    @model_validator(mode="after")
    def _durations_for_kind(self):
        required = {
            'fixed': ('size',),
            'sliding': ('size', 'period'),
            'session': ('gap',),
        }[self.kind]
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.kind} window needs {', '.join(missing)}")
        self.to_policy()
        return self

    def to_policy(self) -> WindowPolicy:
        if self.kind == 'fixed':
            return FixedWindows(size=self.size, offset=self.offset)
        if self.kind == 'sliding':
            return SlidingWindows(size=self.size, period=self.period, offset=self.offset)
        return Sessions(gap=self.gap)


class PlanDocument(BaseModel):
    """A whole aggregation: input schema, grouping, aggregates, window."""
    name: str = "plan"
    input: List[FieldSpec]
    group_by: List[str] = Field(default_factory=list)
    aggregates: List[AggregateSpec] = Field(default_factory=list)
    window: Optional[WindowSpec] = None
    grouping_sets: List[List[str]] = Field(default_factory=list)
    bounded: bool = True

    @model_validator(mode="after")
    def _names_exist(self):
        names = [f.name for f in self.input]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate input field names in {names}")
        referenced = list(self.group_by)
        for spec in self.aggregates:
            referenced.extend(spec.fields)
        for variant in self.grouping_sets:
            referenced.extend(variant)
        if self.window is not None:
            referenced.append(self.window.field)
        unknown = sorted(set(referenced) - set(names))
        if unknown:
            raise ValueError(f"Unknown field(s) {unknown}; input has {names}")
        return self

    def input_schema(self) -> pa.Schema:
        return pa.schema([f.to_field() for f in self.input])

    def window_policy(self) -> Optional[WindowPolicy]:
        return self.window.to_policy() if self.window is not None else None

    def build(self, rows: Iterable[Row] = (), is_bounded: Optional[bool] = None) -> WindowedAggregate:
        """Plan node over ``rows``; ``is_bounded`` overrides the document."""
        source = SourceNode(
            self.input_schema(),
            rows,
            is_bounded=self.bounded if is_bounded is None else is_bounded,
            name=self.name,
        )
        return build_aggregate(
            source,
            self.group_by,
            [spec.to_dict() for spec in self.aggregates],
            window=self.window_policy(),
            window_field=self.window.field if self.window is not None else None,
            grouping_sets=self.grouping_sets or None,
        )


def parse_plan(data: Union[bytes, str, dict]) -> PlanDocument:
    """
    Validate a plan document.

    Raises:
        ConfigurationError: If the document is not valid JSON or fails validation
    """
    try:
        if isinstance(data, (bytes, str)):
            data = orjson.loads(data)
        return PlanDocument.model_validate(data)
    except orjson.JSONDecodeError as e:
        raise ConfigurationError(f"Plan is not valid JSON: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid plan: {e}") from e


def load_plan(path: Union[str, Path]) -> PlanDocument:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Cannot read plan {path}: {e}") from e
    plan = parse_plan(data)
    logger.debug(f"Loaded plan '{plan.name}' from {path}")
    return plan


def plan_to_json(plan: PlanDocument) -> bytes:
    return orjson.dumps(plan.model_dump(mode="json"), option=orjson.OPT_INDENT_2)


__all__ = [
    'AggregateSpec', 'FieldSpec', 'PlanDocument', 'WindowSpec',
    'load_plan', 'parse_plan', 'parse_type', 'plan_to_json',
]
