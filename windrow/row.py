# -*- coding: utf-8 -*-
"""
Row values.

A Row is an immutable, ordered tuple of values bound to a pyarrow Schema.
Field order is schema position. Rows are the unit every Windrow function
consumes and produces; Arrow RecordBatches and Tables are the unit data
arrives and leaves in, and the helpers at the bottom of this module
convert between the two.

Example:
    schema = pa.schema([('user', pa.string()), ('amt', pa.int64())])
    row = Row.from_dict(schema, {'user': 'a', 'amt': 10})
    row['amt']     # 10
    row[0]         # 'a'
"""

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence, Union

import pyarrow as pa

from .errors import SchemaError


class Row:
    """Immutable schema-bound record."""

    __slots__ = ('_schema', '_values')

    def __init__(self, schema: pa.Schema, values: Sequence[Any]):
        values = tuple(values)
        if len(values) != len(schema):
            raise SchemaError(
                f"Row has {len(values)} values but schema has {len(schema)} fields: "
                f"{schema.names}"
            )
        object.__setattr__(self, '_schema', schema)
        object.__setattr__(self, '_values', values)

    @classmethod
    def from_dict(cls, schema: pa.Schema, data: Mapping[str, Any]) -> 'Row':
        """Build a row from a name -> value mapping (missing names are null)."""
        return cls(schema, [data.get(name) for name in schema.names])

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def values(self) -> tuple:
        return self._values

    def __setattr__(self, name, value):
        raise AttributeError("Row is immutable")

    def __delattr__(self, name):
        raise AttributeError("Row is immutable")

    def index_of(self, name: str) -> int:
        idx = self._schema.get_field_index(name)
        if idx < 0:
            raise SchemaError(f"No field named '{name}' in schema {self._schema.names}")
        return idx

    def __getitem__(self, key: Union[int, str]) -> Any:
        if isinstance(key, str):
            key = self.index_of(key)
        return self._values[key]

    def get(self, name: str, default: Any = None) -> Any:
        idx = self._schema.get_field_index(name)
        if idx < 0:
            return default
        return self._values[idx]

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Row):
            return NotImplemented
        return self._values == other._values and self._schema.equals(other._schema)

    def __hash__(self) -> int:
        return hash(self._values)

    def __repr__(self) -> str:
        fields = ', '.join(
            f"{name}={value!r}" for name, value in zip(self._schema.names, self._values)
        )
        return f"Row({fields})"

    def to_dict(self) -> Dict[str, Any]:
        return dict(zip(self._schema.names, self._values))

    def project(self, indices: Sequence[int], schema: pa.Schema) -> 'Row':
        """Restrict the row to ``indices`` (in that order) under ``schema``."""
        return Row(schema, [self._values[i] for i in indices])


def rows_from_dicts(schema: pa.Schema, dicts: Iterable[Mapping[str, Any]]) -> List[Row]:
    return [Row.from_dict(schema, d) for d in dicts]


def rows_from_batches(batches: Iterable[pa.RecordBatch]) -> Iterator[Row]:
    """Unpack Arrow record batches into rows."""
    for batch in batches:
        schema = batch.schema
        for record in batch.to_pylist():
            yield Row.from_dict(schema, record)


def rows_from_table(table: pa.Table) -> Iterator[Row]:
    return rows_from_batches(table.to_batches())


def rows_to_table(rows: Iterable[Row], schema: pa.Schema) -> pa.Table:
    """Pack rows back into an Arrow table with ``schema``."""
    return pa.Table.from_pylist([row.to_dict() for row in rows], schema=schema)
