# -*- coding: utf-8 -*-
"""
File readers and writers for the command line.

Input format is picked from the file extension:

    .jsonl / .json / .ndjson   JSON lines, decoded with orjson
    .csv                       pyarrow.csv with the plan's column types
    .parquet                   pyarrow.parquet, cast to the plan's schema

Every reader returns a ``pa.Table`` with exactly the requested schema.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import orjson
import pyarrow as pa
import pyarrow.csv as pa_csv
import pyarrow.parquet as pq

from .errors import ConfigurationError, SchemaError
from .row import Row

logger = logging.getLogger(__name__)

JSONL_SUFFIXES = ('.jsonl', '.json', '.ndjson')


def _parse_timestamp(value: str) -> datetime:
    # fromisoformat only learned 'Z' in 3.11
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


def _coerce_record(record: Dict[str, Any], schema: pa.Schema) -> Dict[str, Any]:
    coerced = {}
    for arrow_field in schema:
        value = record.get(arrow_field.name)
        if isinstance(value, str) and pa.types.is_timestamp(arrow_field.type):
            value = _parse_timestamp(value)
        coerced[arrow_field.name] = value
    return coerced


def read_jsonl(path: Union[str, Path], schema: pa.Schema) -> pa.Table:
    """
    Read JSON lines into a table.

    Timestamp fields accept epoch milliseconds or ISO-8601 strings. Blank
    lines are skipped; fields missing from a record are null.
    """
    records: List[Dict[str, Any]] = []
    with open(path, 'rb') as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = orjson.loads(line)
            except orjson.JSONDecodeError as e:
                raise SchemaError(f"{path}:{lineno}: invalid JSON: {e}") from e
            if not isinstance(record, dict):
                raise SchemaError(f"{path}:{lineno}: expected a JSON object, got {type(record).__name__}")
            try:
                records.append(_coerce_record(record, schema))
            except ValueError as e:
                raise SchemaError(f"{path}:{lineno}: {e}") from e

    try:
        return pa.Table.from_pylist(records, schema=schema)
    except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
        raise SchemaError(f"{path}: records do not match schema {schema.names}: {e}") from e


def read_csv(path: Union[str, Path], schema: pa.Schema) -> pa.Table:
    convert_options = pa_csv.ConvertOptions(
        column_types={f.name: f.type for f in schema},
        include_columns=schema.names,
        strings_can_be_null=True,
    )
    try:
        table = pa_csv.read_csv(str(path), convert_options=convert_options)
    except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
        raise SchemaError(f"{path}: cannot read CSV with schema {schema.names}: {e}") from e
    return table.cast(schema)


def read_parquet(path: Union[str, Path], schema: pa.Schema) -> pa.Table:
    try:
        table = pq.read_table(str(path), columns=schema.names)
        return table.cast(schema)
    except (pa.ArrowInvalid, pa.ArrowTypeError, pa.ArrowNotImplementedError) as e:
        raise SchemaError(f"{path}: cannot read Parquet with schema {schema.names}: {e}") from e


def read_input(path: Union[str, Path], schema: pa.Schema) -> pa.Table:
    """Read ``path`` by extension; raises ConfigurationError for anything else."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in JSONL_SUFFIXES:
        table = read_jsonl(path, schema)
    elif suffix == '.csv':
        table = read_csv(path, schema)
    elif suffix == '.parquet':
        table = read_parquet(path, schema)
    else:
        raise ConfigurationError(
            f"Unsupported input format: {path.name} (expected .jsonl, .csv or .parquet)"
        )
    logger.info(f"Read {table.num_rows} rows from {path}")
    return table


def encode_jsonl(rows: Iterable[Row]) -> bytes:
    """One JSON object per row; decimals are written as strings."""
    return b''.join(orjson.dumps(row.to_dict(), default=str) + b'\n' for row in rows)
