# -*- coding: utf-8 -*-
"""Pytest configuration for Windrow tests."""

import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pyarrow as pa
import pytest

from windrow.row import Row
from windrow.windows import FixedWindows


@pytest.fixture
def sales_schema():
    """(user, amt) rows for plain GROUP BY tests."""
    return pa.schema([('user', pa.string()), ('amt', pa.int64())])


@pytest.fixture
def sales_rows(sales_schema):
    """a: 10 + 5, b: 7."""
    return [
        Row(sales_schema, ['a', 10]),
        Row(sales_schema, ['b', 7]),
        Row(sales_schema, ['a', 5]),
    ]


@pytest.fixture
def event_schema():
    """(user, amt, ts) with millisecond event time at index 2."""
    return pa.schema([
        ('user', pa.string()),
        ('amt', pa.int64()),
        ('ts', pa.timestamp('ms')),
    ])


@pytest.fixture
def event_rows(event_schema):
    """Three events for one user at 2s, 8s and 12s."""
    base = datetime(1970, 1, 1)
    return [
        Row(event_schema, ['a', 1, base + timedelta(seconds=2)]),
        Row(event_schema, ['a', 1, base + timedelta(seconds=8)]),
        Row(event_schema, ['a', 1, base + timedelta(seconds=12)]),
    ]


@pytest.fixture
def ten_second_windows():
    return FixedWindows(size=timedelta(seconds=10))


@pytest.fixture
def sample_arrow_batch():
    """Create a sample Arrow RecordBatch for testing."""
    data = {
        'user_id': [1, 2, 1, 3, 2],
        'amount': [100.0, 250.0, 75.0, 1200.0, 50.0],
        'category': ['A', 'B', 'A', 'C', 'B'],
        'timestamp': pa.array([1000, 2000, 3000, 4000, 5000], type=pa.timestamp('ms')),
    }
    return pa.RecordBatch.from_arrays(
        list(data.values()),
        names=list(data.keys())
    )


@pytest.fixture
def sample_arrow_table(sample_arrow_batch):
    """Create a sample Arrow Table for testing."""
    return pa.Table.from_batches([sample_arrow_batch])


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep user config files and WINDROW_* variables out of every test."""
    import windrow.config as config_module

    for name in ('WINDROW_PARTITIONS', 'WINDROW_COMBINER_LIFTING', 'WINDROW_LOG_LEVEL',
                 'WINDROW_ENABLE_METRICS', 'WINDROW_OUTPUT_FORMAT', 'WINDROW_CONFIG_FILE'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('HOME', str(tmp_path / 'home'))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, '_config', None)
    yield


# Custom markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
