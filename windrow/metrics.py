# -*- coding: utf-8 -*-
"""Windrow Metrics - Prometheus counters for aggregation runs."""

import logging
import time
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class WindrowMetrics:
    """Counters for one runner, on a private registry."""

    def __init__(self, app_id: str = "windrow"):
        self.app_id = app_id
        self.registry = CollectorRegistry()

        self.rows_read = Counter(
            'windrow_rows_read_total',
            'Rows entering an aggregation',
            ['operator'],
            registry=self.registry
        )

        self.windows_assigned = Counter(
            'windrow_windows_assigned_total',
            'Window assignments made (a sliding window row counts once per window)',
            ['operator'],
            registry=self.registry
        )

        self.partials_merged = Counter(
            'windrow_partial_accumulators_merged_total',
            'Partial accumulators merged across partitions',
            ['operator'],
            registry=self.registry
        )

        self.groups_emitted = Counter(
            'windrow_groups_emitted_total',
            'Output rows emitted, one per (window, key)',
            ['operator'],
            registry=self.registry
        )

        self.stage_time = Histogram(
            'windrow_stage_duration_seconds',
            'Time spent in each pipeline stage',
            ['operator', 'stage'],
            registry=self.registry
        )

    def record_rows_read(self, operator: str, count: int = 1):
        self.rows_read.labels(operator=operator).inc(count)

    def record_windows_assigned(self, operator: str, count: int = 1):
        self.windows_assigned.labels(operator=operator).inc(count)

    def record_partials_merged(self, operator: str, count: int = 1):
        self.partials_merged.labels(operator=operator).inc(count)

    def record_groups_emitted(self, operator: str, count: int = 1):
        self.groups_emitted.labels(operator=operator).inc(count)

    @contextmanager
    def time_stage(self, operator: str, stage: str):
        """Observe how long the wrapped block takes."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.stage_time.labels(operator=operator, stage=stage).observe(time.perf_counter() - start)

    def value(self, metric: str, **labels) -> float:
        """Current sample value, e.g. ``value('windrow_rows_read_total', operator='agg')``."""
        result = self.registry.get_sample_value(metric, labels)
        return result if result is not None else 0.0

    def render(self) -> str:
        """Prometheus text exposition."""
        return generate_latest(self.registry).decode('utf-8')
