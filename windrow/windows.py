# -*- coding: utf-8 -*-
"""
Window policies, window instances and event-time assignment.

A window policy is one of a closed set of kinds:

    FixedWindows(size, offset)          tumbling, one window per record
    SlidingWindows(size, period, offset)  hopping, ceil(size/period) windows per record
    Sessions(gap)                       per-key activity sessions, merged after grouping

plus ``GlobalWindows``, the ambient single window every collection starts
in. Dispatch over policies goes through ``WindowKind`` so every consumer
(assignment, plan formatting) matches the same closed set.

Timestamps are epoch milliseconds; one time unit is one millisecond.
Windows are half open, ``[start, end)``, and their representative
timestamp is ``max_timestamp() == end - 1``.

Example:
    policy = FixedWindows(size=timedelta(seconds=10))
    assign_windows(policy, 12_000)      # (IntervalWindow(10000, 20000),)
    format_window(policy, 2)            # 'Fixed(#2, PT10S, PT0S)'
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, FrozenSet, Iterable, List, Optional, Tuple, Union

import pyarrow as pa

from .errors import ConfigurationError, SchemaError

logger = logging.getLogger(__name__)

# Upper bound of representable event time, in milliseconds.
MAX_TIMESTAMP = (2 ** 63 - 1) // 1000

_EPOCH = datetime(1970, 1, 1)
_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


class WindowKind(Enum):
    """Window function kinds."""
    GLOBAL = "global"
    FIXED = "fixed"
    SLIDING = "sliding"
    SESSION = "session"


# ============================================================================
# Durations and timestamps
# ============================================================================

def duration_millis(duration: timedelta) -> int:
    """Duration as whole milliseconds."""
    return round(duration / _ONE_MS)


def format_duration(duration: timedelta) -> str:
    """
    ISO-8601 seconds form of a duration.

    Example:
        format_duration(timedelta(seconds=10))        # 'PT10S'
        format_duration(timedelta(milliseconds=500))  # 'PT0.5S'
    """
    millis = duration_millis(duration)
    sign = '-' if millis < 0 else ''
    seconds, remainder = divmod(abs(millis), 1000)
    if remainder == 0:
        return f"PT{sign}{seconds}S"
    fraction = f"{remainder:03d}".rstrip('0')
    return f"PT{sign}{seconds}.{fraction}S"


def to_epoch_millis(value: Any) -> int:
    """
    Convert an event-time value to epoch milliseconds.

    Accepts ``datetime`` (naive values are read as UTC), ``date`` and
    integers (already epoch milliseconds).
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return (value - _EPOCH) // _ONE_MS
        return (value - _EPOCH_UTC) // _ONE_MS
    if isinstance(value, date):
        return (datetime(value.year, value.month, value.day) - _EPOCH) // _ONE_MS
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise SchemaError(f"Cannot read event time from {type(value).__name__} value {value!r}")


def from_epoch_millis(millis: int, arrow_type: pa.DataType) -> Any:
    """Convert epoch milliseconds to a value of ``arrow_type``."""
    if pa.types.is_timestamp(arrow_type):
        if arrow_type.tz is None:
            return _EPOCH + timedelta(milliseconds=millis)
        return _EPOCH_UTC + timedelta(milliseconds=millis)
    if pa.types.is_integer(arrow_type):
        return millis
    raise SchemaError(f"Cannot write a window timestamp into a {arrow_type} field")


# ============================================================================
# Window instances
# ============================================================================

@dataclass(frozen=True, order=True)
class IntervalWindow:
    """Half-open event-time interval ``[start, end)`` in milliseconds."""
    start: int
    end: int

    def max_timestamp(self) -> int:
        return self.end - 1

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp < self.end

    def intersects(self, other: 'IntervalWindow') -> bool:
        return self.start < other.end and other.start < self.end

    def span(self, other: 'IntervalWindow') -> 'IntervalWindow':
        """Smallest window covering both windows."""
        return IntervalWindow(min(self.start, other.start), max(self.end, other.end))

    def __repr__(self):
        return f"IntervalWindow([{self.start}, {self.end}))"


@dataclass(frozen=True)
class GlobalWindow:
    """The single window covering all of event time."""

    def max_timestamp(self) -> int:
        return MAX_TIMESTAMP

    def __repr__(self):
        return "GlobalWindow"


GLOBAL_WINDOW = GlobalWindow()

Window = Union[IntervalWindow, GlobalWindow]


# ============================================================================
# Window policies
# ============================================================================

def _require_duration(name: str, value: Any) -> None:
    if not isinstance(value, timedelta):
        raise ConfigurationError(f"{name} must be a timedelta, got {type(value).__name__}")
    # Assignment works in whole milliseconds.
    if value % _ONE_MS:
        raise ConfigurationError(f"{name} must be a whole number of milliseconds, got {value}")


@dataclass(frozen=True)
class GlobalWindows:
    """Every element in one window. The ambient policy of a fresh collection."""
    kind: WindowKind = field(default=WindowKind.GLOBAL, init=False, repr=False)

    @property
    def is_merging(self) -> bool:
        return False


@dataclass(frozen=True)
class FixedWindows:
    """
    Tumbling windows of ``size``, shifted by ``offset``.

    Each element belongs to exactly one window:
        [offset, offset+size), [offset+size, offset+2*size), ...
    """
    size: timedelta
    offset: timedelta = timedelta(0)
    kind: WindowKind = field(default=WindowKind.FIXED, init=False, repr=False)

    def __post_init__(self):
        _require_duration("size", self.size)
        _require_duration("offset", self.offset)
        if self.size <= timedelta(0):
            raise ConfigurationError(f"Fixed window size must be positive, got {self.size}")
        if self.offset < timedelta(0) or self.offset >= self.size:
            raise ConfigurationError(
                f"Fixed window offset must satisfy 0 <= offset < size, got offset={self.offset} "
                f"size={self.size}"
            )

    @property
    def is_merging(self) -> bool:
        return False


@dataclass(frozen=True)
class SlidingWindows:
    """
    Windows of ``size`` starting every ``period``.

    Windows overlap whenever period < size, so one element lands in
    several windows and is aggregated once in each of them.
    """
    size: timedelta
    period: timedelta
    offset: timedelta = timedelta(0)
    kind: WindowKind = field(default=WindowKind.SLIDING, init=False, repr=False)

    def __post_init__(self):
        _require_duration("size", self.size)
        _require_duration("period", self.period)
        _require_duration("offset", self.offset)
        if self.size <= timedelta(0):
            raise ConfigurationError(f"Sliding window size must be positive, got {self.size}")
        if self.period <= timedelta(0):
            raise ConfigurationError(f"Sliding window period must be positive, got {self.period}")
        if self.period > self.size:
            raise ConfigurationError(
                f"Sliding window period {self.period} cannot be larger than size {self.size}"
            )
        if self.offset < timedelta(0) or self.offset >= self.period:
            raise ConfigurationError(
                f"Sliding window offset must satisfy 0 <= offset < period, got "
                f"offset={self.offset} period={self.period}"
            )

    @property
    def is_merging(self) -> bool:
        return False


@dataclass(frozen=True)
class Sessions:
    """Per-key sessions that close after ``gap`` without activity."""
    gap: timedelta
    kind: WindowKind = field(default=WindowKind.SESSION, init=False, repr=False)

    def __post_init__(self):
        _require_duration("gap", self.gap)
        if self.gap <= timedelta(0):
            raise ConfigurationError(f"Session gap must be positive, got {self.gap}")

    @property
    def is_merging(self) -> bool:
        return True


WindowPolicy = Union[FixedWindows, SlidingWindows, Sessions]
WindowFn = Union[GlobalWindows, FixedWindows, SlidingWindows, Sessions]


def _duration(seconds=None, minutes=None, hours=None, days=None) -> timedelta:
    return timedelta(
        seconds=seconds or 0,
        minutes=minutes or 0,
        hours=hours or 0,
        days=days or 0,
    )


def tumbling(seconds: Optional[float] = None,
             minutes: Optional[float] = None,
             hours: Optional[float] = None,
             days: Optional[float] = None) -> FixedWindows:
    """
    Create fixed windows.

    Example:
        tumbling(seconds=60)  # [0-60s), [60-120s), ...
        tumbling(hours=1)
    """
    return FixedWindows(size=_duration(seconds, minutes, hours, days))


def hopping(size_seconds: float, period_seconds: float, offset_seconds: float = 0) -> SlidingWindows:
    """
    Create sliding windows.

    Example:
        hopping(60, 30)  # [0-60s), [30-90s), [60-120s), ...
    """
    return SlidingWindows(
        size=timedelta(seconds=size_seconds),
        period=timedelta(seconds=period_seconds),
        offset=timedelta(seconds=offset_seconds),
    )


def session(gap_seconds: Optional[float] = None,
            gap_minutes: Optional[float] = None,
            gap_hours: Optional[float] = None) -> Sessions:
    """
    Create session windows.

    Example:
        session(gap_minutes=5)  # a session ends after 5 idle minutes
    """
    return Sessions(gap=_duration(gap_seconds, gap_minutes, gap_hours))


# ============================================================================
# Assignment
# ============================================================================

def assign_windows(window_fn: WindowFn, timestamp: int) -> Tuple[Window, ...]:
    """
    Windows an element with event time ``timestamp`` belongs to.

    Session windows return the element's proto-window ``[ts, ts+gap)``;
    overlapping proto-windows of one key are merged by
    :func:`merge_session_windows` after grouping.

    Raises:
        ConfigurationError: For a window function outside the known kinds
    """
    kind = getattr(window_fn, 'kind', None)

    if kind is WindowKind.GLOBAL:
        return (GLOBAL_WINDOW,)

    if kind is WindowKind.FIXED:
        size = duration_millis(window_fn.size)
        offset = duration_millis(window_fn.offset)
        start = timestamp - (timestamp - offset) % size
        return (IntervalWindow(start, start + size),)

    if kind is WindowKind.SLIDING:
        size = duration_millis(window_fn.size)
        period = duration_millis(window_fn.period)
        offset = duration_millis(window_fn.offset)
        last_start = timestamp - (timestamp - offset) % period
        windows = []
        start = last_start
        while start > timestamp - size:
            windows.append(IntervalWindow(start, start + size))
            start -= period
        return tuple(reversed(windows))

    if kind is WindowKind.SESSION:
        return (IntervalWindow(timestamp, timestamp + duration_millis(window_fn.gap)),)

    raise ConfigurationError(f"Unknown window function {type(window_fn).__name__}")


def merge_session_windows(
    windows: Iterable[IntervalWindow],
) -> List[Tuple[IntervalWindow, FrozenSet[IntervalWindow]]]:
    """
    Merge overlapping interval windows.

    Returns:
        List of (merged window, original windows it covers), ordered by start
    """
    merged = []
    current = None
    members = set()

    for candidate in sorted(set(windows)):
        if current is None:
            current = candidate
            members = {candidate}
        elif current.intersects(candidate):
            current = current.span(candidate)
            members.add(candidate)
        else:
            merged.append((current, frozenset(members)))
            current = candidate
            members = {candidate}

    if current is not None:
        merged.append((current, frozenset(members)))

    return merged


class WindowTimestampFn:
    """
    Reads a row's event time from the window field.

    Allowed skew against processing time is unbounded: every record is
    accepted however far its event time is from the wall clock.
    """

    def __init__(self, window_field_index: int):
        self.window_field_index = window_field_index

    def __call__(self, row) -> int:
        value = row[self.window_field_index]
        if value is None:
            raise SchemaError(
                f"Window field '{row.schema.field(self.window_field_index).name}' is null; "
                f"every windowed row needs an event time"
            )
        return to_epoch_millis(value)

    def __eq__(self, other):
        return (
            isinstance(other, WindowTimestampFn)
            and other.window_field_index == self.window_field_index
        )

    def __hash__(self):
        return hash(self.window_field_index)

    def __repr__(self):
        return f"WindowTimestampFn(${self.window_field_index})"


# ============================================================================
# Plan formatting
# ============================================================================

def format_window(window_fn: WindowFn, window_field_index: int) -> str:
    """
    Render a window policy for plan explanation.

    Formats:
        Fixed(#idx, size, offset)
        Sliding(#idx, period, size, offset)
        Session(#idx, gap)

    Raises:
        ConfigurationError: For any other window function
    """
    kind = getattr(window_fn, 'kind', None)
    prefix = f"#{window_field_index}"

    if kind is WindowKind.FIXED:
        return (
            f"Fixed({prefix}, {format_duration(window_fn.size)}, "
            f"{format_duration(window_fn.offset)})"
        )
    if kind is WindowKind.SLIDING:
        return (
            f"Sliding({prefix}, {format_duration(window_fn.period)}, "
            f"{format_duration(window_fn.size)}, {format_duration(window_fn.offset)})"
        )
    if kind is WindowKind.SESSION:
        return f"Session({prefix}, {format_duration(window_fn.gap)})"

    raise ConfigurationError(f"Unknown window function {type(window_fn).__name__}")


# ============================================================================
# Triggers and windowing strategy
# ============================================================================

@dataclass(frozen=True)
class DefaultTrigger:
    """Fire once when the watermark passes the end of the window."""

    def __repr__(self):
        return "DefaultTrigger"


@dataclass(frozen=True)
class AfterCount:
    """Fire early every ``count`` elements."""
    count: int

    def __post_init__(self):
        if self.count <= 0:
            raise ConfigurationError(f"AfterCount needs a positive count, got {self.count}")


@dataclass(frozen=True)
class AfterProcessingTime:
    """Fire early ``delay`` of processing time after the first element."""
    delay: timedelta

    def __post_init__(self):
        _require_duration("delay", self.delay)


Trigger = Union[DefaultTrigger, AfterCount, AfterProcessingTime]


@dataclass(frozen=True)
class WindowingStrategy:
    """Window function and trigger currently applied to a collection."""
    window_fn: WindowFn = field(default_factory=GlobalWindows)
    trigger: Trigger = field(default_factory=DefaultTrigger)

    def with_window_fn(self, window_fn: WindowFn) -> 'WindowingStrategy':
        return WindowingStrategy(window_fn=window_fn, trigger=self.trigger)

    def with_trigger(self, trigger: Trigger) -> 'WindowingStrategy':
        return WindowingStrategy(window_fn=self.window_fn, trigger=trigger)

    def is_global_with_default_trigger(self) -> bool:
        return (
            getattr(self.window_fn, 'kind', None) is WindowKind.GLOBAL
            and isinstance(self.trigger, DefaultTrigger)
        )
