"""
Precision timing primitives.

Design decision: We use time.perf_counter_ns() (monotonic, nanosecond)
instead of time.time() because we need sub-millisecond accuracy and
monotonicity guarantees. Wall-clock time can jump on NTP sync.

Contents:
  - TimeUnit: the four reporting units and nanosecond conversion.
  - start()/stop()/measure(): thread-scoped manual timer. A mark set on
    one thread is invisible to every other thread.
  - MeasurementResult / MeasurementAggregate: immutable single result and
    a thread-safe accumulator for repeated measurements.
  - timed(): context manager that logs latency to the side channel.
"""

from __future__ import annotations

import enum
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Generator, Generic, Optional, TypeVar, Union

from utils.logger import get_logger

_log = get_logger(__name__)

V = TypeVar("V")


class TimeUnit(enum.Enum):
    """Reporting unit; the value is nanoseconds per unit."""

    NANOSECONDS = 1
    MICROSECONDS = 1_000
    MILLISECONDS = 1_000_000
    SECONDS = 1_000_000_000

    @property
    def nanos(self) -> int:
        return self.value

    def convert(self, duration_ns: int) -> float:
        """Nanoseconds → this unit, as a float."""
        return duration_ns / self.value

    @classmethod
    def parse(cls, unit: Union["TimeUnit", str]) -> "TimeUnit":
        """Accept a TimeUnit or its case-insensitive name."""
        if isinstance(unit, cls):
            return unit
        try:
            return cls[str(unit).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown time unit: {unit!r}") from None


class NoActiveTimerError(RuntimeError):
    """stop() was called on a thread with no matching start()."""


# ── Thread-scoped manual timer ──────────────────────────────

_local = threading.local()


def start() -> None:
    """Mark the current thread's start time. Overwrites an existing mark."""
    _local.start_ns = time.perf_counter_ns()


def stop() -> int:
    """
    Return nanoseconds since this thread's start() and clear the mark.

    Raises:
        NoActiveTimerError: no start() preceded this call on this thread.
    """
    start_ns = getattr(_local, "start_ns", None)
    if start_ns is None:
        raise NoActiveTimerError("Timer not started on this thread")
    elapsed = time.perf_counter_ns() - start_ns
    _local.start_ns = None
    return elapsed


def _clear() -> None:
    _local.start_ns = None


@dataclass(frozen=True)
class MeasurementResult(Generic[V]):
    """Duration of one timed call plus the value it returned."""

    duration_nanos: int
    result: Optional[V] = None

    def duration(self, unit: Union[TimeUnit, str]) -> int:
        """Duration truncated to whole units."""
        return self.duration_nanos // TimeUnit.parse(unit).nanos

    def duration_as_float(self, unit: Union[TimeUnit, str]) -> float:
        return TimeUnit.parse(unit).convert(self.duration_nanos)


def measure(fn: Callable[..., V], *args: Any, **kwargs: Any) -> MeasurementResult[V]:
    """
    Time a single call of `fn` using the thread-scoped timer.

    If `fn` raises, the mark is cleared and the exception propagates
    unchanged, so no stale mark is left behind on this thread.
    """
    start()
    try:
        result = fn(*args, **kwargs)
    except BaseException:
        _clear()
        raise
    return MeasurementResult(duration_nanos=stop(), result=result)


class MeasurementAggregate:
    """Running total/average over repeated measurements. Thread-safe."""

    def __init__(self) -> None:
        self._total_ns = 0
        self._count = 0
        self._lock = threading.Lock()

    def add(self, duration_ns: int) -> None:
        with self._lock:
            self._total_ns += duration_ns
            self._count += 1

    def add_result(self, result: MeasurementResult) -> None:
        self.add(result.duration_nanos)

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def total(self, unit: Union[TimeUnit, str] = TimeUnit.NANOSECONDS) -> float:
        with self._lock:
            total_ns = self._total_ns
        return TimeUnit.parse(unit).convert(total_ns)

    def average(self, unit: Union[TimeUnit, str] = TimeUnit.NANOSECONDS) -> float:
        """Mean duration in `unit`; 0.0 before the first measurement."""
        with self._lock:
            if self._count == 0:
                return 0.0
            return TimeUnit.parse(unit).convert(self._total_ns) / self._count


@contextmanager
def timed(label: str, level: str = "info", **fields: Any) -> Generator[dict, None, None]:
    """
    Context manager that measures elapsed time in milliseconds.

    Usage:
        with timed("pipeline_drain", sink="file") as t:
            pipeline.close()
        print(t["ms"])  # e.g. 4.32

    The dict is populated *after* the block finishes, so you can
    read t["ms"] or t["ns"] after the `with` block. `level` picks the
    side-channel method used to report it.
    """
    result: dict = {}
    start_ns = time.perf_counter_ns()
    try:
        yield result
    finally:
        elapsed_ns = time.perf_counter_ns() - start_ns
        result["ns"] = elapsed_ns
        result["ms"] = elapsed_ns / 1_000_000
        getattr(_log, level)(f"{label}", latency_ms=round(result["ms"], 3), **fields)
