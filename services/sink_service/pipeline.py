"""
Async delivery pipeline — one queue, one consumer thread, per sink.

Architecture decisions:
  1. Producers call enqueue() from any thread and never block. The queue is
     unbounded: there is no backpressure, so a producer that outpaces the
     writer grows memory without limit. That is a known risk, not handled.
  2. A single daemon consumer thread polls the queue (100ms by default) and
     hands each line to the writer callable. FIFO per producer.
  3. Lifecycle is an explicit state machine: RUNNING → DRAINING → STOPPED.
     close() requests a stop, the consumer keeps writing until the queue is
     empty, then close() joins it with a bounded timeout.
  4. If the join times out, the consumer is cancelled and the remaining
     backlog is discarded and counted as dropped. Best-effort drain.
  5. Writer failures are reported on the structlog side channel and counted;
     the consumer moves on to the next line.
"""

from __future__ import annotations

import enum
import queue
import threading
from typing import Any, Callable, Dict, Optional

from configs.settings import get_settings
from services.sink_service.errors import ClosedSinkError, DeliveryError
from utils.logger import ensure_logging, get_logger
from utils.metrics import MetricsCollector, metrics
from utils.timing import timed

_log = get_logger(__name__)

# Wakes the consumer immediately on close instead of waiting out a poll.
_STOP = object()


class PipelineState(enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class AsyncDeliveryPipeline:
    """
    Queue plus dedicated writer thread for one sink.

    Args:
        writer: Called on the consumer thread with each line.
        name: Sink label used for the thread name, metrics and diagnostics.
        poll_interval: Seconds the consumer blocks on an empty queue.
        drain_timeout: Default bound for close(), in seconds.
        collector: Metrics target for delivered/dropped counters.
    """

    def __init__(
        self,
        writer: Callable[[str], None],
        *,
        name: str = "sink",
        poll_interval: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        collector: Optional[MetricsCollector] = None,
    ) -> None:
        ensure_logging()
        cfg = get_settings()
        self._writer = writer
        self._name = name
        self._poll_interval = cfg.sink_poll_interval_seconds if poll_interval is None else poll_interval
        self._drain_timeout = cfg.sink_drain_timeout_seconds if drain_timeout is None else drain_timeout
        self._metrics = collector or metrics

        self._queue: queue.Queue = queue.Queue()
        self._state = PipelineState.RUNNING
        self._state_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._cancelled = threading.Event()

        self._stats_lock = threading.Lock()
        self._delivered = 0
        self._dropped = 0

        self._thread = threading.Thread(
            target=self._run,
            name=f"{name}-writer",
            daemon=True,
        )
        self._thread.start()

    # ── Producer side ───────────────────────────────────────

    def enqueue(self, line: str) -> None:
        """
        Accept a line for delivery. Never blocks.

        Raises:
            ClosedSinkError: the pipeline already reached STOPPED.
        """
        with self._state_lock:
            if self._state is PipelineState.STOPPED:
                raise ClosedSinkError(f"Sink {self._name!r} is closed")
            self._queue.put_nowait(line)

    # ── Consumer side ───────────────────────────────────────

    def _run(self) -> None:
        while not self._cancelled.is_set():
            try:
                item = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._stop_requested.is_set():
                    return
                continue

            if item is _STOP:
                if self._queue.empty():
                    return
                continue
            if self._cancelled.is_set():
                self._count_dropped(1)
                return
            self._deliver(item)

    def _deliver(self, line: str) -> None:
        try:
            self._writer(line)
        except Exception as exc:
            self._count_dropped(1)
            error = DeliveryError(f"Sink {self._name!r} failed to write: {exc}")
            _log.error(
                "sink_delivery_failed",
                sink=self._name,
                error=str(error),
                error_type=type(exc).__name__,
                dropped=self.dropped,
            )
            return
        with self._stats_lock:
            self._delivered += 1
        self._metrics.increment(f"sink.{self._name}.delivered")

    def _count_dropped(self, count: int) -> None:
        if count <= 0:
            return
        with self._stats_lock:
            self._dropped += count
        self._metrics.increment(f"sink.{self._name}.dropped", count)

    # ── Lifecycle ───────────────────────────────────────────

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Drain and stop. Safe to call more than once and from any thread.

        Lines enqueued while DRAINING are still delivered. After `timeout`
        seconds the consumer is cancelled and the backlog is dropped.
        """
        timeout = self._drain_timeout if timeout is None else timeout
        with self._close_lock:
            with self._state_lock:
                if self._state is not PipelineState.RUNNING:
                    return
                self._state = PipelineState.DRAINING

            self._stop_requested.set()
            self._queue.put_nowait(_STOP)
            with timed("pipeline_drain", level="debug", sink=self._name):
                self._thread.join(timeout)

            with self._state_lock:
                self._state = PipelineState.STOPPED

            if self._thread.is_alive():
                self._cancelled.set()
                discarded = self._take_backlog()
                self._count_dropped(len(discarded))
                _log.warning(
                    "pipeline_drain_timeout",
                    sink=self._name,
                    timeout_s=timeout,
                    discarded=len(discarded),
                )
            else:
                # The consumer may exit between a DRAINING enqueue and its
                # last poll; those lines were accepted, so write them here.
                for line in self._take_backlog():
                    self._deliver(line)

    def _take_backlog(self) -> list:
        lines = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return lines
            if item is not _STOP:
                lines.append(item)

    # ── Introspection ───────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def delivered(self) -> int:
        with self._stats_lock:
            return self._delivered

    @property
    def dropped(self) -> int:
        with self._stats_lock:
            return self._dropped

    @property
    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "state": self._state.value,
                "delivered": self._delivered,
                "dropped": self._dropped,
                "pending": self._queue.qsize(),
            }
