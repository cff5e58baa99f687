"""
Time loggers (sinks) — console and file, both backed by the async pipeline.

Line format, shared by every sink:
    [yyyy-MM-dd HH:mm:ss.SSS] [<thread name>] <message>

log() and log_execution_time() only format and enqueue; the actual write
happens on the sink's consumer thread. Once a sink is closed, both raise
ClosedSinkError, since nothing enqueued after that point could be delivered.
"""

from __future__ import annotations

import abc
import enum
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union

from configs.settings import get_settings
from services.sink_service.errors import ClosedSinkError, LoggingError, ResourceOpenError
from services.sink_service.pipeline import AsyncDeliveryPipeline, PipelineState
from utils.logger import get_logger
from utils.metrics import MetricsCollector
from utils.timing import TimeUnit

_log = get_logger(__name__)


class LogLevel(enum.IntEnum):
    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    @classmethod
    def parse(cls, level: Union["LogLevel", str, int]) -> "LogLevel":
        if isinstance(level, cls):
            return level
        if isinstance(level, int):
            return cls(level)
        name = str(level).strip().upper()
        if name == "WARNING":
            name = "WARN"
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown log level: {level!r}") from None


class LogDestination(enum.Enum):
    CONSOLE = "console"
    FILE = "file"


def format_line(
    message: str,
    thread_label: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Prefix a message with a millisecond timestamp and the thread label."""
    now = now or datetime.now()
    thread_label = thread_label or threading.current_thread().name
    stamp = now.strftime("%Y-%m-%d %H:%M:%S") + f".{now.microsecond // 1000:03d}"
    return f"[{stamp}] [{thread_label}] {message}"


class TimeLogger(abc.ABC):
    """
    Base sink. Subclasses implement _write() (runs on the consumer thread)
    and optionally _release() (runs once, after the pipeline stopped).
    """

    def __init__(
        self,
        *,
        name: str,
        min_level: Union[LogLevel, str, None] = None,
        poll_interval: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        collector: Optional[MetricsCollector] = None,
    ) -> None:
        cfg = get_settings()
        self._name = name
        self._min_level = LogLevel.parse(min_level if min_level is not None else cfg.sink_min_level)
        self._release_lock = threading.Lock()
        self._released = False
        self._pipeline = AsyncDeliveryPipeline(
            self._write,
            name=name,
            poll_interval=poll_interval,
            drain_timeout=drain_timeout,
            collector=collector,
        )

    @abc.abstractmethod
    def _write(self, line: str) -> None:
        """Deliver one formatted line. Called only on the consumer thread."""

    def _release(self) -> None:
        """Free the underlying resource. Default: nothing to free."""

    def _ensure_open(self) -> None:
        if self._pipeline.state is PipelineState.STOPPED:
            raise ClosedSinkError(f"Sink {self._name!r} is closed")

    def log(self, message: str, *args: Any, level: Union[LogLevel, str] = LogLevel.INFO) -> None:
        """
        Format and enqueue a message. `args` are applied %-style.

        Messages below the sink's minimum level are dropped here.
        """
        self._ensure_open()
        if LogLevel.parse(level) < self._min_level:
            return
        if args:
            message = message % args
        self._pipeline.enqueue(format_line(message))

    def log_execution_time(
        self,
        name: str,
        duration_nanos: int,
        unit: Union[TimeUnit, str],
        threshold: float,
    ) -> None:
        """Log `<name> executed in <value> <unit>` unless below threshold."""
        self._ensure_open()
        unit = TimeUnit.parse(unit)
        value = unit.convert(duration_nanos)
        if value < threshold:
            return
        self.log("%s executed in %.4f %s", name, value, unit.name.lower())

    def close(self, timeout: Optional[float] = None) -> None:
        """Drain the queue (bounded), stop the consumer, release the resource."""
        self._pipeline.close(timeout)
        with self._release_lock:
            if self._released:
                return
            self._released = True
            self._release()

    def __enter__(self) -> "TimeLogger":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def name(self) -> str:
        return self._name

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def closed(self) -> bool:
        return self._pipeline.state is PipelineState.STOPPED

    @property
    def stats(self) -> Dict[str, Any]:
        return self._pipeline.stats


class ConsoleTimeLogger(TimeLogger):
    """Writes lines to stdout (or an injected stream)."""

    def __init__(self, stream: Optional[TextIO] = None, *, name: str = "console", **kwargs: Any) -> None:
        self._stream = stream
        super().__init__(name=name, **kwargs)

    def _write(self, line: str) -> None:
        # Looked up per write so a redirected sys.stdout is honoured.
        stream = self._stream or sys.stdout
        stream.write(line + "\n")
        stream.flush()


class FileTimeLogger(TimeLogger):
    """
    Appends lines to a UTF-8 text file, flushing after every line.

    Raises:
        ResourceOpenError: the file cannot be opened for appending.
    """

    def __init__(self, path: Union[str, Path], *, name: str = "file", **kwargs: Any) -> None:
        self._path = Path(path)
        try:
            self._file = open(self._path, "a", encoding="utf-8")
        except OSError as e:
            raise ResourceOpenError(f"Failed to open log file: {self._path}") from e
        try:
            super().__init__(name=name, **kwargs)
        except BaseException:
            self._file.close()
            raise

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, line: str) -> None:
        self._file.write(line + "\n")
        self._file.flush()

    def _release(self) -> None:
        try:
            self._file.close()
        except OSError as e:
            raise LoggingError(f"Failed to close log file: {self._path}") from e
        _log.debug("file_sink_closed", path=str(self._path))


def create_sink(
    destination: Union[LogDestination, str],
    *,
    path: Union[str, Path, None] = None,
    **kwargs: Any,
) -> TimeLogger:
    """Build a sink for a destination. FILE requires `path`."""
    if isinstance(destination, str):
        destination = LogDestination(destination.strip().lower())
    if destination is LogDestination.CONSOLE:
        return ConsoleTimeLogger(**kwargs)
    if destination is LogDestination.FILE:
        if not path:
            raise ValueError("A file sink needs a path")
        return FileTimeLogger(path, **kwargs)
    raise ValueError(f"Unsupported destination: {destination!r}")
