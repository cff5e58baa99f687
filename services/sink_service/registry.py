"""
Sink registry — routes a policy's logger name to a concrete sink.

Unknown or empty names fall back to the default sink; the business call
never fails because a route is missing. Each unknown name is reported
once on the side channel.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set

from configs.settings import Settings, get_settings
from services.sink_service.errors import SinkUnavailableError
from services.sink_service.sinks import ConsoleTimeLogger, FileTimeLogger, TimeLogger
from utils.logger import ensure_logging, get_logger

_log = get_logger(__name__)


class SinkRegistry:
    """Thread-safe name → sink mapping with a default."""

    def __init__(self, default: TimeLogger) -> None:
        self._default = default
        self._sinks: Dict[str, TimeLogger] = {}
        self._warned: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def default(self) -> TimeLogger:
        return self._default

    def register(self, name: str, sink: TimeLogger) -> None:
        if not name:
            raise ValueError("Sink name must be non-empty")
        with self._lock:
            self._sinks[name] = sink
            self._warned.discard(name)

    def get(self, name: str) -> TimeLogger:
        """Strict lookup. Raises SinkUnavailableError for unknown names."""
        sink = self._sinks.get(name)
        if sink is None:
            raise SinkUnavailableError(name)
        return sink

    def resolve(self, name: Optional[str]) -> TimeLogger:
        """Lookup with fallback to the default sink."""
        if not name:
            return self._default
        try:
            return self.get(name)
        except SinkUnavailableError:
            with self._lock:
                first = name not in self._warned
                self._warned.add(name)
            if first:
                _log.warning("sink_unavailable", logger_name=name, fallback=self._default.name)
            return self._default

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._sinks)

    def close_all(self, timeout: Optional[float] = None) -> None:
        """
        Close every distinct sink once. Failures are reported, not raised,
        so one broken sink cannot keep the others from draining.
        """
        with self._lock:
            sinks = [self._default, *self._sinks.values()]
        seen: Set[int] = set()
        for sink in sinks:
            if id(sink) in seen:
                continue
            seen.add(id(sink))
            try:
                sink.close(timeout)
            except Exception as e:
                _log.error("sink_close_failed", sink=sink.name, error=str(e))


def build_registry(settings: Optional[Settings] = None) -> SinkRegistry:
    """
    Console default sink, plus a file sink registered as "file" when
    `sink_file_path` is configured.
    """
    ensure_logging()
    cfg = settings or get_settings()
    common = dict(
        min_level=cfg.sink_min_level,
        poll_interval=cfg.sink_poll_interval_seconds,
        drain_timeout=cfg.sink_drain_timeout_seconds,
    )
    registry = SinkRegistry(ConsoleTimeLogger(**common))
    registry.register("console", registry.default)
    if cfg.sink_file_path:
        registry.register("file", FileTimeLogger(cfg.sink_file_path, **common))
    _log.debug("sink_registry_built", sinks=registry.names())
    return registry
