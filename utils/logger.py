"""
Structured logging for the library's own diagnostics.

This is the operator-visible side channel, separate from the sinks that
carry execution-time records. Delivery failures, sink fallbacks and
interceptor errors are reported here and never reach business callers.

Stdout belongs to the console sink, so the side channel only ever writes
to stderr. Applications call setup_logging() once at startup; when they
don't, the first sink built calls ensure_logging(), which applies the same
configuration without touching handlers the host already installed.

Why structlog?
  - JSON output for production log aggregation.
  - Human-readable console output for local dev.
  - Thread-safe out of the box, which matters because the sink consumer
    threads report through it.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Optional

import structlog

from configs.settings import get_settings

_configure_lock = threading.Lock()


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever sys.stderr is at emit time, even if it was swapped."""

    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value) -> None:
        pass


def setup_logging(
    *,
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    replace_handlers: bool = True,
) -> None:
    """
    Configure both stdlib logging and structlog in one shot.
    Unset arguments come from settings. With replace_handlers=False an
    existing root handler setup is left alone.
    """
    cfg = get_settings()
    level = level or cfg.log_level
    json_output = cfg.log_json if json_output is None else json_output

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    if not replace_handlers and root.handlers:
        return

    handler = _StderrHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def ensure_logging() -> None:
    """Apply the default configuration unless structlog is already configured."""
    if structlog.is_configured():
        return
    with _configure_lock:
        if not structlog.is_configured():
            setup_logging(replace_handlers=False)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named, bound logger. Use this everywhere."""
    return structlog.get_logger(name)
