"""
Exception hierarchy for the logging path.

Everything the sinks raise derives from LoggingError so callers can catch
the whole family at one seam (the interceptor does exactly that).
"""

from __future__ import annotations


class LoggingError(Exception):
    """Base class for failures inside the logging path."""


class SinkUnavailableError(LoggingError, KeyError):
    """No sink is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No sink registered under {name!r}")
        self.name = name

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message.
        return self.args[0]


class DeliveryError(LoggingError):
    """The consumer thread failed to write a line; the line is dropped."""


class ClosedSinkError(LoggingError):
    """log() or log_execution_time() after the sink's pipeline stopped."""


class ResourceOpenError(LoggingError):
    """A file sink could not open its target for appending."""
