"""
Sink Service Package — time loggers and their async delivery pipeline.
"""

from services.sink_service.errors import (
    ClosedSinkError,
    DeliveryError,
    LoggingError,
    ResourceOpenError,
    SinkUnavailableError,
)
from services.sink_service.pipeline import AsyncDeliveryPipeline, PipelineState
from services.sink_service.registry import SinkRegistry, build_registry
from services.sink_service.sinks import (
    ConsoleTimeLogger,
    FileTimeLogger,
    LogDestination,
    LogLevel,
    TimeLogger,
    create_sink,
    format_line,
)

__all__ = [
    "AsyncDeliveryPipeline",
    "ClosedSinkError",
    "ConsoleTimeLogger",
    "DeliveryError",
    "FileTimeLogger",
    "LogDestination",
    "LogLevel",
    "LoggingError",
    "PipelineState",
    "ResourceOpenError",
    "SinkRegistry",
    "SinkUnavailableError",
    "TimeLogger",
    "build_registry",
    "create_sink",
    "format_line",
]
