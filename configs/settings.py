"""
Centralized configuration — loaded once at process startup.

Why a single settings module?
  - Sinks, pipelines and the side-channel logger read the same env vars.
  - Pydantic validates types at import time so we fail fast on bad config.
  - No scattered os.getenv() calls across the codebase.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Immutable, validated application settings from environment."""

    # ── Diagnostic logging (structlog side channel) ─────────
    log_level: str = Field(default="INFO", description="Level for the diagnostic side channel")
    log_json: bool = Field(default=False, description="Render side-channel logs as JSON")

    # ── Measurement ─────────────────────────────────────────
    default_time_unit: str = Field(default="MILLISECONDS", description="Unit used when a policy names none")

    # ── Sinks ───────────────────────────────────────────────
    sink_file_path: str = Field(default="", description="Append-mode log file; empty disables the file sink")
    sink_min_level: str = Field(default="INFO", description="Lowest LogLevel a sink accepts")

    # ── Delivery pipeline ───────────────────────────────────
    sink_drain_timeout_seconds: float = Field(default=5.0, description="Bounded wait for the queue to drain on close")
    sink_poll_interval_seconds: float = Field(default=0.1, description="Consumer poll timeout on an empty queue")

    # ── Metrics ─────────────────────────────────────────────
    metrics_window: int = Field(default=10_000, description="Observations kept per latency metric")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Singleton accessor — parsed once and cached for the process lifetime.
    Import this wherever you need config:
        from configs.settings import get_settings
        cfg = get_settings()
    """
    return Settings()
