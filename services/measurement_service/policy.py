"""
Operation policy — the static configuration that says how a call is timed.

A policy is plain data. `measure_time` attaches one to a function or a
class; the interceptor reads it back. A class-level policy applies to every
operation of that class that has no policy of its own.

    @measure_time(threshold=50, logger_name="file", tags={"db"})
    def load_rows(self, query): ...

    @measure_time                       # defaults: ms, threshold 0
    def parse(self, blob): ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Iterable, Optional, TypeVar, Union

from configs.settings import get_settings
from utils.timing import TimeUnit

POLICY_ATTR = "__measure_time__"

T = TypeVar("T")


@dataclass(frozen=True)
class OperationPolicy:
    """Immutable per-operation timing policy. Threshold is in `unit`."""

    display_name: str = ""
    unit: TimeUnit = TimeUnit.MILLISECONDS
    threshold: float = 0.0
    logger_name: str = ""
    include_parameters: bool = False
    tags: FrozenSet[str] = field(default_factory=frozenset)
    track_memory_usage: bool = False
    max_log_count: int = 0
    log_stack_trace_on_threshold_exceeded: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "unit", TimeUnit.parse(self.unit))
        tags = self.tags
        if isinstance(tags, str):
            tags = (tags,)
        object.__setattr__(self, "tags", frozenset(tags))
        object.__setattr__(self, "threshold", float(self.threshold))
        if self.threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {self.threshold}")
        if self.max_log_count < 0:
            raise ValueError(f"max_log_count must be >= 0, got {self.max_log_count}")

    def label_for(self, operation_name: str) -> str:
        """Display name (or the operation's own name) plus sorted tags."""
        label = self.display_name or operation_name
        if self.tags:
            label = f"{label} [{','.join(sorted(self.tags))}]"
        return label


def policy_of(obj: Any) -> Optional[OperationPolicy]:
    """The policy attached by measure_time, if any."""
    policy = getattr(obj, POLICY_ATTR, None)
    return policy if isinstance(policy, OperationPolicy) else None


def measure_time(
    value: Union[Callable, type, str, None] = None,
    *,
    display_name: str = "",
    unit: Union[TimeUnit, str, None] = None,
    threshold: float = 0.0,
    logger_name: str = "",
    include_parameters: bool = False,
    tags: Iterable[str] = (),
    track_memory_usage: bool = False,
    max_log_count: int = 0,
    log_stack_trace_on_threshold_exceeded: bool = False,
) -> Any:
    """
    Attach an OperationPolicy to a function or class and return it unchanged.

    Usable bare (`@measure_time`), with a display name
    (`@measure_time("checkout")`) or with keyword fields. When `unit` is
    omitted the configured default unit is used.
    """
    if isinstance(value, str):
        display_name = display_name or value
        value = None

    policy = OperationPolicy(
        display_name=display_name,
        unit=unit if unit is not None else get_settings().default_time_unit,
        threshold=threshold,
        logger_name=logger_name,
        include_parameters=include_parameters,
        tags=frozenset(tags),
        track_memory_usage=track_memory_usage,
        max_log_count=max_log_count,
        log_stack_trace_on_threshold_exceeded=log_stack_trace_on_threshold_exceeded,
    )

    def attach(obj: T) -> T:
        setattr(obj, POLICY_ATTR, policy)
        return obj

    if value is not None:
        return attach(value)
    return attach
