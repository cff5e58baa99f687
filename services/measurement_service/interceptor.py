"""
Interceptor — times policy-carrying operations and routes the result to a sink.

Architecture decisions:
  1. Composition-time wrapping. `wrap(target)` returns a proxy whose callable
     attributes go through the interceptor; `decorate(fn)` wraps one function.
     No import hooks, no monkeypatching of the target.
  2. Policy lookup order: explicit policy given to wrap() → policy on the
     function (@measure_time) → policy on the target's class → none.
  3. Resolved policies are cached per operation key for the interceptor's
     lifetime, "no policy" included. Reads never take the lock; population
     goes through dict.setdefault under the lock, so racing first calls all
     end up with the same cached object.
  4. Timing is inline (a local start value, not the thread-scoped timer) so
     recursive and reentrant operations never clobber each other.
  5. The business call is in try/finally: time is recorded on every exit
     path and the operation's own exception propagates unchanged.
  6. Everything after the call (threshold, max-log-count, sink routing,
     formatting) is guarded. A failure there is reported on the structlog
     side channel and never reaches the caller.
  7. Coroutine functions get an async wrapper that awaits the call inside
     the timed region, so the measurement covers the awaited work rather
     than coroutine creation.
"""

from __future__ import annotations

import functools
import inspect
import threading
import time
import tracemalloc
import traceback
import types
from typing import Any, Callable, Dict, Hashable, Iterable, Mapping, Optional, Tuple, Union

from services.measurement_service.policy import OperationPolicy, policy_of
from services.sink_service.registry import SinkRegistry
from services.sink_service.sinks import LogLevel, TimeLogger
from utils.logger import ensure_logging, get_logger
from utils.metrics import MetricsCollector, metrics

_log = get_logger(__name__)

_MISSING = object()


class Interceptor:
    """
    Measures and conditionally logs execution time of wrapped operations.

    Args:
        sinks: A SinkRegistry, or a single sink used as the default route.
        clock: Monotonic nanosecond clock. Injectable for tests.
        collector: Metrics target for per-operation latency.
    """

    def __init__(
        self,
        sinks: Union[SinkRegistry, TimeLogger],
        *,
        clock: Callable[[], int] = time.perf_counter_ns,
        collector: Optional[MetricsCollector] = None,
    ) -> None:
        ensure_logging()
        if isinstance(sinks, TimeLogger):
            sinks = SinkRegistry(sinks)
        self._sinks = sinks
        self._clock = clock
        self._metrics = collector or metrics
        self._policies: Dict[Hashable, Optional[OperationPolicy]] = {}
        self._counts: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    @property
    def sinks(self) -> SinkRegistry:
        return self._sinks

    # ── Public API ──────────────────────────────────────────

    def wrap(
        self,
        target: Any,
        operations: Union[Mapping[str, OperationPolicy], Iterable[str], None] = None,
    ) -> "InterceptedProxy":
        """
        Proxy `target` so its operations are intercepted.

        `operations` is either a mapping of name → explicit policy, or an
        iterable restricting which names are intercepted at all. With None,
        every public callable attribute is eligible.
        """
        return InterceptedProxy(self, target, operations)

    def decorate(self, fn: Callable, policy: Optional[OperationPolicy] = None) -> Callable:
        """Wrap a single function. Without `policy`, its @measure_time is used."""
        key = (fn, policy)
        name = getattr(fn, "__name__", repr(fn))

        def compute() -> Optional[OperationPolicy]:
            return policy if policy is not None else policy_of(fn)

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                return await self._acall(key, name, self._resolve(key, compute), fn, args, kwargs)

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return self._call(key, name, self._resolve(key, compute), fn, args, kwargs)

        return wrapper

    def measured(self, policy: Optional[OperationPolicy] = None, **fields: Any) -> Callable:
        """Decorator form of decorate(): `@interceptor.measured(threshold=5)`."""
        policy = policy or OperationPolicy(**fields)

        def deco(fn: Callable) -> Callable:
            return self.decorate(fn, policy)

        return deco

    def invoke(self, operation_id: str, target: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Call `target.<operation_id>(*args, **kwargs)` through the interceptor.
        For a coroutine method the result is an awaitable that times the
        awaited call.
        """
        fn = getattr(target, operation_id)
        return self._dispatch(target, operation_id, fn, None, args, kwargs)

    def policy_for(self, target: Any, operation_id: str) -> Optional[OperationPolicy]:
        """The cached policy that governs `operation_id` on `target`."""
        return self._policy_for(target, operation_id, None)[1]

    # ── Policy resolution ───────────────────────────────────

    def _resolve(
        self,
        key: Hashable,
        compute: Callable[[], Optional[OperationPolicy]],
    ) -> Optional[OperationPolicy]:
        cached = self._policies.get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        computed = compute()
        with self._lock:
            return self._policies.setdefault(key, computed)

    def _policy_for(
        self,
        target: Any,
        name: str,
        explicit: Optional[OperationPolicy],
    ) -> Tuple[Hashable, Optional[OperationPolicy]]:
        owner = target if isinstance(target, (type, types.ModuleType)) else type(target)
        key = (owner, name, explicit)

        def compute() -> Optional[OperationPolicy]:
            if explicit is not None:
                return explicit
            attr = getattr(owner, name, None)
            if attr is None:
                attr = getattr(target, name, None)
            policy = policy_of(attr)
            if policy is None and isinstance(owner, type):
                policy = policy_of(owner)
            return policy

        return key, self._resolve(key, compute)

    def _dispatch(
        self,
        target: Any,
        name: str,
        fn: Callable,
        explicit: Optional[OperationPolicy],
        args: tuple,
        kwargs: dict,
    ) -> Any:
        key, policy = self._policy_for(target, name, explicit)
        if inspect.iscoroutinefunction(fn):
            return self._acall(key, name, policy, fn, args, kwargs)
        return self._call(key, name, policy, fn, args, kwargs)

    # ── Measurement ─────────────────────────────────────────

    def _call(
        self,
        key: Hashable,
        name: str,
        policy: Optional[OperationPolicy],
        fn: Callable,
        args: tuple,
        kwargs: dict,
    ) -> Any:
        if policy is None:
            return fn(*args, **kwargs)

        memory_before = _traced_memory() if policy.track_memory_usage else None
        start_ns = self._clock()
        try:
            return fn(*args, **kwargs)
        finally:
            self._finish(key, name, policy, start_ns, memory_before, args, kwargs)

    async def _acall(
        self,
        key: Hashable,
        name: str,
        policy: Optional[OperationPolicy],
        fn: Callable,
        args: tuple,
        kwargs: dict,
    ) -> Any:
        if policy is None:
            return await fn(*args, **kwargs)

        memory_before = _traced_memory() if policy.track_memory_usage else None
        start_ns = self._clock()
        try:
            return await fn(*args, **kwargs)
        finally:
            self._finish(key, name, policy, start_ns, memory_before, args, kwargs)

    def _finish(
        self,
        key: Hashable,
        name: str,
        policy: OperationPolicy,
        start_ns: int,
        memory_before: Optional[int],
        args: tuple,
        kwargs: dict,
    ) -> None:
        elapsed_ns = max(0, self._clock() - start_ns)
        memory_delta = None
        if memory_before is not None:
            memory_delta = _traced_memory() - memory_before
        try:
            self._record(key, name, policy, elapsed_ns, args, kwargs, memory_delta)
        except Exception as e:
            _log.error(
                "interceptor_log_failed",
                operation=name,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _record(
        self,
        key: Hashable,
        name: str,
        policy: OperationPolicy,
        elapsed_ns: int,
        args: tuple,
        kwargs: dict,
        memory_delta: Optional[int],
    ) -> None:
        label = policy.label_for(name)
        self._metrics.record(label, elapsed_ns / 1_000_000)

        if policy.unit.convert(elapsed_ns) < policy.threshold:
            return
        if not self._claim_emission(key, policy.max_log_count):
            return

        sink = self._sinks.resolve(policy.logger_name)
        if policy.include_parameters:
            sink.log("%s called with args=%r kwargs=%r", label, args, kwargs)
        sink.log_execution_time(label, elapsed_ns, policy.unit, policy.threshold)
        if memory_delta is not None:
            sink.log("%s memory delta: %d bytes", label, memory_delta)
        if policy.log_stack_trace_on_threshold_exceeded and policy.threshold > 0:
            # Drop the _call, _finish and _record frames.
            stack = "".join(traceback.format_stack()[:-3]).rstrip()
            sink.log(
                "%s exceeded threshold of %s %s\n%s",
                label,
                policy.threshold,
                policy.unit.name.lower(),
                stack,
                level=LogLevel.WARN,
            )

    def _claim_emission(self, key: Hashable, limit: int) -> bool:
        """Count one emission unless the operation already hit `limit`."""
        with self._lock:
            count = self._counts.get(key, 0)
            if limit and count >= limit:
                return False
            self._counts[key] = count + 1
            return True

    def emission_count(self, target: Any, operation_id: str) -> int:
        """How many lines `operation_id` on `target` has emitted so far."""
        key, _ = self._policy_for(target, operation_id, None)
        with self._lock:
            return self._counts.get(key, 0)


def _traced_memory() -> int:
    # tracemalloc is process-wide; once started it stays on.
    if not tracemalloc.is_tracing():
        tracemalloc.start()
    return tracemalloc.get_traced_memory()[0]


class InterceptedProxy:
    """
    Stand-in for a wrapped target. Callable attributes are intercepted;
    private names, non-callables and names outside the exposed set pass
    straight through. Attribute assignment goes to the target.
    """

    def __init__(
        self,
        interceptor: Interceptor,
        target: Any,
        operations: Union[Mapping[str, OperationPolicy], Iterable[str], None],
    ) -> None:
        explicit: Dict[str, OperationPolicy] = {}
        exposed: Optional[frozenset] = None
        if isinstance(operations, Mapping):
            explicit = dict(operations)
        elif operations is not None:
            exposed = frozenset(operations)
        object.__setattr__(self, "_interceptor", interceptor)
        object.__setattr__(self, "_target", target)
        object.__setattr__(self, "_explicit", explicit)
        object.__setattr__(self, "_exposed", exposed)

    def __getattr__(self, name: str) -> Any:
        target = self._target
        attr = getattr(target, name)
        if name.startswith("_") or not callable(attr):
            return attr
        if self._exposed is not None and name not in self._exposed:
            return attr

        interceptor = self._interceptor
        explicit = self._explicit.get(name)

        if inspect.iscoroutinefunction(attr):

            @functools.wraps(attr)
            async def async_intercepted(*args: Any, **kwargs: Any) -> Any:
                return await interceptor._dispatch(target, name, attr, explicit, args, kwargs)

            return async_intercepted

        @functools.wraps(attr)
        def intercepted(*args: Any, **kwargs: Any) -> Any:
            return interceptor._dispatch(target, name, attr, explicit, args, kwargs)

        return intercepted

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(self._target, name, value)

    def __repr__(self) -> str:
        return f"<InterceptedProxy of {self._target!r}>"
