"""Typed, prioritized hooks executed around an operation's main logic.

Hooks come in four types:

- ``pre``: ``async handler(context)`` before the main logic
- ``around``: ``async handler(context, proceed)`` wrapping the main logic;
  ``await proceed()`` runs the next link of the chain
- ``post``: ``async handler(context)`` after success, ``context.result`` set
- ``error``: ``async handler(context)`` after failure, ``context.error`` set

Failures in pre/post/error hooks are isolated: they are logged and counted,
and a hook that keeps failing is disabled for the rest of the process
lifetime. Every invocation is timed, and the registry periodically re-sorts
an operation's hooks by priority per millisecond so that a consistently slow
hook stops dominating.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import HookConfig
from .context import OperationContext

if TYPE_CHECKING:
    from .metrics import MetricsRecorder

logger = logging.getLogger(__name__)

# Floor for the reorder ratio so hooks that have never been timed don't divide by zero
_MIN_DURATION_MS = 0.001

MainLogic = Callable[[OperationContext], Awaitable[Any]]
Proceed = Callable[[], Awaitable[Any]]


class HookType(str, Enum):
    PRE = "pre"
    POST = "post"
    AROUND = "around"
    ERROR = "error"


@dataclass(eq=False)
class Hook:
    """A cross-cutting callback attached to one operation.

    The operation is the id prefix before the first ``":"``, so
    ``"payment.charge:audit"`` attaches to ``"payment.charge"``.
    """

    id: str
    type: HookType
    handler: Callable[..., Awaitable[Any]]
    priority: int = 0
    condition: Callable[[OperationContext], bool] | None = None
    disabled: bool = False

    @property
    def operation(self) -> str:
        return self.id.split(":", 1)[0]


@dataclass
class HookPerformanceRecord:
    avg_duration_ms: float = 0.0
    call_count: int = 0
    failure_count: int = 0
    last_called: float | None = None
    disabled: bool = False
    last_error: str | None = None


class HookRegistry:
    """In-memory table of hooks per operation.

    Hook lists are immutable tuples swapped in under a lock on every
    registration or reorder, so an execution that already took its snapshot
    is never affected by a concurrent reorder.
    """

    def __init__(self, config: HookConfig | None = None, metrics: MetricsRecorder | None = None) -> None:
        self._config = config or HookConfig()
        self._metrics = metrics
        self._hooks: dict[str, tuple[Hook, ...]] = {}
        self._performance: dict[str, HookPerformanceRecord] = {}
        self._lock = threading.Lock()

    # ========== Registration ==========

    def register(self, hook: Hook) -> None:
        """Register a hook for the operation named by its id prefix.

        Raises:
            TypeError: If hook is not a Hook.
            ValueError: If id, type or handler are missing or invalid, or the
                id is already registered.
        """
        if not isinstance(hook, Hook):
            raise TypeError(f"Expected Hook, got {type(hook).__name__}")
        if not isinstance(hook.id, str) or not hook.id.strip():
            raise ValueError("Hook id is required")
        if not hook.operation:
            raise ValueError(f"Hook id {hook.id!r} has no operation prefix")
        try:
            hook.type = HookType(hook.type)
        except ValueError:
            raise ValueError(f"Unknown hook type {hook.type!r} for {hook.id}") from None
        if not callable(hook.handler):
            raise ValueError(f"Hook {hook.id} has no callable handler")
        if hook.condition is not None and not callable(hook.condition):
            raise ValueError(f"Hook {hook.id} condition must be callable")
        if isinstance(hook.priority, bool) or not isinstance(hook.priority, int):
            raise ValueError(f"Hook {hook.id} priority must be an int")

        operation = hook.operation
        with self._lock:
            if hook.id in self._performance:
                raise ValueError(f"Hook {hook.id} is already registered")
            hooks = self._hooks.get(operation, ()) + (hook,)
            # sorted() is stable with reverse=True, ties keep insertion order
            self._hooks[operation] = tuple(sorted(hooks, key=lambda h: h.priority, reverse=True))
            self._performance[hook.id] = HookPerformanceRecord(disabled=hook.disabled)

        logger.debug(f"Registered {hook.type.value} hook {hook.id} (priority={hook.priority})")

    def unregister(self, hook_id: str) -> bool:
        """Remove a hook. Returns True if it was registered."""
        operation = hook_id.split(":", 1)[0]
        with self._lock:
            if self._performance.pop(hook_id, None) is None:
                return False
            remaining = tuple(h for h in self._hooks.get(operation, ()) if h.id != hook_id)
            if remaining:
                self._hooks[operation] = remaining
            else:
                self._hooks.pop(operation, None)
        logger.debug(f"Unregistered hook {hook_id}")
        return True

    def get_hooks(self, operation: str) -> list[Hook]:
        """Hooks for an operation in current execution order."""
        return list(self._hooks.get(operation, ()))

    def get_performance(self, hook_id: str) -> HookPerformanceRecord | None:
        """Copy of a hook's performance record, or None if unknown."""
        record = self._performance.get(hook_id)
        return replace(record) if record else None

    def get_all_performance(self) -> dict[str, HookPerformanceRecord]:
        return {hook_id: replace(record) for hook_id, record in self._performance.items()}

    # ========== Execution ==========

    async def execute_with_hooks(
        self,
        operation: str,
        context: OperationContext,
        main_logic: MainLogic,
    ) -> Any:
        """Run an operation's hooks around ``main_logic``.

        Pre hooks, then the around chain (or ``main_logic`` directly), then
        post hooks. If the chain raises, error hooks run with
        ``context.error`` set and the original exception is re-raised.

        Returns:
            The value returned by the around chain / main logic.
        """
        hooks = self._hooks.get(operation, ())

        for hook in hooks:
            if hook.type is HookType.PRE:
                await self._run_isolated(hook, context)

        around = [h for h in hooks if h.type is HookType.AROUND and self._should_run(h, context)]
        try:
            result = await self._run_chain(around, 0, context, main_logic)
        except Exception as exc:
            context.error = exc
            for hook in hooks:
                if hook.type is HookType.ERROR:
                    await self._run_isolated(hook, context)
            raise

        context.result = result
        for hook in hooks:
            if hook.type is HookType.POST:
                await self._run_isolated(hook, context)

        return result

    async def _run_chain(
        self,
        around: list[Hook],
        index: int,
        context: OperationContext,
        main_logic: MainLogic,
    ) -> Any:
        if index == len(around):
            return await main_logic(context)

        hook = around[index]
        inner_ms = 0.0

        async def proceed() -> Any:
            nonlocal inner_ms
            inner_start = time.perf_counter()
            try:
                return await self._run_chain(around, index + 1, context, main_logic)
            finally:
                inner_ms += (time.perf_counter() - inner_start) * 1000.0

        start = time.perf_counter()
        try:
            return await hook.handler(context, proceed)
        finally:
            # Time spent in the rest of the chain is not the hook's own cost
            own_ms = (time.perf_counter() - start) * 1000.0 - inner_ms
            self._record_call(hook, max(own_ms, 0.0))

    async def _run_isolated(self, hook: Hook, context: OperationContext) -> None:
        if not self._should_run(hook, context):
            return

        start = time.perf_counter()
        try:
            await hook.handler(context)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.warning(f"Hook {hook.id} failed: {type(exc).__name__}: {exc}")
            self._record_call(hook, duration_ms, error=exc)
        else:
            self._record_call(hook, (time.perf_counter() - start) * 1000.0)

    def _should_run(self, hook: Hook, context: OperationContext) -> bool:
        if hook.disabled:
            return False
        if hook.condition is None:
            return True
        try:
            return bool(hook.condition(context))
        except Exception as exc:
            logger.warning(f"Hook {hook.id} condition failed: {type(exc).__name__}: {exc}")
            self._record_failure(hook, exc)
            return False

    # ========== Performance Tracking ==========

    def _record_call(self, hook: Hook, duration_ms: float, error: BaseException | None = None) -> None:
        record = self._performance.get(hook.id)
        if record is None:
            # Unregistered while in flight
            return

        alpha = self._config.ema_alpha
        previous_avg = record.avg_duration_ms
        record.call_count += 1
        record.avg_duration_ms = previous_avg * (1.0 - alpha) + duration_ms * alpha
        record.last_called = time.time()

        if self._metrics is not None:
            self._metrics.record_hook_call(hook.id, hook.type.value, duration_ms, success=error is None)

        if error is not None:
            self._record_failure(hook, error)

        slow_ms = self._config.slow_hook_ms
        if previous_avg <= slow_ms < record.avg_duration_ms:
            logger.warning(f"Slow hook {hook.id}: average {record.avg_duration_ms:.1f}ms exceeds {slow_ms:g}ms")

        if record.call_count % self._config.optimization_threshold == 0:
            self._optimize(hook.operation)

    def _record_failure(self, hook: Hook, error: BaseException) -> None:
        record = self._performance.get(hook.id)
        if record is None:
            return

        record.failure_count += 1
        record.last_error = f"{type(error).__name__}: {error}"

        if not hook.disabled and record.failure_count >= self._config.failure_threshold:
            hook.disabled = True
            record.disabled = True
            logger.warning(f"Hook {hook.id} disabled after {record.failure_count} failures")
            if self._metrics is not None:
                self._metrics.record_hook_disabled(hook.id)

    def _optimize(self, operation: str) -> None:
        """Re-sort an operation's hooks by priority per average millisecond."""

        def score(hook: Hook) -> float:
            record = self._performance.get(hook.id)
            avg = record.avg_duration_ms if record else 0.0
            return hook.priority / max(avg, _MIN_DURATION_MS)

        with self._lock:
            hooks = self._hooks.get(operation)
            if not hooks:
                return
            self._hooks[operation] = tuple(sorted(hooks, key=score, reverse=True))
            ordered = self._hooks[operation]

        logger.debug(
            f"Reordered hooks for {operation}: {[h.id for h in ordered]}"
        )

        slow_ms = self._config.slow_hook_ms
        for hook in ordered:
            record = self._performance.get(hook.id)
            if record is not None and record.avg_duration_ms > slow_ms:
                logger.warning(
                    f"Slow hook {hook.id}: average {record.avg_duration_ms:.1f}ms exceeds {slow_ms:g}ms"
                )
