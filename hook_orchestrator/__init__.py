"""
Adaptive hook orchestration for asynchronous operations.

Wraps any named operation with three cross-cutting guarantees:

- idempotent execution keyed on the operation and its subject/payload
- typed, prioritized hooks (pre/around/post/error) with failure isolation
- spans, metrics and alerting through OpenTelemetry

Usage:
    orchestrator = create_orchestrator({"idempotency": {"db_path": "keys.db"}})
    orchestrator.register_hook(Hook(id="payment.charge:audit", type=HookType.POST, handler=audit))

    result = await orchestrator.execute("payment.charge", context, charge)
    if result.success:
        ...
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .config import (
    HookConfig,
    IdempotencyConfig,
    ObservabilityConfig,
    OrchestratorConfig,
    ValidationConfig,
)
from .context import ContextValidator, OperationContext, ValidationResult
from .enrichment import (
    DefaultFollowUpProvider,
    FollowUpContext,
    FollowUpProvider,
    HistoryEntry,
    KnowledgeProvider,
    Suggestion,
)
from .errors import (
    ConflictError,
    HandlerError,
    OperationCancelledError,
    OrchestrationError,
    ResultSerializationError,
    ValidationError,
)
from .hooks import Hook, HookPerformanceRecord, HookRegistry, HookType
from .idempotency import (
    IdempotencyManager,
    IdempotencyRecord,
    IdempotencyStatus,
    SQLiteIdempotencyStore,
)
from .metrics import MetricsRecorder
from .observability import Alert, ExportSnapshot, ObservabilityManager, TelemetrySpan

logger = logging.getLogger(__name__)

# Public exports
__all__ = [
    "Orchestrator",
    "ExecutionResult",
    "ExecutionMetrics",
    "create_orchestrator",
    "OrchestratorConfig",
    "HookConfig",
    "IdempotencyConfig",
    "ValidationConfig",
    "ObservabilityConfig",
    "OperationContext",
    "ContextValidator",
    "ValidationResult",
    "Hook",
    "HookType",
    "HookRegistry",
    "HookPerformanceRecord",
    "IdempotencyManager",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "SQLiteIdempotencyStore",
    "ObservabilityManager",
    "MetricsRecorder",
    "TelemetrySpan",
    "ExportSnapshot",
    "Alert",
    "KnowledgeProvider",
    "FollowUpProvider",
    "DefaultFollowUpProvider",
    "FollowUpContext",
    "Suggestion",
    "OrchestrationError",
    "ValidationError",
    "ConflictError",
    "HandlerError",
    "OperationCancelledError",
    "ResultSerializationError",
]

Handler = Callable[[OperationContext], Awaitable[Any]]


@dataclass
class ExecutionMetrics:
    execution_id: str
    duration_ms: float
    operation: str
    timestamp: float
    cached: bool = False


@dataclass
class ExecutionResult:
    """Uniform envelope returned by Orchestrator.execute.

    ``success`` discriminates: on success ``result`` is set, otherwise
    ``error`` holds an OrchestrationError whose ``kind`` is one of
    validation, conflict, handler, cancelled or serialization.
    """

    success: bool
    result: Any = None
    error: OrchestrationError | None = None
    follow_ups: list[Suggestion] = field(default_factory=list)
    discoveries: dict[str, Any] = field(default_factory=dict)
    metrics: ExecutionMetrics | None = None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None


class Orchestrator:
    """Validate, dedupe, instrument and run an operation through its hooks.

    All collaborators are injected; anything not supplied is built from
    ``config``. The orchestrator never raises for a failed operation, it
    returns an ExecutionResult with ``success=False`` instead. Cancellation
    of the caller's own task is the one exception and propagates.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        hooks: HookRegistry | None = None,
        idempotency: IdempotencyManager | None = None,
        observability: ObservabilityManager | None = None,
        validator: ContextValidator | None = None,
        knowledge: KnowledgeProvider | None = None,
        follow_ups: FollowUpProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self._clock = clock

        self.observability = observability or ObservabilityManager(self.config.observability, clock=clock)
        metrics = self.observability.metrics
        self.hooks = hooks or HookRegistry(self.config.hooks, metrics=metrics)
        self.idempotency = idempotency or IdempotencyManager(
            config=self.config.idempotency, metrics=metrics, clock=clock
        )
        self.validator = validator or ContextValidator(self.config.validation, clock=clock)
        self.knowledge = knowledge
        self.follow_ups = follow_ups if follow_ups is not None else DefaultFollowUpProvider()

        self._history: deque[HistoryEntry] = deque(maxlen=self.config.history_size)
        self._semaphore = (
            asyncio.Semaphore(self.config.max_concurrency) if self.config.max_concurrency else None
        )

    def register_hook(self, hook: Hook) -> None:
        self.hooks.register(hook)

    def start(self) -> None:
        """Start background maintenance (idempotency key expiry sweep)."""
        self.idempotency.start_cleanup()

    async def close(self) -> None:
        await self.idempotency.close()

    async def __aenter__(self) -> "Orchestrator":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ========== Execution ==========

    async def execute(
        self,
        operation: str,
        context: OperationContext,
        handler: Handler,
        *,
        ttl: float | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run ``handler`` for ``operation`` through the full pipeline.

        Args:
            operation: Operation name; selects the hooks to run.
            context: Request envelope, mutated in place with result/error/span_id.
            handler: Main logic, ``async handler(context) -> result``.
            ttl: Idempotency record lifetime in seconds.
            timeout: Deadline for the hook pipeline in seconds.

        Returns:
            ExecutionResult envelope.
        """
        if self._semaphore is None:
            return await self._execute(operation, context, handler, ttl, timeout)
        async with self._semaphore:
            return await self._execute(operation, context, handler, ttl, timeout)

    async def _execute(
        self,
        operation: str,
        context: OperationContext,
        handler: Handler,
        ttl: float | None,
        timeout: float | None,
    ) -> ExecutionResult:
        execution_id = uuid.uuid4().hex
        timestamp = self._clock()
        start = time.perf_counter()
        deadline = timeout if timeout is not None else self.config.default_timeout_seconds
        ran = False

        async def run_hooks() -> Any:
            pipeline = self.hooks.execute_with_hooks(operation, context, handler)
            if deadline is None:
                return await pipeline
            try:
                return await asyncio.wait_for(pipeline, deadline)
            except asyncio.TimeoutError:
                raise OperationCancelledError(operation, deadline) from None

        async def instrumented() -> Any:
            nonlocal ran
            ran = True
            return await self.observability.instrument(
                operation, context, run_hooks, metadata={"execution_id": execution_id}
            )

        def metrics(cached: bool = False) -> ExecutionMetrics:
            return ExecutionMetrics(
                execution_id=execution_id,
                duration_ms=(time.perf_counter() - start) * 1000.0,
                operation=operation,
                timestamp=timestamp,
                cached=cached,
            )

        try:
            self.validator.ensure_valid(context)
            key = self.idempotency.generate_key(operation, context)
            result = await self.idempotency.execute_with_idempotency(key, operation, instrumented, ttl)
        except asyncio.CancelledError:
            self._remember(operation, success=False, error_kind=OperationCancelledError.kind)
            raise
        except Exception as exc:
            if isinstance(exc, OrchestrationError):
                error = exc
            else:
                error = HandlerError(operation, exc)
                error.__cause__ = exc
            context.error = error
            logger.info(f"{operation} failed ({error.kind}): {error}")
            follow_ups = self._generate_follow_ups(operation, None, error)
            self._remember(operation, success=False, error_kind=error.kind)
            return ExecutionResult(success=False, error=error, follow_ups=follow_ups, metrics=metrics())

        context.result = result
        discoveries = await self._ask_knowledge(operation, context)
        follow_ups = self._generate_follow_ups(operation, result, None)
        self._remember(operation, success=True)
        return ExecutionResult(
            success=True,
            result=result,
            follow_ups=follow_ups,
            discoveries=discoveries,
            metrics=metrics(cached=not ran),
        )

    # ========== Enrichment ==========

    async def _ask_knowledge(self, operation: str, context: OperationContext) -> dict[str, Any]:
        if self.knowledge is None:
            return {}
        question = f"What should follow {operation} for subject {context.subject_id}?"
        try:
            answer = await asyncio.wait_for(
                self.knowledge.ask(operation, question),
                self.config.enrichment_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Knowledge lookup for {operation} timed out")
            return {}
        except Exception as exc:
            logger.warning(f"Knowledge lookup for {operation} failed: {exc}")
            return {}
        return {"knowledge": answer} if answer else {}

    def _generate_follow_ups(
        self,
        operation: str,
        result: Any,
        error: OrchestrationError | None,
    ) -> list[Suggestion]:
        ctx = FollowUpContext(operation=operation, result=result, error=error, history=list(self._history))
        try:
            return list(self.follow_ups.generate(ctx))
        except Exception as exc:
            logger.warning(f"Follow-up generation for {operation} failed: {exc}")
            return []

    def _remember(self, operation: str, success: bool, error_kind: str | None = None) -> None:
        self._history.append(
            HistoryEntry(operation=operation, success=success, timestamp=self._clock(), error_kind=error_kind)
        )


def create_orchestrator(
    config: OrchestratorConfig | dict[str, Any] | None = None,
    **collaborators: Any,
) -> Orchestrator:
    """Build an Orchestrator, installing OTel providers if configured.

    Args:
        config: OrchestratorConfig or a configuration dictionary.
        **collaborators: Keyword collaborators forwarded to Orchestrator.
    """
    from .exporters import setup_metrics, setup_tracing

    if isinstance(config, OrchestratorConfig):
        orchestrator_config = config
    else:
        orchestrator_config = OrchestratorConfig.from_dict(dict(config or {}))

    if orchestrator_config.telemetry_active:
        setup_tracing(orchestrator_config.observability)
        setup_metrics(orchestrator_config.observability)

    orchestrator = Orchestrator(orchestrator_config, **collaborators)
    logger.info(
        f"Created orchestrator (exporter={orchestrator_config.observability.exporter}, "
        f"idempotency_db={orchestrator_config.idempotency.db_path})"
    )
    return orchestrator
