"""Metrics recording for OpenTelemetry.

Provides operation, hook and idempotency metrics for the orchestration
pipeline.
"""

import logging
from typing import Any

from opentelemetry.metrics import Counter, Histogram, Meter

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """Record OpenTelemetry metrics for orchestrated operations.

    **Operation metrics**:
    - orchestrator.operation.calls - Executions by operation and outcome
    - orchestrator.operation.duration - Execution time

    **Hook metrics**:
    - orchestrator.hook.duration - Hook invocation time
    - orchestrator.hook.failures - Isolated hook failures
    - orchestrator.hooks.disabled - Hooks tripped by the circuit breaker

    **Pipeline metrics**:
    - orchestrator.idempotency.outcomes - executed, cache_hit, conflict, failed
    - orchestrator.alerts - Alerts emitted
    """

    def __init__(self, meter: Meter) -> None:
        """Initialize MetricsRecorder with a meter.

        Args:
            meter: OpenTelemetry Meter instance.
        """
        self._meter = meter

        self._operation_calls: Counter = meter.create_counter(
            "orchestrator.operation.calls",
            unit="{call}",
            description="Number of orchestrated operation executions",
        )
        self._operation_duration: Histogram = meter.create_histogram(
            "orchestrator.operation.duration",
            unit="ms",
            description="Orchestrated operation duration",
        )

        self._hook_duration: Histogram = meter.create_histogram(
            "orchestrator.hook.duration",
            unit="ms",
            description="Hook invocation duration",
        )
        self._hook_failures: Counter = meter.create_counter(
            "orchestrator.hook.failures",
            unit="{failure}",
            description="Number of isolated hook failures",
        )
        self._hooks_disabled: Counter = meter.create_counter(
            "orchestrator.hooks.disabled",
            unit="{hook}",
            description="Number of hooks disabled by the circuit breaker",
        )

        self._idempotency_outcomes: Counter = meter.create_counter(
            "orchestrator.idempotency.outcomes",
            unit="{call}",
            description="Idempotency guard outcomes",
        )
        self._alerts: Counter = meter.create_counter(
            "orchestrator.alerts",
            unit="{alert}",
            description="Number of alerts emitted",
        )

    # ========== Operation Methods ==========

    def record_operation(
        self,
        operation: str,
        duration_ms: float | None,
        success: bool = True,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Record one operation execution.

        Args:
            operation: Operation name.
            duration_ms: Duration in milliseconds (or None to skip duration).
            success: Whether the operation succeeded.
            attributes: Extra metric attributes.
        """
        attrs = {
            "orchestrator.operation": operation,
            "orchestrator.outcome": "success" if success else "error",
            **(attributes or {}),
        }
        self._operation_calls.add(1, attributes=attrs)
        if duration_ms is not None:
            self._operation_duration.record(duration_ms, attributes=attrs)
            logger.debug(f"Recorded operation '{operation}' duration: {duration_ms:.2f}ms")

    # ========== Hook Methods ==========

    def record_hook_call(
        self,
        hook_id: str,
        hook_type: str,
        duration_ms: float,
        success: bool = True,
    ) -> None:
        """Record a hook invocation.

        Args:
            hook_id: Hook identifier.
            hook_type: pre, post, around or error.
            duration_ms: Invocation duration in milliseconds.
            success: Whether the hook completed without raising.
        """
        attrs = {"orchestrator.hook.id": hook_id, "orchestrator.hook.type": hook_type}
        self._hook_duration.record(duration_ms, attributes=attrs)
        if not success:
            self._hook_failures.add(1, attributes=attrs)

    def record_hook_disabled(self, hook_id: str) -> None:
        """Record a hook tripping the circuit breaker."""
        self._hooks_disabled.add(1, attributes={"orchestrator.hook.id": hook_id})
        logger.debug(f"Recorded hook disabled: {hook_id}")

    # ========== Pipeline Methods ==========

    def record_idempotency_outcome(self, operation: str, outcome: str) -> None:
        """Record an idempotency guard outcome.

        Args:
            operation: Operation name.
            outcome: One of executed, cache_hit, conflict, failed.
        """
        self._idempotency_outcomes.add(
            1,
            attributes={"orchestrator.operation": operation, "orchestrator.idempotency.outcome": outcome},
        )

    def record_alert(self, operation: str, severity: str) -> None:
        """Record an emitted alert."""
        self._alerts.add(
            1,
            attributes={"orchestrator.operation": operation, "orchestrator.alert.severity": severity},
        )
