"""Span lifecycle, metrics and alerting around an operation's execution.

Every instrumented execution produces a TelemetrySpan kept in a bounded ring
buffer for local stats, mirrored onto an OpenTelemetry span so the
application's tracer provider sees it, and handed to the registered snapshot
exporters when it closes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import threading
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from opentelemetry import metrics as otel_metrics
from opentelemetry import trace
from opentelemetry.trace import (
    NonRecordingSpan,
    Span,
    SpanContext,
    SpanKind,
    StatusCode,
    TraceFlags,
    Tracer,
)

from .config import ObservabilityConfig
from .errors import OperationCancelledError
from .metrics import MetricsRecorder

if TYPE_CHECKING:
    from .context import OperationContext

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "hook_orchestrator"
SCHEMA_URL = "https://opentelemetry.io/schemas/1.21.0"

# Alerts kept in memory for get_alerts()
_ALERT_HISTORY = 100


class SpanStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class TelemetrySpan:
    """Timed record of one instrumented execution."""

    trace_id: str
    span_id: str
    operation: str
    start_time: float
    parent_span_id: str | None = None
    end_time: float | None = None
    duration_ms: float | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    status: SpanStatus = SpanStatus.OK
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.operation,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "tags": dict(self.tags),
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class Alert:
    id: str
    severity: AlertSeverity
    message: str
    operation: str
    span_id: str | None
    context: dict[str, Any]
    timestamp: float
    count: int


@dataclass
class ExportSnapshot:
    """What exporters receive when a span closes."""

    span: TelemetrySpan
    stats: dict[str, dict[str, float]]
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {"span": self.span.to_dict(), "stats": self.stats, "timestamp": self.timestamp}


class SnapshotExporter(Protocol):
    async def export(self, snapshot: ExportSnapshot) -> None: ...


AlertSink = Callable[[Alert], Any]


def log_alert(alert: Alert) -> None:
    """Default alert sink: write the alert to the log."""
    logger.error(
        f"ALERT [{alert.severity.value}] {alert.operation}: {alert.message} "
        f"(count={alert.count}, span={alert.span_id})"
    )


class ObservabilityManager:
    """Wrap executions in spans, record metrics, export and alert."""

    def __init__(
        self,
        config: ObservabilityConfig | None = None,
        tracer: Tracer | None = None,
        metrics: MetricsRecorder | None = None,
        exporters: list[SnapshotExporter] | None = None,
        alert_sinks: list[AlertSink] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ObservabilityConfig()
        self._tracer = tracer or trace.get_tracer(INSTRUMENTATION_NAME, schema_url=SCHEMA_URL)
        self.metrics = metrics or MetricsRecorder(
            otel_metrics.get_meter(INSTRUMENTATION_NAME, schema_url=SCHEMA_URL)
        )
        self._exporters: list[SnapshotExporter] = list(exporters or [])
        self._alert_sinks: list[AlertSink] = list(alert_sinks) if alert_sinks is not None else [log_alert]
        self._clock = clock

        self._spans: deque[TelemetrySpan] = deque(maxlen=self.config.span_buffer_size)
        self._spans_lock = threading.Lock()
        self._otel_spans: dict[str, Span] = {}  # span_id -> open OTel span

        # (operation, message) -> (count, window_start)
        self._error_counts: dict[tuple[str, str], tuple[int, float]] = {}
        self._alerts: deque[Alert] = deque(maxlen=_ALERT_HISTORY)

    def add_exporter(self, exporter: SnapshotExporter) -> None:
        self._exporters.append(exporter)

    def add_alert_sink(self, sink: AlertSink) -> None:
        self._alert_sinks.append(sink)

    # ========== Spans ==========

    def create_span(
        self,
        operation: str,
        metadata: dict[str, Any] | None = None,
        context: OperationContext | None = None,
    ) -> TelemetrySpan:
        """Open a span and append it to the ring buffer.

        When the context carries both trace_id and parent_span_id the OTel
        span joins that trace as a child of the remote parent.
        """
        tags = dict(metadata or {})
        attributes: dict[str, Any] = {"orchestrator.operation": operation}
        parent_span_id = None
        parent_context = None

        if context is not None:
            attributes["orchestrator.request_id"] = context.request_id
            attributes["orchestrator.subject_id"] = context.subject_id
            parent_span_id = context.parent_span_id
            parent_context = _remote_parent(context.trace_id, context.parent_span_id)

        for key, value in tags.items():
            if isinstance(value, (str, bool, int, float)):
                attributes[f"orchestrator.tag.{key}"] = value

        otel_span = self._tracer.start_span(
            f"operation {operation}",
            kind=SpanKind.INTERNAL,
            attributes=attributes,
            context=parent_context,
        )

        span_context = otel_span.get_span_context()
        if span_context.is_valid:
            trace_id = format(span_context.trace_id, "032x")
            span_id = format(span_context.span_id, "016x")
        else:
            # No SDK tracer provider installed
            trace_id = (context.trace_id if context is not None else None) or uuid.uuid4().hex
            span_id = secrets.token_hex(8)

        span = TelemetrySpan(
            trace_id=trace_id,
            span_id=span_id,
            parent_span_id=parent_span_id,
            operation=operation,
            start_time=self._clock(),
            tags=tags,
        )
        self._otel_spans[span_id] = otel_span
        with self._spans_lock:
            self._spans.append(span)

        logger.debug(f"Started span {span_id} for {operation}")
        return span

    def finish_span(
        self,
        span: TelemetrySpan,
        duration_ms: float,
        error: BaseException | None = None,
    ) -> None:
        """Close a span and its OTel mirror."""
        span.end_time = self._clock()
        span.duration_ms = duration_ms
        if duration_ms > self.config.slow_span_ms:
            span.tags["slow"] = True

        otel_span = self._otel_spans.pop(span.span_id, None)

        if error is None:
            span.status = SpanStatus.OK
            span.tags["result"] = "success"
        else:
            span.status = SpanStatus.ERROR
            span.error = f"{type(error).__name__}: {error}"
            span.tags["result"] = "error"
            span.tags["error_type"] = type(error).__name__
            if isinstance(error, (OperationCancelledError, asyncio.CancelledError)):
                span.tags["cancelled"] = True

        if otel_span is not None:
            otel_span.set_attribute("orchestrator.duration_ms", duration_ms)
            if span.tags.get("slow"):
                otel_span.set_attribute("orchestrator.slow", True)
            if error is None:
                otel_span.set_status(StatusCode.OK)
            else:
                otel_span.set_attribute("error.type", type(error).__name__)
                otel_span.set_status(StatusCode.ERROR, span.error)
            otel_span.end()

        logger.debug(f"Ended span {span.span_id} ({span.status.value}, {duration_ms:.2f}ms)")

    async def instrument(
        self,
        operation: str,
        context: OperationContext,
        handler: Callable[[], Awaitable[Any]],
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        """Run ``handler`` inside a span.

        Errors are recorded, counted towards alerts and re-raised.
        """
        span = self.create_span(operation, metadata, context)
        context.span_id = span.span_id
        start = time.perf_counter()

        try:
            result = await handler()
        except asyncio.CancelledError as exc:
            self._close(span, operation, start, exc)
            raise
        except Exception as exc:
            self._close(span, operation, start, exc)
            await self._count_error(operation, exc, span, context)
            await self._export(span)
            raise

        self._close(span, operation, start)
        await self._export(span)
        return result

    def _close(
        self,
        span: TelemetrySpan,
        operation: str,
        start: float,
        error: BaseException | None = None,
    ) -> None:
        duration_ms = (time.perf_counter() - start) * 1000.0
        self.finish_span(span, duration_ms, error)
        self.metrics.record_operation(operation, duration_ms, success=error is None)
        if span.tags.get("slow"):
            logger.warning(f"Slow operation {operation}: {duration_ms:.1f}ms")

    # ========== Alerting ==========

    async def _count_error(
        self,
        operation: str,
        error: BaseException,
        span: TelemetrySpan,
        context: OperationContext,
    ) -> None:
        message = str(error) or type(error).__name__
        key = (operation, message)
        now = self._clock()

        count, window_start = self._error_counts.get(key, (0, now))
        if now - window_start > self.config.alert_window_seconds:
            count, window_start = 0, now
        count += 1

        if count <= self.config.error_alert_threshold:
            self._error_counts[key] = (count, window_start)
            return

        self._error_counts.pop(key, None)
        severity = AlertSeverity.MEDIUM if isinstance(error, OperationCancelledError) else AlertSeverity.HIGH
        alert = Alert(
            id=uuid.uuid4().hex,
            severity=severity,
            message=message,
            operation=operation,
            span_id=span.span_id,
            context=context.summary(),
            timestamp=now,
            count=count,
        )
        self._alerts.append(alert)
        self.metrics.record_alert(operation, severity.value)
        await self._emit_alert(alert)

    async def _emit_alert(self, alert: Alert) -> None:
        for sink in self._alert_sinks:
            try:
                outcome = sink(alert)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.warning(f"Alert sink {sink!r} failed: {exc}")

    def get_alerts(self) -> list[Alert]:
        return list(self._alerts)

    # ========== Export ==========

    async def _export(self, span: TelemetrySpan) -> None:
        if not self._exporters:
            return
        snapshot = ExportSnapshot(span=span, stats=self.get_span_stats(), timestamp=self._clock())
        await asyncio.gather(*(self._export_one(exporter, snapshot) for exporter in self._exporters))

    async def _export_one(self, exporter: SnapshotExporter, snapshot: ExportSnapshot) -> None:
        try:
            await exporter.export(snapshot)
        except Exception as exc:
            logger.warning(f"Exporter {type(exporter).__name__} failed: {exc}")

    # ========== Stats ==========

    def get_spans(self, operation: str | None = None) -> list[TelemetrySpan]:
        with self._spans_lock:
            spans = list(self._spans)
        if operation is None:
            return spans
        return [s for s in spans if s.operation == operation]

    def get_span_stats(self) -> dict[str, dict[str, float]]:
        """Per-operation call count, average duration and error rate."""
        totals: dict[str, dict[str, float]] = {}
        for span in self.get_spans():
            if not span.finished:
                continue
            entry = totals.setdefault(span.operation, {"count": 0, "total_ms": 0.0, "errors": 0})
            entry["count"] += 1
            entry["total_ms"] += span.duration_ms or 0.0
            if span.status is SpanStatus.ERROR:
                entry["errors"] += 1

        return {
            operation: {
                "count": entry["count"],
                "avg_duration_ms": entry["total_ms"] / entry["count"],
                "error_rate": entry["errors"] / entry["count"],
            }
            for operation, entry in totals.items()
        }


def _remote_parent(trace_id: str | None, parent_span_id: str | None) -> Any:
    """OTel context for a remote parent, or None if the ids are unusable."""
    if not trace_id or not parent_span_id:
        return None
    try:
        span_context = SpanContext(
            trace_id=int(trace_id, 16),
            span_id=int(parent_span_id, 16),
            is_remote=True,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
    except ValueError:
        logger.debug(f"Ignoring malformed parent ids trace={trace_id} span={parent_span_id}")
        return None
    if not span_context.is_valid:
        return None
    return trace.set_span_in_context(NonRecordingSpan(span_context))
