"""Tests for ObservabilityManager spans, stats, export and alerting."""

import asyncio

import pytest
from opentelemetry.trace import StatusCode

from hook_orchestrator.config import ObservabilityConfig
from hook_orchestrator.context import OperationContext
from hook_orchestrator.errors import OperationCancelledError
from hook_orchestrator.metrics import MetricsRecorder
from hook_orchestrator.observability import AlertSeverity, ObservabilityManager, SpanStatus


class RecordingExporter:
    def __init__(self):
        self.snapshots = []

    async def export(self, snapshot):
        self.snapshots.append(snapshot)


class BrokenExporter:
    async def export(self, snapshot):
        raise ConnectionError("collector unreachable")


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def manager(tracer, meter, clock, alerts):
    return ObservabilityManager(
        ObservabilityConfig(),
        tracer=tracer,
        metrics=MetricsRecorder(meter),
        alert_sinks=[alerts.append],
        clock=clock,
    )


@pytest.fixture
def context(clock):
    return OperationContext(request_id="req-1", subject_id="user-1", timestamp=clock.now)


async def succeed():
    return "ok"


def failing(message="card declined"):
    async def handler():
        raise RuntimeError(message)

    return handler


class TestSpans:
    """Tests for span creation and completion."""

    @pytest.mark.asyncio
    async def test_instrument_success(self, manager, context, span_exporter):
        """A successful run produces an OK span and an OTel span."""
        result = await manager.instrument("payment.charge", context, succeed, metadata={"execution_id": "e1"})
        assert result == "ok"

        [span] = manager.get_spans()
        assert span.operation == "payment.charge"
        assert span.status is SpanStatus.OK
        assert span.finished
        assert span.tags["execution_id"] == "e1"
        assert span.tags["result"] == "success"
        assert context.span_id == span.span_id

        [otel_span] = span_exporter.get_finished_spans()
        assert otel_span.name == "operation payment.charge"
        assert otel_span.status.status_code == StatusCode.OK
        assert otel_span.attributes["orchestrator.request_id"] == "req-1"
        assert format(otel_span.context.span_id, "016x") == span.span_id

    @pytest.mark.asyncio
    async def test_instrument_error(self, manager, context, span_exporter):
        """Errors mark the span and are re-raised."""
        with pytest.raises(RuntimeError):
            await manager.instrument("payment.charge", context, failing())

        [span] = manager.get_spans()
        assert span.status is SpanStatus.ERROR
        assert span.error == "RuntimeError: card declined"
        assert span.tags["error_type"] == "RuntimeError"

        [otel_span] = span_exporter.get_finished_spans()
        assert otel_span.status.status_code == StatusCode.ERROR
        assert otel_span.attributes["error.type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_cancelled_tagged(self, manager, context):
        """Deadline overruns are tagged cancelled."""

        async def too_slow():
            raise OperationCancelledError("payment.charge", 0.1)

        with pytest.raises(OperationCancelledError):
            await manager.instrument("payment.charge", context, too_slow)
        assert manager.get_spans()[0].tags["cancelled"] is True

    @pytest.mark.asyncio
    async def test_task_cancellation_closes_span(self, manager, context, span_exporter):
        """Cancelling the caller still ends the span."""
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(60)

        task = asyncio.create_task(manager.instrument("op", context, hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        [span] = manager.get_spans()
        assert span.finished
        assert span.tags["cancelled"] is True
        assert len(span_exporter.get_finished_spans()) == 1

    @pytest.mark.asyncio
    async def test_slow_span_tagged(self, tracer, meter, context):
        """Spans over slow_span_ms carry the slow tag."""
        manager = ObservabilityManager(
            ObservabilityConfig(slow_span_ms=5.0), tracer=tracer, metrics=MetricsRecorder(meter)
        )

        async def sleepy():
            await asyncio.sleep(0.02)

        await manager.instrument("op", context, sleepy)
        await manager.instrument("op", context, succeed)
        slow, fast = manager.get_spans()
        assert slow.tags["slow"] is True
        assert "slow" not in fast.tags

    @pytest.mark.asyncio
    async def test_joins_remote_trace(self, manager, clock, span_exporter):
        """A context with trace and parent ids continues that trace."""
        context = OperationContext(
            request_id="req-1",
            subject_id="user-1",
            timestamp=clock.now,
            trace_id="0af7651916cd43dd8448eb211c80319c",
            parent_span_id="b7ad6b7169203331",
        )
        await manager.instrument("op", context, succeed)

        [span] = manager.get_spans()
        assert span.trace_id == "0af7651916cd43dd8448eb211c80319c"
        assert span.parent_span_id == "b7ad6b7169203331"
        [otel_span] = span_exporter.get_finished_spans()
        assert otel_span.parent.span_id == int("b7ad6b7169203331", 16)

    @pytest.mark.asyncio
    async def test_malformed_parent_ignored(self, manager, clock):
        """Unparseable ids start a new trace instead of failing."""
        context = OperationContext(
            request_id="req-1", subject_id="user-1", timestamp=clock.now, trace_id="xyz", parent_span_id="abc"
        )
        assert await manager.instrument("op", context, succeed) == "ok"
        assert manager.get_spans()[0].trace_id != "xyz"

    @pytest.mark.asyncio
    async def test_ring_buffer_bounded(self, tracer, meter, context):
        """Only the most recent spans are kept."""
        manager = ObservabilityManager(
            ObservabilityConfig(span_buffer_size=3), tracer=tracer, metrics=MetricsRecorder(meter)
        )
        for i in range(5):
            await manager.instrument(f"op{i}", context, succeed)
        assert [s.operation for s in manager.get_spans()] == ["op2", "op3", "op4"]

    @pytest.mark.asyncio
    async def test_operation_metrics(self, manager, context, metric_points):
        """Each run is counted by operation and outcome."""
        await manager.instrument("metrics.op", context, succeed)
        with pytest.raises(RuntimeError):
            await manager.instrument("metrics.op", context, failing())

        calls = {
            p.attributes["orchestrator.outcome"]: p.value
            for p in metric_points("orchestrator.operation.calls")
            if p.attributes.get("orchestrator.operation") == "metrics.op"
        }
        assert calls == {"success": 1, "error": 1}


class TestStats:
    """Tests for get_span_stats and get_spans."""

    @pytest.mark.asyncio
    async def test_span_stats(self, manager, context):
        """Count, average duration and error rate per operation."""
        await manager.instrument("a", context, succeed)
        await manager.instrument("a", context, succeed)
        with pytest.raises(RuntimeError):
            await manager.instrument("a", context, failing())
        await manager.instrument("b", context, succeed)

        stats = manager.get_span_stats()
        assert stats["a"]["count"] == 3
        assert stats["a"]["error_rate"] == pytest.approx(1 / 3)
        assert stats["a"]["avg_duration_ms"] >= 0.0
        assert stats["b"] == {"count": 1, "avg_duration_ms": stats["b"]["avg_duration_ms"], "error_rate": 0.0}

    def test_open_spans_excluded(self, manager, context):
        """Unfinished spans are buffered but not in stats."""
        manager.create_span("pending", context=context)
        assert len(manager.get_spans("pending")) == 1
        assert manager.get_span_stats() == {}

    def test_empty_stats(self, manager):
        """No spans, no stats."""
        assert manager.get_span_stats() == {}


class TestExport:
    """Tests for snapshot export."""

    @pytest.mark.asyncio
    async def test_snapshot_exported(self, manager, context):
        """Exporters receive the span and current stats."""
        exporter = RecordingExporter()
        manager.add_exporter(exporter)

        await manager.instrument("op", context, succeed)

        [snapshot] = exporter.snapshots
        assert snapshot.span.operation == "op"
        assert snapshot.stats["op"]["count"] == 1
        assert snapshot.to_dict()["span"]["status"] == "ok"

    @pytest.mark.asyncio
    async def test_failed_runs_exported(self, manager, context):
        """Error spans are exported too."""
        exporter = RecordingExporter()
        manager.add_exporter(exporter)
        with pytest.raises(RuntimeError):
            await manager.instrument("op", context, failing())
        assert exporter.snapshots[0].span.status is SpanStatus.ERROR

    @pytest.mark.asyncio
    async def test_exporter_failure_isolated(self, manager, context):
        """One broken exporter neither fails the run nor starves the others."""
        good = RecordingExporter()
        manager.add_exporter(BrokenExporter())
        manager.add_exporter(good)

        assert await manager.instrument("op", context, succeed) == "ok"
        assert len(good.snapshots) == 1


class TestAlerting:
    """Tests for error-rate alerts."""

    @pytest.mark.asyncio
    async def test_alert_after_threshold(self, manager, context, alerts):
        """The sixth identical failure within the window raises an alert."""
        for _ in range(5):
            with pytest.raises(RuntimeError):
                await manager.instrument("payment.charge", context, failing())
        assert alerts == []

        with pytest.raises(RuntimeError):
            await manager.instrument("payment.charge", context, failing())

        [alert] = alerts
        assert alert.severity is AlertSeverity.HIGH
        assert alert.operation == "payment.charge"
        assert alert.message == "card declined"
        assert alert.count == 6
        assert alert.context["request_id"] == "req-1"
        assert manager.get_alerts() == [alert]

    @pytest.mark.asyncio
    async def test_counter_resets_after_alert(self, manager, context, alerts):
        """After alerting, another six failures are needed."""
        for _ in range(11):
            with pytest.raises(RuntimeError):
                await manager.instrument("op", context, failing())
        assert len(alerts) == 1

        with pytest.raises(RuntimeError):
            await manager.instrument("op", context, failing())
        assert len(alerts) == 2

    @pytest.mark.asyncio
    async def test_distinct_messages_counted_separately(self, manager, context, alerts):
        """Counters are per operation and message."""
        for i in range(6):
            with pytest.raises(RuntimeError):
                await manager.instrument("op", context, failing(f"error {i % 2}"))
        assert alerts == []

    @pytest.mark.asyncio
    async def test_window_expiry(self, manager, context, alerts, clock):
        """Failures older than the window no longer count."""
        for _ in range(5):
            with pytest.raises(RuntimeError):
                await manager.instrument("op", context, failing())
        clock.advance(301)
        with pytest.raises(RuntimeError):
            await manager.instrument("op", context, failing())
        assert alerts == []

    @pytest.mark.asyncio
    async def test_async_sink_awaited(self, tracer, meter, context):
        """Coroutine sinks are awaited before instrument returns."""
        received = []

        async def sink(alert):
            received.append(alert.severity)

        manager = ObservabilityManager(
            ObservabilityConfig(error_alert_threshold=0),
            tracer=tracer,
            metrics=MetricsRecorder(meter),
            alert_sinks=[sink],
        )

        async def timed_out():
            raise OperationCancelledError("op", 1.0)

        with pytest.raises(OperationCancelledError):
            await manager.instrument("op", context, timed_out)
        assert received == [AlertSeverity.MEDIUM]

    @pytest.mark.asyncio
    async def test_broken_sink_isolated(self, tracer, meter, context, alerts):
        """A failing sink does not stop the others."""

        def broken(alert):
            raise RuntimeError("pager down")

        manager = ObservabilityManager(
            ObservabilityConfig(error_alert_threshold=0),
            tracer=tracer,
            metrics=MetricsRecorder(meter),
            alert_sinks=[broken, alerts.append],
        )
        with pytest.raises(RuntimeError):
            await manager.instrument("op", context, failing())
        assert len(alerts) == 1
