"""Exporters for orchestration telemetry.

Snapshot exporters receive an ExportSnapshot each time a span closes:
- ConsoleSnapshotExporter: one log line per span (development)
- JsonlFileExporter: batched JSONL file output with periodic flush (production)

setup_tracing / setup_metrics install OpenTelemetry SDK providers so the
OTel mirror spans and metrics reach a collector:
- console: Print spans/metrics to stdout
- otlp-http: Send to OTLP collector via HTTP
- otlp-grpc: Send to OTLP collector via gRPC
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from opentelemetry import metrics, trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from .config import ObservabilityConfig

if TYPE_CHECKING:
    from .observability import ExportSnapshot

logger = logging.getLogger(__name__)


class ConsoleSnapshotExporter:
    """Log a one-line summary of every closed span."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def export(self, snapshot: ExportSnapshot) -> None:
        span = snapshot.span
        stats = snapshot.stats.get(span.operation, {})
        logger.log(
            self.level,
            f"[span] {span.operation} {span.status.value} {span.duration_ms or 0.0:.2f}ms "
            f"trace={span.trace_id} span={span.span_id} "
            f"calls={stats.get('count', 0)} error_rate={stats.get('error_rate', 0.0):.2%}",
        )


class JsonlFileExporter:
    """Buffer snapshots and append them to a JSONL file in batches.

    A batch is written when it reaches ``max_batch_size``, on ``flush()``,
    and every ``flush_interval_seconds`` once ``start()`` has been called.
    """

    def __init__(
        self,
        file_path: str | Path,
        max_batch_size: int = 512,
        flush_interval_seconds: float = 5.0,
    ) -> None:
        self.file_path = Path(file_path)
        self.max_batch_size = max_batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self._buffer: list[dict] = []
        self._lock = asyncio.Lock()
        self._flush_task: asyncio.Task | None = None
        # Ensure file exists
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.file_path.touch(exist_ok=True)

    async def export(self, snapshot: ExportSnapshot) -> None:
        self._buffer.append(snapshot.to_dict())
        if len(self._buffer) >= self.max_batch_size:
            await self.flush()

    async def flush(self) -> int:
        """Write buffered snapshots. Returns the number written."""
        async with self._lock:
            if not self._buffer:
                return 0
            batch, self._buffer = self._buffer, []
            lines = "".join(json.dumps(record, default=str) + "\n" for record in batch)
            await asyncio.to_thread(self._append, lines)
            logger.debug(f"Wrote {len(batch)} snapshots to {self.file_path}")
            return len(batch)

    def _append(self, lines: str) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(lines)

    def start(self) -> None:
        """Start the periodic flush on the running event loop."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_seconds)
            try:
                await self.flush()
            except OSError as exc:
                logger.warning(f"Periodic flush to {self.file_path} failed: {exc}")

    async def shutdown(self) -> None:
        """Stop the periodic flush and write whatever is buffered."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()


def _build_resource(config: ObservabilityConfig) -> Resource:
    """Build OTel resource with service attributes."""
    return Resource.create(
        {
            "service.name": config.service_name,
            "service.version": config.service_version,
        }
    )


def setup_tracing(config: ObservabilityConfig) -> None:
    """Configure OpenTelemetry tracing with the specified exporter.

    Args:
        config: ObservabilityConfig with exporter settings.

    Raises:
        ValueError: If exporter type is unknown.
    """
    if config.exporter == "none":
        return

    resource = _build_resource(config)
    provider = TracerProvider(resource=resource)

    if config.exporter == "console":
        # Console exporter - immediate output, good for development
        processor = SimpleSpanProcessor(ConsoleSpanExporter())

    elif config.exporter == "otlp-http":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        exporter = OTLPSpanExporter(
            endpoint=f"{config.endpoint}/v1/traces",
            headers=config.headers or None,
        )
        processor = BatchSpanProcessor(
            exporter,
            max_queue_size=config.max_batch_size,
            schedule_delay_millis=config.batch_delay_ms,
        )

    elif config.exporter == "otlp-grpc":
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        exporter = OTLPSpanExporter(
            endpoint=config.endpoint,
            headers=config.headers or None,
        )
        processor = BatchSpanProcessor(
            exporter,
            max_queue_size=config.max_batch_size,
            schedule_delay_millis=config.batch_delay_ms,
        )

    else:
        raise ValueError(f"Unknown exporter type: {config.exporter}")

    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    if config.debug:
        print(f"[orchestrator] Configured {config.exporter} trace exporter")
        if config.exporter in ("otlp-http", "otlp-grpc"):
            print(f"[orchestrator] Endpoint: {config.endpoint}")


def setup_metrics(config: ObservabilityConfig) -> None:
    """Configure OpenTelemetry metrics with the specified exporter.

    Args:
        config: ObservabilityConfig with exporter settings.

    Raises:
        ValueError: If exporter type is unknown.
    """
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import (
        ConsoleMetricExporter,
        PeriodicExportingMetricReader,
    )

    if config.exporter == "none":
        return

    if config.exporter == "console":
        exporter = ConsoleMetricExporter()
    elif config.exporter == "otlp-http":
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter

        exporter = OTLPMetricExporter(
            endpoint=f"{config.endpoint}/v1/metrics",
            headers=config.headers or None,
        )
    elif config.exporter == "otlp-grpc":
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

        exporter = OTLPMetricExporter(
            endpoint=config.endpoint,
            headers=config.headers or None,
        )
    else:
        raise ValueError(f"Unknown exporter type: {config.exporter}")

    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=config.batch_delay_ms)
    provider = MeterProvider(resource=_build_resource(config), metric_readers=[reader])
    metrics.set_meter_provider(provider)

    if config.debug:
        print(f"[orchestrator] Configured {config.exporter} metrics exporter")
