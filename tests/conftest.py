"""Pytest configuration and fixtures for orchestrator tests."""

import pytest
from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

# Global providers - set once at module import
_tracer_provider = None
_meter_provider = None
_span_exporter = None
_metric_reader = None


def _setup_global_providers():
    """Set up global OTel providers once."""
    global _tracer_provider, _meter_provider, _span_exporter, _metric_reader

    if _tracer_provider is None:
        _span_exporter = InMemorySpanExporter()
        _tracer_provider = TracerProvider()
        _tracer_provider.add_span_processor(SimpleSpanProcessor(_span_exporter))
        trace.set_tracer_provider(_tracer_provider)

        _metric_reader = InMemoryMetricReader()
        _meter_provider = MeterProvider(metric_readers=[_metric_reader])
        metrics.set_meter_provider(_meter_provider)


# Set up providers at import time
_setup_global_providers()


class FakeClock:
    """Settable clock for TTL and freshness tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def span_exporter():
    """Get the global span exporter and clear it before each test."""
    assert _span_exporter is not None
    _span_exporter.clear()
    return _span_exporter


@pytest.fixture
def metric_reader():
    """Get the global metric reader."""
    return _metric_reader


@pytest.fixture
def tracer():
    """Get a tracer from the global provider."""
    return trace.get_tracer("test-tracer")


@pytest.fixture
def meter():
    """Get a meter from the global provider."""
    return metrics.get_meter("test-meter")


@pytest.fixture
def clock():
    """A fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def metric_points(metric_reader):
    """Return a function collecting data points for a metric name."""

    def collect(name):
        data = metric_reader.get_metrics_data()
        points = []
        if data is None:
            return points
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points

    return collect
