"""Configuration for the hook orchestration pipeline."""

import os
from dataclasses import dataclass, field
from typing import Any, Literal

# Environment variable for global telemetry opt-out
OPT_OUT_ENV_VAR = "HOOK_ORCHESTRATOR_OTEL_OPT_OUT"

# Supported OTel exporter types
ExporterType = Literal["none", "console", "otlp-http", "otlp-grpc"]


def _check_opt_out() -> bool:
    """Check if telemetry is opted out via environment variable.

    Returns:
        True if telemetry should be ENABLED (not opted out).
        False if telemetry should be DISABLED (opted out).
    """
    opt_out_value = os.environ.get(OPT_OUT_ENV_VAR, "").lower()
    if opt_out_value in ("1", "true", "yes", "on"):
        return False
    return True


@dataclass
class HookConfig:
    """Circuit breaker and self-tuning settings for the hook registry."""

    failure_threshold: int = 5
    optimization_threshold: int = 100
    slow_hook_ms: float = 10.0
    ema_alpha: float = 0.1


@dataclass
class IdempotencyConfig:
    """Idempotency key persistence settings.

    Attributes:
        db_path: SQLite database file. ":memory:" keeps records for the
            lifetime of the store only.
        default_ttl_seconds: Lifetime of in-progress and completed records.
        failed_ttl_seconds: Retention of failed records.
        cleanup_interval_seconds: Period of the background expiry sweep.
    """

    db_path: str = ":memory:"
    default_ttl_seconds: float = 300.0
    failed_ttl_seconds: float = 3600.0
    cleanup_interval_seconds: float = 3600.0


@dataclass
class ValidationConfig:
    """Freshness window for operation contexts."""

    max_age_seconds: float = 60.0
    clock_skew_seconds: float = 1.0


@dataclass
class ObservabilityConfig:
    """Span, metric and alerting settings.

    Attributes:
        enabled: Master switch for OTel provider setup. Also respects
            HOOK_ORCHESTRATOR_OTEL_OPT_OUT.
        service_name: Service name in traces.
        service_version: Service version in traces.
        exporter: OTel exporter type - "none", "console", "otlp-http", "otlp-grpc".
        endpoint: OTLP endpoint URL.
        headers: HTTP headers for OTLP (e.g., auth tokens).
        span_buffer_size: Capacity of the in-memory span ring buffer.
        slow_span_ms: Spans longer than this are tagged slow.
        error_alert_threshold: Failures per (operation, message) before alerting.
        alert_window_seconds: Rolling window for alert counters.
        batch_delay_ms: Batch export delay in milliseconds.
        max_batch_size: Maximum spans per batch.
        debug: Enable debug output.
    """

    enabled: bool = field(default_factory=_check_opt_out)

    service_name: str = "hook-orchestrator"
    service_version: str = "0.1.0"

    exporter: ExporterType = "none"
    endpoint: str = "http://localhost:4318"
    headers: dict[str, str] = field(default_factory=dict)

    span_buffer_size: int = 1000
    slow_span_ms: float = 100.0
    error_alert_threshold: int = 5
    alert_window_seconds: float = 300.0

    batch_delay_ms: int = 5000
    max_batch_size: int = 512

    debug: bool = False


@dataclass
class OrchestratorConfig:
    """Top-level configuration for the orchestrator.

    Attributes:
        hooks: Hook registry settings.
        idempotency: Idempotency store settings.
        validation: Context validation settings.
        observability: Telemetry settings.
        enrichment_timeout_seconds: Upper bound for knowledge/follow-up calls.
        default_timeout_seconds: Deadline applied to the hook pipeline when
            execute() is not given one. None means no deadline.
        max_concurrency: Maximum concurrent executions. None means unbounded.
        history_size: Number of recent executions kept for follow-up context.
    """

    hooks: HookConfig = field(default_factory=HookConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    enrichment_timeout_seconds: float = 0.5
    default_timeout_seconds: float | None = None
    max_concurrency: int | None = None
    history_size: int = 50

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "OrchestratorConfig":
        """Create OrchestratorConfig from a dictionary.

        Nested sections ("hooks", "idempotency", "validation",
        "observability") are dictionaries of their own. Unknown keys are
        ignored. Observability stays disabled when
        HOOK_ORCHESTRATOR_OTEL_OPT_OUT is set, whatever the dict says.

        Args:
            config: Dictionary with configuration values.

        Returns:
            OrchestratorConfig instance with values from dict or defaults.
        """
        config = dict(config)
        hooks = _build_section(HookConfig, config.pop("hooks", {}))
        idempotency = _build_section(IdempotencyConfig, config.pop("idempotency", {}))
        validation = _build_section(ValidationConfig, config.pop("validation", {}))
        observability = _build_section(ObservabilityConfig, config.pop("observability", {}))

        known_fields = {
            "enrichment_timeout_seconds",
            "default_timeout_seconds",
            "max_concurrency",
            "history_size",
        }
        filtered = {k: v for k, v in config.items() if k in known_fields}

        instance = cls(
            hooks=hooks,
            idempotency=idempotency,
            validation=validation,
            observability=observability,
            **filtered,
        )

        if not _check_opt_out():
            instance.observability.enabled = False

        return instance

    @property
    def telemetry_active(self) -> bool:
        """True if OTel providers should be installed."""
        return self.observability.enabled and self.observability.exporter != "none"


def _build_section(section_cls: type, data: dict[str, Any]) -> Any:
    """Instantiate a config section from a dict, dropping unknown keys."""
    known = set(section_cls.__dataclass_fields__)
    return section_cls(**{k: v for k, v in (data or {}).items() if k in known})
