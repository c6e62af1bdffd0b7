"""Operation context envelope and its validation."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from .config import ValidationConfig
from .errors import ValidationError

logger = logging.getLogger(__name__)

JSONValue = Union[None, bool, int, float, str, list["JSONValue"], dict[str, "JSONValue"]]


@dataclass
class OperationContext:
    """Request envelope passed by reference through the whole pipeline.

    The caller fills in the identifying fields; the pipeline writes
    ``result``, ``error`` and ``span_id`` as execution progresses so that
    hooks further down the chain can read them.
    """

    request_id: str
    subject_id: str
    timestamp: float = field(default_factory=time.time)
    parent_span_id: str | None = None
    trace_id: str | None = None
    idempotency_key: str | None = None
    extensions: dict[str, JSONValue] = field(default_factory=dict)

    # Pipeline-owned
    result: Any = None
    error: BaseException | None = None
    span_id: str | None = None

    def identity(self) -> dict[str, Any]:
        """Fields that identify the logical operation instance."""
        return {"subject_id": self.subject_id, "extensions": self.extensions}

    def summary(self) -> dict[str, Any]:
        """Safe summary for alerts and logs (no result payload)."""
        return {
            "request_id": self.request_id,
            "subject_id": self.subject_id,
            "timestamp": self.timestamp,
            "span_id": self.span_id,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _is_json_value(value: Any, depth: int = 0) -> bool:
    if depth > 32:
        return False
    if value is None or isinstance(value, (bool, int, str)):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, list):
        return all(_is_json_value(v, depth + 1) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_json_value(v, depth + 1) for k, v in value.items())
    return False


class ContextValidator:
    """Check an OperationContext before any work starts.

    Errors are fatal; warnings are only logged. Timestamps older than
    ``max_age_seconds`` risk a stale replay, and timestamps further ahead
    than ``clock_skew_seconds`` cannot come from a well-behaved caller.
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ValidationConfig()
        self._clock = clock

    def validate(self, context: Any) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not isinstance(context, OperationContext):
            return ValidationResult(
                valid=False,
                errors=[f"context must be an OperationContext, got {type(context).__name__}"],
            )

        if not isinstance(context.request_id, str) or not context.request_id.strip():
            errors.append("request_id is required")
        if not isinstance(context.subject_id, str) or not context.subject_id.strip():
            errors.append("subject_id is required")

        ts = context.timestamp
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts):
            errors.append("timestamp must be a finite number of epoch seconds")
        else:
            age = self._clock() - ts
            if age > self._config.max_age_seconds:
                errors.append(
                    f"timestamp is stale: {age:.1f}s old exceeds {self._config.max_age_seconds:g}s window"
                )
            elif -age > self._config.clock_skew_seconds:
                errors.append(
                    f"timestamp is in the future: {-age:.1f}s ahead exceeds "
                    f"{self._config.clock_skew_seconds:g}s clock skew tolerance"
                )
            elif age > self._config.max_age_seconds / 2:
                warnings.append(f"timestamp is {age:.1f}s old, nearing the freshness window")

        if not isinstance(context.extensions, dict):
            errors.append("extensions must be a mapping")
        else:
            for key, value in context.extensions.items():
                if not isinstance(key, str):
                    errors.append(f"extension key {key!r} must be a string")
                elif not _is_json_value(value):
                    errors.append(f"extension {key!r} is not a JSON value")

        if context.parent_span_id is not None and context.trace_id is None:
            warnings.append("parent_span_id without trace_id, span will start a new trace")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def ensure_valid(self, context: Any) -> None:
        """Validate and raise ValidationError on failure.

        Raises:
            ValidationError: With the list of violations.
        """
        outcome = self.validate(context)
        for warning in outcome.warnings:
            logger.warning(f"Context warning: {warning}")
        if not outcome.valid:
            raise ValidationError(outcome.errors, outcome.warnings)
