"""Knowledge and follow-up collaborators used to enrich execution results.

Both are optional and best-effort: the orchestrator bounds them with a
timeout and falls back to empty enrichment if they fail.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import (
    ConflictError,
    HandlerError,
    OperationCancelledError,
    ResultSerializationError,
    ValidationError,
)


@dataclass
class Suggestion:
    title: str
    description: str = ""
    category: str = "general"
    priority: int = 0


@dataclass
class HistoryEntry:
    operation: str
    success: bool
    timestamp: float
    error_kind: str | None = None


@dataclass
class FollowUpContext:
    """Input to a follow-up provider."""

    operation: str
    result: Any = None
    error: BaseException | None = None
    history: list[HistoryEntry] = field(default_factory=list)


class KnowledgeProvider(Protocol):
    async def ask(self, topic: str, question: str) -> str: ...


class FollowUpProvider(Protocol):
    def generate(self, ctx: FollowUpContext) -> list[Suggestion]: ...


class DefaultFollowUpProvider:
    """Suggest next steps from the error kind and recent history.

    Successful executions get no suggestions unless the same operation has
    been failing recently.
    """

    def __init__(self, recent_window: int = 10) -> None:
        self.recent_window = recent_window

    def generate(self, ctx: FollowUpContext) -> list[Suggestion]:
        if ctx.error is None:
            return self._for_success(ctx)

        error = ctx.error
        if isinstance(error, ValidationError):
            return [
                Suggestion(
                    title="Fix the request context",
                    description="; ".join(error.errors),
                    category="validation",
                    priority=90,
                ),
                Suggestion(
                    title="Resend with a fresh timestamp",
                    description="Contexts must be created right before the call.",
                    category="validation",
                    priority=50,
                ),
            ]
        if isinstance(error, ConflictError):
            return [
                Suggestion(
                    title="Retry later",
                    description=f"Another execution holds {error.key}; retry after it completes.",
                    category="conflict",
                    priority=80,
                )
            ]
        if isinstance(error, OperationCancelledError):
            return [
                Suggestion(
                    title="Increase the deadline or inspect slow hooks",
                    description=str(error),
                    category="timeout",
                    priority=70,
                )
            ]
        if isinstance(error, ResultSerializationError):
            return [
                Suggestion(
                    title="Return a cacheable result",
                    description=(
                        f"{error.operation} ran but its result could not be stored; "
                        "return JSON data, tuples, enums, datetimes or module-level dataclasses."
                    ),
                    category="serialization",
                    priority=75,
                )
            ]

        cause = error.cause if isinstance(error, HandlerError) else error
        suggestions = [
            Suggestion(
                title=f"Investigate {type(cause).__name__}",
                description=str(cause),
                category="handler",
                priority=60,
            ),
            Suggestion(
                title="Retry the operation",
                description="Failed executions release their idempotency key for retry.",
                category="handler",
                priority=40,
            ),
        ]
        if self._recent_failures(ctx) >= 3:
            suggestions.insert(
                0,
                Suggestion(
                    title=f"{ctx.operation} is failing repeatedly",
                    description="Check alerts and the downstream dependency before retrying.",
                    category="reliability",
                    priority=95,
                ),
            )
        return suggestions

    def _for_success(self, ctx: FollowUpContext) -> list[Suggestion]:
        failures = self._recent_failures(ctx)
        if failures == 0:
            return []
        return [
            Suggestion(
                title=f"{ctx.operation} recovered",
                description=f"{failures} of the last {self.recent_window} executions failed.",
                category="reliability",
                priority=20,
            )
        ]

    def _recent_failures(self, ctx: FollowUpContext) -> int:
        recent = [h for h in ctx.history if h.operation == ctx.operation][-self.recent_window :]
        return sum(1 for h in recent if not h.success)
