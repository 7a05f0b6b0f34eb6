"""Data models."""

from .execution import (
    CommentContext,
    ExecutionResult,
    ParsedOutcome,
    ProgressCallback,
    TaskContext,
)
from .session import (
    ACTIVE_STATUSES,
    Provider,
    SessionRow,
    SessionStatus,
    TaskSession,
)
from .webhook import WebhookPayload

__all__ = [
    "ACTIVE_STATUSES",
    "CommentContext",
    "ExecutionResult",
    "ParsedOutcome",
    "ProgressCallback",
    "Provider",
    "SessionRow",
    "SessionStatus",
    "TaskContext",
    "TaskSession",
    "WebhookPayload",
]
