"""Session model mapping a caller task to a provider execution."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import field_validator
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


class Provider(str, Enum):
    """AI provider backing a session."""

    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    """Execution status of a session."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    ERROR = "error"
    INTERRUPTED = "interrupted"


ACTIVE_STATUSES = frozenset({SessionStatus.RUNNING, SessionStatus.WAITING_INPUT})


class SessionBase(SQLModel):
    """Fields shared by the in-memory session and its database row."""

    task_id: str = Field(
        primary_key=True,
        description="External task identifier (one session per task)",
    )
    id: str = Field(
        default_factory=lambda: str(uuid4()),
        index=True,
        description="Unique identifier for the session",
    )
    title: str = Field(description="Task title at creation")
    description: str = Field(default="", description="Task description at creation")
    project_path: str | None = Field(
        default=None, description="Prepared workspace directory"
    )
    provider: Provider = Field(
        default=Provider.CLAUDE, description="AI provider for this session"
    )
    provider_session_id: str | None = Field(
        default=None, description="Provider handle used for resumption"
    )
    status: SessionStatus = Field(
        default=SessionStatus.PENDING,
        index=True,
        description="Session status",
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp when the session was created",
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp of the last mutation",
    )
    last_activity: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
        description="Timestamp of the last provider activity",
    )
    message_count: int = Field(default=0, description="Follow-up messages processed")
    meta: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON),
        description="Opaque caller metadata (list, repository, model, token)",
    )


class TaskSession(SessionBase):
    """Session state held in memory by the session store."""

    @field_validator("created_at", "updated_at", "last_activity")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # SQLite hands back naive datetimes
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class SessionRow(SessionBase, table=True):
    """Persisted copy of a session."""

    __tablename__ = "sessions"
