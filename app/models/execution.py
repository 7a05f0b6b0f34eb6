"""Transient execution types exchanged between orchestrator and executors."""

from collections.abc import Callable
from dataclasses import dataclass, field

ProgressCallback = Callable[[str], None]


@dataclass
class CommentContext:
    """A prior discussion comment."""

    author_name: str
    content: str
    created_at: str | None = None


@dataclass
class TaskContext:
    """Caller-supplied context for one execution attempt."""

    comments: list[CommentContext] = field(default_factory=list)
    repository: str | None = None
    mcp_token: str | None = None
    model: str | None = None


@dataclass
class ExecutionResult:
    """Outcome of one provider invocation."""

    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    session_id: str | None = None
    timed_out: bool = False
    timeout_reason: str | None = None
    diff: str = ""
    modified_files: list[str] = field(default_factory=list)
    pr_url: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class ParsedOutcome:
    """Structured information extracted from provider output."""

    summary: str | None = None
    files: list[str] = field(default_factory=list)
    pr_url: str | None = None
    question: str | None = None
    error: str | None = None
