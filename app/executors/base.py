"""Executor contract and helpers shared by every provider."""

import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from app.models import (
    CommentContext,
    ExecutionResult,
    ParsedOutcome,
    ProgressCallback,
    TaskContext,
    TaskSession,
)
from app.services.git import WorkspaceChanges

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 50000
COMMENT_HISTORY_LIMIT = 10
SUMMARY_MIN_PARAGRAPH = 50
SUMMARY_MAX_CHARS = 500

_FILE_PATTERN = re.compile(
    r"(?:modified|created|edited|wrote):\s*[`'\"]*([^`'\"]+)[`'\"]*", re.IGNORECASE
)
_FILE_LIST_PATTERN = re.compile(
    r"(?:files modified:|modified|created|edited|wrote)\s*[`'\"]*([^`'\"]+)[`'\"]*",
    re.IGNORECASE,
)
_PR_PATTERN = re.compile(r"(https://github\.com/[\w-]+/[\w-]+/pull/\d+)", re.IGNORECASE)


class Executor(ABC):
    """Uniform contract implemented by every provider."""

    name: str = "executor"

    @abstractmethod
    def start_session(
        self,
        session: TaskSession,
        prompt: str | None = None,
        context: TaskContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Run a fresh execution for the session's task."""

    @abstractmethod
    def resume_session(
        self,
        session: TaskSession,
        new_input: str,
        context: TaskContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Continue a previous execution with new input from the caller."""

    @abstractmethod
    def parse_output(self, output: str) -> ParsedOutcome:
        """Extract summary, files, PR URL and errors from raw output."""

    @abstractmethod
    def check_available(self) -> bool:
        """Whether this provider can accept work right now."""

    def close(self) -> None:
        """Release clients held by the executor."""


class WorkspaceChangeCapture(ABC):
    """Optional capability for providers that leave uncommitted work behind."""

    @abstractmethod
    def capture_git_changes(self, project_path: str) -> WorkspaceChanges:
        """Collect the diff and modified files in a workspace."""

    @abstractmethod
    def extract_pr_url(self, output: str) -> str | None:
        """Find a pull request URL in provider output."""


def read_project_instructions(
    project_path: str | None,
    filenames: list[str],
    max_chars: int,
) -> str:
    """Load the first project instruction file found as a prompt section.

    Returns:
        A markdown section, or an empty string when no file exists
    """
    if not project_path:
        return ""

    for filename in filenames:
        path = Path(project_path) / filename
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue

        original_length = len(content)
        if original_length > max_chars:
            content = content[:max_chars] + "\n\n[... truncated for brevity ...]"
            logger.info(
                f"Loaded project context from {filename} "
                f"(truncated from {original_length} to {max_chars} chars)"
            )
        else:
            logger.info(f"Loaded project context from {filename} ({original_length} chars)")
        return f"\n\n## Project Instructions (from {filename})\n\n{content}"

    return ""


def format_comment_history(
    comments: list[CommentContext] | None, limit: int = COMMENT_HISTORY_LIMIT
) -> str:
    """Format the most recent comments as a "Previous Discussion" section."""
    if not comments:
        return ""

    formatted = []
    for comment in comments[-limit:]:
        header = f"**{comment.author_name}**"
        if comment.created_at:
            header += f" ({comment.created_at})"
        formatted.append(f"{header}:\n{comment.content}")

    return "\n\n## Previous Discussion\n\n" + "\n\n---\n\n".join(formatted)


def truncate_prompt(prompt: str, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """Bound a prompt's length, noting the truncation."""
    if len(prompt) <= max_length:
        return prompt
    logger.warning(f"Prompt truncated from {len(prompt)} to {max_length} chars")
    return prompt[:max_length] + "\n\n[... prompt truncated ...]"


def parse_output(output: str, comma_separated_files: bool = False) -> ParsedOutcome:
    """Heuristic extraction of summary, files, PR URL and error lines.

    Args:
        output: Provider output text
        comma_separated_files: Also accept "Files modified: a, b" lists

    Returns:
        ParsedOutcome with whatever could be found
    """
    outcome = ParsedOutcome()
    pattern = _FILE_LIST_PATTERN if comma_separated_files else _FILE_PATTERN
    files: list[str] = []

    for line in output.splitlines():
        file_match = pattern.search(line)
        if file_match:
            if comma_separated_files:
                files.extend(part.strip() for part in file_match.group(1).split(","))
            else:
                files.append(file_match.group(1).strip())

        pr_match = _PR_PATTERN.search(line)
        if pr_match:
            outcome.pr_url = pr_match.group(1)

        lowered = line.lower()
        if "error:" in lowered or "failed:" in lowered:
            outcome.error = line.strip()

    outcome.files = list(dict.fromkeys(f for f in files if f))

    paragraphs = [
        p for p in re.split(r"\n\n+", output) if len(p.strip()) > SUMMARY_MIN_PARAGRAPH
    ]
    if paragraphs:
        outcome.summary = paragraphs[-1].strip()[:SUMMARY_MAX_CHARS]

    if "?" in output and not outcome.pr_url:
        questions = [line.strip() for line in output.splitlines() if "?" in line]
        outcome.question = questions[-1] if questions else None

    return outcome


class ProgressThrottle:
    """Rate-limits progress notifications to one per interval.

    Failures of the wrapped callback are logged and never raised.
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.interval = interval
        self.clock = clock
        self._last_sent: float | None = None

    def __call__(self, message: str) -> bool:
        if self.callback is None:
            return False

        now = self.clock()
        if self._last_sent is not None and now - self._last_sent < self.interval:
            return False
        self._last_sent = now

        try:
            self.callback(message)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
        return True
