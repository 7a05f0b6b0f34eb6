"""Iterative tool-calling loop shared by the HTTP-API providers."""

import json
import logging
import time
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.errors import ProviderError
from app.executors.base import (
    Executor,
    ProgressThrottle,
    format_comment_history,
    parse_output,
    read_project_instructions,
)
from app.executors.tools import TASK_COMPLETE, WorkspaceTools
from app.models import (
    ExecutionResult,
    ParsedOutcome,
    ProgressCallback,
    TaskContext,
    TaskSession,
)
from app.services.git import GitError, RepositoryManager

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 15000
TOOL_RESULT_LIMIT = 15000
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0

DEFAULT_USER_PROMPT = (
    "Please implement the task described above. "
    "Start by exploring the codebase structure using glob_files."
)
CONTINUE_PROMPT = (
    "Please continue with the implementation or call task_complete if you are done."
)
MAX_ITERATIONS_MESSAGE = "Max iterations reached without completion"


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any]
    id: str | None = None


@dataclass
class ModelTurn:
    """One model response reduced to what the loop needs."""

    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stopped: bool = False


class ToolLoopExecutor(Executor):
    """Base class for providers driven through a function-calling API.

    Subclasses translate between the provider's wire format and
    :class:`ModelTurn`; the loop itself, the tools, retries and git handling
    live here.
    """

    api_key_env: str = "API_KEY"
    instruction_files: list[str] = ["CLAUDE.md", "ASTRID.md"]

    def __init__(
        self,
        api_key: str | None,
        model: str,
        repos: RepositoryManager,
        max_iterations: int = 50,
        progress_interval: float = 30.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF,
    ):
        self.api_key = api_key
        self.model = model
        self.repos = repos
        self.max_iterations = max_iterations
        self.progress_interval = progress_interval
        self.client = client or httpx.Client(timeout=300.0)
        self.sleep = sleep
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff

    @abstractmethod
    def _start_conversation(self, system_prompt: str, user_prompt: str) -> list[dict]:
        """Initial provider-format message list."""

    @abstractmethod
    def _complete(self, conversation: list[dict], system_prompt: str, model: str) -> dict:
        """Send the conversation and return the raw response body."""

    @abstractmethod
    def _parse_turn(self, response: dict) -> ModelTurn | None:
        """Reduce a response body to a turn, or None if it carried no answer."""

    @abstractmethod
    def _append_model_turn(self, conversation: list[dict], response: dict) -> None:
        """Record the model's reply in the conversation."""

    @abstractmethod
    def _append_tool_results(
        self, conversation: list[dict], results: list[tuple[ToolCall, str]]
    ) -> None:
        """Feed tool results back to the model."""

    @abstractmethod
    def _append_user_text(self, conversation: list[dict], text: str) -> None:
        """Add a plain user message."""

    def post_with_retry(
        self, url: str, payload: dict, headers: dict[str, str] | None = None
    ) -> dict:
        """POST to the provider API with retries.

        Rate-limit responses back off exponentially; transport errors and
        other failures are retried after the base delay.

        Raises:
            ProviderError: When every attempt failed
        """
        last_error = "no attempts made"
        for attempt in range(self.max_retries):
            final_attempt = attempt == self.max_retries - 1
            try:
                response = self.client.post(url, json=payload, headers=headers)
            except httpx.TransportError as e:
                last_error = f"{self.name} API request failed: {e}"
                logger.warning(last_error)
                if not final_attempt:
                    self.sleep(self.initial_backoff)
                continue

            if response.is_success:
                return response.json()

            last_error = (
                f"{self.name} API error ({response.status_code}): {response.text[:200]}"
            )
            if final_attempt:
                break
            if response.status_code == 429:
                wait = self.initial_backoff * 2**attempt
                logger.info(f"Rate limited, waiting {wait}s before retry")
                self.sleep(wait)
            else:
                logger.warning(last_error)
                self.sleep(self.initial_backoff)

        raise ProviderError(last_error)

    def build_system_prompt(
        self, session: TaskSession, context: TaskContext | None = None
    ) -> str:
        project_context = read_project_instructions(
            session.project_path, self.instruction_files, MAX_CONTEXT_CHARS
        )
        history = format_comment_history(context.comments if context else None)

        return f"""You are an expert software engineer working on a task. You have access to tools for reading, writing, and editing files, running bash commands, and searching the codebase.

## Task: {session.title}

{session.description}
{history}
{project_context}

## Instructions

1. First, explore the codebase to understand the structure
2. Use glob_files and grep_search to find relevant files
3. Read files to understand existing patterns
4. Make changes using write_file or edit_file
5. Run tests or build commands to verify your changes
6. When complete, call task_complete with a commit message and PR details

## Rules

- You MUST use actual function calls, not text descriptions
- Do NOT write text saying "I will call X" - actually invoke the function
- Follow existing code patterns and styles in the project
- Write complete, production-ready code (no TODOs or placeholders)
- Test your changes before completing
- Create small, focused changes"""

    def start_session(
        self,
        session: TaskSession,
        prompt: str | None = None,
        context: TaskContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Run the tool loop until task_complete or the iteration cap.

        Provider and tool failures are returned as a failed result rather
        than raised.
        """
        if not self.api_key:
            return ExecutionResult(exit_code=1, stderr=f"{self.api_key_env} not configured")

        logger.info(f"Starting {self.name} session for task {session.task_id}")
        model = (context.model if context else None) or self.model
        system_prompt = self.build_system_prompt(session, context)
        conversation = self._start_conversation(system_prompt, prompt or DEFAULT_USER_PROMPT)
        tools = WorkspaceTools(session.project_path or ".")
        progress = ProgressThrottle(on_progress, self.progress_interval)

        modified_files: list[str] = []
        last_output = ""

        try:
            for iteration in range(self.max_iterations):
                progress(f"Iteration {iteration + 1}...")

                response = self._complete(conversation, system_prompt, model)
                turn = self._parse_turn(response)
                if turn is None:
                    return ExecutionResult(
                        exit_code=1,
                        stdout=last_output,
                        stderr=f"No response from {self.name}",
                    )
                self._append_model_turn(conversation, response)

                if turn.text:
                    last_output = turn.text
                    logger.info(f"Assistant: {turn.text[:200]}")

                if not turn.tool_calls:
                    if turn.stopped:
                        self._append_user_text(conversation, CONTINUE_PROMPT)
                    continue

                results = []
                for call in turn.tool_calls:
                    progress(f"Using tool: {call.name}")
                    logger.info(f"Tool: {call.name}({json.dumps(call.arguments)[:100]})")

                    if call.name == TASK_COMPLETE:
                        return self._complete_task(session, call.arguments, modified_files)

                    result = tools.execute(call.name, call.arguments)
                    if result.changed_path and result.changed_path not in modified_files:
                        modified_files.append(result.changed_path)
                    results.append((call, result.result[:TOOL_RESULT_LIMIT]))

                self._append_tool_results(conversation, results)
        except Exception as e:
            logger.exception(f"{self.name} execution error for task {session.task_id}")
            return ExecutionResult(exit_code=1, stdout=last_output, stderr=str(e))

        logger.warning(f"{self.name} hit {self.max_iterations} iterations on task {session.task_id}")
        return ExecutionResult(
            exit_code=1,
            stdout=last_output,
            stderr=MAX_ITERATIONS_MESSAGE,
            timed_out=True,
            timeout_reason="max_iterations",
        )

    def _complete_task(
        self, session: TaskSession, arguments: dict[str, Any], modified_files: list[str]
    ) -> ExecutionResult:
        """Commit modified files and try to open a pull request."""
        commit_message = arguments.get("commit_message") or f"Complete task: {session.title}"
        pr_title = arguments.get("pr_title") or session.title
        pr_description = arguments.get("pr_description") or ""
        pr_url = None

        if session.project_path and modified_files:
            try:
                self.repos.commit_all(session.project_path, commit_message)
                pr_url = self.repos.open_pull_request(
                    session.project_path, pr_title, pr_description
                )
            except GitError as e:
                logger.warning(f"Git operations failed: {e}")

        stdout = (
            f"Task completed!\n\n{pr_description}\n\n"
            f"Files modified: {', '.join(modified_files)}"
        )
        if pr_url:
            stdout += f"\n\nPR: {pr_url}"

        return ExecutionResult(
            exit_code=0,
            stdout=stdout,
            session_id=session.id,
            modified_files=list(modified_files),
            pr_url=pr_url,
        )

    def resume_session(
        self,
        session: TaskSession,
        new_input: str,
        context: TaskContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Start a new conversation seeded with the follow-up message.

        These APIs keep no server-side session, so prior discussion travels
        in the system prompt.
        """
        logger.info(f"Resuming {self.name} session with new input")
        prompt = f"""
## New Instructions from User

{new_input}

## Previous Context

The task "{session.title}" has been in progress. The user has provided additional instructions above. Please continue from where you left off.
"""
        return self.start_session(session, prompt, context, on_progress)

    def parse_output(self, output: str) -> ParsedOutcome:
        return parse_output(output, comma_separated_files=True)

    def close(self) -> None:
        self.client.close()

    def check_available(self) -> bool:
        return bool(self.api_key)
