"""Claude Code CLI executor."""

import json
import logging
import os
import re
import subprocess
from collections.abc import Callable
from pathlib import Path

from app.core.errors import CannotResumeError
from app.executors.base import (
    Executor,
    ProgressThrottle,
    WorkspaceChangeCapture,
    format_comment_history,
    parse_output,
    read_project_instructions,
    truncate_prompt,
)
from app.executors.supervisor import ProcessSupervisor, SupervisedRun
from app.models import (
    ExecutionResult,
    ParsedOutcome,
    ProgressCallback,
    TaskContext,
    TaskSession,
)
from app.services.git import RepositoryManager, WorkspaceChanges, extract_pr_url

logger = logging.getLogger(__name__)

INSTRUCTION_FILES = ["CLAUDE.md", "ASTRID.md", "CODEX.md"]
MAX_CONTEXT_CHARS = 4000
DEFAULT_MCP_API_URL = "https://astrid.cc/api"

_SESSION_ID_PATTERNS = [
    re.compile(r"Session ID:\s*([a-f0-9-]+)", re.IGNORECASE),
    re.compile(r'"session_id":\s*"([a-f0-9-]+)"', re.IGNORECASE),
]

PLATFORM_KEYWORDS = {
    "ios": ["ipad", "iphone", "ios", "swift", "swiftui", "xcode", "uikit", "testflight", "app store"],
    "android": ["android", "kotlin", "java", "gradle", "play store", "apk"],
    "web": ["web", "browser", "react", "next", "vercel", "css", "html", "typescript", "javascript", "component"],
}

PLATFORM_INSTRUCTIONS = {
    "ios": """
## Platform: iOS

This is an iOS/iPadOS task. Look for Swift/SwiftUI code (`*.swift` files) and
leave web code untouched.""",
    "android": """
## Platform: Android

This is an Android task. Look for Kotlin or Java code (`*.kt`, `*.java`) and
leave web and iOS code untouched.""",
    "web": """
## Platform: Web

This is a web task. Look for components, pages, API routes and shared
utilities, and leave mobile code untouched.""",
    "unknown": """
## Platform Detection

Could not determine the platform from the task description. Check the
repository layout and the task title for hints, and ask if unsure.""",
}

WORKFLOW_REQUIREMENTS = """
## Workflow Requirements

1. **Understand the task first**: what exactly is being asked?
2. **Locate relevant code**: find the files that implement what needs to change
3. **Make only the requested changes**: no unrelated refactoring or dependency updates
4. **Run the project's tests** and fix failures before finishing
5. **Create a PR** with `gh pr create` and a clear title describing the change

## Output Requirements

Your response must include what was requested in your own words, what you
changed and why, the files you modified, test results and the PR URL.
If unsure what to change, ask before making any modifications."""


def detect_platform(title: str, description: str | None = None) -> tuple[str, str]:
    """Guess the target platform from task text.

    Returns:
        (platform, confidence) where platform is ios, android, web or unknown
    """
    text = f"{title} {description or ''}".lower()
    for platform, keywords in PLATFORM_KEYWORDS.items():
        matches = [k for k in keywords if k in text]
        if matches:
            return platform, "high" if len(matches) >= 2 else "medium"
    return "unknown", "low"


def extract_session_id(line: str) -> str | None:
    """Pull a provider session id out of one line of CLI output."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        event = None

    if isinstance(event, dict):
        session_id = event.get("session_id")
        return session_id if isinstance(session_id, str) and session_id else None

    for pattern in _SESSION_ID_PATTERNS:
        match = pattern.search(stripped)
        if match:
            return match.group(1)
    return None


def _assistant_text(event: dict) -> str:
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        blocks = message.get("content") or []
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def reduce_stream_output(raw: str) -> str:
    """Reduce stream-json output to the final result text.

    Falls back to the assistant text seen, then to the raw output when the
    stream carried no JSON events.
    """
    result_text = None
    assistant_parts = []
    saw_json = False

    for line in raw.splitlines():
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue
        saw_json = True
        if event.get("type") == "result" and isinstance(event.get("result"), str):
            result_text = event["result"]
        elif event.get("type") == "assistant":
            text = _assistant_text(event)
            if text:
                assistant_parts.append(text)

    if result_text is not None:
        return result_text
    if assistant_parts:
        return "\n\n".join(assistant_parts)
    return raw if not saw_json else ""


class ClaudeExecutor(Executor, WorkspaceChangeCapture):
    """Runs tasks through the local ``claude`` CLI under process supervision."""

    name = "Claude Code"

    def __init__(
        self,
        repos: RepositoryManager,
        sessions_dir: str,
        model: str = "opus",
        max_turns: int = 10,
        timeout: int = 900,
        initial_timeout: int = 600,
        stall_timeout: int = 600,
        progress_interval: float = 30.0,
        config_dir: str | None = None,
        mcp_api_url: str | None = None,
        binary: str = "claude",
        supervisor_factory: Callable[[], ProcessSupervisor] | None = None,
    ):
        self.repos = repos
        self.sessions_dir = Path(sessions_dir)
        self.model = model
        self.max_turns = max_turns
        self.timeout = timeout
        self.initial_timeout = initial_timeout
        self.stall_timeout = stall_timeout
        self.progress_interval = progress_interval
        self.config_dir = config_dir
        self.mcp_api_url = mcp_api_url or DEFAULT_MCP_API_URL
        self.binary = binary
        self.supervisor_factory = supervisor_factory or self._default_supervisor

    def _default_supervisor(self) -> ProcessSupervisor:
        return ProcessSupervisor(
            initial_timeout=self.initial_timeout,
            stall_timeout=self.stall_timeout,
            max_timeout=self.timeout,
        )

    def build_prompt(
        self,
        session: TaskSession,
        user_message: str | None = None,
        context: TaskContext | None = None,
    ) -> str:
        """Build the prompt for a new task or a follow-up message."""
        comments = context.comments if context else None
        history = format_comment_history(comments)

        if user_message:
            if history:
                return f"{history}\n\n---\n\n## Latest Message\n\n{user_message}"
            return user_message

        project_context = read_project_instructions(
            session.project_path, INSTRUCTION_FILES, MAX_CONTEXT_CHARS
        )
        platform, confidence = detect_platform(session.title, session.description)
        logger.info(f"Detected platform: {platform} (confidence: {confidence})")

        return (
            f"# Task: {session.title}\n\n"
            f"{session.description}\n"
            f"{PLATFORM_INSTRUCTIONS[platform]}\n"
            f"{history}\n"
            f"{project_context}\n"
            f"{WORKFLOW_REQUIREMENTS}"
        )

    def _mcp_config_path(self, session: TaskSession) -> Path:
        return self.sessions_dir / f"mcp-config-{session.task_id}.json"

    def create_mcp_config(self, session: TaskSession, mcp_token: str | None) -> Path | None:
        """Write an MCP server config for the caller's token, if one was supplied."""
        if not mcp_token:
            return None

        config = {
            "mcpServers": {
                "astrid": {
                    "command": "npx",
                    "args": ["-y", "@anthropic-ai/mcp-astrid"],
                    "env": {
                        "ASTRID_API_URL": self.mcp_api_url,
                        "ASTRID_ACCESS_TOKEN": mcp_token,
                    },
                }
            }
        }
        path = self._mcp_config_path(session)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config, indent=2))
        logger.info(f"Created MCP config at {path}")
        return path

    def cleanup_mcp_config(self, session: TaskSession) -> None:
        path = self._mcp_config_path(session)
        try:
            path.unlink()
            logger.info(f"Cleaned up MCP config {path}")
        except FileNotFoundError:
            pass

    def start_session(
        self,
        session: TaskSession,
        prompt: str | None = None,
        context: TaskContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Start a new CLI session for the task.

        Args:
            session: Session whose task is executed
            prompt: Explicit prompt (built from the task when omitted)
            context: Comments, MCP token and model preference
            on_progress: Optional progress callback

        Returns:
            ExecutionResult with the final output and captured session id
        """
        task_prompt = prompt or self.build_prompt(session, context=context)
        model = (context.model if context else None) or self.model
        logger.info(f"Starting Claude Code session for task {session.task_id} (model: {model})")

        args = [
            self.binary,
            "--print",
            "--model",
            model,
            "--max-turns",
            str(self.max_turns),
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        return self._run_with_mcp(args, task_prompt, session, context, on_progress)

    def resume_session(
        self,
        session: TaskSession,
        new_input: str,
        context: TaskContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Resume the CLI session recorded for the task.

        Raises:
            CannotResumeError: If no provider session id was captured earlier
        """
        if not session.provider_session_id:
            raise CannotResumeError(
                f"No Claude session ID for task {session.task_id}, cannot resume"
            )

        prompt = self.build_prompt(session, new_input, context)
        logger.info(f"Resuming Claude Code session {session.provider_session_id}")

        args = [
            self.binary,
            "--print",
            "--resume",
            session.provider_session_id,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        return self._run_with_mcp(args, prompt, session, context, on_progress)

    def _run_with_mcp(
        self,
        args: list[str],
        prompt: str,
        session: TaskSession,
        context: TaskContext | None,
        on_progress: ProgressCallback | None,
    ) -> ExecutionResult:
        mcp_config = self.create_mcp_config(session, context.mcp_token if context else None)
        if mcp_config:
            args += ["--mcp-config", str(mcp_config)]

        final_prompt = truncate_prompt(prompt)
        logger.info(f"Prompt length: {len(final_prompt)} chars")
        args += ["-p", final_prompt]

        try:
            return self._run(args, session, on_progress)
        finally:
            if mcp_config:
                self.cleanup_mcp_config(session)

    def _run(
        self,
        args: list[str],
        session: TaskSession,
        on_progress: ProgressCallback | None,
    ) -> ExecutionResult:
        env = dict(os.environ)
        env["CLAUDE_CODE_ENTRYPOINT"] = "cli"
        if self.config_dir:
            env["CLAUDE_CONFIG_DIR"] = self.config_dir
        logger.info(
            f"ANTHROPIC_API_KEY in spawn env: {'set' if env.get('ANTHROPIC_API_KEY') else 'not set'}"
        )

        throttle = ProgressThrottle(on_progress, self.progress_interval)
        captured: dict[str, str] = {}

        def on_line(line: str) -> None:
            session_id = extract_session_id(line)
            if session_id and captured.get("session_id") != session_id:
                captured["session_id"] = session_id
                logger.info(f"Extracted session ID: {session_id}")

            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                return
            if isinstance(event, dict) and event.get("type") == "assistant":
                preview = _assistant_text(event)[:200]
                if preview:
                    throttle(f"Working... {preview}")

        supervisor = self.supervisor_factory()
        run: SupervisedRun = supervisor.run(
            args, cwd=session.project_path or None, env=env, on_stdout_line=on_line
        )

        output = reduce_stream_output(run.stdout)
        result = ExecutionResult(
            exit_code=run.exit_code,
            stdout=output,
            stderr=run.stderr,
            session_id=captured.get("session_id"),
            timed_out=run.timed_out,
            timeout_reason=run.timeout_tier.value if run.timeout_tier else None,
        )

        if session.project_path:
            changes = self.capture_git_changes(session.project_path)
            result.diff = changes.diff
            result.modified_files = changes.files
        result.pr_url = self.extract_pr_url(output)
        return result

    def capture_git_changes(self, project_path: str) -> WorkspaceChanges:
        return self.repos.capture_changes(project_path)

    def extract_pr_url(self, output: str) -> str | None:
        return extract_pr_url(output)

    def parse_output(self, output: str) -> ParsedOutcome:
        return parse_output(output)

    def check_available(self) -> bool:
        """Check that ``claude --version`` succeeds within 5 seconds."""
        try:
            result = subprocess.run(
                [self.binary, "--version"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return result.returncode == 0
