"""Local tools exposed to HTTP-API models."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

READ_LIMIT = 50000
COMMAND_OUTPUT_LIMIT = 20000
COMMAND_TIMEOUT = 60
SEARCH_TIMEOUT = 30
MAX_SEARCH_RESULTS = 100

DANGEROUS_COMMANDS = [
    "rm -rf /",
    "rm -rf /*",
    "sudo rm",
    "> /dev/",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    "chmod -R 777 /",
    "curl | bash",
    "wget | bash",
]

TASK_COMPLETE = "task_complete"

TOOL_DECLARATIONS: list[dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read the contents of a file",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file relative to project root",
                }
            },
            "required": ["file_path"],
        },
    },
    {
        "name": "write_file",
        "description": "Write content to a file (creates or overwrites)",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["file_path", "content"],
        },
    },
    {
        "name": "edit_file",
        "description": "Edit a file by replacing old_string with new_string",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file"},
                "old_string": {
                    "type": "string",
                    "description": "Exact string to find and replace",
                },
                "new_string": {"type": "string", "description": "Replacement string"},
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    },
    {
        "name": "run_bash",
        "description": "Run a bash command in the project directory",
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The bash command to execute"}
            },
            "required": ["command"],
        },
    },
    {
        "name": "glob_files",
        "description": "Find files matching a glob pattern",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": 'Glob pattern (e.g., "**/*.py", "src/**/*.ts")',
                }
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "grep_search",
        "description": "Search for a pattern in files using grep",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Search pattern (regex supported)",
                },
                "file_pattern": {
                    "type": "string",
                    "description": "Optional: limit search to files matching this pattern",
                },
            },
            "required": ["pattern"],
        },
    },
    {
        "name": TASK_COMPLETE,
        "description": "Signal that the task is complete with a summary of changes",
        "parameters": {
            "type": "object",
            "properties": {
                "commit_message": {
                    "type": "string",
                    "description": "Git commit message for the changes",
                },
                "pr_title": {"type": "string", "description": "Pull request title"},
                "pr_description": {
                    "type": "string",
                    "description": "Pull request description with details of changes",
                },
            },
            "required": ["commit_message", "pr_title", "pr_description"],
        },
    },
]


@dataclass
class ToolResult:
    """Result of one tool invocation, fed back to the model."""

    success: bool
    result: str
    changed_path: str | None = None


def is_dangerous(command: str) -> bool:
    return any(pattern in command for pattern in DANGEROUS_COMMANDS)


class WorkspaceTools:
    """Executes model tool calls confined to one project directory."""

    def __init__(self, project_path: str | Path):
        self.root = Path(project_path).resolve()

    def _resolve(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Path escapes workspace: {relative}")
        return path

    def execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        """Run a tool by name. Errors become unsuccessful results."""
        handlers = {
            "read_file": self.read_file,
            "write_file": self.write_file,
            "edit_file": self.edit_file,
            "run_bash": self.run_bash,
            "glob_files": self.glob_files,
            "grep_search": self.grep_search,
        }
        handler = handlers.get(name)
        if handler is None:
            return ToolResult(False, f"Unknown tool: {name}")

        try:
            return handler(**args)
        except TypeError as e:
            return ToolResult(False, f"Error: invalid arguments for {name}: {e}")
        except (OSError, ValueError, NotImplementedError) as e:
            return ToolResult(False, f"Error: {e}")

    def read_file(self, file_path: str) -> ToolResult:
        content = self._resolve(file_path).read_text(encoding="utf-8", errors="replace")
        return ToolResult(True, content[:READ_LIMIT])

    def write_file(self, file_path: str, content: str) -> ToolResult:
        path = self._resolve(file_path)
        existed = path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        action = "updated" if existed else "created"
        return ToolResult(True, f"File {action}: {file_path}", changed_path=file_path)

    def edit_file(self, file_path: str, old_string: str, new_string: str) -> ToolResult:
        path = self._resolve(file_path)
        content = path.read_text(encoding="utf-8")
        if old_string not in content:
            return ToolResult(
                False, f"Error: Could not find the specified string in {file_path}"
            )
        path.write_text(content.replace(old_string, new_string, 1), encoding="utf-8")
        return ToolResult(
            True, f"File edited successfully: {file_path}", changed_path=file_path
        )

    def run_bash(self, command: str) -> ToolResult:
        if is_dangerous(command):
            logger.warning(f"Blocked dangerous command: {command}")
            return ToolResult(False, "Error: This command is blocked for safety reasons")

        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(False, f"Error: Command timed out after {COMMAND_TIMEOUT}s")

        if result.returncode != 0:
            output = f"{result.stdout}\nError: {result.stderr or 'Command failed'}"
            return ToolResult(False, output[:COMMAND_OUTPUT_LIMIT])
        return ToolResult(True, result.stdout[:COMMAND_OUTPUT_LIMIT] or "(no output)")

    def glob_files(self, pattern: str) -> ToolResult:
        if not pattern or Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise ValueError(f"Pattern must be relative to the workspace: {pattern!r}")
        matches = []
        for path in sorted(self.root.glob(pattern)):
            if not path.is_file() or ".git" in path.relative_to(self.root).parts:
                continue
            matches.append(str(path.relative_to(self.root)))
            if len(matches) >= MAX_SEARCH_RESULTS:
                break
        return ToolResult(True, "\n".join(matches) or "(no matches)")

    def grep_search(self, pattern: str, file_pattern: str | None = None) -> ToolResult:
        args = ["grep", "-rn", "--exclude-dir=.git"]
        if file_pattern:
            args.append(f"--include={file_pattern}")
        args += ["-e", pattern, "."]

        try:
            result = subprocess.run(
                args,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=SEARCH_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(
                False, f"Error: search timed out after {SEARCH_TIMEOUT}s, results unknown"
            )

        lines = result.stdout.splitlines()[:MAX_SEARCH_RESULTS]
        return ToolResult(True, "\n".join(lines) or "(no matches)")
