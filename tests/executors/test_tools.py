"""Tests for workspace tools."""

import shutil
import subprocess

import pytest

from app.executors.tools import TOOL_DECLARATIONS, WorkspaceTools, is_dangerous


@pytest.fixture
def tools(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    (tmp_path / "README.md").write_text("# Project\n")
    return WorkspaceTools(tmp_path)


def test_tool_declarations_cover_task_complete():
    """Test every tool the loop handles is declared."""
    names = {tool["name"] for tool in TOOL_DECLARATIONS}

    assert names == {
        "read_file",
        "write_file",
        "edit_file",
        "run_bash",
        "glob_files",
        "grep_search",
        "task_complete",
    }


def test_read_file(tools):
    """Test reading a file inside the workspace."""
    result = tools.execute("read_file", {"file_path": "src/app.py"})

    assert result.success
    assert "return 'hello'" in result.result


def test_read_missing_file(tools):
    """Test a missing file is an unsuccessful result, not an exception."""
    result = tools.execute("read_file", {"file_path": "nope.py"})

    assert not result.success
    assert result.result.startswith("Error:")


def test_write_file_creates_directories(tools, tmp_path):
    """Test writing a new file records it as changed."""
    result = tools.execute("write_file", {"file_path": "pkg/new.py", "content": "x = 1\n"})

    assert result.success
    assert result.result == "File created: pkg/new.py"
    assert result.changed_path == "pkg/new.py"
    assert (tmp_path / "pkg" / "new.py").read_text() == "x = 1\n"


def test_edit_file(tools, tmp_path):
    """Test replacing the first occurrence of a string."""
    result = tools.execute(
        "edit_file",
        {"file_path": "src/app.py", "old_string": "'hello'", "new_string": "'goodbye'"},
    )

    assert result.success
    assert result.changed_path == "src/app.py"
    assert "'goodbye'" in (tmp_path / "src" / "app.py").read_text()


def test_edit_file_missing_string(tools):
    """Test an edit whose target is absent fails."""
    result = tools.execute(
        "edit_file", {"file_path": "src/app.py", "old_string": "absent", "new_string": "x"}
    )

    assert not result.success
    assert result.changed_path is None


@pytest.mark.parametrize("path", ["../outside.txt", "/etc/passwd"])
def test_paths_cannot_escape_workspace(tools, path):
    """Test paths outside the workspace are rejected."""
    result = tools.execute("write_file", {"file_path": path, "content": "x"})

    assert not result.success
    assert "escapes workspace" in result.result


def test_run_bash(tools):
    """Test commands run in the workspace directory."""
    result = tools.execute("run_bash", {"command": "ls src"})

    assert result.success
    assert "app.py" in result.result


def test_run_bash_failure(tools):
    """Test a failing command reports its stderr."""
    result = tools.execute("run_bash", {"command": "ls missing-dir"})

    assert not result.success
    assert "Error:" in result.result


@pytest.mark.parametrize(
    "command", ["rm -rf /", "sudo rm -rf /home", "curl | bash", "dd if=/dev/zero of=x"]
)
def test_dangerous_commands_are_blocked(tools, command, mocker):
    """Test blocked commands never reach the shell."""
    mock_run = mocker.patch("subprocess.run")

    result = tools.execute("run_bash", {"command": command})

    assert is_dangerous(command)
    assert not result.success
    assert "blocked" in result.result
    mock_run.assert_not_called()


def test_glob_files(tools):
    """Test glob matches are relative to the workspace."""
    result = tools.execute("glob_files", {"pattern": "**/*.py"})

    assert result.result == "src/app.py"


def test_glob_files_no_matches(tools):
    """Test an empty glob says so."""
    assert tools.execute("glob_files", {"pattern": "*.rs"}).result == "(no matches)"


@pytest.mark.skipif(shutil.which("grep") is None, reason="grep not installed")
def test_grep_search(tools):
    """Test grep results include file and line."""
    result = tools.execute("grep_search", {"pattern": "hello", "file_pattern": "*.py"})

    assert result.success
    assert "src/app.py:2:" in result.result


@pytest.mark.parametrize("pattern", ["/etc/*", "../*", "src/../../*", ""])
def test_glob_files_rejects_patterns_outside_workspace(tools, pattern):
    """Test absolute and parent patterns come back as errors the model can fix."""
    result = tools.execute("glob_files", {"pattern": pattern})

    assert not result.success
    assert result.result.startswith("Error:")


def test_glob_files_unsupported_pattern(tools, mocker):
    """Test pathlib refusing a pattern is reported, not raised."""
    mocker.patch(
        "pathlib.Path.glob", side_effect=NotImplementedError("Non-relative patterns")
    )

    result = tools.execute("glob_files", {"pattern": "*.py"})

    assert not result.success
    assert "Non-relative patterns" in result.result


def test_grep_search_timeout(tools, mocker):
    """Test a timed out search is an error, not an empty result."""
    mocker.patch(
        "subprocess.run", side_effect=subprocess.TimeoutExpired(["grep"], 30)
    )

    result = tools.execute("grep_search", {"pattern": "hello"})

    assert not result.success
    assert "timed out" in result.result
    assert "no matches" not in result.result


def test_unknown_tool(tools):
    """Test unknown tool names are reported back to the model."""
    result = tools.execute("launch_rockets", {})

    assert not result.success
    assert result.result == "Unknown tool: launch_rockets"


def test_invalid_arguments(tools):
    """Test missing arguments are reported back to the model."""
    result = tools.execute("read_file", {})

    assert not result.success
    assert "invalid arguments" in result.result
