"""Tests for ProcessSupervisor."""

import subprocess
import sys

import pytest

from app.executors.supervisor import (
    ProcessSupervisor,
    SupervisorState,
    TimeoutTier,
    check_timeouts,
)
from tests.conftest import FakeProcess, StepClock, fake_popen

ARMED = SupervisorState.ARMED
ACTIVE = SupervisorState.ACTIVE


@pytest.mark.parametrize(
    "state,last_output_at,now,expected",
    [
        (ARMED, None, 9, None),
        (ARMED, None, 10, TimeoutTier.INITIAL_OUTPUT),
        (ACTIVE, 5, 9, None),
        (ACTIVE, 5, 10, TimeoutTier.STALL),
        (ARMED, None, 100, TimeoutTier.MAXIMUM),
        (ACTIVE, 99, 100, TimeoutTier.MAXIMUM),
        (SupervisorState.EXITED, None, 500, None),
        (SupervisorState.KILLED, None, 500, None),
    ],
)
def test_check_timeouts(state, last_output_at, now, expected):
    """Test tier thresholds are inclusive and only apply to live processes."""
    tier = check_timeouts(
        state,
        started_at=0,
        last_output_at=last_output_at,
        now=now,
        initial_timeout=10,
        stall_timeout=5,
        max_timeout=100,
    )

    assert tier == expected


def test_check_timeouts_maximum_wins():
    """Test the maximum tier wins when several tiers trip at once."""
    tier = check_timeouts(ARMED, 0, None, 50, initial_timeout=10, stall_timeout=5, max_timeout=50)

    assert tier == TimeoutTier.MAXIMUM


def test_check_timeouts_initial_wins_over_stall():
    """Test an armed process is judged by the initial tier, not the stall tier."""
    tier = check_timeouts(ARMED, 0, None, 20, initial_timeout=10, stall_timeout=5, max_timeout=100)

    assert tier == TimeoutTier.INITIAL_OUTPUT


def supervisor(process, clock=None, calls=None, **kwargs):
    options = {"initial_timeout": 100, "stall_timeout": 100, "max_timeout": 1000}
    options.update(kwargs)
    return ProcessSupervisor(
        poll_interval=0.01,
        kill_grace=0.1,
        clock=clock or StepClock(),
        popen=fake_popen(process, calls),
        **options,
    )


def test_run_collects_output():
    """Test a process that exits normally is reported as exited."""
    process = FakeProcess(stdout=["line one\n", "line two\n"], stderr=["warn\n"], exit_code=0)
    lines = []
    calls = []

    run = supervisor(process, calls=calls).run(
        ["claude", "--print"], cwd="/work", env={"A": "1"}, on_stdout_line=lines.append
    )

    assert run.exit_code == 0
    assert run.stdout == "line one\nline two\n"
    assert run.stderr == "warn\n"
    assert run.state == SupervisorState.EXITED
    assert run.timed_out is False
    assert lines == ["line one\n", "line two\n"]

    args, kwargs = calls[0]
    assert args == ["claude", "--print"]
    assert kwargs["cwd"] == "/work"
    assert kwargs["env"] == {"A": "1"}
    assert kwargs["stdin"] == subprocess.DEVNULL


def test_run_reports_nonzero_exit():
    """Test a failing process keeps its exit code."""
    run = supervisor(FakeProcess(stderr=["boom\n"], exit_code=3)).run(["claude"])

    assert run.exit_code == 3
    assert run.state == SupervisorState.EXITED
    assert run.timeout_tier is None


def test_silent_process_is_killed_at_initial_timeout():
    """Test a process with no output is killed by the initial tier."""
    process = FakeProcess(hang=True)

    run = supervisor(process, initial_timeout=5).run(["claude"])

    assert process.terminated
    assert run.state == SupervisorState.KILLED
    assert run.timed_out is True
    assert run.timeout_tier == TimeoutTier.INITIAL_OUTPUT


def test_stalled_process_is_killed():
    """Test a process that goes quiet after output is killed by the stall tier."""
    process = FakeProcess(stdout=["started\n"], hang=True)

    run = supervisor(process, stall_timeout=3).run(["claude"])

    assert run.timeout_tier == TimeoutTier.STALL
    assert run.stdout == "started\n"


def test_kill_escalates_when_terminate_is_ignored():
    """Test SIGKILL follows when the process survives SIGTERM."""

    class StubbornProcess(FakeProcess):
        def terminate(self):
            self.terminated = True

        def wait(self, timeout=None):
            if not self.killed:
                raise subprocess.TimeoutExpired("fake", timeout)
            return self.exit_code

    process = StubbornProcess(hang=True)

    run = supervisor(process, initial_timeout=2).run(["claude"])

    assert process.killed
    assert run.state == SupervisorState.KILLED
    assert run.exit_code == -9


def test_spawn_failure_raises():
    """Test a missing binary surfaces as OSError."""

    def popen(args, **kwargs):
        raise FileNotFoundError("claude")

    with pytest.raises(OSError):
        ProcessSupervisor(1, 1, 1, popen=popen).run(["claude"])


def test_lines_are_assembled_across_chunks():
    """Test chunks split mid-line still reach the callback as whole lines."""
    process = FakeProcess(stdout=["wor", "king\nnext ", "line\n", "tail"])
    lines = []

    run = supervisor(process).run(["claude"], on_stdout_line=lines.append)

    assert run.stdout == "working\nnext line\ntail"
    assert lines == ["working\n", "next line\n", "tail"]


def test_multibyte_characters_split_across_chunks():
    """Test a UTF-8 character split between reads decodes intact."""
    encoded = "café\n".encode()
    process = FakeProcess(stdout=[encoded[:4], encoded[4:]])

    run = supervisor(process).run(["claude"])

    assert run.stdout == "café\n"


def test_output_without_newline_counts_as_activity():
    """Test bytes with no trailing newline arm the stall tier, not the initial tier."""
    process = FakeProcess(stdout=["working"], hang=True)
    lines = []

    run = supervisor(process, initial_timeout=50, stall_timeout=5).run(
        ["claude"], on_stdout_line=lines.append
    )

    assert run.timeout_tier == TimeoutTier.STALL
    assert run.stdout == "working"
    assert lines == ["working"]


def test_real_process_partial_line_is_not_silent():
    """Test a real child writing an unterminated line is not killed as silent."""
    script = (
        "import sys, time\n"
        "sys.stdout.write('working')\n"
        "sys.stdout.flush()\n"
        "time.sleep(2)\n"
    )
    supervisor_ = ProcessSupervisor(
        initial_timeout=1, stall_timeout=30, max_timeout=30, poll_interval=0.05
    )

    run = supervisor_.run([sys.executable, "-c", script])

    assert run.state == SupervisorState.EXITED
    assert run.exit_code == 0
    assert run.stdout == "working"
