"""Supervision of a long-running child process with tiered timeouts."""

import codecs
import logging
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0
KILL_GRACE_PERIOD = 5.0
CHUNK_SIZE = 4096


class SupervisorState(str, Enum):
    """Lifecycle of a supervised process."""

    ARMED = "armed"  # started, no output yet
    ACTIVE = "active"
    EXITED = "exited"
    KILLED = "killed"


class TimeoutTier(str, Enum):
    INITIAL_OUTPUT = "initial_output"
    STALL = "stall"
    MAXIMUM = "maximum"


@dataclass
class SupervisedRun:
    """What happened to a supervised process."""

    exit_code: int | None
    stdout: str
    stderr: str
    state: SupervisorState
    timeout_tier: TimeoutTier | None = None

    @property
    def timed_out(self) -> bool:
        return self.state == SupervisorState.KILLED


def check_timeouts(
    state: SupervisorState,
    started_at: float,
    last_output_at: float | None,
    now: float,
    initial_timeout: float,
    stall_timeout: float,
    max_timeout: float,
) -> TimeoutTier | None:
    """Decide whether a running process has exceeded a timeout tier.

    The maximum tier wins over the initial-output tier, which wins over the
    stall tier. Thresholds are inclusive.
    """
    if state not in (SupervisorState.ARMED, SupervisorState.ACTIVE):
        return None
    if now - started_at >= max_timeout:
        return TimeoutTier.MAXIMUM
    if state == SupervisorState.ARMED and now - started_at >= initial_timeout:
        return TimeoutTier.INITIAL_OUTPUT
    if (
        state == SupervisorState.ACTIVE
        and last_output_at is not None
        and now - last_output_at >= stall_timeout
    ):
        return TimeoutTier.STALL
    return None


class ProcessSupervisor:
    """Runs a command, streams its output and kills it when a timeout tier trips.

    Args:
        initial_timeout: Seconds allowed before the first byte of output
        stall_timeout: Seconds allowed between output chunks once output started
        max_timeout: Absolute ceiling in seconds
        clock: Monotonic time source
        popen: Process factory with the ``subprocess.Popen`` signature
    """

    def __init__(
        self,
        initial_timeout: float,
        stall_timeout: float,
        max_timeout: float,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        kill_grace: float = KILL_GRACE_PERIOD,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.initial_timeout = initial_timeout
        self.stall_timeout = stall_timeout
        self.max_timeout = max_timeout
        self.heartbeat_interval = heartbeat_interval
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval
        self.clock = clock
        self.popen = popen
        self.state = SupervisorState.ARMED

    def run(
        self,
        args: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        on_stdout_line: Callable[[str], None] | None = None,
    ) -> SupervisedRun:
        """Run ``args`` to completion or until a timeout tier kills it.

        Raises:
            OSError: If the process cannot be spawned
        """
        proc = self.popen(
            args,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        logger.info(f"Spawned {args[0]} with PID {proc.pid}")
        logger.info(
            f"Timeouts: initial={self.initial_timeout}s, "
            f"stall={self.stall_timeout}s, max={self.max_timeout}s"
        )

        self.state = SupervisorState.ARMED
        chunks: queue.Queue = queue.Queue()
        readers = [
            threading.Thread(
                target=_pump, args=(proc.stdout, "stdout", chunks), daemon=True
            ),
            threading.Thread(
                target=_pump, args=(proc.stderr, "stderr", chunks), daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        outputs = {
            "stdout": _StreamBuffer(on_stdout_line),
            "stderr": _StreamBuffer(lambda line: logger.warning(f"stderr: {line.rstrip()}")),
        }
        open_streams = len(readers)
        started_at = self.clock()
        last_output_at: float | None = None
        last_heartbeat = started_at
        tier: TimeoutTier | None = None

        while open_streams:
            try:
                stream, chunk = chunks.get(timeout=self.poll_interval)
            except queue.Empty:
                stream, chunk = None, None

            now = self.clock()
            if stream is not None:
                if chunk is None:
                    open_streams -= 1
                    outputs[stream].finish()
                else:
                    # any byte counts as output, newline or not
                    last_output_at = now
                    self.state = SupervisorState.ACTIVE
                    outputs[stream].feed(chunk)

            if now - last_heartbeat >= self.heartbeat_interval:
                quiet = now - (last_output_at if last_output_at is not None else started_at)
                logger.info(
                    f"Heartbeat: {round(now - started_at)}s elapsed, "
                    f"last output {round(quiet)}s ago, "
                    f"stdout={outputs['stdout'].size} chars"
                )
                last_heartbeat = now

            tier = check_timeouts(
                self.state,
                started_at,
                last_output_at,
                now,
                self.initial_timeout,
                self.stall_timeout,
                self.max_timeout,
            )
            if tier is not None:
                logger.error(f"Timeout tier '{tier.value}' reached, killing process {proc.pid}")
                self._kill(proc)
                self.state = SupervisorState.KILLED
                break

        for reader in readers:
            reader.join(timeout=self.kill_grace)
        while not chunks.empty():
            stream, chunk = chunks.get_nowait()
            if chunk is not None:
                outputs[stream].feed(chunk)
        for output in outputs.values():
            output.finish()

        exit_code = proc.wait()
        if self.state != SupervisorState.KILLED:
            self.state = SupervisorState.EXITED

        stdout = outputs["stdout"].text
        stderr = outputs["stderr"].text
        logger.info(
            f"Process exited with code {exit_code} ({self.state.value}); "
            f"stdout={len(stdout)} chars, stderr={len(stderr)} chars"
        )
        return SupervisedRun(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            state=self.state,
            timeout_tier=tier,
        )

    def _kill(self, proc: subprocess.Popen) -> None:
        """Terminate, escalating to kill after the grace period."""
        proc.terminate()
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM, sending SIGKILL")
            proc.kill()


class _StreamBuffer:
    """Decodes raw chunks from one pipe and hands complete lines to a callback."""

    def __init__(self, on_line: Callable[[str], None] | None = None):
        self.on_line = on_line
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._pending = ""
        self._finished = False

    @property
    def size(self) -> int:
        return sum(len(part) for part in self._parts)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> None:
        self._emit(self._decoder.decode(chunk))

    def finish(self) -> None:
        """Flush the decoder and any trailing partial line."""
        if self._finished:
            return
        self._finished = True
        self._emit(self._decoder.decode(b"", final=True))
        if self._pending and self.on_line:
            self.on_line(self._pending)
        self._pending = ""

    def _emit(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        *lines, self._pending = (self._pending + text).split("\n")
        if self.on_line:
            for line in lines:
                self.on_line(line + "\n")


def _pump(stream, name: str, chunks: queue.Queue) -> None:
    """Forward raw chunks from a pipe into the queue, then a None sentinel."""
    try:
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            chunks.put((name, chunk))
    finally:
        chunks.put((name, None))
