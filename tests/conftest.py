"""Pytest configuration and fixtures."""

import json
import os
import subprocess
import threading
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

# Set test environment
os.environ["APP_ENV"] = "test"

from app.core.database import Database  # noqa: E402
from app.core.signature import sign  # noqa: E402
from app.executors.base import Executor, parse_output  # noqa: E402
from app.executors.router import ExecutorRouter  # noqa: E402
from app.main import create_app  # noqa: E402
from app.models import ExecutionResult, ParsedOutcome  # noqa: E402
from app.services.callbacks import CallbackClient  # noqa: E402
from app.services.git import RepoInfo, RepositoryManager, WorkspaceChanges  # noqa: E402
from app.services.orchestrator import Orchestrator  # noqa: E402
from app.services.session_store import SessionStore  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"
API_KEY = "test-api-key"


class StubExecutor(Executor):
    """Executor returning a canned result and recording its calls."""

    name = "Stub"

    def __init__(self, result: ExecutionResult | None = None, available: bool = True):
        self.result = result or ExecutionResult(exit_code=0, stdout="Done.")
        self.available = available
        self.calls: list[tuple[str, Any]] = []
        self.before_return = None

    def start_session(self, session, prompt=None, context=None, on_progress=None):
        self.calls.append(("start", session))
        if self.before_return:
            self.before_return()
        return self.result

    def resume_session(self, session, new_input, context=None, on_progress=None):
        self.calls.append(("resume", session, new_input))
        if self.before_return:
            self.before_return()
        return self.result

    def parse_output(self, output: str) -> ParsedOutcome:
        return parse_output(output)

    def check_available(self) -> bool:
        return self.available


class RecordingCallbacks(CallbackClient):
    """Callback client that records events instead of posting them."""

    def __init__(self):
        super().__init__("http://callbacks.test", "secret")
        self.events: list[dict[str, Any]] = []

    def _send(self, kind, task_id, session_id, data):
        self.events.append(
            {"kind": kind, "task_id": task_id, "session_id": session_id, "data": data}
        )
        return True

    def kinds(self) -> list[str]:
        return [event["kind"] for event in self.events]


def make_payload(
    task_id: str = "task-1234",
    title: str = "Fix the login button",
    description: str = "The button does nothing",
    repository: str | None = None,
    agent_email: str = "claude@astrid.cc",
    comment: str | None = None,
) -> dict[str, Any]:
    """Build a webhook body in the caller's camelCase shape."""
    payload: dict[str, Any] = {
        "task": {"id": task_id, "title": title, "description": description},
        "list": {"id": "list-1", "name": "Work", "githubRepositoryId": repository},
        "aiAgent": {"email": agent_email, "type": "claude_agent"},
        "mcp": {"accessToken": "mcp-token"},
        "comments": [
            {"content": "Please take a look", "authorName": "Alice", "createdAt": "2025-01-01"}
        ],
    }
    if comment is not None:
        payload["comment"] = {"content": comment}
    return payload


def signed_headers(
    body: str,
    event: str = "task.assigned",
    secret: str = WEBHOOK_SECRET,
    timestamp: str | None = None,
) -> dict[str, str]:
    """Headers for an inbound webhook signed with ``secret``."""
    timestamp = timestamp or str(int(time.time() * 1000))
    return {
        "Content-Type": "application/json",
        "X-Astrid-Signature": f"sha256={sign(body, secret, timestamp)}",
        "X-Astrid-Timestamp": timestamp,
        "X-Astrid-Event": event,
    }


@pytest.fixture
def database(tmp_path):
    """SQLite database under the test's temporary directory."""
    db = Database(f"sqlite:///{tmp_path}/sessions.db", env="test")
    yield db
    db.close()


@pytest.fixture
def store(database):
    """Session store backed by the test database."""
    return SessionStore(database)


@pytest.fixture
def stub_executor():
    return StubExecutor()


@pytest.fixture
def callbacks():
    return RecordingCallbacks()


@pytest.fixture
def repos(mocker, tmp_path):
    """Repository manager mock that 'clones' into a temporary directory."""
    manager = mocker.Mock(spec=RepositoryManager)
    repo_path = tmp_path / "repos" / "owner" / "repo"
    repo_path.mkdir(parents=True)
    manager.get_repo.return_value = RepoInfo(
        path=str(repo_path), url="https://github.com/owner/repo.git", branch="main"
    )
    manager.create_task_branch.side_effect = lambda path, task_id: f"task/{task_id[:8]}"
    manager.capture_changes.return_value = WorkspaceChanges()
    return manager


@pytest.fixture
def orchestrator(store, repos, stub_executor, callbacks):
    """Orchestrator wired to the stub executor for every provider."""
    router = ExecutorRouter(claude=stub_executor, openai=stub_executor, gemini=stub_executor)
    return Orchestrator(store=store, repos=repos, router=router, callbacks=callbacks)


@pytest.fixture
def test_client(orchestrator):
    """Create a test client."""
    app = create_app(orchestrator, webhook_secret=WEBHOOK_SECRET, api_secret_key=API_KEY)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers():
    """Provide authentication headers for API requests."""
    return {"X-API-Key": API_KEY}


def post_webhook(client, payload: dict, event: str = "task.assigned", **kwargs):
    body = json.dumps(payload)
    return client.post("/webhook", content=body, headers=signed_headers(body, event, **kwargs))


class FakeStream:
    """Pipe that yields canned chunks, then blocks until closed unless it is finite."""

    def __init__(self, chunks=(), finite: bool = True):
        self._chunks = [c.encode() if isinstance(c, str) else c for c in chunks]
        self._closed = threading.Event()
        if finite:
            self._closed.set()

    def read(self, size: int = -1) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        self._closed.wait(timeout=10)
        return b""

    def close(self) -> None:
        self._closed.set()


class FakeProcess:
    """Stand-in for ``subprocess.Popen``.

    With ``hang=True`` the process writes its canned chunks and then goes
    silent until terminated.
    """

    pid = 4242

    def __init__(self, stdout=(), stderr=(), exit_code: int = 0, hang: bool = False):
        self.stdout = FakeStream(stdout, finite=not hang)
        self.stderr = FakeStream(stderr, finite=not hang)
        self.exit_code = exit_code
        self.hang = hang
        self.terminated = False
        self.killed = False

    def terminate(self) -> None:
        self.terminated = True
        self.exit_code = -15
        self.stdout.close()
        self.stderr.close()

    def kill(self) -> None:
        self.killed = True
        self.exit_code = -9
        self.stdout.close()
        self.stderr.close()

    def wait(self, timeout=None) -> int:
        if self.hang and not (self.terminated or self.killed):
            raise subprocess.TimeoutExpired("fake", timeout)
        return self.exit_code


class StepClock:
    """Clock that advances by ``step`` seconds each time it is read."""

    def __init__(self, step: float = 1.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def fake_popen(process: FakeProcess, calls: list | None = None):
    """Popen factory that always returns ``process``."""

    def popen(args, **kwargs):
        if calls is not None:
            calls.append((args, kwargs))
        return process

    return popen
