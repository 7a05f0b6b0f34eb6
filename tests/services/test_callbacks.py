"""Tests for CallbackClient."""

import json

import httpx
import pytest

from app.core.signature import verify
from app.services.callbacks import CallbackClient

CALLBACK_URL = "http://tracker.test/api/remote-server/callback"
SECRET = "callback-secret"


@pytest.fixture
def captured():
    return []


@pytest.fixture
def client_factory(captured):
    """Build a CallbackClient whose HTTP client answers with ``status``."""

    def factory(status: int = 200, error: Exception | None = None):
        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            if error is not None:
                raise error
            return httpx.Response(status, json={"ok": status < 400})

        http = httpx.Client(transport=httpx.MockTransport(handler))
        return CallbackClient(CALLBACK_URL, SECRET, client=http)

    return factory


def test_notify_completed_sends_signed_body(client_factory, captured):
    """Test a completion callback is signed and carries the artifacts."""
    client = client_factory()

    assert client.notify_completed(
        "task-1", "sess-1", summary="Fixed it", files=["a.py"], pr_url="https://pr"
    )

    request = captured[0]
    body = request.content.decode()
    payload = json.loads(body)
    assert str(request.url) == CALLBACK_URL
    assert payload["event"] == "session.completed"
    assert payload["taskId"] == "task-1"
    assert payload["sessionId"] == "sess-1"
    assert payload["data"] == {"summary": "Fixed it", "files": ["a.py"], "prUrl": "https://pr"}
    assert request.headers["X-Astrid-Event"] == "session.completed"
    assert verify(
        body,
        request.headers["X-Astrid-Signature"],
        SECRET,
        request.headers["X-Astrid-Timestamp"],
    ).valid


def test_notify_waiting_input_echoes_question(client_factory, captured):
    """Test the question is sent as both question and message."""
    client = client_factory()

    client.notify_waiting_input("task-1", "sess-1", "Which database?", files=["db.py"])

    data = json.loads(captured[0].content)["data"]
    assert data["question"] == data["message"] == "Which database?"
    assert data["files"] == ["db.py"]
    assert "diff" not in data


def test_notify_error_includes_stderr(client_factory, captured):
    """Test error callbacks carry the message and stderr."""
    client = client_factory()

    client.notify_error("task-1", "sess-1", "Exit code 1", stderr="Traceback")

    data = json.loads(captured[0].content)["data"]
    assert data == {"error": "Exit code 1", "message": "Exit code 1", "stderr": "Traceback"}


@pytest.mark.parametrize(
    "method,args,event",
    [
        ("notify_started", ("Starting work",), "session.started"),
        ("notify_progress", ("Working...",), "session.progress"),
    ],
)
def test_message_events(client_factory, captured, method, args, event):
    """Test started and progress events carry a message."""
    client = client_factory()

    getattr(client, method)("task-1", "sess-1", *args)

    payload = json.loads(captured[0].content)
    assert payload["event"] == event
    assert payload["data"] == {"message": args[0]}


def test_rejected_callback_returns_false(client_factory):
    """Test an error status is logged and reported as a failed delivery."""
    client = client_factory(status=500)

    assert client.notify_progress("task-1", "sess-1", "Working") is False


def test_transport_error_returns_false(client_factory):
    """Test a connection failure never raises."""
    client = client_factory(error=httpx.ConnectError("refused"))

    assert client.notify_progress("task-1", "sess-1", "Working") is False


def test_unconfigured_client_skips_send(captured):
    """Test nothing is sent without a URL and secret."""
    http = httpx.Client(transport=httpx.MockTransport(lambda r: captured.append(r)))
    client = CallbackClient(None, SECRET, client=http)

    assert client.enabled is False
    assert client.notify_started("task-1", "sess-1", "Starting") is False
    assert captured == []
