"""Tests for the webhook endpoint."""

import json
import time

from fastapi.testclient import TestClient

from app.main import create_app
from app.models import SessionStatus
from tests.conftest import make_payload, post_webhook, signed_headers


def test_webhook_accepts_signed_event(test_client, store, stub_executor, callbacks):
    """Test POST /webhook acknowledges and processes a signed assignment."""
    response = post_webhook(test_client, make_payload(repository="owner/repo"))

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "event": "task.assigned",
        "message": "Processing started",
    }
    assert store.get_by_task_id("task-1234").status == SessionStatus.COMPLETED
    assert stub_executor.calls[0][0] == "start"
    assert callbacks.kinds() == ["started", "completed"]


def test_webhook_wrong_secret(test_client, store, stub_executor):
    """Test a signature made with another secret is rejected and changes nothing."""
    store.create(task_id="task-1234", title="Existing", description="")
    before = store.get_by_task_id("task-1234")

    response = post_webhook(test_client, make_payload(), secret="not-the-secret")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid signature"
    assert store.get_by_task_id("task-1234") == before
    assert stub_executor.calls == []


def test_webhook_wrong_secret_creates_no_session(test_client, store):
    """Test a rejected webhook does not create a session."""
    response = post_webhook(test_client, make_payload(), secret="not-the-secret")

    assert response.status_code == 401
    assert store.list_all() == []


def test_webhook_missing_signature(test_client):
    """Test a request without signature headers is rejected."""
    response = test_client.post("/webhook", json=make_payload())

    assert response.status_code == 401


def test_webhook_expired_timestamp(test_client):
    """Test replayed requests are rejected."""
    old = str(int(time.time() * 1000) - 10 * 60 * 1000)

    response = post_webhook(test_client, make_payload(), timestamp=old)

    assert response.status_code == 401
    assert response.json()["detail"] == "Timestamp expired"


def test_webhook_invalid_payload(test_client, store):
    """Test a signed body without a task is a bad request."""
    body = json.dumps({"list": {"id": "list-1"}})

    response = test_client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert store.list_all() == []


def test_webhook_invalid_json(test_client):
    """Test a signed body that is not JSON is a bad request."""
    body = "not json"

    response = test_client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 400


def test_webhook_unknown_event_is_acknowledged(test_client, store, stub_executor):
    """Test verified events of other types are acknowledged and ignored."""
    response = post_webhook(test_client, make_payload(), event="task.updated")

    assert response.status_code == 200
    assert response.json()["event"] == "task.updated"
    assert store.list_all() == []
    assert stub_executor.calls == []


def test_webhook_without_secret_configured(orchestrator):
    """Test the endpoint refuses to run without a signing secret."""
    app = create_app(orchestrator, webhook_secret="", api_secret_key="key")
    body = json.dumps(make_payload())

    with TestClient(app) as client:
        response = client.post("/webhook", content=body, headers=signed_headers(body))

    assert response.status_code == 500


def test_webhook_comment_resumes(test_client, store, stub_executor):
    """Test a signed comment resumes a waiting session."""
    store.create(task_id="task-1234", title="Fix", description="")
    store.set_provider_session_id("task-1234", "abc-123")
    store.update("task-1234", status=SessionStatus.WAITING_INPUT)

    response = post_webhook(
        test_client, make_payload(comment="Go ahead"), event="comment.created"
    )

    assert response.status_code == 200
    assert stub_executor.calls[0][0] == "resume"
    assert store.get_by_task_id("task-1234").message_count == 1
