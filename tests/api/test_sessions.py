"""Tests for session API endpoints."""

from datetime import timedelta

from fastapi.testclient import TestClient

from app.main import create_app
from app.models import Provider, SessionStatus
from app.models.session import utcnow


def test_list_sessions_empty(test_client, auth_headers):
    """Test GET /sessions with no sessions."""
    response = test_client.get("/sessions", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"count": 0, "sessions": []}


def test_list_sessions(test_client, auth_headers, store):
    """Test GET /sessions returns stored sessions."""
    store.create(
        task_id="task-1", title="Fix bug", description="", provider=Provider.GEMINI
    )
    store.update("task-1", status=SessionStatus.WAITING_INPUT)

    response = test_client.get("/sessions", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    session = data["sessions"][0]
    assert session["task_id"] == "task-1"
    assert session["title"] == "Fix bug"
    assert session["status"] == "waiting_input"
    assert session["provider"] == "gemini"
    assert session["message_count"] == 0
    assert "mcpToken" not in str(data)


def test_list_sessions_requires_api_key(test_client):
    """Test GET /sessions without an API key."""
    response = test_client.get("/sessions")

    assert response.status_code in (401, 403)


def test_list_sessions_wrong_api_key(test_client):
    """Test GET /sessions with the wrong API key."""
    response = test_client.get("/sessions", headers={"X-API-Key": "wrong"})

    assert response.status_code == 403


def test_delete_session(test_client, auth_headers, store):
    """Test DELETE /sessions/{task_id}."""
    store.create(task_id="task-1", title="Fix", description="")
    store.update("task-1", status=SessionStatus.RUNNING)

    response = test_client.delete("/sessions/task-1", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Session deleted for task task-1",
        "previous_status": "running",
    }
    assert store.get_by_task_id("task-1") is None


def test_delete_session_not_found(test_client, auth_headers):
    """Test DELETE /sessions/{task_id} for an unknown task."""
    response = test_client.delete("/sessions/missing", headers=auth_headers)

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_reset_stuck(test_client, auth_headers, store):
    """Test POST /sessions/reset-stuck."""
    for task_id in ("stuck", "busy"):
        store.create(task_id=task_id, title=task_id, description="")
        store.update(task_id, status=SessionStatus.RUNNING)
    store._sessions["stuck"].updated_at = utcnow() - timedelta(hours=2)

    response = test_client.post("/sessions/reset-stuck", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["reset_task_ids"] == ["stuck"]
    assert data["message"] == "Reset 1 stuck sessions"
    assert store.get_by_task_id("stuck").status == SessionStatus.INTERRUPTED


def test_health_is_public(test_client):
    """Test GET /health needs no API key."""
    response = test_client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["providers"] == {"claude": True, "openai": True, "gemini": True}
    assert data["activeSessions"] == 0
    assert "timestamp" in data


def test_startup_recovers_running_sessions(orchestrator, store):
    """Test application startup marks running sessions as interrupted."""
    store.create(task_id="task-1", title="Fix", description="")
    store.update("task-1", status=SessionStatus.RUNNING)

    with TestClient(create_app(orchestrator, webhook_secret="s", api_secret_key="k")):
        assert store.get_by_task_id("task-1").status == SessionStatus.INTERRUPTED


def test_shutdown_closes_orchestrator(orchestrator, callbacks):
    """Test application shutdown releases outbound clients."""
    with TestClient(create_app(orchestrator, webhook_secret="s", api_secret_key="k")):
        assert not callbacks._client.is_closed

    assert callbacks._client.is_closed
