"""Operational session endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.deps import get_orchestrator
from app.core.auth import verify_api_key
from app.core.errors import NotFoundError
from app.models import Provider, SessionStatus
from app.services.orchestrator import Orchestrator

router = APIRouter()


class SessionResponse(BaseModel):
    """Response model for session data."""

    id: str
    task_id: str
    title: str
    status: SessionStatus
    provider: Provider
    provider_session_id: str | None
    project_path: str | None
    message_count: int
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    """Response model for list of sessions."""

    count: int
    sessions: list[SessionResponse]


class SessionDeleteResponse(BaseModel):
    success: bool
    message: str
    previous_status: SessionStatus


class ResetStuckResponse(BaseModel):
    success: bool
    message: str
    reset_task_ids: list[str]


@router.get("/sessions", response_model=SessionListResponse)
def list_sessions(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """List all sessions."""
    sessions = orchestrator.store.list_all()
    return SessionListResponse(
        count=len(sessions),
        sessions=[SessionResponse.model_validate(s.model_dump()) for s in sessions],
    )


@router.delete("/sessions/{task_id}", response_model=SessionDeleteResponse)
def delete_session(
    task_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """Delete a task's session, e.g. one stuck in running."""
    try:
        session = orchestrator.delete_session(task_id)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e

    return SessionDeleteResponse(
        success=True,
        message=f"Session deleted for task {task_id}",
        previous_status=session.status,
    )


@router.post("/sessions/reset-stuck", response_model=ResetStuckResponse)
def reset_stuck_sessions(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """Mark sessions running for more than an hour as interrupted."""
    task_ids = orchestrator.reset_stuck_sessions()
    return ResetStuckResponse(
        success=True,
        message=f"Reset {len(task_ids)} stuck sessions",
        reset_task_ids=task_ids,
    )
