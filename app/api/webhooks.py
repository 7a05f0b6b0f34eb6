"""Inbound webhook endpoint."""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from app.api.deps import get_orchestrator
from app.core.signature import extract_webhook_headers, verify
from app.models import WebhookPayload
from app.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class WebhookResponse(BaseModel):
    """Acknowledgement sent before processing starts."""

    success: bool
    event: str | None
    message: str


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Verify a signed event and hand it to the orchestrator in the background."""
    secret = request.app.state.webhook_secret
    if not secret:
        logger.error("ASTRID_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server not configured",
        )

    body = await request.body()
    headers = extract_webhook_headers(request.headers)
    if headers is None:
        logger.warning("Webhook rejected: missing signature headers")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing required parameters",
        )

    verification = verify(
        body.decode("utf-8", errors="replace"),
        headers.signature,
        secret,
        headers.timestamp,
    )
    if not verification.valid:
        logger.warning(f"Webhook signature verification failed: {verification.error.value}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=verification.error.value,
        )

    try:
        payload = WebhookPayload.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Webhook rejected: invalid payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    logger.info(f"Received webhook: {headers.event} for task {payload.task.id}")
    background_tasks.add_task(orchestrator.handle_event, headers.event, payload)

    return WebhookResponse(success=True, event=headers.event, message="Processing started")
