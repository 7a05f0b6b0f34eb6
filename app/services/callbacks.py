"""Signed status callbacks to the task tracker."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from app.core.signature import build_callback_headers

logger = logging.getLogger(__name__)


class CallbackClient:
    """Posts session lifecycle events back to the caller.

    Delivery is best effort: every failure is logged and swallowed so that a
    caller outage never interrupts an execution.
    """

    def __init__(
        self,
        callback_url: str | None,
        secret: str | None,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        self.callback_url = callback_url
        self.secret = secret
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.callback_url and self.secret)

    def close(self) -> None:
        self._client.close()

    def _send(
        self, kind: str, task_id: str, session_id: str, data: dict[str, Any]
    ) -> bool:
        event = f"session.{kind}"
        if not self.enabled:
            logger.info(f"Callback URL or secret not configured, skipping {event}")
            return False

        body = json.dumps(
            {
                "event": event,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "sessionId": session_id,
                "taskId": task_id,
                "data": {key: value for key, value in data.items() if value is not None},
            }
        )
        headers = build_callback_headers(body, self.secret, event)

        try:
            response = self._client.post(self.callback_url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Callback {event} for task {task_id} rejected: "
                f"{e.response.status_code} {e.response.text[:200]}"
            )
            return False
        except httpx.HTTPError as e:
            logger.error(f"Callback {event} for task {task_id} failed: {e}")
            return False

        logger.debug(f"Sent {event} for task {task_id}")
        return True

    def notify_started(self, task_id: str, session_id: str, message: str) -> bool:
        return self._send("started", task_id, session_id, {"message": message})

    def notify_progress(self, task_id: str, session_id: str, message: str) -> bool:
        return self._send("progress", task_id, session_id, {"message": message})

    def notify_waiting_input(
        self,
        task_id: str,
        session_id: str,
        question: str,
        files: list[str] | None = None,
        diff: str | None = None,
        pr_url: str | None = None,
    ) -> bool:
        """Report that the agent asked a question and needs a reply."""
        return self._send(
            "waiting_input",
            task_id,
            session_id,
            {
                "question": question,
                "message": question,
                "files": files or None,
                "diff": diff or None,
                "prUrl": pr_url,
            },
        )

    def notify_completed(
        self,
        task_id: str,
        session_id: str,
        summary: str | None = None,
        files: list[str] | None = None,
        pr_url: str | None = None,
        diff: str | None = None,
    ) -> bool:
        """Report a finished task with its summary and artifacts."""
        return self._send(
            "completed",
            task_id,
            session_id,
            {
                "summary": summary,
                "files": files or [],
                "prUrl": pr_url,
                "diff": diff or None,
            },
        )

    def notify_error(
        self,
        task_id: str,
        session_id: str,
        error: str,
        stderr: str | None = None,
    ) -> bool:
        """Report a failed execution, with raw stderr when available."""
        return self._send(
            "error",
            task_id,
            session_id,
            {"error": error, "message": error, "stderr": stderr or None},
        )
