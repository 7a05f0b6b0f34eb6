"""Session store: durable mapping from task id to session state."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from app.core.database import Database
from app.core.encryption import InvalidToken, decrypt_token, encrypt_token
from app.models import (
    ACTIVE_STATUSES,
    Provider,
    SessionRow,
    SessionStatus,
    TaskSession,
)
from app.models.session import utcnow

logger = logging.getLogger(__name__)

MCP_TOKEN_KEY = "mcpToken"

# Fields callers may not change through update()
_IMMUTABLE_FIELDS = frozenset({"id", "task_id", "created_at"})


class SessionStore:
    """In-memory session map backed by a database table.

    The in-memory map is authoritative for the lifetime of the process. Every
    mutation is written through to the database; write failures are logged
    and do not propagate.
    """

    def __init__(self, database: Database, encryption_key: str | None = None):
        self.database = database
        self.encryption_key = encryption_key
        self._sessions: dict[str, TaskSession] = {}
        self._loaded = False
        self._lock = threading.RLock()

    def load(self) -> None:
        """Load sessions from the database (once)."""
        with self._lock:
            if self._loaded:
                return

            try:
                self.database.create_tables()
                with self.database.session() as db:
                    rows = db.execute(select(SessionRow)).scalars().all()
                    self._sessions = {
                        row.task_id: TaskSession(**row.model_dump()) for row in rows
                    }
                logger.info(f"Loaded {len(self._sessions)} sessions")
            except SQLAlchemyError as e:
                logger.error(f"Failed to load sessions, starting empty: {e}")
                self._sessions = {}

            self._loaded = True

    def _persist(self, session: TaskSession) -> None:
        try:
            with self.database.session() as db:
                db.merge(SessionRow(**session.model_dump()))
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist session for task {session.task_id}: {e}")

    def _remove(self, task_ids: list[str]) -> None:
        try:
            with self.database.session() as db:
                db.execute(delete(SessionRow).where(SessionRow.task_id.in_(task_ids)))
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete persisted sessions {task_ids}: {e}")

    def create(
        self,
        task_id: str,
        title: str,
        description: str,
        project_path: str | None = None,
        provider: Provider = Provider.CLAUDE,
        metadata: dict[str, Any] | None = None,
    ) -> TaskSession:
        """Create a pending session for a task.

        An existing session for the same task is replaced.
        """
        meta = dict(metadata or {})
        if meta.get(MCP_TOKEN_KEY) and self.encryption_key:
            meta[MCP_TOKEN_KEY] = encrypt_token(meta[MCP_TOKEN_KEY], self.encryption_key)

        with self._lock:
            self.load()
            now = utcnow()
            session = TaskSession(
                task_id=task_id,
                title=title,
                description=description or "",
                project_path=project_path,
                provider=provider,
                status=SessionStatus.PENDING,
                created_at=now,
                updated_at=now,
                meta=meta,
            )
            self._sessions[task_id] = session
            self._persist(session)

        logger.info(
            f"Created session {session.id} for task {task_id} "
            f"(provider: {provider.value})"
        )
        return session.model_copy(deep=True)

    def get_by_task_id(self, task_id: str) -> TaskSession | None:
        """Get session by task ID."""
        with self._lock:
            self.load()
            session = self._sessions.get(task_id)
            return session.model_copy(deep=True) if session else None

    def get_by_id(self, session_id: str) -> TaskSession | None:
        """Get session by session ID."""
        with self._lock:
            self.load()
            for session in self._sessions.values():
                if session.id == session_id:
                    return session.model_copy(deep=True)
            return None

    def update(self, task_id: str, **fields: Any) -> TaskSession | None:
        """Merge fields into a session and refresh ``updated_at``.

        Returns:
            The updated session, or None if no session exists for the task
        """
        blocked = _IMMUTABLE_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"Cannot update immutable fields: {sorted(blocked)}")

        with self._lock:
            self.load()
            session = self._sessions.get(task_id)
            if session is None:
                return None

            for name, value in fields.items():
                setattr(session, name, value)
            session.updated_at = utcnow()

            self._persist(session)
            return session.model_copy(deep=True)

    def set_provider_session_id(
        self, task_id: str, provider_session_id: str
    ) -> TaskSession | None:
        """Record the provider's resumption handle and mark the session running."""
        session = self.update(
            task_id,
            provider_session_id=provider_session_id,
            status=SessionStatus.RUNNING,
            last_activity=utcnow(),
        )
        if session:
            logger.info(f"Linked provider session {provider_session_id} to task {task_id}")
        return session

    def increment_message_count(self, task_id: str) -> TaskSession | None:
        with self._lock:
            session = self.get_by_task_id(task_id)
            if session is None:
                return None
            return self.update(
                task_id,
                message_count=session.message_count + 1,
                last_activity=utcnow(),
            )

    def delete(self, task_id: str) -> bool:
        """Delete a session. Returns False if none existed."""
        with self._lock:
            self.load()
            if task_id not in self._sessions:
                return False
            del self._sessions[task_id]
            self._remove([task_id])

        logger.info(f"Deleted session for task {task_id}")
        return True

    def list_all(self) -> list[TaskSession]:
        with self._lock:
            self.load()
            return [s.model_copy(deep=True) for s in self._sessions.values()]

    def list_active(self) -> list[TaskSession]:
        """Sessions that are running or waiting for input."""
        return [s for s in self.list_all() if s.status in ACTIVE_STATUSES]

    def cleanup_expired(self, max_age: timedelta = timedelta(hours=24)) -> int:
        """Remove sessions not updated within ``max_age`` that are not running.

        Returns:
            Number of sessions removed
        """
        with self._lock:
            self.load()
            cutoff = utcnow() - max_age
            expired = [
                task_id
                for task_id, session in self._sessions.items()
                if session.updated_at < cutoff and session.status != SessionStatus.RUNNING
            ]
            for task_id in expired:
                del self._sessions[task_id]
            if expired:
                self._remove(expired)
                logger.info(f"Cleaned up {len(expired)} expired sessions")

        return len(expired)

    def recover_on_startup(self) -> list[TaskSession]:
        """Mark every running session as interrupted.

        A session cannot still be running after the process restarted.
        """
        return self._interrupt_running(before=None)

    def reset_stuck(self, older_than: timedelta) -> list[TaskSession]:
        """Mark running sessions not updated within ``older_than`` as interrupted."""
        return self._interrupt_running(before=utcnow() - older_than)

    def _interrupt_running(self, before: datetime | None) -> list[TaskSession]:
        interrupted = []
        with self._lock:
            self.load()
            for session in self._sessions.values():
                if session.status != SessionStatus.RUNNING:
                    continue
                if before is not None and session.updated_at >= before:
                    continue
                session.status = SessionStatus.INTERRUPTED
                session.updated_at = utcnow()
                self._persist(session)
                interrupted.append(session.model_copy(deep=True))

        if interrupted:
            logger.warning(f"Marked {len(interrupted)} sessions as interrupted")
        return interrupted

    def get_mcp_token(self, task_id: str) -> str | None:
        """Return the caller token stored with a session, decrypted."""
        session = self.get_by_task_id(task_id)
        if session is None or not session.meta.get(MCP_TOKEN_KEY):
            return None
        try:
            return decrypt_token(session.meta[MCP_TOKEN_KEY], self.encryption_key)
        except (ValueError, InvalidToken) as e:
            logger.warning(f"Stored token for task {task_id} is unreadable: {e}")
            return None
