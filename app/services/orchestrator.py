"""Webhook event orchestration: session lifecycle and provider execution."""

import json
import logging
import os
import threading
from collections.abc import Callable, Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from app.core.errors import CannotResumeError, NotFoundError
from app.executors.base import Executor, WorkspaceChangeCapture
from app.executors.router import ExecutorRouter, detect_provider, provider_name
from app.models import (
    ExecutionResult,
    Provider,
    SessionStatus,
    TaskContext,
    TaskSession,
    WebhookPayload,
)
from app.models.session import utcnow
from app.services.callbacks import CallbackClient
from app.services.git import GitError, RepositoryManager
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)

TASK_ASSIGNED = "task.assigned"
COMMENT_CREATED = "comment.created"
TASK_UPDATED = "task.updated"
SUPPORTED_EVENTS = frozenset({TASK_ASSIGNED, COMMENT_CREATED, TASK_UPDATED})

STALE_AFTER = timedelta(minutes=30)
STUCK_AFTER = timedelta(hours=1)

TIMEOUT_MESSAGES = {
    "initial_output": "no output received within the initial timeout",
    "stall": "no output for longer than the stall timeout",
    "maximum": "maximum execution time exceeded",
    "max_iterations": "Max iterations reached without completion",
}


class ProjectPathResolver:
    """Finds the local workspace for a list that has no repository attached.

    Lookup order: ``PROJECT_PATH_<LIST_ID>`` environment variable, the JSON
    project map file (``{listId: {"path": ...}}``), then the default path.
    """

    def __init__(
        self,
        default_path: str | None = None,
        project_map_path: str | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.default_path = default_path
        self.project_map_path = project_map_path
        self.environ = os.environ if environ is None else environ

    def resolve(self, list_id: str | None) -> str | None:
        if not list_id:
            return self.default_path

        env_key = f"PROJECT_PATH_{list_id.replace('-', '_').upper()}"
        if self.environ.get(env_key):
            return self.environ[env_key]

        if self.project_map_path:
            try:
                project_map = json.loads(Path(self.project_map_path).read_text())
                path = (project_map.get(list_id) or {}).get("path")
                if path:
                    return path
            except (OSError, ValueError, AttributeError) as e:
                logger.warning(f"Could not read project map {self.project_map_path}: {e}")

        return self.default_path


class Orchestrator:
    """Drives sessions through their lifecycle in response to webhook events.

    A task id present in the execution set is being worked on; any other
    event for it is dropped. Each execution attempt is wrapped so that a
    failure becomes an ``error`` transition and callback instead of an
    exception.
    """

    def __init__(
        self,
        store: SessionStore,
        repos: RepositoryManager,
        router: ExecutorRouter,
        callbacks: CallbackClient,
        project_paths: ProjectPathResolver | None = None,
        stale_after: timedelta = STALE_AFTER,
    ):
        self.store = store
        self.repos = repos
        self.router = router
        self.callbacks = callbacks
        self.project_paths = project_paths or ProjectPathResolver()
        self.stale_after = stale_after
        self._executing: set[str] = set()
        self._executing_lock = threading.Lock()

    def _acquire(self, task_id: str) -> bool:
        with self._executing_lock:
            if task_id in self._executing:
                return False
            self._executing.add(task_id)
            return True

    def _release(self, task_id: str) -> None:
        with self._executing_lock:
            self._executing.discard(task_id)

    def is_executing(self, task_id: str) -> bool:
        with self._executing_lock:
            return task_id in self._executing

    def handle_event(self, event: str | None, payload: WebhookPayload) -> bool:
        """Process one verified webhook event.

        Returns:
            True if the event was processed, False if it was ignored or
            dropped because the task is already executing
        """
        task_id = payload.task.id
        if event not in (TASK_ASSIGNED, COMMENT_CREATED):
            logger.info(f"Ignoring event {event!r} for task {task_id}")
            return False

        if not self._acquire(task_id):
            logger.warning(f"Task {task_id} already executing, dropping {event}")
            return False
        logger.info(f"Acquired execution lock for task {task_id}")

        try:
            if event == TASK_ASSIGNED:
                self._handle_task_assigned(payload)
            else:
                self._handle_comment_created(payload)
        except Exception:
            logger.exception(f"Unhandled failure processing {event} for task {task_id}")
        finally:
            self._release(task_id)
            logger.info(f"Released execution lock for task {task_id}")
        return True

    def _is_stale(self, session: TaskSession) -> bool:
        return session.updated_at < utcnow() - self.stale_after

    def _handle_task_assigned(self, payload: WebhookPayload) -> None:
        task = payload.task
        existing = self.store.get_by_task_id(task.id)

        if existing:
            logger.info(f"Session exists for task {task.id}, status: {existing.status.value}")
            if existing.status == SessionStatus.RUNNING and not self._is_stale(existing):
                logger.warning(f"Session already running for task {task.id}, ignoring assignment")
                return
            if existing.status == SessionStatus.RUNNING:
                logger.warning(
                    f"Session for task {task.id} appears stuck "
                    f"(last update: {existing.updated_at.isoformat()}), starting fresh"
                )
            self.store.delete(task.id)

        self._start_task(payload)

    def _start_task(self, payload: WebhookPayload) -> None:
        task = payload.task
        task_list = payload.task_list
        agent = payload.ai_agent
        provider = detect_provider(
            agent.email if agent else None, agent.type if agent else None
        )
        name = provider_name(provider)
        repository = task_list.github_repository_id if task_list else None

        logger.info(f"New task assigned: {task.title}")
        logger.info(f"AI provider: {name}")
        logger.info(
            f"List: {task_list.name if task_list else None}, Repo: {repository or 'none'}"
        )

        project_path = self.project_paths.resolve(task_list.id if task_list else None)
        workspace_error = None
        if repository:
            repo = self.repos.get_repo(repository)
            if repo:
                project_path = repo.path
                try:
                    branch = self.repos.create_task_branch(repo.path, task.id)
                    logger.info(f"Working on branch {branch}")
                except GitError as e:
                    logger.warning(f"Could not create task branch, staying on {repo.branch}: {e}")
            else:
                workspace_error = f"Failed to set up repository: {repository}"

        if not project_path and not workspace_error:
            logger.warning(f"No project path, {name} will work without file context")

        session = self.store.create(
            task_id=task.id,
            title=task.title,
            description=task.description or "",
            project_path=project_path,
            provider=provider,
            metadata={
                "listId": task_list.id if task_list else None,
                "listName": task_list.name if task_list else None,
                "repository": repository,
                "mcpToken": payload.mcp.access_token if payload.mcp else None,
                "aiAgent": agent.model_dump(by_alias=True, exclude_none=True)
                if agent
                else None,
            },
        )
        session = self._mark_running(session)

        if workspace_error:
            self._fail(session, workspace_error)
            return

        self.callbacks.notify_started(
            task.id, session.id, f"Starting work on: {task.title} (using {name})"
        )

        executor = self.router.get_executor(provider)
        if not executor.check_available():
            self._fail(session, f"{name} is not available. Please check configuration.")
            return

        context = self._build_context(payload)
        self._run_attempt(
            session,
            provider,
            executor,
            lambda on_progress: executor.start_session(session, None, context, on_progress),
        )

    def _handle_comment_created(self, payload: WebhookPayload) -> None:
        task = payload.task
        session = self.store.get_by_task_id(task.id)
        if session is None:
            logger.info(f"No session found for task {task.id}, treating comment as assignment")
            self._start_task(payload)
            return

        comment = payload.comment.text if payload.comment else ""
        if not comment:
            logger.warning(f"Comment event for task {task.id} carries no text, ignoring")
            return
        logger.info(f"Comment received on task {task.id}: {comment[:50]}")

        provider = session.provider
        if provider == Provider.UNKNOWN and payload.ai_agent:
            provider = detect_provider(payload.ai_agent.email, payload.ai_agent.type)
        name = provider_name(provider)
        executor = self.router.get_executor(provider)

        self.store.increment_message_count(task.id)
        session = self._mark_running(session)

        if not executor.check_available():
            self._fail(session, f"{name} is not available. Please check configuration.")
            return

        context = self._build_context(payload)
        try:
            self._run_attempt(
                session,
                provider,
                executor,
                lambda on_progress: executor.resume_session(
                    session, comment, context, on_progress
                ),
            )
        except CannotResumeError as e:
            logger.info(f"{e}; starting a fresh session for task {task.id}")
            self.store.delete(task.id)
            self._start_task(payload)

    def _mark_running(self, session: TaskSession) -> TaskSession:
        updated = self.store.update(
            session.task_id, status=SessionStatus.RUNNING, last_activity=utcnow()
        )
        return updated or session

    def _build_context(self, payload: WebhookPayload) -> TaskContext:
        mcp_token = payload.mcp.access_token if payload.mcp else None
        if not mcp_token:
            mcp_token = self.store.get_mcp_token(payload.task.id)
        logger.info(f"MCP token {'provided' if mcp_token else 'not provided'}")

        model = payload.ai_agent.model if payload.ai_agent else None
        if model:
            logger.info(f"Model preference: {model}")

        return TaskContext(
            comments=[comment.to_context() for comment in payload.comments],
            repository=payload.task_list.github_repository_id if payload.task_list else None,
            mcp_token=mcp_token,
            model=model,
        )

    def _run_attempt(
        self,
        session: TaskSession,
        provider: Provider,
        executor: Executor,
        run: Callable[[Callable[[str], None]], ExecutionResult],
    ) -> None:
        """Execute one provider call and dispatch its outcome.

        Raises:
            CannotResumeError: Passed through so the caller can start fresh
        """
        name = provider_name(provider)

        def on_progress(message: str) -> None:
            self.callbacks.notify_progress(session.task_id, session.id, message)

        try:
            result = run(on_progress)
            if result.session_id:
                self.store.set_provider_session_id(session.task_id, result.session_id)
            self._dispatch(session, name, executor, result)
        except CannotResumeError:
            raise
        except Exception as e:
            logger.exception(f"{name} execution failed for task {session.task_id}")
            self._fail(session, str(e) or type(e).__name__)

    def _dispatch(
        self,
        session: TaskSession,
        name: str,
        executor: Executor,
        result: ExecutionResult,
    ) -> None:
        """Map an execution result to the next session status and callback."""
        parsed = executor.parse_output(result.stdout)

        pr_url = parsed.pr_url or result.pr_url
        if not pr_url and isinstance(executor, WorkspaceChangeCapture):
            pr_url = executor.extract_pr_url(result.stdout)
        files = list(dict.fromkeys([*parsed.files, *result.modified_files]))

        if not result.succeeded:
            if result.timed_out:
                reason = TIMEOUT_MESSAGES.get(result.timeout_reason or "", "timed out")
                message = f"{name} timed out: {reason}"
            else:
                message = parsed.error or f"{name} exited with code {result.exit_code}"
            self._set_status(session, SessionStatus.ERROR)
            self.callbacks.notify_error(
                session.task_id, session.id, message, result.stderr or None
            )
        elif "?" in result.stdout and not pr_url:
            self._set_status(session, SessionStatus.WAITING_INPUT)
            self.callbacks.notify_waiting_input(
                session.task_id,
                session.id,
                parsed.question or parsed.summary or "Need your input to continue",
                files=files,
                diff=result.diff,
                pr_url=pr_url,
            )
        else:
            self._set_status(session, SessionStatus.COMPLETED)
            self.callbacks.notify_completed(
                session.task_id,
                session.id,
                summary=parsed.summary,
                files=files,
                pr_url=pr_url,
                diff=result.diff,
            )

    def _set_status(self, session: TaskSession, status: SessionStatus) -> None:
        self.store.update(session.task_id, status=status, last_activity=utcnow())
        logger.info(f"Task {session.task_id} is now {status.value}")

    def _fail(self, session: TaskSession, message: str) -> None:
        logger.error(f"Task {session.task_id} failed: {message}")
        self._set_status(session, SessionStatus.ERROR)
        self.callbacks.notify_error(session.task_id, session.id, message)

    def delete_session(self, task_id: str) -> TaskSession:
        """Forcibly remove a task's session.

        Returns:
            The session as it was before deletion

        Raises:
            NotFoundError: If the task has no session
        """
        session = self.store.get_by_task_id(task_id)
        if session is None:
            raise NotFoundError(f"Session for task {task_id} not found")

        logger.info(f"Manually deleting session for task {task_id} (was {session.status.value})")
        self.store.delete(task_id)
        return session

    def reset_stuck_sessions(self, older_than: timedelta = STUCK_AFTER) -> list[str]:
        """Mark sessions running longer than ``older_than`` as interrupted."""
        return [session.task_id for session in self.store.reset_stuck(older_than)]

    def health(self) -> dict[str, Any]:
        providers = self.router.availability()
        with self._executing_lock:
            executing = len(self._executing)
        return {
            "status": "healthy" if any(providers.values()) else "degraded",
            "providers": providers,
            "activeSessions": len(self.store.list_active()),
            "executing": executing,
        }

    def close(self) -> None:
        """Close outbound clients and database connections."""
        self.callbacks.close()
        self.router.close()
        self.store.database.close()
