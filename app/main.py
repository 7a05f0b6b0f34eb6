"""FastAPI application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI

from app.api.sessions import router as sessions_router
from app.api.webhooks import router as webhooks_router
from app.core.config import Settings, settings
from app.core.database import Database
from app.executors import ClaudeExecutor, ExecutorRouter, GeminiExecutor, OpenAIExecutor
from app.services import CallbackClient, RepositoryManager, SessionStore
from app.services.orchestrator import Orchestrator, ProjectPathResolver

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_orchestrator(config: Settings) -> Orchestrator:
    """Wire the orchestrator and its collaborators from settings."""
    store = SessionStore(
        Database(config.database_url, env=config.env),
        encryption_key=config.session_encryption_key,
    )
    repos = RepositoryManager(
        config.repos_dir,
        github_token=config.github_token,
        remote_base=config.git_remote_base,
        clone_depth=config.clone_depth,
        clone_timeout=config.clone_timeout,
    )
    router = ExecutorRouter(
        claude=ClaudeExecutor(
            repos,
            sessions_dir=config.sessions_dir,
            model=config.claude_model,
            max_turns=config.claude_max_turns,
            timeout=config.claude_timeout,
            initial_timeout=config.claude_initial_timeout,
            stall_timeout=config.claude_stall_timeout,
            progress_interval=config.progress_interval,
            config_dir=config.claude_config_dir,
            mcp_api_url=config.callback_url,
        ),
        openai=OpenAIExecutor(
            config.openai_api_key,
            config.openai_model,
            repos,
            max_iterations=config.openai_max_iterations,
            progress_interval=config.progress_interval,
        ),
        gemini=GeminiExecutor(
            config.gemini_api_key,
            config.gemini_model,
            repos,
            max_iterations=config.gemini_max_iterations,
            progress_interval=config.progress_interval,
        ),
    )
    return Orchestrator(
        store=store,
        repos=repos,
        router=router,
        callbacks=CallbackClient(config.callback_url, config.webhook_secret),
        project_paths=ProjectPathResolver(
            config.default_project_path, config.project_map_path
        ),
        stale_after=timedelta(minutes=config.stale_session_minutes),
    )


def create_app(
    orchestrator: Orchestrator | None = None,
    webhook_secret: str | None = None,
    api_secret_key: str | None = None,
) -> FastAPI:
    """Create the application.

    Args:
        orchestrator: Pre-built orchestrator (built from settings on startup if None)
        webhook_secret: Inbound signing secret (defaults to settings)
        api_secret_key: Key guarding operational endpoints (defaults to settings)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            app.state.orchestrator = build_orchestrator(settings)

        store = app.state.orchestrator.store
        store.load()
        interrupted = store.recover_on_startup()
        if interrupted:
            logger.warning(
                f"Recovered {len(interrupted)} interrupted sessions: "
                f"{', '.join(s.task_id for s in interrupted)}"
            )
        store.cleanup_expired(timedelta(hours=settings.session_max_age_hours))

        providers = app.state.orchestrator.router.availability()
        logger.info(f"Provider availability: {providers}")
        if not any(providers.values()):
            logger.warning("No AI providers available")
        yield
        app.state.orchestrator.close()

    app = FastAPI(
        title="Code Remote Server",
        description="Receives task webhooks and runs AI coding agents against repositories",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.webhook_secret = (
        webhook_secret if webhook_secret is not None else settings.webhook_secret
    )
    app.state.api_secret_key = (
        api_secret_key if api_secret_key is not None else settings.api_secret_key
    )

    app.include_router(webhooks_router, tags=["webhooks"])
    app.include_router(sessions_router, tags=["sessions"])

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        health = app.state.orchestrator.health()
        health["timestamp"] = datetime.now(timezone.utc).isoformat()
        return health

    return app


app = create_app()
