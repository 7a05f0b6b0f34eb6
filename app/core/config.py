"""Application configuration."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

_sessions_dir = os.getenv("SESSIONS_DIR", "/app/persistent/sessions")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Environment
    env: str = os.getenv("APP_ENV", "development")
    api_secret_key: str = os.getenv("API_SECRET_KEY", "dev-secret-key")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3001"))

    # Webhooks
    webhook_secret: str | None = os.getenv("ASTRID_WEBHOOK_SECRET")
    callback_url: str | None = os.getenv("ASTRID_CALLBACK_URL")

    # Session storage
    sessions_dir: str = _sessions_dir
    database_url: str = os.getenv(
        "SESSION_DATABASE_URL", f"sqlite:///{_sessions_dir}/sessions.db"
    )
    session_encryption_key: str | None = os.getenv("SESSION_ENCRYPTION_KEY")
    stale_session_minutes: int = int(os.getenv("STALE_SESSION_MINUTES", "30"))
    session_max_age_hours: int = int(os.getenv("SESSION_MAX_AGE_HOURS", "24"))

    # Repositories
    repos_dir: str = os.getenv("REPOS_DIR", "/app/persistent/repos")
    git_remote_base: str = os.getenv("GIT_REMOTE_BASE", "https://github.com")
    github_token: str | None = os.getenv("GH_TOKEN") or os.getenv("GITHUB_TOKEN")
    clone_depth: int = int(os.getenv("GIT_CLONE_DEPTH", "1"))
    clone_timeout: int = int(os.getenv("GIT_CLONE_TIMEOUT", "300"))
    default_project_path: str | None = os.getenv("DEFAULT_PROJECT_PATH")
    project_map_path: str | None = os.getenv("PROJECT_MAP_PATH")

    # Claude Code CLI
    claude_model: str = os.getenv("CLAUDE_MODEL", "opus")
    claude_max_turns: int = int(os.getenv("CLAUDE_MAX_TURNS", "10"))
    claude_config_dir: str = os.getenv("CLAUDE_CONFIG_DIR", "/app/persistent/.claude")

    # Timeouts (in seconds)
    claude_timeout: int = int(os.getenv("CLAUDE_TIMEOUT", "900"))  # 15 minutes
    claude_initial_timeout: int = int(os.getenv("CLAUDE_INITIAL_TIMEOUT", "600"))
    claude_stall_timeout: int = int(os.getenv("CLAUDE_STALL_TIMEOUT", "600"))
    progress_interval: int = int(os.getenv("PROGRESS_INTERVAL", "30"))

    # OpenAI
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o")
    openai_max_iterations: int = int(os.getenv("OPENAI_MAX_ITERATIONS", "50"))

    # Gemini
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-pro")
    gemini_max_iterations: int = int(os.getenv("GEMINI_MAX_ITERATIONS", "50"))


settings = Settings()
