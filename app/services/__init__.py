"""Business logic services."""

from .callbacks import CallbackClient
from .git import GitError, RepositoryManager
from .session_store import SessionStore

__all__ = ["CallbackClient", "GitError", "RepositoryManager", "SessionStore"]
