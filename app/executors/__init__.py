"""Provider executors."""

from .base import Executor, WorkspaceChangeCapture
from .claude import ClaudeExecutor
from .gemini import GeminiExecutor
from .openai import OpenAIExecutor
from .router import ExecutorRouter, detect_provider, provider_name

__all__ = [
    "ClaudeExecutor",
    "Executor",
    "ExecutorRouter",
    "GeminiExecutor",
    "OpenAIExecutor",
    "WorkspaceChangeCapture",
    "detect_provider",
    "provider_name",
]
