"""Provider detection and executor selection."""

import logging

from app.executors.base import Executor
from app.models import Provider

logger = logging.getLogger(__name__)

PROVIDER_KEYWORDS: list[tuple[Provider, tuple[str, ...]]] = [
    (Provider.CLAUDE, ("claude",)),
    (Provider.OPENAI, ("openai", "codex", "gpt")),
    (Provider.GEMINI, ("gemini", "google")),
]

PROVIDER_NAMES = {
    Provider.CLAUDE: "Claude Code",
    Provider.OPENAI: "OpenAI",
    Provider.GEMINI: "Gemini",
    Provider.UNKNOWN: "Claude Code",
}


def detect_provider(email: str | None = None, agent_type: str | None = None) -> Provider:
    """Classify an agent identity by keywords in its email and type.

    Falls back to Claude, the most capable provider, when nothing matches.
    """
    haystack = f"{email or ''} {agent_type or ''}".lower()
    for provider, keywords in PROVIDER_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return provider
    return Provider.CLAUDE


def provider_name(provider: Provider) -> str:
    return PROVIDER_NAMES[provider]


class ExecutorRouter:
    """Holds one executor per provider."""

    def __init__(self, claude: Executor, openai: Executor, gemini: Executor):
        self._executors: dict[Provider, Executor] = {
            Provider.CLAUDE: claude,
            Provider.OPENAI: openai,
            Provider.GEMINI: gemini,
            Provider.UNKNOWN: claude,
        }

    def get_executor(self, provider: Provider) -> Executor:
        return self._executors[provider]

    def availability(self) -> dict[str, bool]:
        """Availability of each concrete provider, keyed by provider value."""
        status = {}
        for provider in (Provider.CLAUDE, Provider.OPENAI, Provider.GEMINI):
            try:
                status[provider.value] = self._executors[provider].check_available()
            except Exception as e:
                logger.warning(f"Availability check for {provider.value} failed: {e}")
                status[provider.value] = False
        return status

    def close(self) -> None:
        for executor in {id(e): e for e in self._executors.values()}.values():
            executor.close()
