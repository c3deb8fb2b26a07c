from __future__ import annotations

from .types import AIProvider


class AIRouterError(Exception):
    """Base class for provider routing failures."""


class ProviderNotConfiguredError(AIRouterError):
    """Raised when a provider has no credential and therefore no handle."""

    def __init__(self, provider: AIProvider | str, detail: str | None = None) -> None:
        self.provider = provider
        message = f"Provider {provider} not configured"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProviderExecutionError(AIRouterError):
    """Raised when a live call to a configured provider fails."""

    def __init__(self, provider: AIProvider | str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        # Providers tried before giving up; set by the fallback chain.
        self.attempts = 1
        super().__init__(f"Provider {provider} failed: {detail}")


class ProviderTimeoutError(ProviderExecutionError):
    def __init__(self, provider: AIProvider | str, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(provider, f"timed out after {timeout_s:g}s")


__all__ = [
    "AIRouterError",
    "ProviderNotConfiguredError",
    "ProviderExecutionError",
    "ProviderTimeoutError",
]
