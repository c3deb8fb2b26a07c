"""Static per-provider capability data.

``CAPABILITY_OVERLAYS`` is the only place capability differences between
providers are recorded. Prices and token ceilings are a snapshot of vendor
documentation; ``router.yaml`` may override them per provider without a code
change (see ``CapabilityOverride``).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .errors import ProviderNotConfiguredError
from .providers import ProviderRegistry
from .types import AIProvider, Capability

BASE_FEATURES: tuple[str, ...] = ("text_generation", "conversation")


@dataclass(frozen=True)
class CapabilityOverlay:
    features: tuple[str, ...]
    supports_tools: bool
    cost_per_1k_tokens: float
    max_tokens: int | None = None


@dataclass(frozen=True)
class CapabilityOverride:
    max_tokens: int | None = None
    cost_per_1k_tokens: float | None = None


CAPABILITY_OVERLAYS: dict[AIProvider, CapabilityOverlay] = {
    AIProvider.OPENAI: CapabilityOverlay(
        features=("function_calling", "json_mode", "vision"),
        supports_tools=True,
        cost_per_1k_tokens=0.002,
    ),
    AIProvider.ANTHROPIC: CapabilityOverlay(
        features=("function_calling", "vision", "large_context"),
        supports_tools=True,
        cost_per_1k_tokens=0.003,
        max_tokens=8000,
    ),
    AIProvider.GEMINI: CapabilityOverlay(
        features=("function_calling", "vision", "large_context"),
        supports_tools=True,
        cost_per_1k_tokens=0.001,
        max_tokens=1000000,
    ),
    AIProvider.MISTRAL: CapabilityOverlay(
        features=("function_calling",),
        supports_tools=True,
        cost_per_1k_tokens=0.002,
    ),
    AIProvider.COHERE: CapabilityOverlay(
        features=("semantic_search", "classification"),
        supports_tools=False,
        cost_per_1k_tokens=0.0015,
    ),
}

PROVIDER_MODELS: dict[AIProvider, tuple[str, ...]] = {
    AIProvider.OPENAI: ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
    AIProvider.ANTHROPIC: (
        "claude-3-5-sonnet-20241022",
        "claude-3-opus-20240229",
        "claude-3-haiku-20240307",
    ),
    AIProvider.GEMINI: ("gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.0-pro"),
    AIProvider.MISTRAL: ("mistral-large-latest", "mistral-medium-latest", "mistral-small-latest"),
    AIProvider.COHERE: ("command-r-plus", "command-r", "command-light"),
}


class CapabilityCatalog:
    def __init__(
        self,
        registry: ProviderRegistry,
        overrides: Mapping[AIProvider, CapabilityOverride] | None = None,
    ):
        self.registry = registry
        self.overrides = dict(overrides or {})

    def get_capabilities(self, provider: AIProvider) -> Capability:
        if not self.registry.is_configured(provider):
            raise ProviderNotConfiguredError(provider)
        config = self.registry.config(provider)
        overlay = CAPABILITY_OVERLAYS[provider]
        max_tokens = overlay.max_tokens if overlay.max_tokens is not None else config.max_tokens
        cost = overlay.cost_per_1k_tokens
        override = self.overrides.get(provider)
        if override is not None:
            if override.max_tokens is not None:
                max_tokens = override.max_tokens
            if override.cost_per_1k_tokens is not None:
                cost = override.cost_per_1k_tokens
        return Capability(
            supported_features=[*BASE_FEATURES, *overlay.features],
            max_tokens=max_tokens,
            supports_streaming=True,
            supports_tools=overlay.supports_tools,
            cost_per_1k_tokens=cost,
        )

    @staticmethod
    def models(provider: AIProvider) -> list[str]:
        return list(PROVIDER_MODELS.get(provider, ()))
