import pytest

from src.airouter.capabilities import (
    CAPABILITY_OVERLAYS,
    PROVIDER_MODELS,
    CapabilityCatalog,
    CapabilityOverride,
)
from src.airouter.errors import ProviderNotConfiguredError
from src.airouter.providers import PROVIDER_ENV, ProviderConfig, ProviderRegistry
from src.airouter.types import AIProvider


def make_catalog(*providers: AIProvider, overrides=None) -> CapabilityCatalog:
    configs = {p: ProviderConfig(provider=p, api_key="k", model="m") for p in providers}
    return CapabilityCatalog(ProviderRegistry(configs, {}), overrides)


@pytest.mark.parametrize(
    ("provider", "features", "max_tokens", "tools", "cost"),
    [
        (
            AIProvider.OPENAI,
            ["text_generation", "conversation", "function_calling", "json_mode", "vision"],
            2000,
            True,
            0.002,
        ),
        (
            AIProvider.ANTHROPIC,
            ["text_generation", "conversation", "function_calling", "vision", "large_context"],
            8000,
            True,
            0.003,
        ),
        (
            AIProvider.GEMINI,
            ["text_generation", "conversation", "function_calling", "vision", "large_context"],
            1000000,
            True,
            0.001,
        ),
        (
            AIProvider.MISTRAL,
            ["text_generation", "conversation", "function_calling"],
            2000,
            True,
            0.002,
        ),
        (
            AIProvider.COHERE,
            ["text_generation", "conversation", "semantic_search", "classification"],
            2000,
            False,
            0.0015,
        ),
    ],
)
def test_capabilities_per_provider(provider, features, max_tokens, tools, cost) -> None:
    capability = make_catalog(*AIProvider).get_capabilities(provider)

    assert capability.supported_features == features
    assert capability.max_tokens == max_tokens
    assert capability.supports_streaming is True
    assert capability.supports_tools is tools
    assert capability.cost_per_1k_tokens == cost


def test_every_provider_has_overlay_models_and_env() -> None:
    assert set(CAPABILITY_OVERLAYS) == set(AIProvider)
    assert set(PROVIDER_MODELS) == set(AIProvider)
    assert list(PROVIDER_ENV) == list(AIProvider)


def test_unconfigured_provider_raises() -> None:
    catalog = make_catalog(AIProvider.OPENAI)

    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        catalog.get_capabilities(AIProvider.GEMINI)

    assert exc_info.value.provider is AIProvider.GEMINI
    assert "gemini" in str(exc_info.value)


def test_default_max_tokens_comes_from_config() -> None:
    configs = {
        AIProvider.MISTRAL: ProviderConfig(provider=AIProvider.MISTRAL, api_key="k", model="m", max_tokens=4096)
    }
    catalog = CapabilityCatalog(ProviderRegistry(configs, {}))

    assert catalog.get_capabilities(AIProvider.MISTRAL).max_tokens == 4096


def test_overrides_replace_only_listed_fields() -> None:
    catalog = make_catalog(
        AIProvider.ANTHROPIC,
        AIProvider.OPENAI,
        overrides={
            AIProvider.ANTHROPIC: CapabilityOverride(max_tokens=200000),
            AIProvider.OPENAI: CapabilityOverride(cost_per_1k_tokens=0.0006),
        },
    )

    anthropic = catalog.get_capabilities(AIProvider.ANTHROPIC)
    openai = catalog.get_capabilities(AIProvider.OPENAI)

    assert (anthropic.max_tokens, anthropic.cost_per_1k_tokens) == (200000, 0.003)
    assert (openai.max_tokens, openai.cost_per_1k_tokens) == (2000, 0.0006)


def test_models_are_static_lists() -> None:
    assert CapabilityCatalog.models(AIProvider.OPENAI) == ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"]
    assert CapabilityCatalog.models(AIProvider.GEMINI)[0] == "gemini-1.5-pro"
