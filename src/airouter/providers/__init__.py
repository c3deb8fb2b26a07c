import logging
import os
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List

import httpx

from ..errors import ProviderNotConfiguredError
from ..types import AIProvider, ProviderChatResponse

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7
HTTP_TIMEOUT_S = 60.0


@dataclass(frozen=True)
class ProviderConfig:
    provider: AIProvider
    api_key: str = field(repr=False)
    model: str
    base_url: str | None = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE


@dataclass(frozen=True)
class ProviderEnv:
    """Where a provider's credential and defaults come from."""

    key_env: str
    model_env: str
    default_model: str
    default_base_url: str | None = None
    base_url_env: str | None = None


# Registration order; every AIProvider member must appear here.
PROVIDER_ENV: Dict[AIProvider, ProviderEnv] = {
    AIProvider.OPENAI: ProviderEnv(
        key_env="OPENAI_KEY",
        model_env="OPENAI_MODEL",
        default_model="gpt-4o-mini",
        default_base_url="https://api.openai.com/v1",
        base_url_env="OPENAI_URL",
    ),
    AIProvider.ANTHROPIC: ProviderEnv(
        key_env="ANTHROPIC_API_KEY",
        model_env="ANTHROPIC_MODEL",
        default_model="claude-3-5-sonnet-20241022",
        default_base_url="https://api.anthropic.com",
    ),
    AIProvider.GEMINI: ProviderEnv(
        key_env="GEMINI_API_KEY",
        model_env="GEMINI_MODEL",
        default_model="gemini-1.5-pro",
        default_base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
    ),
    AIProvider.MISTRAL: ProviderEnv(
        key_env="MISTRAL_API_KEY",
        model_env="MISTRAL_MODEL",
        default_model="mistral-large-latest",
        default_base_url="https://api.mistral.ai/v1",
    ),
    AIProvider.COHERE: ProviderEnv(
        key_env="COHERE_API_KEY",
        model_env="COHERE_MODEL",
        default_model="command-r-plus",
        default_base_url="https://api.cohere.ai/v1",
    ),
}

# Providers whose API shape needs their own client instead of the OpenAI-compatible adapter.
BESPOKE_PROVIDERS: frozenset[AIProvider] = frozenset({AIProvider.ANTHROPIC})


class BaseProvider:
    def __init__(self, config: ProviderConfig, *, timeout: float = HTTP_TIMEOUT_S):
        self.config = config
        self.model = config.model
        self._timeout = timeout
        self._http: httpx.AsyncClient | None = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        client = self._http
        self._http = None
        if client is not None and not client.is_closed:
            await client.aclose()

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **options: Any,
    ) -> ProviderChatResponse:
        raise NotImplementedError

    def chat_stream(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **options: Any,
    ) -> AsyncIterator[str]:
        raise NotImplementedError


class DummyProvider(BaseProvider):
    """Offline stand-in that echoes the last user message."""

    @staticmethod
    def _reply(messages: List[dict[str, Any]]) -> str:
        last_user = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"),
            "ping",
        )
        return f"dummy:{last_user}"

    async def chat(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **options: Any,
    ) -> ProviderChatResponse:
        _ = options
        return ProviderChatResponse(
            model=model or "dummy",
            content=self._reply(messages),
            finish_reason="stop",
        )

    async def chat_stream(
        self,
        model: str,
        messages: List[dict[str, Any]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **options: Any,
    ) -> AsyncIterator[str]:
        _ = options
        words = self._reply(messages).split(" ")
        for position, word in enumerate(words):
            yield word if position == len(words) - 1 else f"{word} "


from .anthropic import AnthropicProvider  # noqa: E402
from .openai import OpenAICompatProvider  # noqa: E402


class ProviderRegistry:
    """Read-only provider configs and handles, built once at startup."""

    def __init__(
        self,
        configs: Mapping[AIProvider, ProviderConfig],
        adapters: Mapping[AIProvider, BaseProvider],
        bespoke: Mapping[AIProvider, BaseProvider] | None = None,
    ):
        self._configs = MappingProxyType(dict(configs))
        self._adapters = MappingProxyType(dict(adapters))
        self._bespoke = MappingProxyType(dict(bespoke or {}))

    @classmethod
    def initialize(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        use_dummy: bool = False,
    ) -> "ProviderRegistry":
        env = os.environ if environ is None else environ
        configs: dict[AIProvider, ProviderConfig] = {}
        adapters: dict[AIProvider, BaseProvider] = {}
        bespoke: dict[AIProvider, BaseProvider] = {}
        for provider, spec in PROVIDER_ENV.items():
            api_key = (env.get(spec.key_env) or "").strip()
            if not api_key:
                if not use_dummy:
                    continue
                api_key = "dummy"
            base_url = spec.default_base_url
            if spec.base_url_env:
                override = (env.get(spec.base_url_env) or "").strip()
                if override:
                    base_url = override
            config = ProviderConfig(
                provider=provider,
                api_key=api_key,
                model=(env.get(spec.model_env) or "").strip() or spec.default_model,
                base_url=base_url,
            )
            configs[provider] = config
            if provider in BESPOKE_PROVIDERS:
                bespoke[provider] = DummyProvider(config) if use_dummy else AnthropicProvider(config)
            else:
                adapters[provider] = DummyProvider(config) if use_dummy else OpenAICompatProvider(config)
        registry = cls(configs, adapters, bespoke)
        logger.info(
            "providers.initialized count=%d providers=%s",
            len(configs),
            ",".join(p.value for p in configs),
        )
        return registry

    @property
    def configs(self) -> Mapping[AIProvider, ProviderConfig]:
        return self._configs

    @property
    def providers(self) -> tuple[AIProvider, ...]:
        return tuple(self._configs)

    def is_configured(self, provider: AIProvider) -> bool:
        return provider in self._configs

    def config(self, provider: AIProvider) -> ProviderConfig:
        try:
            return self._configs[provider]
        except KeyError:
            raise ProviderNotConfiguredError(provider) from None

    def adapter(self, provider: AIProvider) -> BaseProvider:
        try:
            return self._adapters[provider]
        except KeyError:
            raise ProviderNotConfiguredError(provider, "no adapter handle") from None

    def bespoke(self, provider: AIProvider) -> BaseProvider:
        try:
            return self._bespoke[provider]
        except KeyError:
            raise ProviderNotConfiguredError(provider, "client not configured") from None

    async def aclose(self) -> None:
        for handle in [*self._adapters.values(), *self._bespoke.values()]:
            await handle.aclose()


__all__ = [
    "BESPOKE_PROVIDERS",
    "PROVIDER_ENV",
    "ProviderConfig",
    "ProviderEnv",
    "BaseProvider",
    "DummyProvider",
    "OpenAICompatProvider",
    "AnthropicProvider",
    "ProviderRegistry",
]
