import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError

from .capabilities import CapabilityOverride
from .providers import ProviderRegistry
from .types import AIProvider, ChatMessage, RoutingParams

SETTINGS_FILENAME = "router.yaml"

CODE_PATTERN = re.compile(r"code|program|script|function|class|algorithm", re.IGNORECASE)
CREATIVE_PATTERN = re.compile(r"story|creative|poem|imagine|art", re.IGNORECASE)
ANALYSIS_PATTERN = re.compile(r"analyze|compare|explain|reasoning|logic", re.IGNORECASE)


@dataclass(frozen=True)
class SmartRoutingSettings:
    long_context: AIProvider = AIProvider.GEMINI
    creative: AIProvider = AIProvider.ANTHROPIC
    code: AIProvider = AIProvider.OPENAI
    analysis: AIProvider = AIProvider.ANTHROPIC
    long_context_chars: int = 10000
    long_context_messages: int = 20


@dataclass(frozen=True)
class RouterSettings:
    default_order: tuple[AIProvider, ...] = (
        AIProvider.OPENAI,
        AIProvider.ANTHROPIC,
        AIProvider.GEMINI,
        AIProvider.MISTRAL,
        AIProvider.COHERE,
    )
    fallback_default: AIProvider = AIProvider.OPENAI
    recommendation_order: tuple[AIProvider, ...] = (
        AIProvider.ANTHROPIC,
        AIProvider.OPENAI,
        AIProvider.GEMINI,
        AIProvider.MISTRAL,
        AIProvider.COHERE,
    )
    smart_routing: SmartRoutingSettings = field(default_factory=SmartRoutingSettings)
    attempt_timeout_s: float | None = None
    stream_word_delay_s: float = 0.05
    probe_max_tokens: int = 10
    capabilities: Dict[AIProvider, CapabilityOverride] = field(default_factory=dict)


class _SmartRoutingModel(BaseModel):
    long_context: AIProvider = AIProvider.GEMINI
    creative: AIProvider = AIProvider.ANTHROPIC
    code: AIProvider = AIProvider.OPENAI
    analysis: AIProvider = AIProvider.ANTHROPIC
    long_context_chars: PositiveInt = 10000
    long_context_messages: PositiveInt = 20

    model_config = ConfigDict(extra="forbid")


class _CapabilityOverrideModel(BaseModel):
    max_tokens: PositiveInt | None = None
    cost_per_1k_tokens: float | None = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


class _RouterModel(BaseModel):
    default_order: List[AIProvider] = Field(default_factory=lambda: list(RouterSettings.default_order))
    fallback_default: AIProvider = AIProvider.OPENAI
    recommendation_order: List[AIProvider] = Field(
        default_factory=lambda: list(RouterSettings.recommendation_order)
    )
    smart_routing: _SmartRoutingModel = Field(default_factory=_SmartRoutingModel)
    attempt_timeout_s: PositiveFloat | None = None
    stream_word_delay_s: float = Field(default=0.05, ge=0)
    probe_max_tokens: PositiveInt = 10
    capabilities: Dict[AIProvider, _CapabilityOverrideModel] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


def parse_settings(data: object) -> RouterSettings:
    try:
        parsed = _RouterModel.model_validate(data or {})
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problem = f"{location}: {error.get('msg', 'invalid value')}"
            if "input" in error and not isinstance(error["input"], (dict, list)):
                problem = f"{problem} (got {error['input']!r})"
            problems.append(problem)
        raise ValueError("; ".join(problems)) from exc
    smart = parsed.smart_routing
    return RouterSettings(
        default_order=tuple(parsed.default_order),
        fallback_default=parsed.fallback_default,
        recommendation_order=tuple(parsed.recommendation_order),
        smart_routing=SmartRoutingSettings(
            long_context=smart.long_context,
            creative=smart.creative,
            code=smart.code,
            analysis=smart.analysis,
            long_context_chars=int(smart.long_context_chars),
            long_context_messages=int(smart.long_context_messages),
        ),
        attempt_timeout_s=float(parsed.attempt_timeout_s) if parsed.attempt_timeout_s is not None else None,
        stream_word_delay_s=float(parsed.stream_word_delay_s),
        probe_max_tokens=int(parsed.probe_max_tokens),
        capabilities={
            provider: CapabilityOverride(
                max_tokens=override.max_tokens,
                cost_per_1k_tokens=override.cost_per_1k_tokens,
            )
            for provider, override in parsed.capabilities.items()
        },
    )


def load_settings(config_dir: str | None) -> RouterSettings:
    if not config_dir:
        return RouterSettings()
    path = os.path.join(config_dir, SETTINGS_FILENAME)
    if not os.path.exists(path):
        return RouterSettings()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return parse_settings(data)


class ProviderSelector:
    """Picks exactly one provider for a request; never an unconfigured one when any is configured."""

    def __init__(self, registry: ProviderRegistry, settings: RouterSettings | None = None):
        self.registry = registry
        self.settings = settings or RouterSettings()

    def default_provider(self) -> AIProvider:
        for provider in self.settings.default_order:
            if self.registry.is_configured(provider):
                return provider
        configured = self.registry.providers
        if configured:
            return configured[0]
        return self.settings.fallback_default

    def select_provider(
        self,
        messages: Sequence[ChatMessage],
        params: RoutingParams | None = None,
    ) -> AIProvider:
        if params is not None and params.provider is not None:
            if self.registry.is_configured(params.provider):
                return params.provider
        if params is not None and params.use_smart_routing:
            return self.smart_route(messages)
        return self.default_provider()

    def smart_route(self, messages: Sequence[ChatMessage]) -> AIProvider:
        rules = self.settings.smart_routing
        last_message = messages[-1].content if messages else ""
        last_message = last_message or ""
        long_context = (
            len(last_message) > rules.long_context_chars
            or len(messages) > rules.long_context_messages
        )
        code_request = CODE_PATTERN.search(last_message) is not None
        creative_request = CREATIVE_PATTERN.search(last_message) is not None
        analysis_request = ANALYSIS_PATTERN.search(last_message) is not None

        candidates = (
            (long_context, rules.long_context),
            (creative_request, rules.creative),
            (code_request, rules.code),
            (analysis_request, rules.analysis),
        )
        for matched, provider in candidates:
            if matched and self.registry.is_configured(provider):
                return provider
        return self.default_provider()
