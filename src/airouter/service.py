import asyncio
import contextlib
import logging
import math
import time
from collections.abc import AsyncIterator, Awaitable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from .capabilities import CapabilityCatalog
from .errors import (
    AIRouterError,
    ProviderExecutionError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
)
from .metrics import AttemptRecord, MetricsLogger, UsageTracker
from .providers import BESPOKE_PROVIDERS, BaseProvider, ProviderRegistry
from .router import ProviderSelector, RouterSettings
from .types import (
    AIProvider,
    Capability,
    ChatMessage,
    ComparisonReport,
    ComparisonResult,
    ComparisonSummary,
    GenerationParams,
    ModelInfo,
    ProviderStats,
    ProviderStatus,
    RoutingParams,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STREAM_ERROR_MARKER = "Error: Unable to generate response"
PROBE_PROMPT = "Hello"
BESPOKE_DEFAULT_MAX_TOKENS = 2000
BESPOKE_DEFAULT_TEMPERATURE = 0.7

_ADAPTER_ROLES = {"system": "system", "assistant": "assistant", "user": "user"}


def to_adapter_messages(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
    return [
        {"role": _ADAPTER_ROLES.get(message.role, "user"), "content": message.content}
        for message in messages
    ]


def to_bespoke_messages(messages: Sequence[ChatMessage]) -> tuple[str | None, list[dict[str, Any]]]:
    system = next((message.content for message in messages if message.role == "system"), None)
    mapped = [
        {
            "role": "assistant" if message.role == "assistant" else "user",
            "content": message.content,
        }
        for message in messages
        if message.role != "system"
    ]
    return system, mapped


def estimate_tokens(messages: Sequence[ChatMessage], response: str) -> int:
    input_text = " ".join(message.content for message in messages)
    return math.ceil(len(input_text + response) / 4)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CompletionOutcome:
    content: str
    provider: AIProvider
    attempts: int


class MultiProviderService:
    """Selects a provider, executes against it and falls back on failure.

    One instance serves every request. The registry is read-only after startup,
    so concurrent calls share it without locking; each call runs its own
    selection, attempts and fallback chain.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: RouterSettings | None = None,
        *,
        metrics: MetricsLogger | None = None,
        usage: UsageTracker | None = None,
    ):
        self.registry = registry
        self.settings = settings or RouterSettings()
        self.selector = ProviderSelector(registry, self.settings)
        self.catalog = CapabilityCatalog(registry, self.settings.capabilities)
        self.metrics = metrics
        self.usage = usage or UsageTracker()

    # -- execution -----------------------------------------------------------

    def _adapter_params(
        self, provider: AIProvider, params: GenerationParams | None
    ) -> tuple[str, float, int]:
        config = self.registry.config(provider)
        params = params or GenerationParams()
        return (
            params.model or config.model,
            params.temperature if params.temperature is not None else config.temperature,
            params.max_tokens if params.max_tokens is not None else config.max_tokens,
        )

    def _bespoke_params(
        self, provider: AIProvider, params: GenerationParams | None
    ) -> tuple[str, float, int]:
        config = self.registry.config(provider)
        params = params or GenerationParams()
        return (
            params.model or config.model,
            params.temperature if params.temperature is not None else BESPOKE_DEFAULT_TEMPERATURE,
            params.max_tokens if params.max_tokens is not None else BESPOKE_DEFAULT_MAX_TOKENS,
        )

    def _handle(self, provider: AIProvider) -> BaseProvider:
        if provider in BESPOKE_PROVIDERS:
            return self.registry.bespoke(provider)
        return self.registry.adapter(provider)

    async def _bounded(self, provider: AIProvider, awaitable: Awaitable[T]) -> T:
        timeout = self.settings.attempt_timeout_s
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(provider, timeout) from None

    async def _record(
        self,
        provider: AIProvider,
        kind: str,
        start: float,
        *,
        ok: bool,
        model: str | None = None,
        error: str | None = None,
        usage_prompt: int = 0,
        usage_completion: int = 0,
    ) -> None:
        record = AttemptRecord(
            provider=provider,
            kind=kind,
            ok=ok,
            latency_ms=_elapsed_ms(start),
            model=model,
            error=error,
            usage_prompt=usage_prompt,
            usage_completion=usage_completion,
        )
        self.usage.observe(record)
        if self.metrics is not None:
            await self.metrics.write(record)

    async def execute(
        self,
        provider: AIProvider,
        messages: Sequence[ChatMessage],
        params: GenerationParams | None = None,
        *,
        kind: str = "chat",
    ) -> str:
        """Run one request against one provider, without fallback."""
        handle = self._handle(provider)
        start = time.perf_counter()
        try:
            if provider in BESPOKE_PROVIDERS:
                system, mapped = to_bespoke_messages(messages)
                model, temperature, max_tokens = self._bespoke_params(provider, params)
                call = handle.chat(model, mapped, temperature, max_tokens, system=system)
            else:
                model, temperature, max_tokens = self._adapter_params(provider, params)
                call = handle.chat(model, to_adapter_messages(messages), temperature, max_tokens)
            response = await self._bounded(provider, call)
        except ProviderExecutionError as exc:
            await self._record(provider, kind, start, ok=False, error=exc.detail)
            raise
        except Exception as exc:
            detail = str(exc) or type(exc).__name__
            await self._record(provider, kind, start, ok=False, error=detail)
            raise ProviderExecutionError(provider, detail) from exc
        await self._record(
            provider,
            kind,
            start,
            ok=True,
            model=response.model,
            usage_prompt=response.usage_prompt_tokens,
            usage_completion=response.usage_completion_tokens,
        )
        return response.content or ""

    async def _stream_from(
        self,
        provider: AIProvider,
        messages: Sequence[ChatMessage],
        params: GenerationParams | None,
    ) -> AsyncIterator[str]:
        handle = self._handle(provider)
        if provider in BESPOKE_PROVIDERS:
            system, mapped = to_bespoke_messages(messages)
            model, temperature, max_tokens = self._bespoke_params(provider, params)
            stream = handle.chat_stream(model, mapped, temperature, max_tokens, system=system)
        else:
            model, temperature, max_tokens = self._adapter_params(provider, params)
            stream = handle.chat_stream(model, to_adapter_messages(messages), temperature, max_tokens)
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await self._bounded(provider, iterator.__anext__())
                except StopAsyncIteration:
                    return
                if not chunk:
                    continue
                yield chunk if isinstance(chunk, str) else str(chunk)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # -- orchestration -------------------------------------------------------

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        params: RoutingParams | None = None,
    ) -> CompletionOutcome:
        """Like ``chat_completion`` but also reports who answered and how many tried.

        On exhaustion the primary error is raised with ``attempts`` set to the
        number of providers actually called.
        """
        params = params or RoutingParams()
        provider = self.selector.select_provider(messages, params)
        try:
            content = await self.execute(provider, messages, params)
        except ProviderExecutionError as exc:
            logger.warning("provider.failed provider=%s detail=%s", provider.value, exc.detail)
            primary_error = exc
        else:
            return CompletionOutcome(content=content, provider=provider, attempts=1)

        attempted = {provider}
        for fallback in params.fallback_providers:
            if fallback in attempted or not self.registry.is_configured(fallback):
                continue
            attempted.add(fallback)
            logger.info("provider.fallback provider=%s", fallback.value)
            try:
                content = await self.execute(fallback, messages, params)
            except ProviderExecutionError as exc:
                logger.warning("provider.failed provider=%s detail=%s", fallback.value, exc.detail)
                continue
            return CompletionOutcome(content=content, provider=fallback, attempts=len(attempted))
        primary_error.attempts = len(attempted)
        raise primary_error

    async def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        params: RoutingParams | None = None,
    ) -> str:
        return (await self.complete(messages, params)).content

    async def stream_chat_completion(
        self,
        messages: Sequence[ChatMessage],
        params: RoutingParams | None = None,
    ) -> AsyncIterator[str]:
        params = params or RoutingParams()
        provider = self.selector.select_provider(messages, params)
        start = time.perf_counter()
        try:
            async with contextlib.aclosing(self._stream_from(provider, messages, params)) as chunks:
                async for chunk in chunks:
                    yield chunk
        except Exception as exc:
            detail = str(exc) or type(exc).__name__
            logger.error("stream.failed provider=%s detail=%s", provider.value, detail)
            # No call was made, so there is no attempt to count.
            if not isinstance(exc, ProviderNotConfiguredError):
                await self._record(provider, "stream", start, ok=False, error=detail)
        else:
            await self._record(provider, "stream", start, ok=True)
            return

        try:
            response = await self.chat_completion(messages, params)
        except Exception as exc:
            logger.error("stream.fallback_failed detail=%s", str(exc) or type(exc).__name__)
            yield STREAM_ERROR_MARKER
            return
        for word in response.split(" "):
            yield f"{word} "
            await asyncio.sleep(self.settings.stream_word_delay_s)

    async def generate_text(self, prompt: str, params: RoutingParams | None = None) -> str:
        return await self.chat_completion([ChatMessage(role="user", content=prompt)], params)

    # -- metadata ------------------------------------------------------------

    def get_provider_capabilities(self, provider: AIProvider) -> Capability:
        return self.catalog.get_capabilities(provider)

    def list_models(self, provider: AIProvider | None = None) -> list[ModelInfo]:
        candidates = [provider] if provider is not None else list(AIProvider)
        models: list[ModelInfo] = []
        for candidate in candidates:
            try:
                capabilities = self.catalog.get_capabilities(candidate)
            except AIRouterError:
                continue
            models.append(
                ModelInfo(
                    provider=candidate,
                    models=self.catalog.models(candidate),
                    capabilities=capabilities.supported_features,
                    max_tokens=capabilities.max_tokens,
                    cost_per_1k_tokens=capabilities.cost_per_1k_tokens,
                )
            )
        return models

    # -- health --------------------------------------------------------------

    async def _probe(self, provider: AIProvider) -> str | None:
        try:
            await self.execute(
                provider,
                [ChatMessage(role="user", content=PROBE_PROMPT)],
                GenerationParams(max_tokens=self.settings.probe_max_tokens),
                kind="probe",
            )
        except AIRouterError as exc:
            return str(exc)
        return None

    async def _probe_all(self) -> dict[AIProvider, str | None]:
        providers = self.registry.providers
        outcomes = await asyncio.gather(*(self._probe(provider) for provider in providers))
        return dict(zip(providers, outcomes))

    async def get_available_providers(self) -> list[ProviderStatus]:
        outcomes = await self._probe_all()
        checked_at = _utc_now()
        return [
            ProviderStatus(
                provider=provider,
                model=self.registry.config(provider).model,
                status="available" if error is None else "error",
                error=error,
                last_checked=checked_at,
            )
            for provider, error in outcomes.items()
        ]

    def recommend_provider(self, health: Mapping[AIProvider, bool]) -> AIProvider:
        for provider in self.settings.recommendation_order:
            if health.get(provider) and self.registry.is_configured(provider):
                return provider
        return self.selector.default_provider()

    async def get_provider_stats(self) -> ProviderStats:
        outcomes = await self._probe_all()
        health = {provider: error is None for provider, error in outcomes.items()}
        return ProviderStats(
            total_providers=len(self.registry.providers),
            active_providers=sum(1 for healthy in health.values() if healthy),
            provider_health=health,
            recommended_provider=self.recommend_provider(health),
            usage_stats=self.usage.usage(),
            response_time_stats=self.usage.response_times(),
        )

    async def compare_providers(
        self,
        prompt: str,
        providers: Sequence[AIProvider],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> ComparisonReport:
        messages = [ChatMessage(role="user", content=prompt)]
        params = GenerationParams(max_tokens=max_tokens, temperature=temperature)
        started = time.perf_counter()
        results: list[ComparisonResult] = []
        for provider in providers:
            provider_started = time.perf_counter()
            try:
                response = await self.execute(provider, messages, params)
            except AIRouterError as exc:
                results.append(ComparisonResult(provider=provider, status="error", error=str(exc)))
                continue
            results.append(
                ComparisonResult(
                    provider=provider,
                    response=response,
                    execution_time_ms=int(_elapsed_ms(provider_started)),
                    tokens_used=estimate_tokens(messages, response),
                    status="success",
                )
            )
        successes = [result for result in results if result.status == "success"]
        average = (
            sum(result.execution_time_ms for result in successes) / len(successes)
            if successes
            else 0.0
        )
        return ComparisonReport(
            prompt=prompt,
            results=results,
            total_execution_time_ms=int(_elapsed_ms(started)),
            summary=ComparisonSummary(
                successful=len(successes),
                failed=len(results) - len(successes),
                average_execution_time_ms=average,
            ),
        )
