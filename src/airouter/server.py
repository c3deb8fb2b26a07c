import json
import logging
import os
import time
import uuid
from typing import Any, List, Optional

from typing_extensions import TypedDict

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .errors import ProviderExecutionError, ProviderNotConfiguredError
from .metrics import MetricsLogger
from .providers import ProviderRegistry
from .router import load_settings
from .service import MultiProviderService, estimate_tokens
from .types import (
    AIProvider,
    Capability,
    ChatMessage,
    ComparisonReport,
    ModelInfo,
    ProviderStats,
    ProviderStatus,
    RoutingParams,
)

logger = logging.getLogger(__name__)

_REPO_ROOT = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("AIROUTER_CONFIG_DIR", os.path.join(_REPO_ROOT, "config"))
METRICS_DIR = os.environ.get("AIROUTER_METRICS_DIR", os.path.join(_REPO_ROOT, "metrics"))

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
AUTO_SELECTED = "auto-selected"


class _HealthResponse(TypedDict):
    status: str
    providers: list[str]


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


USE_DUMMY: bool = _env_var_as_bool("AIROUTER_USE_DUMMY")
INBOUND_API_KEYS = frozenset(_parse_env_list(os.environ.get("AIROUTER_INBOUND_API_KEYS", "")))
API_KEY_HEADER = os.environ.get("AIROUTER_API_KEY_HEADER", "x-api-key")
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("AIROUTER_CORS_ALLOW_ORIGINS", ""))


class ChatBody(RoutingParams):
    messages: List[ChatMessage] = Field(min_length=1)


class GenerateBody(RoutingParams):
    prompt: str = Field(min_length=1)


class CompareBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1)
    providers: List[AIProvider] = Field(min_length=1)
    max_tokens: int = Field(default=1000, ge=1, le=32000)
    temperature: float = Field(default=0.7, ge=0, le=2)


class CompletionResponse(BaseModel):
    response: str
    provider: str
    model: str
    execution_time_ms: int
    tokens_used: int


settings = load_settings(CONFIG_DIR)
registry = ProviderRegistry.initialize(use_dummy=USE_DUMMY)
metrics = MetricsLogger(METRICS_DIR)
service = MultiProviderService(registry, settings, metrics=metrics)

app = FastAPI(title="airouter")

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("shutdown")
async def _close_providers() -> None:
    await metrics.flush()
    await registry.aclose()


def _require_api_key(req: Request) -> None:
    if not INBOUND_API_KEYS:
        logger.warning("auth.disabled reason=AIROUTER_INBOUND_API_KEYS unset")
        return
    candidate = req.headers.get(API_KEY_HEADER)
    if candidate is None:
        auth_header = req.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            candidate = auth_header[7:]
    if candidate and candidate in INBOUND_API_KEYS:
        return
    raise HTTPException(status_code=401, detail="missing or invalid api key")


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    attempts: int | None = None,
    detail: str | None = None,
) -> None:
    message = f"{event} req_id={req_id} provider={provider or AUTO_SELECTED}"
    if attempts is not None:
        message = f"{message} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _make_error_body(*, message: str, error_type: str, provider: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"message": message, "type": error_type}
    if provider is not None:
        payload["provider"] = provider
    return {"error": payload}


@app.exception_handler(ProviderNotConfiguredError)
async def _not_configured_handler(req: Request, exc: ProviderNotConfiguredError) -> JSONResponse:
    _ = req
    body = _make_error_body(
        message=str(exc), error_type="provider_not_configured", provider=str(exc.provider)
    )
    return JSONResponse(body, status_code=400)


@app.exception_handler(ProviderExecutionError)
async def _execution_handler(req: Request, exc: ProviderExecutionError) -> JSONResponse:
    _ = req
    body = _make_error_body(message=str(exc), error_type="provider_error", provider=str(exc.provider))
    return JSONResponse(body, status_code=502)


@app.get("/healthz")
async def healthz() -> _HealthResponse:
    return {"status": "ok", "providers": [provider.value for provider in registry.providers]}


@app.get("/metrics")
async def metrics_endpoint(req: Request) -> Response:
    _require_api_key(req)
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


api = APIRouter(prefix="/ai/multi-provider", dependencies=[Depends(_require_api_key)])


async def _complete(
    messages: list[ChatMessage],
    params: RoutingParams,
    *,
    event: str,
) -> CompletionResponse:
    req_id = str(uuid.uuid4())
    requested = params.provider.value if params.provider is not None else None
    start = time.perf_counter()
    try:
        outcome = await service.complete(messages, params)
    except ProviderExecutionError as exc:
        _log_request_event(
            logging.WARNING,
            event=f"{event}.failed",
            req_id=req_id,
            provider=str(exc.provider),
            attempts=exc.attempts,
            detail=exc.detail,
        )
        raise
    _log_request_event(
        logging.INFO,
        event=event,
        req_id=req_id,
        provider=outcome.provider.value,
        attempts=outcome.attempts,
    )
    response = outcome.content
    return CompletionResponse(
        response=response,
        provider=requested or AUTO_SELECTED,
        model=params.model or "default",
        execution_time_ms=int((time.perf_counter() - start) * 1000),
        tokens_used=estimate_tokens(messages, response),
    )


def _routing_params(body: RoutingParams) -> RoutingParams:
    return RoutingParams(
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        model=body.model,
        provider=body.provider,
        fallback_providers=body.fallback_providers,
        use_smart_routing=body.use_smart_routing,
    )


@api.post("/chat", response_model=CompletionResponse)
async def chat(body: ChatBody) -> CompletionResponse:
    return await _complete(body.messages, _routing_params(body), event="chat.completed")


@api.post("/generate", response_model=CompletionResponse)
async def generate(body: GenerateBody) -> CompletionResponse:
    messages = [ChatMessage(role="user", content=body.prompt)]
    return await _complete(messages, _routing_params(body), event="generate.completed")


@api.get("/providers", response_model=List[ProviderStatus])
async def providers() -> list[ProviderStatus]:
    return await service.get_available_providers()


@api.get("/providers/{provider}/capabilities", response_model=Capability)
async def capabilities(provider: AIProvider) -> Any:
    try:
        return service.get_provider_capabilities(provider)
    except ProviderNotConfiguredError as exc:
        body = _make_error_body(
            message=str(exc), error_type="provider_not_configured", provider=provider.value
        )
        return JSONResponse(body, status_code=404)


@api.get("/stats", response_model=ProviderStats)
async def stats() -> ProviderStats:
    return await service.get_provider_stats()


@api.post("/compare", response_model=ComparisonReport)
async def compare(body: CompareBody) -> ComparisonReport:
    return await service.compare_providers(
        body.prompt,
        body.providers,
        max_tokens=body.max_tokens,
        temperature=body.temperature,
    )


@api.post("/stream")
async def stream(body: ChatBody) -> StreamingResponse:
    req_id = str(uuid.uuid4())
    params = _routing_params(body)
    requested = params.provider.value if params.provider is not None else None

    async def event_source() -> Any:
        chunks = 0
        try:
            async for chunk in service.stream_chat_completion(body.messages, params):
                chunks += 1
                yield f"data: {json.dumps({'content': chunk}, ensure_ascii=False)}\n\n".encode("utf-8")
        finally:
            _log_request_event(
                logging.INFO,
                event="stream.completed",
                req_id=req_id,
                provider=requested,
                detail=f"chunks={chunks}",
            )
        yield b"data: [DONE]\n\n"

    return StreamingResponse(event_source(), media_type="text/event-stream")


@api.get("/models", response_model=List[ModelInfo])
async def models(provider: Optional[AIProvider] = None) -> list[ModelInfo]:
    return service.list_models(provider)


app.include_router(api)
