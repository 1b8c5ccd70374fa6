from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from gemini_relay.errors import RelayError, RequestValidationError
from gemini_relay.gateway.audit import JsonlAuditLogger
from gemini_relay.gateway.auth import Authenticator
from gemini_relay.gateway.credentials import CredentialDispatcher, CredentialPool
from gemini_relay.keys import load_api_keys
from gemini_relay.schemas import ChatRequest
from gemini_relay.settings import Settings, get_settings
from gemini_relay.translator import from_upstream, to_upstream
from gemini_relay.versions import VersionResolver

SERVICE_NAME = "Gemini API Key Rotation Proxy"
SERVICE_VERSION = "1.0.0"
SUPPORTED_MODELS = (
    "gemini-3-flash-preview",
    "gemini-3-flash-thinking",
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.0-flash-exp",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
)

app = FastAPI(
    title="Gemini Relay",
    description="OpenAI-compatible proxy for Gemini with automatic key rotation.",
    version=SERVICE_VERSION,
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not Authenticator.protects(request.url.path):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


# Added last, so it wraps ingress auth and preflight requests skip it.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins_list or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def build_upstream_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)

    keys = load_api_keys(settings)
    audit_logger = JsonlAuditLogger(
        path=settings.relay_audit_log_path,
        enabled=settings.relay_audit_log_enabled,
    )
    app.state.audit_logger = audit_logger

    def audit_event_hook(event: dict[str, Any]) -> None:
        audit_logger.log(event)

    app.state.audit_event_hook = audit_event_hook
    client = build_upstream_client(settings)
    app.state.upstream_client = client
    dispatcher = CredentialDispatcher(
        CredentialPool(keys, failure_threshold=settings.credential_failure_threshold),
        client=client,
        timeout_seconds=settings.upstream_timeout_seconds,
        max_attempts=settings.dispatch_max_attempts,
        audit_hook=audit_event_hook,
    )
    app.state.dispatcher = dispatcher
    app.state.version_resolver = VersionResolver(
        credential_source=dispatcher.credential_keys,
        client=client,
        base_url=settings.gemini_base_url,
        default_model=settings.gemini_default_model,
        cache_ttl_seconds=settings.catalog_cache_ttl_seconds,
        timeout_seconds=settings.catalog_timeout_seconds,
    )
    logger.info(
        (
            "startup complete keys=%d base_url=%s default_model=%s "
            "max_attempts=%d audit_log_enabled=%s"
        ),
        dispatcher.total_count(),
        settings.gemini_base_url,
        settings.gemini_default_model,
        dispatcher.max_attempts,
        settings.relay_audit_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    client: httpx.AsyncClient | None = getattr(app.state, "upstream_client", None)
    if client is not None:
        await client.aclose()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": (
            "OpenAI-compatible proxy for Gemini API with automatic key rotation"
        ),
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "models": "GET /v1/models",
            "chat": "POST /v1/chat/completions",
            "resetKeys": "POST /admin/reset-keys",
            "reloadKeys": "POST /admin/reload-keys",
        },
        "supportedModels": list(SUPPORTED_MODELS),
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    dispatcher: CredentialDispatcher = app.state.dispatcher
    return {
        "status": "healthy",
        "timestamp": _now_iso(),
        "totalKeys": dispatcher.total_count(),
        "availableKeys": dispatcher.available_count(),
    }


@app.get("/status")
async def key_status() -> dict[str, Any]:
    dispatcher: CredentialDispatcher = app.state.dispatcher
    return {
        "timestamp": _now_iso(),
        "totalKeys": dispatcher.total_count(),
        "availableKeys": dispatcher.available_count(),
        "keys": dispatcher.get_status(),
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    resolver: VersionResolver = app.state.version_resolver
    entries = await resolver.list_models()
    return {"object": "list", "data": [entry.to_dict() for entry in entries]}


@app.get("/v1/models/{model_id:path}")
async def model_detail(model_id: str) -> JSONResponse:
    resolver: VersionResolver = app.state.version_resolver
    for entry in await resolver.list_models():
        if entry.id == model_id:
            return JSONResponse(content=entry.to_dict())
    return JSONResponse(
        status_code=404,
        content={
            "error": {
                "message": "Model not found",
                "type": "invalid_request_error",
                "code": 404,
            }
        },
    )


async def _parse_chat_request(request: Request) -> ChatRequest:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestValidationError(f"Expected JSON body: {exc}") from exc

    if not isinstance(payload, dict):
        raise RequestValidationError("Expected a JSON object request body.")
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError(
            "Invalid chat completion request.",
            details=exc.errors(include_url=False, include_context=False),
        ) from exc


def _emit_chat_terminal_event(
    *,
    request_id: str,
    model: str,
    status: int,
    duration_ms: float,
    error_type: str | None = None,
    total_tokens: int | None = None,
) -> None:
    audit_hook: Callable[[dict[str, Any]], None] | None = getattr(
        app.state, "audit_event_hook", None
    )
    if audit_hook is None:
        return
    event: dict[str, Any] = {
        "event": "chat_completion",
        "request_id": request_id,
        "model": model,
        "status": status,
        "outcome": "success" if status < 400 else "error",
        "duration_ms": round(duration_ms, 3),
    }
    if error_type is not None:
        event["error_type"] = error_type
    if total_tokens is not None:
        event["total_tokens"] = total_tokens
    try:
        audit_hook(event)
    except Exception as exc:
        logger.debug("audit_write_failed event=chat_completion error=%s", exc)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> JSONResponse:
    started = time.perf_counter()
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    settings: Settings = app.state.settings
    dispatcher: CredentialDispatcher = app.state.dispatcher
    resolver: VersionResolver = app.state.version_resolver

    chat_request = await _parse_chat_request(request)
    model = chat_request.model or settings.gemini_default_model
    logger.info(
        "chat_request request_id=%s model=%s messages=%d stream=%s",
        request_id,
        model,
        len(chat_request.messages),
        chat_request.stream,
    )
    if chat_request.stream:
        logger.info("chat_stream_unsupported request_id=%s", request_id)

    try:
        version = resolver.resolve_version(chat_request.model)
        logger.info("chat_version request_id=%s version=%s", request_id, version.value)
        upstream_request = to_upstream(chat_request, version)
        url = resolver.build_endpoint(dispatcher.select_next().key, model)
        upstream_body = await dispatcher.dispatch(
            url, upstream_request.to_payload(), request_id=request_id
        )
        response = from_upstream(upstream_body, model)
    except RelayError as exc:
        _emit_chat_terminal_event(
            request_id=request_id,
            model=model,
            status=exc.http_status,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            error_type=exc.error_type,
        )
        raise

    duration_ms = (time.perf_counter() - started) * 1000.0
    logger.info(
        "chat_complete request_id=%s model=%s duration_ms=%.1f total_tokens=%d",
        request_id,
        model,
        duration_ms,
        response.usage.total_tokens,
    )
    _emit_chat_terminal_event(
        request_id=request_id,
        model=model,
        status=200,
        duration_ms=duration_ms,
        total_tokens=response.usage.total_tokens,
    )
    return JSONResponse(content=response.to_dict())


@app.post("/admin/reset-keys")
async def reset_keys() -> dict[str, Any]:
    dispatcher: CredentialDispatcher = app.state.dispatcher
    resolver: VersionResolver = app.state.version_resolver
    dispatcher.reset_all()
    resolver.invalidate_cache()
    return {"message": "All keys have been reset", "timestamp": _now_iso()}


@app.post("/admin/reload-keys")
async def reload_keys() -> JSONResponse:
    settings: Settings = app.state.settings
    dispatcher: CredentialDispatcher = app.state.dispatcher
    resolver: VersionResolver = app.state.version_resolver
    try:
        keys = load_api_keys(settings)
        pool = dispatcher.replace_pool(keys)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("credential_reload_failed error=%s", exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "message": "Failed to reload keys",
                    "type": "api_error",
                    "code": 500,
                    "details": str(exc),
                }
            },
        )
    resolver.invalidate_cache()
    return JSONResponse(
        content={
            "message": "Keys have been reloaded",
            "timestamp": _now_iso(),
            "totalKeys": len(pool),
        }
    )


@app.exception_handler(RelayError)
async def relay_error_handler(_: Request, exc: RelayError) -> JSONResponse:
    logger.warning(
        "request_failed kind=%s status=%d error=%s",
        exc.kind.value,
        exc.http_status,
        exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_body())


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "gemini_relay.main:app", host=settings.host, port=settings.port, reload=False
    )


if __name__ == "__main__":
    run()
