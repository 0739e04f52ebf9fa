from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from llm_gateway.auth import AuthConfigurationError, Authenticator, caller_identity
from llm_gateway.engine import DispatchEngine, DispatchOutcome
from llm_gateway.errors import GatewayError, RateLimitExceededError, RequestValidationError
from llm_gateway.settings import Settings, get_settings
from llm_gateway.types import Endpoint

app = FastAPI(
    title="LLM Gateway",
    description="OpenAI-compatible gateway with provider fallback, caching and rate limiting.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

DISCONNECT_POLL_SECONDS = 0.25
CLIENT_CLOSED_REQUEST = 499

T = TypeVar("T")


class ClientDisconnected(Exception):
    pass


def build_engine(settings: Settings) -> DispatchEngine:
    return DispatchEngine(settings)


def _engine() -> DispatchEngine:
    return app.state.engine


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is None:
        return await call_next(request)

    if request.url.path.startswith("/v1"):
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error
    elif request.url.path.startswith("/admin"):
        admin_error = await authenticator.authorize_admin(request)
        if admin_error is not None:
            return admin_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    engine = build_engine(settings)
    await engine.start()
    app.state.engine = engine
    configured = engine.health()["configured_providers"]
    if not configured:
        logger.warning(
            "startup_no_provider_keys hint=set OPENROUTER_API_KEY or GEMINI_API_KEY"
        )
    logger.info(
        "startup complete providers=%s max_retries=%d cache_ttl_ms=%d rate_limit=%d/%dms",
        ",".join(configured) or "-",
        settings.max_retries,
        settings.cache_ttl,
        settings.rate_limit_max_requests,
        settings.rate_limit_window,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    engine: DispatchEngine | None = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.close()
    logger.info("shutdown complete")


def _rate_limit_headers(request: Request) -> dict[str, str]:
    engine: DispatchEngine | None = getattr(app.state, "engine", None)
    if engine is None:
        return {}
    return engine.rate_limit_status(caller_identity(request).rate_limit_key).to_headers()


async def _run_until_disconnect(request: Request, work: Awaitable[T]) -> T:
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


def _outcome_headers(outcome: DispatchOutcome) -> dict[str, str]:
    headers = outcome.rate_limit.to_headers()
    headers["X-Request-Id"] = outcome.request_id
    headers["X-Gateway-Target-Model"] = outcome.target_model
    headers["X-Gateway-Provider"] = outcome.provider
    if not outcome.is_stream:
        headers["X-Gateway-Cache"] = outcome.cache_status
    return headers


async def _dispatch_json_request(request: Request, endpoint: Endpoint) -> Response:
    payload = await _json_body(request)
    engine = _engine()
    request_id = request.headers.get("x-request-id") or None
    identity = caller_identity(request)
    try:
        outcome = await _run_until_disconnect(
            request,
            engine.resolve_and_dispatch(
                payload,
                caller_key=identity.rate_limit_key,
                endpoint=endpoint,
                request_id=request_id,
            ),
        )
    except ClientDisconnected:
        logger.info(
            "dispatch_cancelled reason=client_disconnect caller=%s",
            identity.rate_limit_key,
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    headers = _outcome_headers(outcome)
    if outcome.stream is not None:
        headers["Cache-Control"] = "no-cache"
        return StreamingResponse(
            content=outcome.stream,
            headers=headers,
            media_type="text/event-stream",
            background=(
                BackgroundTask(outcome.close_stream)
                if outcome.close_stream is not None
                else None
            ),
        )
    return JSONResponse(content=outcome.body, headers=headers)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _dispatch_json_request(request, "chat")


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> Response:
    return await _dispatch_json_request(request, "embeddings")


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    engine = _engine()
    mapping = engine.mappings()
    data = []
    for name in engine.resolver.client_models():
        target = mapping[name]
        try:
            owner = engine.registry.lookup(target).name
        except GatewayError:
            owner = "unknown"
        data.append(
            {
                "id": name,
                "object": "model",
                "created": 0,
                "owned_by": owner,
                "target_model": target,
            }
        )
    return {"object": "list", "data": data}


@app.get("/health")
async def health() -> dict[str, Any]:
    return _engine().health()


@app.get("/")
async def index() -> dict[str, Any]:
    return {
        "name": app.title,
        "version": app.version,
        "endpoints": {
            "chat": "/v1/chat/completions",
            "embeddings": "/v1/embeddings",
            "models": "/v1/models",
            "health": "/health",
            "metrics": "/metrics",
        },
    }


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise RequestValidationError(f"Expected JSON body: {exc}") from exc


def _required_string(payload: Any, field: str) -> str:
    if not isinstance(payload, dict):
        raise RequestValidationError("Expected a JSON object request body.")
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise RequestValidationError(f"'{field}' must be a non-empty string.")
    return value.strip()


@app.post("/admin/cache/clear")
async def admin_clear_cache() -> dict[str, int]:
    return {"cleared": _engine().clear_cache()}


@app.get("/admin/mappings")
async def admin_list_mappings() -> dict[str, Any]:
    return {"mappings": _engine().mappings()}


@app.put("/admin/mappings/{name}")
async def admin_set_mapping(name: str, request: Request) -> dict[str, Any]:
    target = _required_string(await _json_body(request), "target")
    _engine().set_mapping(name, target)
    return {"name": name, "target": target}


@app.delete("/admin/mappings/{name}")
async def admin_remove_mapping(name: str) -> dict[str, Any]:
    if not _engine().remove_mapping(name):
        raise HTTPException(status_code=404, detail=f"Mapping '{name}' not found.")
    return {"name": name, "deleted": True}


@app.get("/admin/fallbacks")
async def admin_list_fallbacks() -> dict[str, Any]:
    return {"fallbacks": _engine().fallbacks()}


@app.put("/admin/fallbacks/{model:path}")
async def admin_set_fallback(model: str, request: Request) -> dict[str, Any]:
    next_model = _required_string(await _json_body(request), "next")
    _engine().set_fallback(model, next_model)
    return {"model": model, "next": next_model}


@app.delete("/admin/fallbacks/{model:path}")
async def admin_remove_fallback(model: str) -> dict[str, Any]:
    if not _engine().remove_fallback(model):
        raise HTTPException(status_code=404, detail=f"Fallback for '{model}' not found.")
    return {"model": model, "deleted": True}


@app.get("/admin/providers")
async def admin_list_providers() -> dict[str, Any]:
    return {"providers": _engine().providers()}


@app.post("/admin/providers")
async def admin_register_provider(request: Request) -> JSONResponse:
    payload = await _json_body(request)
    if not isinstance(payload, dict):
        raise RequestValidationError("Expected a JSON object request body.")
    try:
        descriptor = _engine().register_provider(payload)
    except ValidationError as exc:
        raise RequestValidationError(
            f"Invalid provider descriptor: {exc.errors()[0].get('msg', exc)}",
            code="invalid_provider",
        ) from exc
    return JSONResponse(status_code=201, content={"provider": descriptor.public_view()})


@app.delete("/admin/providers/{name}")
async def admin_remove_provider(name: str) -> dict[str, Any]:
    if not _engine().remove_provider(name):
        raise HTTPException(status_code=404, detail=f"Provider '{name}' not found.")
    return {"name": name, "deleted": True}


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics endpoint is disabled.")
    engine = _engine()
    payload = engine.metrics.render_prometheus(
        cache_entries=len(engine.cache),
        buckets=len(engine.rate_limiter),
    )
    return PlainTextResponse(
        content=payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceededError):
        headers.update(exc.status.to_headers())
        retry_after = max(1, int(exc.status.reset_at - time.time() + 0.999))
        headers["Retry-After"] = str(retry_after)
    elif request.url.path.startswith("/v1"):
        headers.update(_rate_limit_headers(request))
    logger.info(
        "request_failed path=%s status=%d type=%s code=%s",
        request.url.path,
        exc.status_code,
        exc.error_type,
        exc.code,
    )
    return JSONResponse(
        status_code=exc.status_code, content=exc.to_payload(), headers=headers
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if exc.status_code == 404:
        detail = exc.detail if exc.detail != "Not Found" else None
        return JSONResponse(
            status_code=404,
            content={
                "error": {
                    "message": detail
                    or f"Unknown request URL: {request.method} {request.url.path}.",
                    "type": "invalid_request_error",
                    "param": None,
                    "code": "resource_not_found",
                }
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": str(exc.detail),
                "type": "invalid_request_error",
                "param": None,
                "code": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("llm_gateway.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
