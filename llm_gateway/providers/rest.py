from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from llm_gateway.config import ProviderDescriptor
from llm_gateway.errors import (
    ConfigurationError,
    ProviderError,
    classify_exception,
    provider_error_for_status,
    upstream_error_message,
)
from llm_gateway.providers.base import normalize_openai_body
from llm_gateway.types import InboundRequest, NormalizedResponse, StreamHandle

logger = logging.getLogger("uvicorn.error")

ENDPOINT_PATHS = {
    "chat": "/chat/completions",
    "embeddings": "/embeddings",
}


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_url"] = str(request.url)
    return details


def build_upstream_headers(
    provider: ProviderDescriptor,
    api_key: str,
    *,
    stream: bool = False,
) -> dict[str, str]:
    headers: dict[str, str] = dict(provider.extra_headers)
    header_name = provider.api_key_header.strip() or "Authorization"
    if header_name.lower() == "authorization":
        headers["Authorization"] = f"Bearer {api_key}"
    else:
        headers[header_name] = api_key
    headers["Content-Type"] = "application/json"
    headers["Accept"] = "text/event-stream" if stream else "application/json"
    return headers


def build_http_client(
    *, timeout_seconds: float, connect_timeout_seconds: float
) -> httpx.AsyncClient:
    connect_timeout = max(0.1, min(float(connect_timeout_seconds), timeout_seconds))
    read_timeout = max(0.1, float(timeout_seconds))
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=connect_timeout,
            read=read_timeout,
            write=read_timeout,
            pool=connect_timeout,
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
    )


class RestProviderClient:
    """OpenAI-shaped passthrough used by OpenRouter and admin-registered providers."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def close(self) -> None:
        await self.client.aclose()

    async def call(
        self,
        provider: ProviderDescriptor,
        target_model: str,
        request: InboundRequest,
        *,
        api_key: str,
        stream: bool,
    ) -> NormalizedResponse | StreamHandle:
        if not api_key:
            raise ConfigurationError(
                f"Provider '{provider.name}' has no API key configured."
            )

        upstream_model = provider.upstream_model(target_model)
        payload = request.upstream_body(upstream_model)
        if request.endpoint == "chat":
            payload["stream"] = stream
        url = f"{provider.endpoint.rstrip('/')}{ENDPOINT_PATHS[request.endpoint]}"
        headers = build_upstream_headers(provider, api_key, stream=stream)

        started = time.perf_counter()
        try:
            upstream_request = self.client.build_request(
                method="POST",
                url=url,
                json=payload,
                headers=headers,
            )
            upstream = await self.client.send(upstream_request, stream=stream)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "provider_request_error provider=%s model=%s error_type=%s error=%s",
                provider.name,
                upstream_model,
                details["error_type"],
                details["error"],
            )
            raise classify_exception(exc) from exc

        logger.info(
            "provider_upstream_connected provider=%s model=%s status=%d connect_ms=%.2f",
            provider.name,
            upstream_model,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )

        if upstream.status_code >= 400:
            try:
                await upstream.aread()
            finally:
                await upstream.aclose()
            raise provider_error_for_status(
                upstream.status_code, upstream_error_message(upstream)
            )

        if stream:
            return StreamHandle(
                chunks=upstream.aiter_raw(),
                close=upstream.aclose,
                target_model=target_model,
                provider=provider.name,
            )

        try:
            await upstream.aread()
        except httpx.RequestError as exc:
            raise classify_exception(exc) from exc
        finally:
            await upstream.aclose()
        try:
            body = upstream.json()
        except ValueError as exc:
            raise ProviderError(
                f"Provider '{provider.name}' returned invalid JSON.",
                code="invalid_upstream_response",
                upstream_status=upstream.status_code,
            ) from exc
        return normalize_openai_body(
            body,
            endpoint=request.endpoint,
            target_model=target_model,
            provider=provider.name,
        )
