from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

from llm_gateway.audit import DispatchEventLog
from llm_gateway.cache import ResponseCache, build_cache_key
from llm_gateway.config import GatewayConfig, ProviderDescriptor, build_gateway_config
from llm_gateway.errors import (
    ConfigurationError,
    GatewayError,
    RateLimitExceededError,
    RequestValidationError,
    StreamingNotSupportedError,
)
from llm_gateway.executor import RetryFallbackExecutor, SleepFunc
from llm_gateway.metrics import DispatchMetrics
from llm_gateway.providers.base import ProviderClient
from llm_gateway.providers.gemini import GeminiProviderClient
from llm_gateway.providers.rest import RestProviderClient, build_http_client
from llm_gateway.rate_limiter import TokenBucketRateLimiter
from llm_gateway.resolver import ModelResolver, ProviderRegistry
from llm_gateway.settings import Settings
from llm_gateway.streaming import relay_stream
from llm_gateway.types import (
    Endpoint,
    InboundRequest,
    NormalizedResponse,
    RateLimitStatus,
    StreamHandle,
)

logger = logging.getLogger("uvicorn.error")

CacheStatus = Literal["hit", "miss", "bypass"]


@dataclass(slots=True)
class DispatchOutcome:
    request_id: str
    requested_model: str
    target_model: str
    provider: str
    rate_limit: RateLimitStatus
    body: dict[str, Any] | None = None
    response: NormalizedResponse | None = None
    stream: AsyncIterator[bytes] | None = None
    close_stream: Callable[[], Awaitable[None]] | None = None
    cache_status: CacheStatus = "bypass"
    tried_models: list[str] = field(default_factory=list)

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


class DispatchEngine:
    """Rate limiting, model resolution, caching and retry/fallback dispatch.

    Every piece of mutable state (mapping tables, cache, buckets, key
    rotation) belongs to the engine instance.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        config: GatewayConfig | None = None,
        clients: dict[str, ProviderClient] | None = None,
        sleep: SleepFunc | None = None,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], float] | None = None,
        event_log: DispatchEventLog | None = None,
    ) -> None:
        self.settings = settings
        self.config = config or build_gateway_config(settings)
        self._wall_clock = wall_clock or time.time
        self.resolver = ModelResolver(
            self.config.model_mapping,
            default_embedding_model=self.config.default_embedding_model,
        )
        self.registry = ProviderRegistry.from_config(self.config)
        self.fallback_chain: dict[str, str] = dict(self.config.fallback_chain)
        if clients is None:
            rest_client = RestProviderClient(
                build_http_client(
                    timeout_seconds=settings.upstream_timeout_seconds,
                    connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
                )
            )
            clients = {
                "rest": rest_client,
                "custom": rest_client,
                "gemini": GeminiProviderClient(),
            }
        self.clients = clients
        self.cache = ResponseCache(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            clock=clock,
        )
        self.rate_limiter = TokenBucketRateLimiter(
            capacity=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            enabled=settings.rate_limit_enabled,
            clock=clock,
            wall_clock=self._wall_clock,
        )
        self.metrics = DispatchMetrics(enabled=settings.metrics_enabled)
        self.event_log = event_log or DispatchEventLog(
            settings.audit_log_path, enabled=settings.audit_log_enabled
        )
        self.executor = RetryFallbackExecutor(
            registry=self.registry,
            clients=self.clients,
            fallback_chain=self.fallback_chain,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            sleep=sleep,
            event_hook=self._emit_event,
        )
        self._maintenance_task: asyncio.Task[None] | None = None

    def _emit_event(self, event: dict[str, Any]) -> None:
        self.metrics.observe(event)
        try:
            self.event_log.emit(event)
        except Exception as exc:
            logger.debug("event_log_emit_failed event=%s error=%s", event.get("event"), exc)

    async def resolve_and_dispatch(
        self,
        request: InboundRequest | dict[str, Any],
        *,
        caller_key: str,
        endpoint: Endpoint = "chat",
        request_id: str | None = None,
    ) -> DispatchOutcome:
        request_id = request_id or uuid.uuid4().hex
        try:
            return await self._dispatch(
                request, caller_key=caller_key, endpoint=endpoint, request_id=request_id
            )
        except GatewayError as exc:
            self.metrics.record_error(exc.error_type)
            self._emit_event(
                {
                    "event": "dispatch_failed",
                    "request_id": request_id,
                    "error_type": exc.error_type,
                    "error_code": exc.code,
                    "status": exc.status_code,
                    "tried_models": list(exc.tried_models),
                }
            )
            raise

    async def _dispatch(
        self,
        request: InboundRequest | dict[str, Any],
        *,
        caller_key: str,
        endpoint: Endpoint,
        request_id: str,
    ) -> DispatchOutcome:
        try:
            rate_limit = self.rate_limiter.acquire(caller_key)
        except RateLimitExceededError:
            self.metrics.increment("rate_limited")
            logger.info("dispatch_rate_limited request_id=%s caller=%s", request_id, caller_key)
            raise

        if not isinstance(request, InboundRequest):
            request = InboundRequest.from_payload(request, endpoint)
        self.metrics.increment("requests")

        if request.endpoint == "embeddings":
            target_model = self.resolver.resolve_embedding(request.model)
        else:
            target_model = self.resolver.resolve(request.model)
        requested_model = request.model or target_model

        provider = self.registry.lookup(target_model)
        if not provider.resolved_api_keys():
            raise ConfigurationError(
                f"Provider '{provider.name}' has no API key configured.",
                tried_models=[target_model],
            )
        if request.stream and not provider.supports_streaming:
            raise StreamingNotSupportedError(
                f"Streaming is not supported for model '{requested_model}'."
            )
        if request.endpoint == "embeddings" and not provider.supports_embeddings:
            raise RequestValidationError(
                f"Model '{requested_model}' does not support embeddings.",
                code="embeddings_not_supported",
            )

        logger.info(
            "dispatch_start request_id=%s endpoint=%s requested=%s target=%s provider=%s stream=%s",
            request_id,
            request.endpoint,
            requested_model,
            target_model,
            provider.name,
            request.stream,
        )

        if request.stream:
            result = await self.executor.execute(
                request, target_model, stream=True, request_id=request_id
            )
            assert isinstance(result, StreamHandle)
            return DispatchOutcome(
                request_id=request_id,
                requested_model=requested_model,
                target_model=result.target_model,
                provider=result.provider,
                rate_limit=rate_limit,
                stream=relay_stream(
                    result, request_id=request_id, event_hook=self._emit_event
                ),
                close_stream=result.close,
                tried_models=list(result.tried_models),
            )

        cache_key: str | None = None
        if self.cache.enabled:
            cache_key = build_cache_key(
                target_model,
                request.input if request.endpoint == "embeddings" else request.messages,
                request.options,
                endpoint=request.endpoint,
            )
            entry = self.cache.get(cache_key)
            if entry is not None:
                self.metrics.increment("cache_hits")
                logger.info(
                    "dispatch_cache_hit request_id=%s target=%s", request_id, target_model
                )
                return DispatchOutcome(
                    request_id=request_id,
                    requested_model=requested_model,
                    target_model=entry.target_model,
                    provider=entry.provider,
                    rate_limit=rate_limit,
                    body=entry.render(requested_model),
                    cache_status="hit",
                )
            self.metrics.increment("cache_misses")
            logger.info(
                "dispatch_cache_miss request_id=%s target=%s", request_id, target_model
            )

        result = await self.executor.execute(
            request, target_model, stream=False, request_id=request_id
        )
        assert isinstance(result, NormalizedResponse)
        body = result.to_openai_body(requested_model, int(self._wall_clock()))
        if cache_key is not None:
            self.cache.put(
                cache_key,
                body,
                target_model=result.target_model,
                provider=result.provider,
            )
        return DispatchOutcome(
            request_id=request_id,
            requested_model=requested_model,
            target_model=result.target_model,
            provider=result.provider,
            rate_limit=rate_limit,
            body=body,
            response=result,
            cache_status="miss" if cache_key is not None else "bypass",
        )

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        logger.info("cache_cleared entries=%d", removed)
        self._emit_event({"event": "cache_cleared", "entries": removed})
        return removed

    def rate_limit_status(self, caller_key: str) -> RateLimitStatus:
        return self.rate_limiter.status(caller_key)

    def mappings(self) -> dict[str, str]:
        return self.resolver.mapping()

    def set_mapping(self, name: str, target: str) -> None:
        self.resolver.set_mapping(name, target)
        logger.info("mapping_updated name=%s target=%s", name, target)

    def remove_mapping(self, name: str) -> bool:
        removed = self.resolver.remove_mapping(name)
        if removed:
            logger.info("mapping_removed name=%s", name)
        return removed

    def fallbacks(self) -> dict[str, str]:
        return dict(self.fallback_chain)

    def set_fallback(self, model: str, next_model: str) -> None:
        model = model.strip()
        next_model = next_model.strip()
        if not model or not next_model:
            raise RequestValidationError("Fallback models must be non-empty strings.")
        if model == next_model:
            raise RequestValidationError(
                "A model cannot fall back to itself.", code="fallback_cycle"
            )
        self.fallback_chain[model] = next_model
        logger.info("fallback_updated model=%s next=%s", model, next_model)

    def remove_fallback(self, model: str) -> bool:
        removed = self.fallback_chain.pop(model, None) is not None
        if removed:
            logger.info("fallback_removed model=%s", model)
        return removed

    def providers(self) -> list[dict[str, Any]]:
        return [provider.public_view() for provider in self.registry.providers()]

    def register_provider(
        self, descriptor: ProviderDescriptor | dict[str, Any]
    ) -> ProviderDescriptor:
        if not isinstance(descriptor, ProviderDescriptor):
            payload = {"kind": "custom", **descriptor}
            descriptor = ProviderDescriptor.model_validate(payload)
        self.registry.register(descriptor)
        logger.info("provider_registered name=%s kind=%s", descriptor.name, descriptor.kind)
        return descriptor

    def remove_provider(self, name: str) -> bool:
        removed = self.registry.remove(name)
        if removed:
            logger.info("provider_removed name=%s", name)
        return removed

    def health(self) -> dict[str, Any]:
        configured = [
            provider.name
            for provider in self.registry.providers()
            if provider.resolved_api_keys()
        ]
        return {
            "status": "ok" if configured else "degraded",
            "providers": self.providers(),
            "configured_providers": configured,
            "cache_entries": len(self.cache),
            "rate_limit_buckets": len(self.rate_limiter),
            "config": {
                "max_retries": self.executor.max_retries,
                "retry_delay_ms": self.settings.retry_delay,
                "cache_ttl_ms": self.settings.cache_ttl,
                "rate_limit_enabled": self.rate_limiter.enabled,
                "rate_limit_window_ms": self.settings.rate_limit_window,
                "rate_limit_max_requests": self.rate_limiter.capacity,
                "default_model": self.resolver.default_target,
            },
        }

    def run_maintenance(self) -> dict[str, int]:
        expired = self.cache.sweep()
        idle = self.rate_limiter.collect_idle()
        if expired or idle:
            logger.info(
                "maintenance_sweep expired_cache_entries=%d idle_buckets=%d",
                expired,
                idle,
            )
        return {"expired_cache_entries": expired, "idle_buckets": idle}

    async def start(self) -> None:
        if self._maintenance_task is not None:
            return
        self._maintenance_task = asyncio.create_task(
            self._maintenance_loop(), name="gateway-maintenance"
        )

    async def _maintenance_loop(self) -> None:
        interval = max(0.1, float(self.settings.cache_sweep_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            try:
                self.run_maintenance()
            except Exception as exc:
                logger.warning("maintenance_sweep_failed error=%s", exc)

    async def close(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            finally:
                self._maintenance_task = None
        closed: set[int] = set()
        for client in self.clients.values():
            if id(client) in closed:
                continue
            closed.add(id(client))
            await client.close()
        self.event_log.close()
