from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Collection

from llm_gateway.config import ProviderDescriptor
from llm_gateway.errors import ConfigurationError, GatewayError, classify_exception
from llm_gateway.providers.base import ProviderClient
from llm_gateway.resolver import ProviderRegistry
from llm_gateway.types import InboundRequest, NormalizedResponse, StreamHandle

logger = logging.getLogger("uvicorn.error")

SleepFunc = Callable[[float], Awaitable[Any]]
EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class DispatchAttempt:
    target_model: str
    provider: ProviderDescriptor
    retry_count: int = 0


class RetryFallbackExecutor:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        clients: dict[str, ProviderClient],
        fallback_chain: dict[str, str],
        max_retries: int,
        retry_delay_seconds: float,
        sleep: SleepFunc | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self._registry = registry
        self._clients = clients
        self._fallback_chain = fallback_chain
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._sleep = sleep or asyncio.sleep
        self._event_hook = event_hook

    def backoff_seconds(self, retry_count: int) -> float:
        return self.retry_delay_seconds * (2 ** max(0, retry_count - 1))

    def _emit(self, event: str, **fields: Any) -> None:
        if self._event_hook is None:
            return
        try:
            self._event_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("dispatch_event_hook_failed event=%s error=%s", event, exc)

    def _client_for(
        self, provider: ProviderDescriptor, tried_models: list[str]
    ) -> ProviderClient:
        client = self._clients.get(provider.kind)
        if client is None:
            raise ConfigurationError(
                f"No client is available for provider kind '{provider.kind}'.",
                code="provider_kind_unsupported",
                tried_models=tried_models,
            )
        return client

    def _skip_reason(self, model: str, *, stream: bool) -> str | None:
        try:
            provider = self._registry.lookup(model)
        except GatewayError:
            return "provider_not_found"
        if not provider.resolved_api_keys():
            return "provider_not_configured"
        if stream and not provider.supports_streaming:
            return "streaming_not_supported"
        return None

    def next_fallback(
        self, current_model: str, tried: Collection[str], *, stream: bool = False
    ) -> tuple[str | None, list[str]]:
        """Return the next usable fallback and the unusable models passed over.

        Models without a configured provider are reported back so they show
        up in ``tried_models``. Models skipped only because they cannot
        stream are not.
        """
        candidate = self._fallback_chain.get(current_model)
        seen: set[str] = set()
        skipped: list[str] = []
        while candidate and candidate not in tried and candidate not in seen:
            reason = self._skip_reason(candidate, stream=stream)
            if reason is None:
                return candidate, skipped
            logger.info(
                "dispatch_fallback_skipped model=%s reason=%s", candidate, reason
            )
            seen.add(candidate)
            if reason != "streaming_not_supported":
                skipped.append(candidate)
            candidate = self._fallback_chain.get(candidate)
        return None, skipped

    async def execute(
        self,
        request: InboundRequest,
        target_model: str,
        *,
        stream: bool = False,
        request_id: str = "",
    ) -> NormalizedResponse | StreamHandle:
        tried_models: list[str] = []
        tried: set[str] = set()
        current_model = target_model
        last_error: GatewayError | None = None

        while True:
            attempt = DispatchAttempt(
                target_model=current_model,
                provider=self._lookup(current_model, tried_models),
            )
            client = self._client_for(attempt.provider, tried_models)

            while attempt.retry_count < self.max_retries:
                attempt_number = attempt.retry_count + 1
                logger.info(
                    "dispatch_attempt request_id=%s model=%s provider=%s attempt=%d/%d",
                    request_id,
                    attempt.target_model,
                    attempt.provider.name,
                    attempt_number,
                    self.max_retries,
                )
                started = time.perf_counter()
                try:
                    api_key = self._registry.next_api_key(attempt.provider)
                    result = await client.call(
                        attempt.provider,
                        attempt.target_model,
                        request,
                        api_key=api_key,
                        stream=stream,
                    )
                except Exception as exc:
                    error = classify_exception(exc)
                    latency_ms = round((time.perf_counter() - started) * 1000.0, 3)
                    self._emit(
                        "dispatch_attempt_failed",
                        request_id=request_id,
                        model=attempt.target_model,
                        provider=attempt.provider.name,
                        attempt=attempt_number,
                        error_type=error.error_type,
                        error_code=error.code,
                        status=error.status_code,
                        upstream_status=error.upstream_status,
                        latency_ms=latency_ms,
                    )
                    if not error.retryable:
                        error.tried_models = [*tried_models, attempt.target_model]
                        logger.warning(
                            "dispatch_aborted request_id=%s model=%s error_type=%s error=%s",
                            request_id,
                            attempt.target_model,
                            error.error_type,
                            error.message,
                        )
                        if error is exc:
                            raise
                        raise error from exc

                    last_error = error
                    attempt.retry_count += 1
                    logger.warning(
                        (
                            "dispatch_attempt_failed request_id=%s model=%s "
                            "attempt=%d/%d error_type=%s status=%s error=%s"
                        ),
                        request_id,
                        attempt.target_model,
                        attempt_number,
                        self.max_retries,
                        error.error_type,
                        error.upstream_status or error.status_code,
                        error.message,
                    )
                    if attempt.retry_count < self.max_retries:
                        delay = self.backoff_seconds(attempt.retry_count)
                        logger.info(
                            "dispatch_retry_wait request_id=%s model=%s delay_ms=%d",
                            request_id,
                            attempt.target_model,
                            int(delay * 1000),
                        )
                        self._emit(
                            "dispatch_retry",
                            request_id=request_id,
                            model=attempt.target_model,
                            retry_count=attempt.retry_count,
                            delay_ms=int(delay * 1000),
                        )
                        await self._sleep(delay)
                    continue

                self._emit(
                    "dispatch_attempt_succeeded",
                    request_id=request_id,
                    model=attempt.target_model,
                    provider=attempt.provider.name,
                    attempt=attempt_number,
                    latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                )
                if isinstance(result, StreamHandle):
                    result.tried_models = [*tried_models, attempt.target_model]
                return result

            tried_models.append(attempt.target_model)
            tried.add(attempt.target_model)
            fallback_model, skipped = self.next_fallback(
                attempt.target_model, tried, stream=stream
            )
            tried_models.extend(skipped)
            tried.update(skipped)
            if fallback_model is None:
                assert last_error is not None
                last_error.tried_models = list(tried_models)
                logger.warning(
                    "dispatch_exhausted request_id=%s tried=%s error_type=%s",
                    request_id,
                    ",".join(tried_models),
                    last_error.error_type,
                )
                self._emit(
                    "dispatch_exhausted",
                    request_id=request_id,
                    tried_models=list(tried_models),
                    error_type=last_error.error_type,
                    status=last_error.status_code,
                )
                raise last_error

            logger.info(
                "dispatch_fallback request_id=%s from=%s to=%s",
                request_id,
                attempt.target_model,
                fallback_model,
            )
            self._emit(
                "dispatch_fallback",
                request_id=request_id,
                from_model=attempt.target_model,
                to_model=fallback_model,
            )
            current_model = fallback_model

    def _lookup(self, model: str, tried_models: list[str]) -> ProviderDescriptor:
        try:
            return self._registry.lookup(model)
        except GatewayError as exc:
            exc.tried_models = [*tried_models, model]
            raise
