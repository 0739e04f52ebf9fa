from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from google import genai
from google.genai import types

from llm_gateway.config import ProviderDescriptor
from llm_gateway.defaults import GEMINI_GENERATION_DEFAULTS
from llm_gateway.errors import (
    ConfigurationError,
    ProviderError,
    RequestValidationError,
    StreamingNotSupportedError,
    classify_exception,
)
from llm_gateway.types import (
    Choice,
    InboundRequest,
    NormalizedResponse,
    StreamHandle,
    Usage,
)

logger = logging.getLogger("uvicorn.error")

GEMINI_ROLES = {"user": "user", "assistant": "model", "model": "model"}

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}


def _text_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "\n".join(part for part in parts if part)
    return str(content)


def convert_messages(
    messages: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], str | None]:
    contents: list[dict[str, Any]] = []
    system_parts: list[str] = []
    for message in messages:
        role = str(message.get("role", "")).strip().lower()
        text = _text_content(message.get("content"))
        if role in {"system", "developer"}:
            if text:
                system_parts.append(text)
            continue
        gemini_role = GEMINI_ROLES.get(role)
        if gemini_role is None:
            continue
        if contents and contents[-1]["role"] == gemini_role:
            contents[-1]["parts"].append({"text": text})
            continue
        contents.append({"role": gemini_role, "parts": [{"text": text}]})
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return contents, system_instruction


def build_generation_config(
    options: dict[str, Any], system_instruction: str | None
) -> types.GenerateContentConfig:
    max_tokens = options.get("max_tokens") or options.get("max_completion_tokens")
    temperature = options.get("temperature")
    top_p = options.get("top_p")
    stop = options.get("stop")
    if isinstance(stop, str):
        stop = [stop]
    return types.GenerateContentConfig(
        max_output_tokens=int(
            max_tokens or GEMINI_GENERATION_DEFAULTS["max_output_tokens"]
        ),
        temperature=float(
            temperature
            if temperature is not None
            else GEMINI_GENERATION_DEFAULTS["temperature"]
        ),
        top_p=float(top_p if top_p is not None else GEMINI_GENERATION_DEFAULTS["top_p"]),
        stop_sequences=stop if isinstance(stop, list) and stop else None,
        system_instruction=system_instruction,
    )


def _finish_reason(response: Any) -> str:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return "stop"
    reason = getattr(candidates[0], "finish_reason", None)
    name = getattr(reason, "name", reason)
    if not name:
        return "stop"
    return FINISH_REASONS.get(str(name).upper(), str(name).lower())


def _usage(response: Any) -> Usage:
    metadata = getattr(response, "usage_metadata", None)
    if metadata is None:
        return Usage()
    prompt = getattr(metadata, "prompt_token_count", None) or 0
    completion = getattr(metadata, "candidates_token_count", None) or 0
    total = getattr(metadata, "total_token_count", None) or prompt + completion
    return Usage(
        prompt_tokens=int(prompt),
        completion_tokens=int(completion),
        total_tokens=int(total),
    )


class GeminiProviderClient:
    """Chat completions served through the google-genai SDK.

    The SDK call is not streamed; stream and embedding requests are rejected
    before any SDK client is created.
    """

    def __init__(
        self, client_factory: Callable[[str], Any] | None = None
    ) -> None:
        self._client_factory = client_factory or (
            lambda api_key: genai.Client(api_key=api_key)
        )
        self._clients: dict[str, Any] = {}

    def _client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    async def close(self) -> None:
        self._clients.clear()

    async def call(
        self,
        provider: ProviderDescriptor,
        target_model: str,
        request: InboundRequest,
        *,
        api_key: str,
        stream: bool,
    ) -> NormalizedResponse | StreamHandle:
        if stream:
            raise StreamingNotSupportedError(
                f"Streaming is not supported for provider '{provider.name}'."
            )
        if request.endpoint != "chat":
            raise RequestValidationError(
                f"Provider '{provider.name}' does not serve embeddings.",
                code="embeddings_not_supported",
            )
        if not api_key:
            raise ConfigurationError(
                f"Provider '{provider.name}' has no API key configured."
            )

        contents, system_instruction = convert_messages(request.messages)
        if not any(item["role"] == "user" for item in contents):
            raise RequestValidationError(
                "At least one user message is required.", code="missing_user_message"
            )
        config = build_generation_config(request.options, system_instruction)
        upstream_model = provider.upstream_model(target_model)

        started = time.perf_counter()
        try:
            response = await self._client_for(api_key).aio.models.generate_content(
                model=upstream_model,
                contents=contents,
                config=config,
            )
        except Exception as exc:
            classified = classify_exception(exc)
            logger.warning(
                "provider_sdk_error provider=%s model=%s error_type=%s error=%s",
                provider.name,
                upstream_model,
                exc.__class__.__name__,
                classified.message,
            )
            if classified.error_type == "unknown_error":
                raise ProviderError(classified.message) from exc
            raise classified from exc

        logger.info(
            "provider_sdk_response provider=%s model=%s latency_ms=%.2f",
            provider.name,
            upstream_model,
            (time.perf_counter() - started) * 1000.0,
        )
        try:
            text = response.text
        except ValueError as exc:
            raise ProviderError(
                f"Provider '{provider.name}' returned no text: {exc}",
                code="invalid_upstream_response",
            ) from exc
        return NormalizedResponse(
            id=f"gemini-{uuid.uuid4().hex}",
            choices=[
                Choice(
                    role="assistant",
                    content=text or "",
                    finish_reason=_finish_reason(response),
                )
            ],
            usage=_usage(response),
            target_model=target_model,
            provider=provider.name,
        )
