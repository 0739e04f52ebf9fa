from __future__ import annotations

import uuid
from typing import Any, Protocol

from llm_gateway.config import ProviderDescriptor
from llm_gateway.errors import ProviderError
from llm_gateway.types import (
    Choice,
    InboundRequest,
    NormalizedResponse,
    StreamHandle,
    Usage,
)


class ProviderClient(Protocol):
    async def call(
        self,
        provider: ProviderDescriptor,
        target_model: str,
        request: InboundRequest,
        *,
        api_key: str,
        stream: bool,
    ) -> NormalizedResponse | StreamHandle: ...

    async def close(self) -> None: ...


def normalize_openai_body(
    payload: Any,
    *,
    endpoint: str,
    target_model: str,
    provider: str,
) -> NormalizedResponse:
    if not isinstance(payload, dict):
        raise ProviderError(
            f"Provider '{provider}' returned a non-object JSON body.",
            code="invalid_upstream_response",
        )

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderError(
            str(message or f"Provider '{provider}' returned an error body."),
        )

    usage = Usage.from_dict(payload.get("usage"))
    response_id = str(payload.get("id") or f"chatcmpl-{uuid.uuid4().hex}")

    if endpoint == "embeddings":
        data = payload.get("data")
        if not isinstance(data, list):
            raise ProviderError(
                f"Provider '{provider}' returned embeddings without 'data'.",
                code="invalid_upstream_response",
            )
        return NormalizedResponse(
            id=response_id,
            usage=usage,
            data=data,
            target_model=target_model,
            provider=provider,
        )

    raw_choices = payload.get("choices")
    if not isinstance(raw_choices, list) or not raw_choices:
        raise ProviderError(
            f"Provider '{provider}' returned no choices.",
            code="invalid_upstream_response",
        )

    choices: list[Choice] = []
    for position, raw_choice in enumerate(raw_choices):
        if not isinstance(raw_choice, dict):
            continue
        message = raw_choice.get("message")
        if not isinstance(message, dict):
            message = {}
        extra = {
            key: value
            for key, value in message.items()
            if key not in {"role", "content"} and value is not None
        }
        index = raw_choice.get("index")
        choices.append(
            Choice(
                role=str(message.get("role") or "assistant"),
                content=message.get("content"),
                finish_reason=raw_choice.get("finish_reason"),
                index=index if isinstance(index, int) else position,
                extra=extra,
            )
        )
    if not choices:
        raise ProviderError(
            f"Provider '{provider}' returned malformed choices.",
            code="invalid_upstream_response",
        )

    return NormalizedResponse(
        id=response_id,
        choices=choices,
        usage=usage,
        target_model=target_model,
        provider=provider,
    )
