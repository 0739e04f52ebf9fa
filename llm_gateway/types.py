from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

from llm_gateway.errors import RequestValidationError

Endpoint = Literal["chat", "embeddings"]

_RESERVED_FIELDS = {"model", "messages", "input", "stream"}


@dataclass(slots=True)
class InboundRequest:
    endpoint: Endpoint
    model: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    input: Any = None
    stream: bool = False
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(
        cls, payload: Any, endpoint: Endpoint = "chat"
    ) -> InboundRequest:
        if not isinstance(payload, dict):
            raise RequestValidationError("Expected a JSON object request body.")

        raw_model = payload.get("model", "")
        if raw_model is None:
            raw_model = ""
        if not isinstance(raw_model, str):
            raise RequestValidationError(
                "'model' must be a string.", code="invalid_model"
            )

        raw_stream = payload.get("stream", False)
        if raw_stream is not None and not isinstance(raw_stream, bool):
            raise RequestValidationError(
                "'stream' must be a boolean.", code="invalid_stream"
            )

        options = {
            key: value
            for key, value in payload.items()
            if key not in _RESERVED_FIELDS
        }

        if endpoint == "embeddings":
            raw_input = payload.get("input")
            if raw_input is None or raw_input == "" or raw_input == []:
                raise RequestValidationError(
                    "'input' is required for embeddings.", code="missing_input"
                )
            if raw_stream:
                raise RequestValidationError(
                    "Embeddings do not support streaming.", code="invalid_stream"
                )
            return cls(
                endpoint=endpoint,
                model=raw_model.strip(),
                input=raw_input,
                options=options,
            )

        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            raise RequestValidationError(
                "'messages' must be a non-empty array.", code="missing_messages"
            )
        for index, message in enumerate(messages):
            if not isinstance(message, dict):
                raise RequestValidationError(
                    f"messages[{index}] must be an object.", code="invalid_message"
                )
            role = message.get("role")
            if not isinstance(role, str) or not role.strip():
                raise RequestValidationError(
                    f"messages[{index}].role must be a non-empty string.",
                    code="invalid_message",
                )
            if "content" not in message:
                raise RequestValidationError(
                    f"messages[{index}].content is required.",
                    code="invalid_message",
                )

        return cls(
            endpoint=endpoint,
            model=raw_model.strip(),
            messages=messages,
            stream=bool(raw_stream),
            options=options,
        )

    def upstream_body(self, target_model: str) -> dict[str, Any]:
        body: dict[str, Any] = {"model": target_model}
        if self.endpoint == "embeddings":
            body["input"] = self.input
        else:
            body["messages"] = self.messages
            body["stream"] = self.stream
        body.update(self.options)
        return body


@dataclass(slots=True)
class Choice:
    role: str
    content: Any
    finish_reason: str | None = "stop"
    index: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        message.update(self.extra)
        return {
            "index": self.index,
            "message": message,
            "finish_reason": self.finish_reason,
        }


@dataclass(slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> Usage:
        if not isinstance(raw, dict):
            return cls()
        prompt = _as_int(raw.get("prompt_tokens"))
        completion = _as_int(raw.get("completion_tokens"))
        total = _as_int(raw.get("total_tokens")) or prompt + completion
        return cls(
            prompt_tokens=prompt, completion_tokens=completion, total_tokens=total
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class NormalizedResponse:
    id: str
    choices: list[Choice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    data: list[Any] | None = None
    target_model: str = ""
    provider: str = ""

    def to_openai_body(self, requested_model: str, created: int) -> dict[str, Any]:
        if self.data is not None:
            return {
                "object": "list",
                "data": self.data,
                "model": requested_model,
                "usage": self.usage.to_dict(),
            }
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": created,
            "model": requested_model,
            "choices": [choice.to_dict() for choice in self.choices],
            "usage": self.usage.to_dict(),
        }


@dataclass(slots=True)
class StreamHandle:
    chunks: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]]
    target_model: str
    provider: str
    tried_models: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: float

    def to_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0
