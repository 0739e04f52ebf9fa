from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
from google.genai import errors as genai_errors

if TYPE_CHECKING:
    from llm_gateway.types import RateLimitStatus


class GatewayError(Exception):
    """Base for every error surfaced to gateway callers.

    Each subclass fixes a stable (type, code, status) triple; instances may
    override the code/status when a more specific value is known.
    """

    error_type = "unknown_error"
    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        upstream_status: int | None = None,
        tried_models: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.upstream_status = upstream_status
        self.tried_models: list[str] = list(tried_models or [])

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "message": self.message,
            "type": self.error_type,
            "code": self.code,
            "param": None,
            "status": self.status_code,
        }
        if self.upstream_status is not None:
            error["upstream_status"] = self.upstream_status
        if self.tried_models:
            error["tried_models"] = list(self.tried_models)
        return {"error": error}


class ConfigurationError(GatewayError):
    error_type = "configuration_error"
    code = "provider_not_configured"
    status_code = 503


class RateLimitExceededError(GatewayError):
    error_type = "rate_limit_exceeded"
    code = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, message: str, *, status: RateLimitStatus) -> None:
        super().__init__(message)
        self.status = status


class RequestValidationError(GatewayError):
    error_type = "validation_error"
    code = "invalid_request"
    status_code = 400


class NetworkError(GatewayError):
    error_type = "network_error"
    code = "connection_refused"
    status_code = 503
    retryable = True


class ProviderError(GatewayError):
    error_type = "provider_error"
    code = "upstream_error"
    status_code = 502
    retryable = True


class UnknownError(GatewayError):
    error_type = "unknown_error"
    code = "internal_error"
    status_code = 500


class StreamingNotSupportedError(GatewayError):
    error_type = "not_implemented"
    code = "streaming_not_supported"
    status_code = 501


def provider_error_for_status(
    upstream_status: int, message: str | None = None
) -> ProviderError:
    status_code = upstream_status if upstream_status >= 500 else 502
    return ProviderError(
        message or f"Upstream provider returned HTTP {upstream_status}.",
        status_code=status_code,
        upstream_status=upstream_status,
    )


def classify_exception(exc: BaseException) -> GatewayError:
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(
            f"Upstream request timed out: {exc}",
            code="request_timeout",
            status_code=504,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return provider_error_for_status(
            exc.response.status_code,
            upstream_error_message(exc.response),
        )
    if isinstance(exc, genai_errors.APIError):
        upstream_status = exc.code if isinstance(exc.code, int) else 502
        return provider_error_for_status(
            upstream_status, exc.message or str(exc).strip() or None
        )
    if isinstance(exc, httpx.RequestError):
        message = str(exc).strip() or exc.__class__.__name__
        return NetworkError(f"Could not reach upstream provider: {message}")
    message = str(exc).strip() or exc.__class__.__name__
    return UnknownError(message)


def upstream_error_message(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except (ValueError, httpx.ResponseNotRead):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    return None
