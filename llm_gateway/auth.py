from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Request, status
from fastapi.responses import JSONResponse
from jwt import InvalidTokenError

from llm_gateway.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when ingress auth is required but no credential source exists."""


@dataclass(slots=True)
class CallerIdentity:
    method: str
    principal: str
    claims: dict[str, Any] | None = None

    @property
    def rate_limit_key(self) -> str:
        return f"{self.method}:{self.principal}"


def key_fingerprint(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = set(settings.ingress_api_keys_list)
        self.admin_keys = set(settings.admin_api_keys_list)
        self.jwt_secret = settings.jwt_secret
        self.jwt_algorithms = settings.jwt_algorithms_list

        if self.required and not self.api_keys and not self.jwt_secret:
            raise AuthConfigurationError(
                "Ingress auth is required, but no API keys or JWT secret are configured.",
            )

    def _verify_jwt(self, token: str) -> CallerIdentity:
        if not self.jwt_secret:
            raise InvalidTokenError("JWT verification is not configured.")
        claims = jwt.decode(token, self.jwt_secret, algorithms=self.jwt_algorithms)
        principal = str(
            claims.get("sub") or claims.get("email") or claims.get("client_id") or ""
        ).strip()
        if not principal:
            raise InvalidTokenError("Token has no subject.")
        return CallerIdentity(method="jwt", principal=principal, claims=claims)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        token = _bearer_token(request)

        if not self.required:
            if token:
                identity = CallerIdentity(method="key", principal=key_fingerprint(token))
            else:
                identity = CallerIdentity(method="ip", principal=_client_address(request))
            request.state.caller = identity
            return None

        if token is None:
            return _unauthorized("Missing Bearer token.")

        if token in self.api_keys:
            request.state.caller = CallerIdentity(
                method="key", principal=key_fingerprint(token)
            )
            return None

        if self.jwt_secret:
            try:
                request.state.caller = self._verify_jwt(token)
                return None
            except InvalidTokenError:
                return _unauthorized("Invalid API key or token.")

        return _unauthorized("Invalid API key or token.")

    async def authorize_admin(self, request: Request) -> JSONResponse | None:
        if not self.admin_keys:
            return None
        token = _bearer_token(request)
        if token is None:
            return _unauthorized("Missing Bearer token.")
        if token not in self.admin_keys:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={
                    "error": {
                        "message": "Admin API key required.",
                        "type": "permission_error",
                        "param": None,
                        "code": "admin_key_required",
                    },
                },
            )
        return None


def caller_identity(request: Request) -> CallerIdentity:
    identity = getattr(request.state, "caller", None)
    if isinstance(identity, CallerIdentity):
        return identity
    return CallerIdentity(method="ip", principal=_client_address(request))


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
