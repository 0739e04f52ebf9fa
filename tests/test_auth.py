from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import pytest

from llm_gateway.auth import AuthConfigurationError, Authenticator
from tests.client_test_utils import CHAT_PAYLOAD, build_test_client, make_settings

JWT_SECRET = "local-test-secret-with-32-bytes-minimum"


def _token(**claims: Any) -> str:
    now = datetime.now(UTC)
    payload = {"iat": now, "exp": now + timedelta(minutes=5), **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def test_v1_routes_open_when_auth_disabled(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/v1/models")
        assert response.status_code == 200
        ids = [item["id"] for item in response.json()["data"]]
        assert "gpt-4" in ids
        assert "default" not in ids


def test_v1_routes_reject_missing_token_when_auth_required(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch, INGRESS_AUTH_REQUIRED="true", INGRESS_API_KEYS="gw-key-1"
    ) as client:
        response = client.post("/v1/chat/completions", json=CHAT_PAYLOAD)
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["error"]["type"] == "authentication_error"


def test_v1_routes_accept_configured_api_key(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="gw-key-1,gw-key-2",
    ) as client:
        rejected = client.get(
            "/v1/models", headers={"Authorization": "Bearer wrong-key"}
        )
        accepted = client.get(
            "/v1/models", headers={"Authorization": "Bearer gw-key-2"}
        )
        assert rejected.status_code == 401
        assert accepted.status_code == 200


def test_v1_routes_accept_signed_jwt(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch, INGRESS_AUTH_REQUIRED="true", JWT_SECRET=JWT_SECRET
    ) as client:
        ok = client.get(
            "/v1/models", headers={"Authorization": f"Bearer {_token(sub='team-a')}"}
        )
        no_subject = client.get(
            "/v1/models", headers={"Authorization": f"Bearer {_token()}"}
        )
        forged_token = jwt.encode(
            {"sub": "team-a"}, "another-secret-with-32-bytes-minimum", algorithm="HS256"
        )
        forged = client.get(
            "/v1/models", headers={"Authorization": f"Bearer {forged_token}"}
        )
        assert ok.status_code == 200
        assert no_subject.status_code == 401
        assert forged.status_code == 401


def test_each_api_key_gets_its_own_rate_limit_bucket(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="gw-key-1,gw-key-2",
        RATE_LIMIT_MAX_REQUESTS="1",
    ) as client:
        first = client.post(
            "/v1/chat/completions",
            json=CHAT_PAYLOAD,
            headers={"Authorization": "Bearer gw-key-1"},
        )
        second = client.post(
            "/v1/chat/completions",
            json=CHAT_PAYLOAD,
            headers={"Authorization": "Bearer gw-key-1"},
        )
        other = client.post(
            "/v1/chat/completions",
            json=CHAT_PAYLOAD,
            headers={"Authorization": "Bearer gw-key-2"},
        )
        assert first.status_code == 200
        assert second.status_code == 429
        assert other.status_code == 200


def test_admin_routes_require_admin_key_when_configured(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, ADMIN_API_KEYS="admin-secret") as client:
        missing = client.post("/admin/cache/clear")
        wrong = client.post(
            "/admin/cache/clear", headers={"Authorization": "Bearer nope"}
        )
        ok = client.post(
            "/admin/cache/clear", headers={"Authorization": "Bearer admin-secret"}
        )
        assert missing.status_code == 401
        assert wrong.status_code == 403
        assert wrong.json()["error"]["code"] == "admin_key_required"
        assert ok.status_code == 200


def test_required_auth_without_credentials_is_a_configuration_error() -> None:
    with pytest.raises(AuthConfigurationError):
        Authenticator(make_settings(ingress_auth_required=True))
