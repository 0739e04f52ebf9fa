from __future__ import annotations

from typing import Any

import httpx

from tests.client_test_utils import (
    CHAT_PAYLOAD,
    FakeGeminiModels,
    RecordingHandler,
    build_test_client,
)

DEEPSEEK = "deepseek/deepseek-r1-0528:free"


def test_chat_completion_headers_and_cache_status(monkeypatch: Any) -> None:
    handler = RecordingHandler()
    with build_test_client(monkeypatch, handler) as client:
        first = client.post(
            "/v1/chat/completions",
            json=CHAT_PAYLOAD,
            headers={"X-Request-Id": "req-42"},
        )
        second = client.post("/v1/chat/completions", json=CHAT_PAYLOAD)

    assert first.status_code == 200
    assert first.json()["model"] == "gpt-4"
    assert first.headers["x-request-id"] == "req-42"
    assert first.headers["x-gateway-target-model"] == DEEPSEEK
    assert first.headers["x-gateway-provider"] == "openrouter"
    assert first.headers["x-gateway-cache"] == "miss"
    assert first.headers["x-ratelimit-limit"] == "60"
    assert first.headers["x-ratelimit-remaining"] == "59"
    assert second.headers["x-gateway-cache"] == "hit"
    assert second.json() == first.json()
    assert len(handler.requests) == 1


def test_upstream_receives_openrouter_attribution_headers(monkeypatch: Any) -> None:
    handler = RecordingHandler()
    with build_test_client(monkeypatch, handler) as client:
        client.post("/v1/chat/completions", json=CHAT_PAYLOAD)

    sent = handler.requests[0]
    assert sent.headers["authorization"] == "Bearer test-openrouter-key"
    assert sent.headers["x-title"] == "OpenAI Gateway Emulator"
    assert "http-referer" in sent.headers


def test_embeddings_endpoint(monkeypatch: Any) -> None:
    handler = RecordingHandler(
        default=lambda request: httpx.Response(
            200,
            json={
                "data": [{"object": "embedding", "index": 0, "embedding": [1.0]}],
                "usage": {"prompt_tokens": 1, "total_tokens": 1},
            },
        )
    )
    with build_test_client(monkeypatch, handler) as client:
        response = client.post(
            "/v1/embeddings", json={"model": "text-embedding-ada-002", "input": "hi"}
        )

    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "list"
    assert body["model"] == "text-embedding-ada-002"
    assert handler.models == ["mistralai/mistral-embed:free"]


def test_invalid_requests_return_validation_envelope(monkeypatch: Any) -> None:
    handler = RecordingHandler()
    with build_test_client(monkeypatch, handler) as client:
        bad_json = client.post(
            "/v1/chat/completions",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        no_messages = client.post("/v1/chat/completions", json={"model": "gpt-4"})

    assert bad_json.status_code == 400
    assert bad_json.json()["error"]["type"] == "validation_error"
    assert no_messages.status_code == 400
    assert "x-ratelimit-remaining" in no_messages.headers
    assert handler.requests == []


def test_rate_limited_requests_get_retry_after(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch, RecordingHandler(), RATE_LIMIT_MAX_REQUESTS="1"
    ) as client:
        client.post("/v1/chat/completions", json=CHAT_PAYLOAD)
        response = client.post("/v1/chat/completions", json=CHAT_PAYLOAD)

    assert response.status_code == 429
    assert response.json()["error"]["type"] == "rate_limit_exceeded"
    assert int(response.headers["retry-after"]) >= 1
    assert response.headers["x-ratelimit-remaining"] == "0"


def test_exhausted_fallback_chain_reports_tried_models(monkeypatch: Any) -> None:
    handler = RecordingHandler(
        default=lambda request: httpx.Response(
            503, json={"error": {"message": "no capacity"}}
        )
    )
    with build_test_client(monkeypatch, handler, MAX_RETRIES="1") as client:
        response = client.post(
            "/v1/chat/completions",
            json={**CHAT_PAYLOAD, "model": "gemma-7b"},
        )

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["type"] == "provider_error"
    assert error["message"] == "no capacity"
    assert error["tried_models"] == [
        "google/gemma-2-9b-it:free",
        "google/gemma-2-2b-it:free",
    ]


def test_missing_provider_key_returns_configuration_error(monkeypatch: Any) -> None:
    handler = RecordingHandler()
    with build_test_client(monkeypatch, handler, OPENROUTER_API_KEY="") as client:
        response = client.post("/v1/chat/completions", json=CHAT_PAYLOAD)

    assert response.status_code == 503
    assert response.json()["error"]["type"] == "configuration_error"
    assert handler.requests == []


def test_gemini_streaming_is_not_implemented(monkeypatch: Any) -> None:
    models = FakeGeminiModels()
    with build_test_client(
        monkeypatch, gemini_models=models, GEMINI_API_KEY="g-key"
    ) as client:
        response = client.post(
            "/v1/chat/completions",
            json={**CHAT_PAYLOAD, "model": "gemini-1.5-flash", "stream": True},
        )

    assert response.status_code == 501
    assert response.json()["error"]["code"] == "streaming_not_supported"
    assert models.calls == []


def test_streaming_chat_relays_events(monkeypatch: Any) -> None:
    handler = RecordingHandler(
        default=lambda request: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=(
                b'data: {"choices":[{"delta":{"content":"he"}}]}\n\n'
                b'data: {"choices":[{"delta":{"content":"llo"}}]}\n\n'
                b"data: [DONE]\n\n"
            ),
        )
    )
    with build_test_client(monkeypatch, handler) as client:
        response = client.post(
            "/v1/chat/completions", json={**CHAT_PAYLOAD, "stream": True}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["x-gateway-provider"] == "openrouter"
    assert "x-gateway-cache" not in response.headers
    assert response.text.count("data: [DONE]") == 1
    assert '"llo"' in response.text


def test_models_endpoint_lists_aliases_with_owner(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/v1/models")

    data = {item["id"]: item for item in response.json()["data"]}
    assert data["gemini-1.5-pro"]["owned_by"] == "gemini"
    assert data["gpt-4o"]["owned_by"] == "openrouter"
    assert data["gpt-4o"]["target_model"] == "qwen/qwen3-235b-a22b:free"


def test_health_and_index(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        health = client.get("/health")
        index = client.get("/")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["configured_providers"] == ["openrouter"]
    assert index.json()["endpoints"]["chat"] == "/v1/chat/completions"


def test_unknown_route_uses_error_envelope(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/v1/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "resource_not_found"


def test_admin_mapping_and_fallback_routes(monkeypatch: Any) -> None:
    handler = RecordingHandler()
    with build_test_client(monkeypatch, handler) as client:
        put = client.put(
            "/admin/mappings/team-model",
            json={"target": "meta-llama/llama-3.3-70b-instruct:free"},
        )
        chat = client.post(
            "/v1/chat/completions", json={**CHAT_PAYLOAD, "model": "team-model"}
        )
        protected = client.delete("/admin/mappings/default")
        missing = client.delete("/admin/mappings/never-defined")
        fallback = client.put(
            "/admin/fallbacks/meta-llama/llama-3.3-70b-instruct:free",
            json={"next": "google/gemma-2-2b-it:free"},
        )
        cycle = client.put("/admin/fallbacks/x/a", json={"next": "x/a"})
        fallbacks = client.get("/admin/fallbacks").json()["fallbacks"]

    assert put.status_code == 200
    assert chat.headers["x-gateway-target-model"] == "meta-llama/llama-3.3-70b-instruct:free"
    assert protected.status_code == 400
    assert missing.status_code == 404
    assert fallback.status_code == 200
    assert fallbacks["meta-llama/llama-3.3-70b-instruct:free"] == "google/gemma-2-2b-it:free"
    assert cycle.status_code == 400


def test_admin_provider_registration(monkeypatch: Any) -> None:
    handler = RecordingHandler()
    with build_test_client(monkeypatch, handler) as client:
        created = client.post(
            "/admin/providers",
            json={
                "name": "acme",
                "endpoint": "https://acme.example/v1",
                "api_keys": ["acme-key"],
                "model_prefix": "acme/",
            },
        )
        invalid = client.post("/admin/providers", json={"name": "broken"})
        builtin = client.delete("/admin/providers/openrouter")
        client.put("/admin/mappings/acme-chat", json={"target": "acme/chat-large"})
        chat = client.post(
            "/v1/chat/completions", json={**CHAT_PAYLOAD, "model": "acme-chat"}
        )
        listed = client.get("/admin/providers").json()["providers"]
        removed = client.delete("/admin/providers/acme")

    assert created.status_code == 201
    assert created.json()["provider"]["configured"] is True
    assert "api_keys" not in created.json()["provider"]
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "invalid_provider"
    assert builtin.status_code == 400
    assert chat.headers["x-gateway-provider"] == "acme"
    assert str(handler.requests[-1].url) == "https://acme.example/v1/chat/completions"
    assert [item["name"] for item in listed] == ["openrouter", "gemini", "acme"]
    assert removed.status_code == 200


def test_admin_cache_clear_reports_count(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, RecordingHandler()) as client:
        client.post("/v1/chat/completions", json=CHAT_PAYLOAD)
        response = client.post("/admin/cache/clear")
        again = client.post("/admin/cache/clear")

    assert response.json() == {"cleared": 1}
    assert again.json() == {"cleared": 0}


def test_metrics_endpoint_renders_counters(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, RecordingHandler()) as client:
        client.post("/v1/chat/completions", json=CHAT_PAYLOAD)
        client.post("/v1/chat/completions", json=CHAT_PAYLOAD)
        response = client.get("/metrics")

    assert response.status_code == 200
    text = response.text
    assert "gateway_requests_total 2.000000" in text
    assert "gateway_cache_hits_total 1.000000" in text
    assert 'gateway_provider_attempts_total{outcome="success",provider="openrouter"}' in text


def test_metrics_endpoint_can_be_disabled(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, METRICS_ENABLED="false") as client:
        response = client.get("/metrics")
    assert response.status_code == 404
