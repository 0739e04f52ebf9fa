from __future__ import annotations

from llm_gateway.metrics import DispatchMetrics, _prometheus_labels


def test_events_feed_counters_and_provider_attempts() -> None:
    metrics = DispatchMetrics()
    metrics.observe({"event": "dispatch_attempt_failed", "provider": "openrouter"})
    metrics.observe({"event": "dispatch_retry"})
    metrics.observe({"event": "dispatch_attempt_succeeded", "provider": "openrouter"})
    metrics.observe({"event": "cache_cleared"})
    metrics.record_error("provider_error")

    snapshot = metrics.snapshot()
    assert snapshot["counters"]["attempts"] == 2
    assert snapshot["counters"]["retries"] == 1
    assert snapshot["counters"]["fallbacks"] == 0
    assert snapshot["attempts_by_provider"] == {
        "openrouter:failure": 1,
        "openrouter:success": 1,
    }
    assert snapshot["errors_by_type"] == {"provider_error": 1}


def test_prometheus_output_declares_each_family_once() -> None:
    metrics = DispatchMetrics()
    metrics.observe({"event": "dispatch_attempt_failed", "provider": "gemini"})
    metrics.observe({"event": "dispatch_attempt_succeeded", "provider": "openrouter"})

    text = metrics.render_prometheus(cache_entries=3, buckets=2)

    assert text.count("# TYPE gateway_provider_attempts_total counter") == 1
    assert 'gateway_provider_attempts_total{outcome="failure",provider="gemini"} 1.000000' in text
    assert "gateway_cache_entries 3.000000" in text
    assert "gateway_rate_limit_buckets 2.000000" in text
    assert text.endswith("\n")


def test_label_values_are_escaped() -> None:
    assert _prometheus_labels({"type": 'bad "quote"\n'}) == '{type="bad \\"quote\\"\\n"}'


def test_disabled_metrics_record_nothing() -> None:
    metrics = DispatchMetrics(enabled=False)
    metrics.increment("requests")
    metrics.observe({"event": "dispatch_retry"})
    metrics.record_error("unknown_error")
    snapshot = metrics.snapshot()
    assert sum(snapshot["counters"].values()) == 0
    assert snapshot["errors_by_type"] == {}
