from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Any


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"'
        for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


COUNTER_HELP = {
    "requests": "Dispatch requests accepted by the gateway.",
    "attempts": "Upstream call attempts.",
    "retries": "Backoff retries against the same target model.",
    "fallbacks": "Switches to a fallback target model.",
    "exhausted": "Requests that failed after every retry and fallback.",
    "cache_hits": "Responses served from the response cache.",
    "cache_misses": "Cacheable requests not found in the response cache.",
    "rate_limited": "Requests rejected by the rate limiter.",
    "stream_errors": "Streams terminated by a mid-stream upstream failure.",
}

EVENT_COUNTERS = {
    "dispatch_attempt_failed": "attempts",
    "dispatch_attempt_succeeded": "attempts",
    "dispatch_retry": "retries",
    "dispatch_fallback": "fallbacks",
    "dispatch_exhausted": "exhausted",
    "stream_error": "stream_errors",
}


class DispatchMetrics:
    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._errors_by_type: Counter[str] = Counter()
        self._attempts_by_provider: Counter[tuple[str, str]] = Counter()

    def increment(self, name: str, amount: int = 1) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._counters[name] += amount

    def record_error(self, error_type: str) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._errors_by_type[error_type] += 1

    def observe(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        name = str(event.get("event", ""))
        counter = EVENT_COUNTERS.get(name)
        with self._lock:
            if counter is not None:
                self._counters[counter] += 1
            if name in {"dispatch_attempt_failed", "dispatch_attempt_succeeded"}:
                outcome = "success" if name == "dispatch_attempt_succeeded" else "failure"
                provider = str(event.get("provider") or "unknown")
                self._attempts_by_provider[(provider, outcome)] += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {name: self._counters.get(name, 0) for name in COUNTER_HELP},
                "errors_by_type": dict(self._errors_by_type),
                "attempts_by_provider": {
                    f"{provider}:{outcome}": count
                    for (provider, outcome), count in self._attempts_by_provider.items()
                },
            }

    def render_prometheus(self, *, cache_entries: int, buckets: int) -> str:
        lines: list[str] = []
        declared: set[str] = set()
        with self._lock:
            counters = dict(self._counters)
            errors_by_type = dict(self._errors_by_type)
            attempts_by_provider = dict(self._attempts_by_provider)

        for name, help_text in COUNTER_HELP.items():
            append_prometheus_metric(
                lines,
                declared,
                name=f"gateway_{name}_total",
                metric_type="counter",
                help_text=help_text,
                value=counters.get(name, 0),
            )
        for (provider, outcome), count in sorted(attempts_by_provider.items()):
            append_prometheus_metric(
                lines,
                declared,
                name="gateway_provider_attempts_total",
                metric_type="counter",
                help_text="Upstream call attempts by provider and outcome.",
                value=count,
                labels={"provider": provider, "outcome": outcome},
            )
        for error_type, count in sorted(errors_by_type.items()):
            append_prometheus_metric(
                lines,
                declared,
                name="gateway_errors_total",
                metric_type="counter",
                help_text="Errors returned to callers by error type.",
                value=count,
                labels={"type": error_type},
            )
        append_prometheus_metric(
            lines,
            declared,
            name="gateway_cache_entries",
            metric_type="gauge",
            help_text="Live entries in the response cache.",
            value=cache_entries,
        )
        append_prometheus_metric(
            lines,
            declared,
            name="gateway_rate_limit_buckets",
            metric_type="gauge",
            help_text="Tracked rate-limit buckets.",
            value=buckets,
        )
        return "\n".join(lines) + "\n"
