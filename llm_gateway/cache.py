from __future__ import annotations

import copy
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(slots=True)
class CacheEntry:
    key: str
    body: dict[str, Any]
    target_model: str
    provider: str
    expires_at: float
    created_at: float

    def render(self, requested_model: str) -> dict[str, Any]:
        body = copy.deepcopy(self.body)
        body["model"] = requested_model
        return body


def build_cache_key(
    target_model: str,
    messages: Any,
    options: dict[str, Any],
    *,
    endpoint: str = "chat",
) -> str:
    # Options are key-sorted; message order and content stay as sent.
    canonical = json.dumps(
        {
            "endpoint": endpoint,
            "model": target_model,
            "messages": messages,
            "options": options,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    fingerprint = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{endpoint}|{target_model}|sha256:{fingerprint}"


class ResponseCache:
    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self.max_entries = max(1, int(max_entries))
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return entry

    def put(
        self,
        key: str,
        body: dict[str, Any],
        *,
        target_model: str,
        provider: str,
    ) -> CacheEntry | None:
        if not self.enabled:
            return None
        now = self._clock()
        entry = CacheEntry(
            key=key,
            body=copy.deepcopy(body),
            target_model=target_model,
            provider=provider,
            expires_at=now + self.ttl_seconds,
            created_at=now,
        )
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return entry

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def clear(self) -> int:
        removed = len(self._entries)
        self._entries = OrderedDict()
        return removed
