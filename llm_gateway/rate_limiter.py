from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

from llm_gateway.errors import RateLimitExceededError
from llm_gateway.types import RateLimitStatus


@dataclass(slots=True)
class RateLimitBucket:
    key: str
    tokens: float
    capacity: int
    refill_rate_per_second: float
    last_refill_at: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill_at)
        if elapsed > 0:
            self.tokens = min(
                float(self.capacity), self.tokens + elapsed * self.refill_rate_per_second
            )
        self.last_refill_at = now


class TokenBucketRateLimiter:
    def __init__(
        self,
        *,
        capacity: int,
        window_seconds: float,
        enabled: bool = True,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], float] | None = None,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self.window_seconds = max(0.001, float(window_seconds))
        self.refill_rate_per_second = self.capacity / self.window_seconds
        self.enabled = enabled
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or time.time
        self._buckets: dict[str, RateLimitBucket] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def _bucket(self, key: str, now: float) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateLimitBucket(
                key=key,
                tokens=float(self.capacity),
                capacity=self.capacity,
                refill_rate_per_second=self.refill_rate_per_second,
                last_refill_at=now,
            )
            self._buckets[key] = bucket
        else:
            bucket.refill(now)
        return bucket

    def _status_for(self, bucket: RateLimitBucket) -> RateLimitStatus:
        if bucket.tokens < 1:
            seconds_until = (1.0 - bucket.tokens) / bucket.refill_rate_per_second
        else:
            seconds_until = (
                bucket.capacity - bucket.tokens
            ) / bucket.refill_rate_per_second
        return RateLimitStatus(
            limit=bucket.capacity,
            remaining=int(math.floor(bucket.tokens)),
            reset_at=self._wall_clock() + seconds_until,
        )

    def acquire(self, key: str) -> RateLimitStatus:
        if not self.enabled:
            return RateLimitStatus(
                limit=self.capacity, remaining=self.capacity, reset_at=self._wall_clock()
            )
        bucket = self._bucket(key, self._clock())
        if bucket.tokens < 1.0:
            status = self._status_for(bucket)
            raise RateLimitExceededError(
                f"Rate limit exceeded for this caller. Retry after "
                f"{max(0.0, status.reset_at - self._wall_clock()):.1f}s.",
                status=status,
            )
        bucket.tokens -= 1.0
        return self._status_for(bucket)

    def status(self, key: str) -> RateLimitStatus:
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None or not self.enabled:
            return RateLimitStatus(
                limit=self.capacity, remaining=self.capacity, reset_at=self._wall_clock()
            )
        bucket.refill(now)
        return self._status_for(bucket)

    def collect_idle(self) -> int:
        # A bucket idle for a full window has refilled and carries no state.
        now = self._clock()
        idle = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.last_refill_at >= self.window_seconds
        ]
        for key in idle:
            self._buckets.pop(key, None)
        return len(idle)
