"""Per-client admission control for the three endpoint classes.

Buckets use fixed-window refill: a bucket is topped back up to capacity once a
full window has elapsed since its window started, so a client may burst up to
capacity at the start of every window. Continuous (leaky) refill would change
the burst behaviour clients observe at window boundaries and is not used.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Protocol

from storeguard.config import Settings
from storeguard.logging import get_logger
from storeguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

NANOS_PER_SECOND = 1_000_000_000


class EndpointClass(str, Enum):
    AUTH = "auth"
    ADMIN = "admin"
    GENERAL = "general"


@dataclass(frozen=True)
class RateLimitPolicy:
    capacity: int
    window_ns: int

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be positive")
        if self.window_ns < 1:
            raise ValueError("window must be positive")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining_tokens: int
    nanos_until_refill: int
    limit: int

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds until the next refill; never zero for a rejection."""
        seconds = math.ceil(self.nanos_until_refill / NANOS_PER_SECOND)
        return max(1, seconds) if not self.allowed else max(0, seconds)


def policies_from_settings(settings: Settings) -> Dict[EndpointClass, RateLimitPolicy]:
    window_ns = settings.rate_limit_window_seconds * NANOS_PER_SECOND
    return {
        EndpointClass.AUTH: RateLimitPolicy(settings.rate_limit_auth, window_ns),
        EndpointClass.ADMIN: RateLimitPolicy(settings.rate_limit_admin, window_ns),
        EndpointClass.GENERAL: RateLimitPolicy(settings.rate_limit_general, window_ns),
    }


class RateLimiter(Protocol):
    def try_consume(
        self, endpoint_class: EndpointClass, client_key: str, cost: int = 1
    ) -> RateLimitDecision: ...

    def cleanup(self) -> int: ...


class _Bucket:
    __slots__ = ("capacity", "tokens", "window_start_ns", "lock", "retired")

    def __init__(self, capacity: int, window_start_ns: int) -> None:
        self.capacity = capacity
        self.tokens = capacity
        self.window_start_ns = window_start_ns
        self.lock = threading.Lock()
        self.retired = False


class InMemoryRateLimiter:
    """Single-process token buckets keyed by (endpoint class, client key).

    Each bucket carries its own mutex, so the admit/decrement step is atomic
    per key while unrelated keys never contend. The per-class table lock is
    only taken when a bucket has to be created.

    Memory is bounded bluntly: once a class tracks ``max_buckets`` clients,
    the next new client clears every bucket of that class. Clients that were
    mid-window get a fresh allowance. This is not LRU eviction. Between those
    resets, :meth:`cleanup` drops buckets whose window has fully elapsed.
    """

    def __init__(
        self,
        policies: Mapping[EndpointClass, RateLimitPolicy],
        *,
        max_buckets: int = 10_000,
        clock: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        missing = set(EndpointClass) - set(policies)
        if missing:
            raise ValueError(f"missing rate limit policy for {sorted(m.value for m in missing)}")
        self._policies = dict(policies)
        self._max_buckets = max_buckets
        self._clock = clock
        self._tables: Dict[EndpointClass, Dict[str, _Bucket]] = {
            cls: {} for cls in EndpointClass
        }
        self._table_locks = {cls: threading.Lock() for cls in EndpointClass}

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], int] = time.monotonic_ns
    ) -> "InMemoryRateLimiter":
        return cls(
            policies_from_settings(settings),
            max_buckets=settings.rate_limit_max_buckets,
            clock=clock,
        )

    def policy(self, endpoint_class: EndpointClass) -> RateLimitPolicy:
        return self._policies[endpoint_class]

    def bucket_count(self, endpoint_class: EndpointClass) -> int:
        return len(self._tables[endpoint_class])

    def _bucket_for(self, endpoint_class: EndpointClass, client_key: str) -> _Bucket:
        table = self._tables[endpoint_class]
        bucket = table.get(client_key)
        if bucket is not None:
            return bucket
        with self._table_locks[endpoint_class]:
            bucket = table.get(client_key)
            if bucket is None:
                if len(table) >= self._max_buckets:
                    logger.warning(
                        "rate_limit_buckets_cleared",
                        endpoint_class=endpoint_class.value,
                        tracked=len(table),
                        bound=self._max_buckets,
                    )
                    table.clear()
                bucket = _Bucket(self._policies[endpoint_class].capacity, self._clock())
                table[client_key] = bucket
            return bucket

    def try_consume(
        self, endpoint_class: EndpointClass, client_key: str, cost: int = 1
    ) -> RateLimitDecision:
        if cost < 1:
            raise ValueError("cost must be at least 1")
        policy = self._policies[endpoint_class]
        while True:
            bucket = self._bucket_for(endpoint_class, client_key)
            with bucket.lock:
                # Swept by cleanup after we looked it up; fetch the replacement.
                if bucket.retired:
                    continue
                now = self._clock()
                elapsed = now - bucket.window_start_ns
                if elapsed >= policy.window_ns:
                    bucket.window_start_ns += (elapsed // policy.window_ns) * policy.window_ns
                    bucket.tokens = bucket.capacity
                nanos_until_refill = bucket.window_start_ns + policy.window_ns - now
                allowed = bucket.tokens >= cost
                if allowed:
                    bucket.tokens -= cost
                remaining = bucket.tokens
            break
        return RateLimitDecision(
            allowed=allowed,
            remaining_tokens=remaining,
            nanos_until_refill=nanos_until_refill,
            limit=policy.capacity,
        )

    def cleanup(self) -> int:
        """Drop buckets idle for a full window; returns how many were dropped.

        An idle bucket would be topped back up on its next request anyway, so
        dropping it only restarts its window at that request.
        """
        dropped = 0
        now = self._clock()
        for endpoint_class, table in self._tables.items():
            window_ns = self._policies[endpoint_class].window_ns
            with self._table_locks[endpoint_class]:
                for client_key, bucket in list(table.items()):
                    with bucket.lock:
                        if now - bucket.window_start_ns < window_ns:
                            continue
                        bucket.retired = True
                    del table[client_key]
                    dropped += 1
        if dropped:
            logger.info("rate_limit_cleanup", dropped=dropped)
        return dropped


class RedisRateLimiter:
    """Fixed-window buckets shared between instances through Redis.

    Keys expire with their window, so no explicit garbage collection is needed.
    """

    def __init__(
        self, cache: RedisCache, policies: Mapping[EndpointClass, RateLimitPolicy]
    ) -> None:
        self.cache = cache
        self._policies = dict(policies)

    @classmethod
    def from_settings(cls, settings: Settings, cache: RedisCache) -> "RedisRateLimiter":
        return cls(cache, policies_from_settings(settings))

    def try_consume(
        self, endpoint_class: EndpointClass, client_key: str, cost: int = 1
    ) -> RateLimitDecision:
        if cost < 1:
            raise ValueError("cost must be at least 1")
        policy = self._policies[endpoint_class]
        window_ms = max(1, policy.window_ns // 1_000_000)
        allowed, remaining, ttl_ms = self.cache.consume_fixed_window(
            endpoint_class.value,
            client_key,
            capacity=policy.capacity,
            window_ms=window_ms,
            cost=cost,
        )
        return RateLimitDecision(
            allowed=allowed,
            remaining_tokens=remaining,
            nanos_until_refill=ttl_ms * 1_000_000,
            limit=policy.capacity,
        )

    def cleanup(self) -> int:
        return 0
