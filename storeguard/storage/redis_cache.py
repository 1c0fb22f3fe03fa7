from __future__ import annotations

import hashlib
from typing import Tuple

from redis import Redis


class RedisCache:
    """Thin Redis wrapper for state shared between service instances."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window bucket: the key is created full with a TTL of one window and
    # decremented until it expires; the TTL is the time until refill.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])

local tokens = tonumber(redis.call('GET', key))
if tokens == nil then
  tokens = capacity
  redis.call('SET', key, capacity, 'PX', window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end

if tokens < cost then
  return {0, tokens, ttl}
end

tokens = redis.call('DECRBY', key, cost)
return {1, tokens, ttl}
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    @staticmethod
    def _normalize_rate_key(scope: str, key: str) -> str:
        """Hash client keys so arbitrary header values cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{scope}:{digest}"

    def consume_fixed_window(
        self,
        scope: str,
        key: str,
        *,
        capacity: int,
        window_ms: int,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Atomically take ``cost`` tokens; returns (allowed, remaining, ms until refill)."""

        safe_key = self._normalize_rate_key(scope, key)
        allowed, tokens, ttl_ms = self._fixed_window(
            keys=[safe_key], args=[capacity, window_ms, max(1, cost)]
        )
        return bool(int(allowed)), max(0, int(tokens)), max(0, int(ttl_ms))

    def close(self) -> None:
        self.client.close()
