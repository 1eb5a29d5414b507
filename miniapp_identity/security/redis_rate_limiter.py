"""Redis-backed fixed window counter store."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError

from .rate_limiter import CounterWindow


class RedisCounterStore:
    """Distributed counter store shared by every server instance."""

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])

    local count = redis.call('INCR', key)
    if count == 1 then
        redis.call('PEXPIRE', key, window_ms)
    end
    local ttl = redis.call('PTTL', key)
    if ttl < 0 then
        redis.call('PEXPIRE', key, window_ms)
        ttl = window_ms
    end
    return {count, ttl}
    """

    def __init__(self, client: Redis, *, key_prefix: str = "rate") -> None:
        """Initialise the Redis client, key namespace, and Lua script cache."""
        self._client = client
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def increment(self, key: str, window_ms: int) -> CounterWindow:
        """Atomically count a hit for ``key`` in its current window."""
        now_ms = int(time.time() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        try:
            count, ttl = self._script(keys=[redis_key], args=[window_ms])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                return self._increment_fallback(redis_key, window_ms, now_ms)
            raise
        return CounterWindow(count=int(count), reset_at=now_ms + int(ttl))

    def _increment_fallback(self, redis_key: str, window_ms: int, now_ms: int) -> CounterWindow:
        """Non-scripted variant used when Lua is unavailable."""
        count = self._client.incr(redis_key)
        if int(count) == 1:
            self._client.pexpire(redis_key, window_ms)
        ttl = self._client.pttl(redis_key)
        if int(ttl) < 0:
            self._client.pexpire(redis_key, window_ms)
            ttl = window_ms
        return CounterWindow(count=int(count), reset_at=now_ms + int(ttl))
