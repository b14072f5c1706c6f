"""
Fixed-window counter storage for rate limiting.

A counter is keyed by (rule_id, subject_key) and holds the start of its
current window and the number of requests seen in it. Each hit is atomic:
it resets the window when `now >= window_start + window_ms` and then
increments, all under one lock (memory) or one Lua script (Redis).
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis

from shared.errors import StoreUnavailable
from shared.logging import get_logger
from shared.retry import Backoff, RetryError, retry_async


@dataclass(frozen=True)
class WindowState:
    window_start_ms: int
    count: int


class CounterStore(ABC):
    """Shared counter storage. Implementations raise StoreUnavailable when unreachable."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def hit(self, rule_id: str, subject_key: str, window_ms: int, now_ms: int) -> WindowState:
        """Record one request and return the counter state after it."""

    @abstractmethod
    async def reset_rule(self, rule_id: str) -> int:
        """Drop every counter of a rule. Returns how many were removed."""

    async def health_check(self) -> bool:
        return True

    def stats(self) -> Dict[str, Any]:
        return {}


class InMemoryCounterStore(CounterStore):
    """Lock-sharded map; each key is guarded by exactly one shard lock."""

    def __init__(self, shards: int = 32, sweep_threshold: int = 4096):
        self.logger = get_logger("policy.rate_limit.counters")
        self.sweep_threshold = sweep_threshold
        self._shards: List[Tuple[threading.Lock, Dict[Tuple[str, str], List[int]]]] = [
            (threading.Lock(), {}) for _ in range(max(1, shards))
        ]

    def _shard_for(self, key: Tuple[str, str]):
        return self._shards[hash(key) % len(self._shards)]

    async def hit(self, rule_id: str, subject_key: str, window_ms: int, now_ms: int) -> WindowState:
        return self.hit_sync(rule_id, subject_key, window_ms, now_ms)

    def hit_sync(self, rule_id: str, subject_key: str, window_ms: int, now_ms: int) -> WindowState:
        key = (rule_id, subject_key)
        lock, counters = self._shard_for(key)
        with lock:
            # [window_start_ms, count, window_ms]
            state = counters.get(key)
            if state is None or now_ms >= state[0] + state[2] or state[2] != window_ms:
                state = [now_ms, 0, window_ms]
                counters[key] = state
            state[1] += 1
            result = WindowState(window_start_ms=state[0], count=state[1])

            if len(counters) > self.sweep_threshold:
                self._prune(counters, now_ms)

        return result

    @staticmethod
    def _prune(counters: Dict[Tuple[str, str], List[int]], now_ms: int) -> int:
        expired = [key for key, state in counters.items() if now_ms >= state[0] + state[2]]
        for key in expired:
            del counters[key]
        return len(expired)

    async def reset_rule(self, rule_id: str) -> int:
        removed = 0
        for lock, counters in self._shards:
            with lock:
                doomed = [key for key in counters if key[0] == rule_id]
                for key in doomed:
                    del counters[key]
                removed += len(doomed)
        if removed:
            self.logger.info("Rate limit counters reset", rule_id=rule_id, counters=removed)
        return removed

    def peek(self, rule_id: str, subject_key: str) -> Optional[WindowState]:
        key = (rule_id, subject_key)
        lock, counters = self._shard_for(key)
        with lock:
            state = counters.get(key)
            return WindowState(state[0], state[1]) if state else None

    def stats(self) -> Dict[str, Any]:
        total = 0
        for lock, counters in self._shards:
            with lock:
                total += len(counters)
        return {"backend": "memory", "shards": len(self._shards), "counters": total}


HIT_SCRIPT = """
local state = redis.call('HMGET', KEYS[1], 'start', 'count')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local start = tonumber(state[1])
if (not start) or now >= start + window then
  start = now
  redis.call('HSET', KEYS[1], 'start', start, 'count', 0)
  redis.call('PEXPIRE', KEYS[1], window)
end
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
return {start, count}
"""


class RedisCounterStore(CounterStore):
    """Counters shared across processes through Redis."""

    def __init__(self, redis_url: str, prefix: str = "rate_limit", connect_backoff: Optional[Backoff] = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.connect_backoff = connect_backoff or Backoff()
        self.logger = get_logger("policy.rate_limit.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    def _make_key(self, rule_id: str, subject_key: str) -> str:
        return f"{self.prefix}:{rule_id}:{subject_key}"

    async def start(self) -> None:
        async def ping():
            client = await self._get_redis()
            await client.ping()

        try:
            await retry_async(ping, (redis.RedisError, OSError), self.connect_backoff, name="redis_ping")
        except RetryError as e:
            # Startup continues; hits fail open until Redis is reachable.
            self.logger.warning("Redis counter store unreachable at startup", error=str(e.last_exception))
            return
        self.logger.info("Redis counter store started")

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis counter store stopped")

    async def hit(self, rule_id: str, subject_key: str, window_ms: int, now_ms: int) -> WindowState:
        key = self._make_key(rule_id, subject_key)
        try:
            client = await self._get_redis()
            start, count = await client.eval(HIT_SCRIPT, 1, key, now_ms, window_ms)
        except (redis.RedisError, OSError) as e:
            raise StoreUnavailable("counter_store", str(e)) from e
        return WindowState(window_start_ms=int(start), count=int(count))

    async def reset_rule(self, rule_id: str) -> int:
        try:
            client = await self._get_redis()
            keys = [key async for key in client.scan_iter(match=f"{self.prefix}:{rule_id}:*")]
            if keys:
                await client.delete(*keys)
        except (redis.RedisError, OSError) as e:
            raise StoreUnavailable("counter_store", str(e)) from e
        if keys:
            self.logger.info("Rate limit counters reset", rule_id=rule_id, counters=len(keys))
        return len(keys)

    async def health_check(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except (redis.RedisError, OSError):
            return False

    def stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "prefix": self.prefix}
