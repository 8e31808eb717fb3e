"""Redis-backed sliding-window rate limiter with in-memory fallback."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict, deque
from typing import Any

import redis
from fastapi import HTTPException, Request

from app.config import settings

logger = logging.getLogger(__name__)

_REDIS_RETRY_SECONDS = 5
_RATE_LIMIT_KEY_PREFIX = "rate_limit"

_REDIS_CHECK_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local ttl_seconds = tonumber(ARGV[5])

redis.call("ZREMRANGEBYSCORE", key, "-inf", now_ms - window_ms)
local current = redis.call("ZCARD", key)
redis.call("EXPIRE", key, ttl_seconds)
if current >= limit then
  return {0, current}
end
redis.call("ZADD", key, now_ms, member)
return {1, current + 1}
"""


class RateLimiter:
    """Per-client sliding window rate limiter.

    Counts live in Redis when ``REDIS_URL`` is set and reachable, so every API
    replica shares one window; otherwise each process keeps its own.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        max_clients: int = 10_000,
        name: str | None = None,
        redis_url: str | None = None,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_clients = max_clients
        self.name = name or f"limiter-{id(self)}"
        self._redis_url = redis_url
        self._requests: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = threading.Lock()
        self._trusted_proxies = {ip.strip() for ip in os.getenv("TRUSTED_PROXY_IPS", "").split(",") if ip.strip()}
        self._redis_client: redis.Redis | None = None
        self._redis_check: Any | None = None
        self._redis_retry_after = 0.0

    def _client_key(self, request: Request) -> str:
        if request.client is None:
            return "unknown"
        immediate_ip = request.client.host
        if immediate_ip in self._trusted_proxies:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                return forwarded.split(",")[0].strip()
        return immediate_ip

    def _drop_redis(self) -> None:
        self._redis_retry_after = time.time() + _REDIS_RETRY_SECONDS
        self._redis_client = None
        self._redis_check = None

    def _get_redis_client(self) -> redis.Redis | None:
        if not self._redis_url:
            return None
        if self._redis_client is not None:
            return self._redis_client
        if time.time() < self._redis_retry_after:
            return None
        try:
            client = redis.Redis.from_url(self._redis_url, socket_timeout=2)
            client.ping()
        except redis.RedisError:
            logger.warning("Rate limiter %s falling back to in-memory counts", self.name)
            self._drop_redis()
            return None
        self._redis_client = client
        self._redis_check = client.register_script(_REDIS_CHECK_SCRIPT)
        return client

    def _redis_allows(self, key: str) -> bool | None:
        client = self._get_redis_client()
        script = self._redis_check
        if not client or script is None:
            return None
        now_ms = int(time.time() * 1000)
        try:
            result = script(
                keys=[f"{_RATE_LIMIT_KEY_PREFIX}:{self.name}:{key}"],
                args=[now_ms, self.window_seconds * 1000, self.max_requests, f"{now_ms}-{time.time_ns()}", self.window_seconds],
            )
        except redis.RedisError:
            self._drop_redis()
            return None
        return int(result[0]) == 1

    def _memory_allows(self, key: str) -> bool:
        now = time.time()
        cutoff = now - self.window_seconds
        with self._lock:
            timestamps = self._requests.get(key)
            if timestamps is None:
                timestamps = deque()
                self._requests[key] = timestamps
            else:
                self._requests.move_to_end(key)
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= self.max_requests:
                return False
            timestamps.append(now)
            while len(self._requests) > self.max_clients:
                self._requests.popitem(last=False)
            return True

    def check(self, request: Request) -> None:
        """Raise 429 if rate limit exceeded."""
        key = self._client_key(request)
        allowed = self._redis_allows(key)
        if allowed is None:
            allowed = self._memory_allows(key)
        if not allowed:
            logger.warning("Rate limit %s exceeded for %s", self.name, key)
            raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")

    def reset(self) -> None:
        """Clear local fallback state and Redis keys for this limiter."""
        with self._lock:
            self._requests.clear()
        client = self._get_redis_client()
        if not client:
            return
        try:
            keys = list(client.scan_iter(match=f"{_RATE_LIMIT_KEY_PREFIX}:{self.name}:*"))
            if keys:
                client.delete(*keys)
        except redis.RedisError:
            self._drop_redis()


webhook_limiter = RateLimiter(
    max_requests=settings.webhook_rate_limit,
    window_seconds=60,
    name="webhooks",
    redis_url=settings.redis_url,
)
