"""Per-IP sliding window rate limiting.

Buckets:
- refresh: token rotation, tight per-minute budget
- auth: login/register/logout, throttles credential guessing on top of lockout
- media: stream and stream-token requests (players issue many Range requests)
- global: everything else under /api

State is in process memory unless REDIS_URL is set. X-Forwarded-For is only
honoured for connections from TRUSTED_PROXIES.
"""

import asyncio
import ipaddress
import logging
import sys
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple

from config import AppMode, get_settings
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

UNLIMITED_PATHS = ("/health", "/", "/docs", "/redoc", "/openapi.json")
REFRESH_PATH = "/api/auth/refresh"
REFRESH_WINDOW_SECONDS = 60


class RateLimiterBackend(ABC):
    """Storage for request timestamps per key."""

    @abstractmethod
    async def is_allowed(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, int]:
        """Record a hit if under the limit. Returns (allowed, remaining, retry_after)."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget all hits for a key."""


class InMemoryRateLimiterBackend(RateLimiterBackend):
    """
    Sliding window kept in a dict of timestamp lists.

    Each worker process counts on its own, so with N workers the effective
    limit is N times the configured one. Use Redis for multi-worker deploys.
    Key count is bounded; least recently seen keys are evicted first.
    """

    MAX_KEYS = 10000

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._hits: Dict[str, List[float]] = defaultdict(list)
        self._seen: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._sweep_every = 60
        self._last_sweep = clock()

    async def is_allowed(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        window_start = now - window_seconds

        async with self._lock:
            if now - self._last_sweep > self._sweep_every:
                self._sweep(window_start)
                self._last_sweep = now

            if key not in self._hits and len(self._hits) >= self.MAX_KEYS:
                self._evict()

            self._seen[key] = now
            hits = [t for t in self._hits[key] if t > window_start]
            self._hits[key] = hits

            if len(hits) >= max_requests:
                retry_after = int(hits[0] + window_seconds - now) + 1 if hits else window_seconds
                return False, 0, max(1, retry_after)

            hits.append(now)
            return True, max_requests - len(hits), 0

    def _evict(self) -> None:
        count = max(100, len(self._hits) // 10)
        oldest = sorted(self._seen, key=self._seen.get)[:count]
        for key in oldest:
            self._hits.pop(key, None)
            self._seen.pop(key, None)
        logger.debug(f"Rate limiter evicted {len(oldest)} idle keys")

    def _sweep(self, cutoff: float) -> None:
        for key in list(self._hits):
            live = [t for t in self._hits[key] if t > cutoff]
            if live:
                self._hits[key] = live
            else:
                del self._hits[key]
                self._seen.pop(key, None)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._hits.pop(key, None)
            self._seen.pop(key, None)


class RedisRateLimiterBackend(RateLimiterBackend):
    """
    Sliding window in a Redis sorted set per key (score = hit timestamp).

    Shared by all workers and survives restarts.
    """

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._redis = None

    async def _get_redis(self):
        if self._redis is None:
            import redis.asyncio as redis

            client = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            try:
                await client.ping()
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise
            self._redis = client
            logger.info("Redis rate limiter backend connected")
        return self._redis

    async def is_allowed(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, int]:
        redis = await self._get_redis()
        now = time.time()
        redis_key = f"ratelimit:{key}"

        pipe = redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zcard(redis_key)
        _, current_count = await pipe.execute()

        if current_count >= max_requests:
            oldest = await redis.zrange(redis_key, 0, 0, withscores=True)
            retry_after = (
                int(oldest[0][1] + window_seconds - now) + 1 if oldest else window_seconds
            )
            return False, 0, max(1, retry_after)

        pipe = redis.pipeline()
        pipe.zadd(redis_key, {f"{now}": now})
        pipe.expire(redis_key, window_seconds + 1)
        await pipe.execute()
        return True, max_requests - current_count - 1, 0

    async def reset(self, key: str) -> None:
        redis = await self._get_redis()
        await redis.delete(f"ratelimit:{key}")


class RateLimiter:
    """Facade over the configured backend (Redis when REDIS_URL is set)."""

    def __init__(self, backend: Optional[RateLimiterBackend] = None):
        if backend is not None:
            self._backend = backend
            return

        settings = get_settings()
        if settings.REDIS_URL:
            logger.info("Using Redis rate limiter backend")
            self._backend = RedisRateLimiterBackend(settings.REDIS_URL)
        else:
            message = (
                "Using in-memory rate limiter; limits are per process and reset on restart"
            )
            if settings.APP_MODE == AppMode.DEV:
                logger.debug(message)
            else:
                logger.warning(message)
            self._backend = InMemoryRateLimiterBackend()

    async def is_allowed(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, int]:
        """
        Check and record one request.

        Returns:
            Tuple of (is_allowed, remaining_requests, retry_after_seconds)
        """
        return await self._backend.is_allowed(key, max_requests, window_seconds)

    async def reset(self, key: str) -> None:
        await self._backend.reset(key)


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


@lru_cache
def _trusted_networks(raw: Optional[str]) -> Tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    """Parse TRUSTED_PROXIES. Nothing is trusted when unset."""
    networks = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            networks.append(ipaddress.ip_network(part, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid trusted proxy network '{part}': {e}")
    return tuple(networks)


def _is_trusted(ip: str, networks) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in network for network in networks)


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """
    Client address for rate limiting, audit and session records.

    Forwarding headers count only when the direct peer is a trusted proxy.
    X-Forwarded-For is walked right to left and the first untrusted hop wins,
    so a client cannot spoof its address by prepending entries.
    """
    direct_ip = request.client.host if request.client else None
    if not direct_ip:
        return "unknown"

    networks = _trusted_networks(get_settings().TRUSTED_PROXIES)
    if not _is_trusted(direct_ip, networks):
        return direct_ip

    forwarded_for = request.headers.get("X-Forwarded-For")
    if not forwarded_for:
        real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if real_ip and _valid_ip(real_ip):
            return real_ip
        return direct_ip

    hops = [hop.strip() for hop in forwarded_for.split(",")]
    for hop in reversed(hops):
        if not _valid_ip(hop):
            logger.warning(f"Invalid IP in X-Forwarded-For: {hop}")
            continue
        if not _is_trusted(hop, networks):
            return hop

    # Every hop is a proxy: fall back to the leftmost one
    if hops and _valid_ip(hops[0]):
        return hops[0]
    return direct_ip


@dataclass(frozen=True)
class RateLimitRule:
    bucket: str
    max_requests: int
    window_seconds: int


def rule_for_path(path: str, settings=None) -> Optional[RateLimitRule]:
    """Pick the bucket for a request path. None means not limited."""
    settings = settings or get_settings()
    if path in UNLIMITED_PATHS:
        return None
    if path == REFRESH_PATH:
        return RateLimitRule("refresh", settings.RATE_LIMIT_REFRESH, REFRESH_WINDOW_SECONDS)
    if path.startswith("/api/auth/"):
        return RateLimitRule("auth", settings.RATE_LIMIT_AUTH, settings.RATE_LIMIT_WINDOW)
    if path.startswith("/api/media/"):
        return RateLimitRule("media", settings.RATE_LIMIT_MEDIA, settings.RATE_LIMIT_WINDOW)
    return RateLimitRule("global", settings.RATE_LIMIT_GLOBAL, settings.RATE_LIMIT_WINDOW)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests over their bucket's budget with 429 and Retry-After."""

    def __init__(self, app, rate_limiter: Optional[RateLimiter] = None, enabled: Optional[bool] = None):
        super().__init__(app)
        self.rate_limiter = rate_limiter or get_rate_limiter()
        # Disabled under pytest unless a test opts in explicitly
        self.enabled = enabled if enabled is not None else "pytest" not in sys.modules

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        rule = rule_for_path(path)
        if rule is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        limit_key = f"{rule.bucket}:{client_ip}"

        is_allowed, remaining, retry_after = await self.rate_limiter.is_allowed(
            limit_key, rule.max_requests, rule.window_seconds
        )

        if not is_allowed:
            logger.warning(f"Rate limit exceeded for {limit_key} (path={path})")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": "Too many requests. Please try again later.",
                    "retry_after": retry_after,
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(rule.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rule.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
