# safe_audit/rate_limit.py
"""
Dual-window (burst + daily quota) rate limiting per client.

Two sliding windows are checked in order: a one-minute window for bursts,
then a one-day window for quota. Either denial stops the request. When both
pass, the daily numbers are reported because they matter more to the user.

Backends:
- MemoryWindow: per-client timestamp lists, pruned lazily on each check.
- RedisWindow: sorted-set sliding log in Redis (redis.asyncio), for
  deployments with more than one process.
"""
from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from safe_audit.models import RateLimitDecision, RateLimitProvider

log = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0

MINUTE_REASON = "Too many scans in a short time"
DAY_REASON = "Daily scan limit reached"

Clock = Callable[[], float]


class WindowBackend(Protocol):
    provider: RateLimitProvider

    async def hit(self, key: str) -> RateLimitDecision:
        ...


def _retry_after(reset_at: float, now: float) -> int:
    return max(1, math.ceil(reset_at - now))


class MemoryWindow:
    """
    In-process sliding window. Each client owns an ordered list of request
    instants; a check drops the ones that fell out of the window, then admits
    the request when fewer than ``limit`` remain.
    """

    provider: RateLimitProvider = "memory"

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        clock: Clock = time.time,
        sweep_every: int = 1000,
    ):
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._store: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = sweep_every
        self._checks = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _sweep(self, cutoff: float) -> None:
        # Caller holds the lock. Forget clients with nothing left in the window.
        stale = [k for k, ts in self._store.items() if not ts or ts[-1] <= cutoff]
        for k in stale:
            del self._store[k]

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self.window
        with self._lock:
            timestamps = self._store.setdefault(key, deque())
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()

            used = len(timestamps)
            allowed = used < self.limit
            if allowed:
                timestamps.append(now)

            oldest = timestamps[0] if timestamps else now
            self._checks += 1
            if self._checks % self._sweep_every == 0:
                self._sweep(cutoff)

        reset_at = oldest + self.window
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - (used + 1 if allowed else used)),
            reset_at=reset_at,
            provider=self.provider,
            retry_after_seconds=None if allowed else _retry_after(reset_at, now),
        )

    async def hit(self, key: str) -> RateLimitDecision:
        return self.check(key)


class RedisWindow:
    """
    Sliding-log window kept in a Redis sorted set: members are request ids,
    scores are request times in milliseconds. The add is optimistic and is
    rolled back when it pushes the count over the limit.
    """

    provider: RateLimitProvider = "redis"

    def __init__(
        self,
        redis: Any,
        limit: int,
        window_seconds: float,
        *,
        prefix: str,
        clock: Clock = time.time,
    ):
        self.redis = redis
        self.limit = limit
        self.window = window_seconds
        self.prefix = prefix
        self._clock = clock

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        now_ms = int(now * 1000)
        window_ms = int(self.window * 1000)
        redis_key = f"{self.prefix}:{key}"
        member = f"{now_ms}-{uuid.uuid4().hex}"

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now_ms - window_ms)
            pipe.zadd(redis_key, {member: now_ms})
            pipe.zcard(redis_key)
            pipe.pexpire(redis_key, window_ms)
            _, _, count, _ = await pipe.execute()

        allowed = count <= self.limit
        if not allowed:
            await self.redis.zrem(redis_key, member)

        oldest = await self.redis.zrange(redis_key, 0, 0, withscores=True)
        oldest_s = (float(oldest[0][1]) / 1000.0) if oldest else now
        used_after = count if allowed else count - 1
        reset_at = oldest_s + self.window
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - used_after),
            reset_at=reset_at,
            provider=self.provider,
            retry_after_seconds=None if allowed else _retry_after(reset_at, now),
        )


class RateLimiter:
    """Minute-then-day limiter over a pluggable window backend."""

    def __init__(
        self,
        minute: WindowBackend,
        day: WindowBackend,
        *,
        enabled: bool = True,
        fallback_minute: Optional[WindowBackend] = None,
        fallback_day: Optional[WindowBackend] = None,
        clock: Clock = time.time,
    ):
        self.minute = minute
        self.day = day
        self.enabled = enabled
        self.fallback_minute = fallback_minute
        self.fallback_day = fallback_day
        self._clock = clock

    @classmethod
    def in_memory(
        cls, per_minute: int, per_day: int, *, enabled: bool = True, clock: Clock = time.time
    ) -> "RateLimiter":
        return cls(
            MemoryWindow(per_minute, MINUTE_SECONDS, clock=clock),
            MemoryWindow(per_day, DAY_SECONDS, clock=clock),
            enabled=enabled,
            clock=clock,
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any], redis_client: Any = None) -> "RateLimiter":
        rl = config.get("rate_limit", {})
        per_minute = int(rl.get("per_minute", 2))
        per_day = int(rl.get("per_day", 5))
        enabled = bool(rl.get("enabled", False))
        redis_url = rl.get("redis_url")

        if redis_client is None and redis_url and enabled:
            redis_client = aioredis.from_url(redis_url)

        if redis_client is None:
            log.info("Rate limiter using in-process windows (enabled=%s).", enabled)
            return cls.in_memory(per_minute, per_day, enabled=enabled)

        prefix = rl.get("key_prefix", "safe_audit:scan")
        log.info("Rate limiter using Redis windows (enabled=%s).", enabled)
        return cls(
            RedisWindow(redis_client, per_minute, MINUTE_SECONDS, prefix=f"{prefix}:minute"),
            RedisWindow(redis_client, per_day, DAY_SECONDS, prefix=f"{prefix}:day"),
            enabled=enabled,
            fallback_minute=MemoryWindow(per_minute, MINUTE_SECONDS),
            fallback_day=MemoryWindow(per_day, DAY_SECONDS),
        )

    async def _hit(
        self, primary: WindowBackend, fallback: Optional[WindowBackend], key: str
    ) -> RateLimitDecision:
        try:
            return await primary.hit(key)
        except (RedisError, OSError) as e:
            if fallback is None:
                raise
            log.error("Rate-limit backend %s failed (%s); using in-process window.", primary.provider, e)
            return await fallback.hit(key)

    async def check(self, client_key: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(
                allowed=True, limit=0, remaining=0, reset_at=self._clock(), provider="disabled"
            )

        minute = await self._hit(self.minute, self.fallback_minute, client_key)
        if not minute.allowed:
            log.info("Burst limit hit for %s", client_key)
            return _with_reason(minute, MINUTE_REASON)

        day = await self._hit(self.day, self.fallback_day, client_key)
        if not day.allowed:
            log.info("Daily limit hit for %s", client_key)
            return _with_reason(day, DAY_REASON)

        return day


def _with_reason(decision: RateLimitDecision, reason: str) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=decision.allowed,
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
        provider=decision.provider,
        retry_after_seconds=decision.retry_after_seconds,
        reason=reason,
    )


# ---- Client identity ---------------------------------------------------------

# Default trust order, strongest first. x-forwarded-for is client-controlled
# unless the edge proxy strips or overwrites it; without that, a client can
# rotate it to get fresh buckets. Behind a proxy that sets cf-connecting-ip or
# x-real-ip itself, put that header first (rate_limit.client_ip_headers).
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def client_ip(
    headers: Mapping[str, str],
    remote_addr: Optional[str] = None,
    *,
    trusted_headers: Sequence[str] = CLIENT_IP_HEADERS,
) -> str:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in trusted_headers:
        value = lowered.get(name.lower())
        if not value:
            continue
        first = value.split(",")[0].strip()
        if first:
            return first
    if remote_addr:
        return remote_addr
    return "unknown"


def client_key(
    headers: Mapping[str, str],
    remote_addr: Optional[str] = None,
    *,
    ua_chars: int = 200,
    ip_headers: Sequence[str] = CLIENT_IP_HEADERS,
) -> str:
    """
    IP is the primary identity; a truncated user agent separates clients that
    share one address behind NAT or a corporate proxy.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    ua = (lowered.get("user-agent") or "")[:ua_chars]
    return f"ip:{client_ip(headers, remote_addr, trusted_headers=ip_headers)}|ua:{ua}"
