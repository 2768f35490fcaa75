from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, Tuple

from gatewarden.logging import get_logger
from gatewarden.service.common import Clock
from gatewarden.service.errors import RateLimitExceeded, ValidationError
from gatewarden.storage.models import utcnow
from gatewarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    window_ms: int
    max_requests: int
    name: str = "custom"


RULES: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(15 * 60 * 1000, 5, "login"),
    "signup": RateLimitRule(60 * 60 * 1000, 3, "signup"),
    "password_reset": RateLimitRule(60 * 60 * 1000, 3, "password_reset"),
    "api": RateLimitRule(60 * 1000, 100, "api"),
    "upload": RateLimitRule(60 * 1000, 10, "upload"),
    "admin": RateLimitRule(60 * 1000, 50, "admin"),
    "two_factor": RateLimitRule(5 * 60 * 1000, 5, "two_factor"),
}


@dataclass
class RateLimitCounter:
    identifier: str
    count: int
    window_reset_at_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        return max(0, int((self.reset_at - now).total_seconds() + 0.999))


class CounterStore(Protocol):
    """Shared fixed-window counters with atomic hit."""

    async def hit(
        self, identifier: str, window_ms: int, max_requests: int, now_ms: int
    ) -> Tuple[bool, RateLimitCounter]: ...

    async def reset(self, identifier: str) -> None: ...

    async def status(self, identifier: str, now_ms: int) -> Optional[RateLimitCounter]: ...


class InMemoryCounterStore:
    """Process-local counters; only correct for a single running instance."""

    def __init__(self) -> None:
        self._counters: Dict[str, RateLimitCounter] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now_ms: int) -> None:
        expired = [k for k, c in self._counters.items() if now_ms >= c.window_reset_at_ms]
        for key in expired:
            del self._counters[key]

    async def hit(
        self, identifier: str, window_ms: int, max_requests: int, now_ms: int
    ) -> Tuple[bool, RateLimitCounter]:
        with self._lock:
            self._purge_expired(now_ms)
            counter = self._counters.get(identifier)
            if counter is None:
                counter = RateLimitCounter(identifier, 1, now_ms + window_ms)
                self._counters[identifier] = counter
                return True, RateLimitCounter(identifier, counter.count, counter.window_reset_at_ms)
            if counter.count >= max_requests:
                return False, RateLimitCounter(identifier, counter.count, counter.window_reset_at_ms)
            counter.count += 1
            return True, RateLimitCounter(identifier, counter.count, counter.window_reset_at_ms)

    async def reset(self, identifier: str) -> None:
        with self._lock:
            self._counters.pop(identifier, None)

    async def status(self, identifier: str, now_ms: int) -> Optional[RateLimitCounter]:
        with self._lock:
            counter = self._counters.get(identifier)
            if counter is None or now_ms >= counter.window_reset_at_ms:
                return None
            return RateLimitCounter(identifier, counter.count, counter.window_reset_at_ms)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class RedisCounterStore:
    """Counters shared across instances through a Lua fixed-window script."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def hit(
        self, identifier: str, window_ms: int, max_requests: int, now_ms: int
    ) -> Tuple[bool, RateLimitCounter]:
        allowed, count, ttl_ms = await self.cache.hit_fixed_window(
            identifier, window_ms, max_requests
        )
        return allowed, RateLimitCounter(identifier, count, now_ms + ttl_ms)

    async def reset(self, identifier: str) -> None:
        await self.cache.reset_counter(identifier)

    async def status(self, identifier: str, now_ms: int) -> Optional[RateLimitCounter]:
        current = await self.cache.get_counter(identifier)
        if current is None:
            return None
        count, ttl_ms = current
        return RateLimitCounter(identifier, count, now_ms + ttl_ms)


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RateLimiter:
    """Fixed-window limiter over an injected counter store."""

    def __init__(self, counters: CounterStore, *, clock: Clock = utcnow) -> None:
        self.counters = counters
        self._clock = clock

    @staticmethod
    def identifier(
        kind: str,
        *,
        ip: Optional[str] = None,
        user_id: Optional[str] = None,
        path: Optional[str] = None,
    ) -> str:
        if kind == "ip":
            return f"ip:{ip or 'unknown'}"
        if kind == "user":
            if not user_id:
                raise ValueError("user identifier requires user_id")
            return f"user:{user_id}"
        if kind == "endpoint":
            return f"endpoint:{path or '/'}:{ip or 'unknown'}"
        raise ValueError(f"unknown identifier kind: {kind}")

    @staticmethod
    def rule(name: str) -> RateLimitRule:
        try:
            return RULES[name]
        except KeyError:
            raise ValidationError(
                "unknown rate limit rule", detail={"rule": name}
            ) from None

    async def check_rate_limit(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        if rule.window_ms <= 0 or rule.max_requests <= 0:
            raise ValidationError(
                "rate limit window and maximum must be positive",
                detail={"window_ms": rule.window_ms, "max_requests": rule.max_requests},
            )
        now_ms = _to_ms(self._clock())
        allowed, counter = await self.counters.hit(
            identifier, rule.window_ms, rule.max_requests, now_ms
        )
        result = RateLimitResult(
            allowed=allowed,
            remaining=max(0, rule.max_requests - counter.count) if allowed else 0,
            reset_at=_from_ms(counter.window_reset_at_ms),
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                rule=rule.name,
                identifier=identifier,
                reset_at=result.reset_at.isoformat(),
            )
        return result

    async def enforce(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        result = await self.check_rate_limit(identifier, rule)
        if not result.allowed:
            raise RateLimitExceeded(
                "Too many requests. Please try again later.",
                detail={
                    "rule": rule.name,
                    "retry_after": result.retry_after_seconds(self._clock()),
                    "reset_at": result.reset_at.isoformat(),
                },
            )
        return result

    async def reset(self, identifier: str) -> None:
        await self.counters.reset(identifier)

    async def status(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        now = self._clock()
        counter = await self.counters.status(identifier, _to_ms(now))
        if counter is None:
            return RateLimitResult(
                allowed=True,
                remaining=rule.max_requests,
                reset_at=now + timedelta(milliseconds=rule.window_ms),
            )
        return RateLimitResult(
            allowed=counter.count < rule.max_requests,
            remaining=max(0, rule.max_requests - counter.count),
            reset_at=_from_ms(counter.window_reset_at_ms),
        )
