"""
Rate Limiter

Fixed-window counters keyed by (action, identity).

A window opens at the first call and lasts `window_ms`; once
`now > window_start + window_ms` the next call opens a fresh window at
`now`. The increment and the window check happen atomically inside the
counter store, so concurrent callers on the same key never lose updates.

Counter stores:
- InMemoryCounterStore: single-process deployments and tests
- RedisCounterStore: shared counters for multi-instance deployments
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Tuple

from ...config import RateLimitRule
from ...models.domain import RateLimitDecision, utcnow

logger = logging.getLogger(__name__)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_millis(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


def from_millis(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


# =============================================================================
# COUNTER STORES
# =============================================================================

class CounterStore(ABC):
    """Atomic increment-and-report for one fixed window per key."""

    @abstractmethod
    async def hit(self, key: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        """
        Count one attempt against `key`.

        Returns (count_in_window, window_start_ms) after the increment.
        """

    async def reset(self, key: str) -> None:
        """Forget the window for `key`."""


class InMemoryCounterStore(CounterStore):
    """
    Process-local counters.

    A threading lock guards the map so the store is safe from the event loop
    and from worker threads alike; nothing inside the lock awaits. Expired
    windows are purged every `purge_every` hits, and as soon as the map grows
    past `max_keys`.
    """

    def __init__(self, purge_every: int = 1000, max_keys: int = 100_000):
        # key -> [window_start_ms, count, window_ms]
        self._windows: Dict[str, List[int]] = {}
        self._lock = threading.Lock()
        self.purge_every = max(1, purge_every)
        self.max_keys = max_keys
        self._hits_since_purge = 0

    async def hit(self, key: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        with self._lock:
            self._hits_since_purge += 1
            if self._hits_since_purge >= self.purge_every or len(self._windows) >= self.max_keys:
                self._purge_locked(now_ms)

            window = self._windows.get(key)
            if window is None or now_ms > window[0] + window_ms:
                window = [now_ms, 0, window_ms]
                self._windows[key] = window
            window[1] += 1
            return window[1], window[0]

    async def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def purge_expired(self, now_ms: int) -> int:
        """Drop windows that have closed. Returns how many were dropped."""
        with self._lock:
            return self._purge_locked(now_ms)

    def _purge_locked(self, now_ms: int) -> int:
        self._hits_since_purge = 0
        stale = [k for k, (start, _, window_ms) in self._windows.items() if now_ms > start + window_ms]
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug(f"Purged {len(stale)} expired rate-limit windows")
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


# INCR and PEXPIRE run inside one script so the window is created atomically.
_REDIS_HIT_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class RedisCounterStore(CounterStore):
    """
    Shared counters in Redis.

    The key's TTL is the window; Redis expires it at window_start + window_ms,
    so the window boundary is inclusive of the expiry instant.
    """

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        from redis import asyncio as redis_asyncio
        return cls(redis_asyncio.Redis.from_url(url))

    async def hit(self, key: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        count, ttl = await self.client.eval(_REDIS_HIT_SCRIPT, 1, key, window_ms)
        count, ttl = int(count), int(ttl)
        return count, now_ms + ttl - window_ms

    async def reset(self, key: str) -> None:
        await self.client.delete(key)


# =============================================================================
# RATE LIMITER
# =============================================================================

class RateLimiter:
    """Fixed-window limiter. Pass one instance explicitly to every component."""

    KEY_PREFIX = "rate_limit"

    def __init__(self, store: CounterStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    @classmethod
    def key_for(cls, action: str, identity: str) -> str:
        return f"{cls.KEY_PREFIX}:{action}:{identity or 'unknown'}"

    async def check_and_consume(
        self,
        action: str,
        identity: str,
        max_attempts: int,
        window_ms: int,
    ) -> RateLimitDecision:
        """Count this attempt and report whether it is within the limit."""
        now_ms = to_millis(self.clock())
        count, window_start = await self.store.hit(self.key_for(action, identity), window_ms, now_ms)

        allowed = count <= max_attempts
        if not allowed:
            logger.info(f"Rate limit exceeded for action={action} ({count}/{max_attempts})")

        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, max_attempts - count),
            reset_at=from_millis(window_start + window_ms),
            limit=max_attempts,
        )

    async def check_rule(self, action: str, identity: str, rule: RateLimitRule) -> RateLimitDecision:
        return await self.check_and_consume(action, identity, rule.max_attempts, rule.window_ms)

    async def reset(self, action: str, identity: str) -> None:
        await self.store.reset(self.key_for(action, identity))
