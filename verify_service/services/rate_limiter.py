"""
Sliding-window rate limiting.

Each key holds the timestamps of recorded events in the trailing window.
Denied checks are not recorded, so hammering a closed window does not push
the reset time further out.

RedisRateLimiter is shared by every instance behind the same Redis.
InMemoryRateLimiter is per process and under-counts when the service runs
on several instances; it is meant for single-instance and local setups.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def make_rate_limit_key(bucket: str, identity: str) -> str:
    return f"rl:{bucket}:{identity}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    # True when the backing store failed and the check was skipped
    degraded: bool = False


class RateLimiter(Protocol):
    async def check_and_record(
        self, key: str, window_seconds: int, max_count: int
    ) -> RateLimitDecision: ...


class RedisRateLimiter:
    def __init__(self, redis: Redis, clock: Callable[[], datetime] = _now_utc):
        self._redis = redis
        self._clock = clock

    async def check_and_record(
        self, key: str, window_seconds: int, max_count: int
    ) -> RateLimitDecision:
        now = self._clock()
        now_ms = int(now.timestamp() * 1000)
        window_ms = window_seconds * 1000
        try:
            pipe = self._redis.pipeline()
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            _, count, oldest = await pipe.execute()

            if count >= max_count:
                earliest_ms = int(oldest[0][1]) if oldest else now_ms
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=_from_ms(earliest_ms + window_ms),
                )

            # unique member so two events in the same millisecond both count
            await self._redis.zadd(key, {f"{now_ms}:{uuid.uuid4().hex}": now_ms})
            await self._redis.pexpire(key, window_ms)
        except (RedisError, OSError, TimeoutError) as exc:
            logger.warning(f"Rate limiter unavailable for {key}, failing open: {exc}")
            return RateLimitDecision(
                allowed=True,
                remaining=max_count,
                reset_at=now + timedelta(seconds=window_seconds),
                degraded=True,
            )

        earliest_ms = int(oldest[0][1]) if oldest else now_ms
        return RateLimitDecision(
            allowed=True,
            remaining=max(max_count - count - 1, 0),
            reset_at=_from_ms(earliest_ms + window_ms),
        )


class InMemoryRateLimiter:
    def __init__(
        self,
        clock: Callable[[], datetime] = _now_utc,
        sweep_interval_seconds: float = 60.0,
    ):
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._windows: dict[str, int] = {}
        self._sweep_interval = sweep_interval_seconds
        self._last_sweep: float | None = None

    def key_count(self) -> int:
        return len(self._events)

    def _drop_idle_keys(self, now: float) -> None:
        """Forget keys whose newest event has left its window."""
        idle = [
            key
            for key, events in self._events.items()
            if not events or events[-1] <= now - self._windows[key]
        ]
        for key in idle:
            del self._events[key]
            del self._windows[key]
        self._last_sweep = now
        if idle:
            logger.debug(f"Dropped {len(idle)} idle rate limit keys")

    async def check_and_record(
        self, key: str, window_seconds: int, max_count: int
    ) -> RateLimitDecision:
        now = self._clock().timestamp()
        if self._last_sweep is None or now - self._last_sweep >= self._sweep_interval:
            self._drop_idle_keys(now)

        events = self._events.get(key)
        if events is not None:
            while events and events[0] <= now - window_seconds:
                events.popleft()
            if not events:
                del self._events[key]
                del self._windows[key]
                events = None

        if (len(events) if events else 0) >= max_count:
            earliest = events[0] if events else now
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_at=_from_ts(earliest + window_seconds),
            )

        if events is None:
            events = self._events[key] = deque()
        self._windows[key] = window_seconds
        events.append(now)
        return RateLimitDecision(
            allowed=True,
            remaining=max_count - len(events),
            reset_at=_from_ts(events[0] + window_seconds),
        )

    def reset(self) -> None:
        self._events.clear()
        self._windows.clear()
        self._last_sweep = None


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
