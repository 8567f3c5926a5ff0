"""
Admission Controller
====================

Sliding-window rate limiting for the attribution API (`/api/*`).

WHY THIS FILE EXISTS
--------------------
The API endpoints create records on disk. Without admission control a
single client could flood the referral store or the statistics scans.

RATE LIMITS
-----------
Configured through settings:
- RATE_LIMIT_WINDOW_MS: window length (default 15 minutes)
- RATE_LIMIT_MAX_REQUESTS: requests allowed per window per client (default 100)

A rejected request gets `retry_after = ceil(window_ms / 1000)` seconds.

LIMITATIONS
-----------
The in-memory limiter is per process: counts are lost on restart and not
shared between instances. Configure REDIS_URL to share windows between
processes.

RELATED FILES
-------------
- deferlink/middleware.py: RateLimitMiddleware calls `enforce()` per request in a worker thread
- deferlink/services/maintenance_scheduler.py: runs `cleanup()` every 5 minutes
- deferlink/errors.py: RateLimitedError
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from ..errors import RateLimitedError

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class AdmissionDecision:
    """
    Result of an admission check.

    Attributes:
        allowed: Whether the request may proceed
        retry_after: Seconds to wait before retrying (only when rejected)
        remaining: Requests left in the current window after this one
    """

    allowed: bool
    retry_after: Optional[int] = None
    remaining: int = 0


class SlidingWindowRateLimiter:
    """
    In-memory sliding window limiter keyed by client identity.

    HOW:
        Each key maps to a deque of request timestamps (ms). On every check,
        timestamps with `now - ts >= window_ms` are discarded; if the
        remaining count is at the limit the request is rejected, otherwise
        `now` is appended. Rejected requests are not recorded.

    USAGE:
        limiter = SlidingWindowRateLimiter(window_ms=900_000, max_requests=100)
        decision = limiter.admit(client_ip)
        if not decision.allowed:
            ...  # 429 with decision.retry_after

    THREAD SAFETY:
        One lock guards the whole table; `cleanup()` takes the same lock.
    """

    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        clock: Callable[[], float] = _now_ms,
    ):
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)

    def _prune(self, timestamps: Deque[float], now: float) -> None:
        while timestamps and now - timestamps[0] >= self.window_ms:
            timestamps.popleft()

    def admit(self, key: str) -> AdmissionDecision:
        now = self.clock()
        with self._lock:
            timestamps = self._requests.setdefault(key, deque())
            self._prune(timestamps, now)

            if len(timestamps) >= self.max_requests:
                logger.warning(
                    f"[RATE_LIMITER] {key} hit rate limit "
                    f"({len(timestamps)}/{self.max_requests} per {self.window_ms}ms)"
                )
                return AdmissionDecision(allowed=False, retry_after=self.retry_after_seconds)

            timestamps.append(now)
            return AdmissionDecision(allowed=True, remaining=self.max_requests - len(timestamps))

    def enforce(self, key: str) -> None:
        """Admit or raise RateLimitedError."""
        decision = self.admit(key)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after, key=key)

    def cleanup(self) -> int:
        """Evict keys with no timestamps inside the window. Returns evicted count."""
        now = self.clock()
        cleaned = 0
        with self._lock:
            for key in list(self._requests):
                timestamps = self._requests[key]
                self._prune(timestamps, now)
                if not timestamps:
                    del self._requests[key]
                    cleaned += 1

        if cleaned > 0:
            logger.info(f"[RATE_LIMITER] Cleaned up {cleaned} idle entries")
        return cleaned

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._requests)


class RedisSlidingWindowRateLimiter:
    """
    Redis-backed sliding window limiter, shared between processes.

    HOW:
        Uses Redis sorted sets with timestamps as scores.
        - Key format: "deeplink_rate:{client}"
        - One MULTI/EXEC pipeline prunes old entries, adds this request and
          counts, so concurrent processes are serialized by Redis
        - A count above the limit rejects and removes the member just added
        - Keys expire after two windows, so `cleanup()` has nothing to do

    Redis failures fail open: the request is admitted and the error logged.
    """

    def __init__(
        self,
        redis_client: Redis,
        window_ms: int,
        max_requests: int,
        clock: Callable[[], float] = _now_ms,
        key_prefix: str = "deeplink_rate",
    ):
        self.redis = redis_client
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.clock = clock
        self.key_prefix = key_prefix
        self._seq = 0
        self._seq_lock = threading.Lock()

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)

    def _get_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _member(self, now: float) -> str:
        # Unique member so two requests in the same millisecond both count
        with self._seq_lock:
            self._seq += 1
            return f"{now}:{self._seq}"

    def admit(self, key: str) -> AdmissionDecision:
        redis_key = self._get_key(key)
        now = self.clock()
        member = self._member(now)

        try:
            pipe = self.redis.pipeline(transaction=True)
            # Inclusive upper bound matches the in-memory rule `now - ts >= window`
            pipe.zremrangebyscore(redis_key, "-inf", now - self.window_ms)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.pexpire(redis_key, self.window_ms * 2)
            _, _, current_count, _ = pipe.execute()

            if current_count > self.max_requests:
                # Rejected requests are not recorded
                self.redis.zrem(redis_key, member)
                logger.warning(
                    f"[RATE_LIMITER] {key} hit rate limit "
                    f"({current_count - 1}/{self.max_requests} per {self.window_ms}ms)"
                )
                return AdmissionDecision(allowed=False, retry_after=self.retry_after_seconds)
        except RedisError as e:
            logger.error(f"[RATE_LIMITER] Redis unavailable, admitting {key}: {e}")
            return AdmissionDecision(allowed=True, remaining=self.max_requests)

        return AdmissionDecision(allowed=True, remaining=self.max_requests - current_count)

    def enforce(self, key: str) -> None:
        decision = self.admit(key)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after, key=key)

    def cleanup(self) -> int:
        """Keys expire on their own in Redis."""
        return 0
