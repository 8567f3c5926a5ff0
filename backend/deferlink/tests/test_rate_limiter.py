"""Tests for sliding-window admission control.

WHAT: in-memory and Redis limiters, plus the /api middleware
WHY: Over-limit clients must be rejected without affecting other clients or
     non-API routes
"""

import asyncio
import time
from unittest.mock import Mock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from deferlink.errors import RateLimitedError
from deferlink.services.rate_limiter import (
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
)


class ManualClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# =============================================================================
# IN-MEMORY LIMITER
# =============================================================================

class TestSlidingWindowRateLimiter:
    def test_allows_up_to_limit_then_rejects(self):
        """WHAT: The (max+1)-th request inside the window is rejected."""
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(window_ms=1000, max_requests=3, clock=clock)

        decisions = [limiter.admit("client") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
        assert decisions[3].retry_after == 1

    def test_retry_after_rounds_up_to_seconds(self):
        limiter = SlidingWindowRateLimiter(window_ms=900_000, max_requests=1, clock=ManualClock())
        limiter.admit("client")

        assert limiter.admit("client").retry_after == 900

    def test_window_slides(self):
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(window_ms=1000, max_requests=2, clock=clock)
        limiter.admit("client")
        clock.now = 500
        limiter.admit("client")

        clock.now = 999
        assert limiter.admit("client").allowed is False
        clock.now = 1000
        assert limiter.admit("client").allowed is True
        assert limiter.admit("client").allowed is False

    def test_rejected_requests_are_not_counted(self):
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(window_ms=1000, max_requests=1, clock=clock)
        limiter.admit("client")
        for _ in range(10):
            limiter.admit("client")

        clock.now = 1000
        assert limiter.admit("client").allowed is True

    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(window_ms=1000, max_requests=1, clock=ManualClock())

        assert limiter.admit("a").allowed is True
        assert limiter.admit("a").allowed is False
        assert limiter.admit("b").allowed is True

    def test_enforce_raises(self):
        limiter = SlidingWindowRateLimiter(window_ms=2500, max_requests=1, clock=ManualClock())
        limiter.enforce("client")

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.enforce("client")

        assert exc_info.value.retry_after == 3
        assert exc_info.value.to_response() == {
            "success": False,
            "error": "Too many requests. Please try again later.",
            "retryAfter": 3,
        }

    def test_cleanup_evicts_idle_keys(self):
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(window_ms=1000, max_requests=5, clock=clock)
        limiter.admit("old")
        clock.now = 600
        limiter.admit("recent")

        clock.now = 1200
        assert limiter.cleanup() == 1
        assert limiter.tracked_keys() == 1
        assert limiter.cleanup() == 0


# =============================================================================
# REDIS LIMITER
# =============================================================================

class TestRedisSlidingWindowRateLimiter:
    def test_under_limit_records_request(self):
        """WHAT: Admitted requests are added to the sorted set with a TTL."""
        mock_redis = Mock()
        pipe = mock_redis.pipeline.return_value
        pipe.execute.return_value = [0, 1, 6, True]
        limiter = RedisSlidingWindowRateLimiter(
            mock_redis, window_ms=1000, max_requests=10, clock=ManualClock(5000)
        )

        decision = limiter.admit("1.2.3.4")

        assert decision.allowed is True
        assert decision.remaining == 4
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.zremrangebyscore.assert_called_once_with("deeplink_rate:1.2.3.4", "-inf", 4000)
        pipe.zadd.assert_called_once()
        pipe.zcard.assert_called_once_with("deeplink_rate:1.2.3.4")
        pipe.pexpire.assert_called_once_with("deeplink_rate:1.2.3.4", 2000)
        mock_redis.zrem.assert_not_called()

    def test_last_slot_is_admitted(self):
        mock_redis = Mock()
        mock_redis.pipeline.return_value.execute.return_value = [0, 1, 10, True]
        limiter = RedisSlidingWindowRateLimiter(mock_redis, window_ms=60_000, max_requests=10)

        decision = limiter.admit("1.2.3.4")

        assert decision.allowed is True
        assert decision.remaining == 0

    def test_over_limit_rejects_and_removes_its_entry(self):
        """WHAT: Check and add run in one transaction; a loser undoes its add."""
        mock_redis = Mock()
        pipe = mock_redis.pipeline.return_value
        pipe.execute.return_value = [0, 1, 11, True]
        limiter = RedisSlidingWindowRateLimiter(mock_redis, window_ms=60_000, max_requests=10)

        decision = limiter.admit("1.2.3.4")

        assert decision.allowed is False
        assert decision.retry_after == 60
        [added] = pipe.zadd.call_args.args[1]
        mock_redis.zrem.assert_called_once_with("deeplink_rate:1.2.3.4", added)

    def test_redis_failure_fails_open(self):
        """WHAT: Redis outages must not block attribution API traffic."""
        mock_redis = Mock()
        mock_redis.pipeline.return_value.execute.side_effect = RedisConnectionError("down")
        limiter = RedisSlidingWindowRateLimiter(mock_redis, window_ms=1000, max_requests=1)

        assert limiter.admit("client").allowed is True
        limiter.enforce("client")

    def test_cleanup_is_a_no_op(self):
        limiter = RedisSlidingWindowRateLimiter(Mock(), window_ms=1000, max_requests=1)

        assert limiter.cleanup() == 0


# =============================================================================
# MIDDLEWARE
# =============================================================================

class TestRateLimitMiddleware:
    @pytest.fixture
    def limited_client(self, settings):
        from fastapi.testclient import TestClient

        from deferlink.main import create_app

        settings.RATE_LIMIT_MAX_REQUESTS = 2
        settings.RATE_LIMIT_WINDOW_MS = 60_000
        return TestClient(create_app(settings), follow_redirects=False)

    def test_api_requests_over_limit_get_429(self, limited_client):
        for _ in range(2):
            assert limited_client.get("/api/product/stats/P1").status_code == 200

        response = limited_client.get("/api/product/stats/P1")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json() == {
            "success": False,
            "error": "Too many requests. Please try again later.",
            "retryAfter": 60,
        }

    def test_non_api_routes_are_not_limited(self, limited_client):
        for _ in range(5):
            assert limited_client.get("/health").status_code == 200

    def test_clients_are_keyed_by_forwarded_address(self, limited_client):
        """WHAT: Behind a proxy, X-Forwarded-For identifies the client."""
        for _ in range(2):
            limited_client.get("/api/product/stats/P1", headers={"X-Forwarded-For": "198.51.100.1"})

        blocked = limited_client.get("/api/product/stats/P1", headers={"X-Forwarded-For": "198.51.100.1"})
        other = limited_client.get("/api/product/stats/P1", headers={"X-Forwarded-For": "198.51.100.2"})

        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_slow_redis_does_not_block_other_requests(self, app):
        """WHAT: Limiter round-trips run off the event loop, so requests overlap."""
        mock_redis = Mock()

        def slow_execute():
            time.sleep(0.3)
            return [0, 1, 1, True]

        mock_redis.pipeline.return_value.execute.side_effect = slow_execute
        app.state.services.limiter = RedisSlidingWindowRateLimiter(
            mock_redis, window_ms=60_000, max_requests=100
        )

        async def run():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                start = time.perf_counter()
                responses = await asyncio.gather(
                    *(client.get("/api/product/stats/P1") for _ in range(4))
                )
                return responses, time.perf_counter() - start

        responses, elapsed = asyncio.run(run())

        assert [r.status_code for r in responses] == [200] * 4
        # Serialized round-trips would take at least 1.2s
        assert elapsed < 0.9
