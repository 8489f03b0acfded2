"""Tests for the fixed-window OTP rate limiter."""

from unittest.mock import MagicMock

import pytest
import redis
from fastapi import HTTPException

from brightcare import rate_limiter
from brightcare.rate_limiter import check_rate_limit, enforce_rate_limit


class FakeClock:
    def __init__(self, now: float = 1_000_000):
        self.now = now

    def time(self) -> float:
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(rate_limiter, "time", fake)
    return fake


class TestMemoryWindow:
    def test_denies_after_limit(self, clock):
        results = [check_rate_limit("otp:1.2.3.4", 3, 60)[0] for _ in range(4)]
        assert results == [True, True, True, False]

    def test_window_resets(self, clock):
        for _ in range(2):
            check_rate_limit("otp:1.2.3.4", 2, 60)
        assert not check_rate_limit("otp:1.2.3.4", 2, 60)[0]

        clock.now += 61

        allowed, count, ttl = check_rate_limit("otp:1.2.3.4", 2, 60)
        assert allowed
        assert count == 1
        assert ttl == 60

    def test_keys_are_independent(self, clock):
        check_rate_limit("otp:a", 1, 60)
        assert check_rate_limit("otp:b", 1, 60)[0]

    def test_enforce_raises_429_with_retry_after(self, clock):
        enforce_rate_limit("otp_email:pat@gmail.com", 1, 60)

        with pytest.raises(HTTPException) as exc_info:
            enforce_rate_limit("otp_email:pat@gmail.com", 1, 60)

        assert exc_info.value.status_code == 429
        assert exc_info.value.headers == {"Retry-After": "60"}


class TestRedisSync:
    """Counts are seeded from and written back to Redis when a client is configured."""

    def test_seeds_window_from_redis(self, clock):
        client = MagicMock()
        client.get.return_value = "2"
        client.ttl.return_value = 30

        allowed, count, ttl = check_rate_limit("otp:shared", 3, 60, client)

        assert allowed
        assert count == 3
        assert ttl == 30
        assert not check_rate_limit("otp:shared", 3, 60, client)[0]

    def test_syncs_count_to_redis(self, clock):
        client = MagicMock()
        client.get.return_value = None

        check_rate_limit("otp:sync", 5, 60, client)
        clock.now += rate_limiter.MEMORY_CACHE_SYNC_INTERVAL

        check_rate_limit("otp:sync", 5, 60, client)

        client.set.assert_called_once_with("otp:sync", 2, ex=60)

    def test_redis_errors_fall_back_to_memory(self, clock):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")

        results = [check_rate_limit("otp:offline", 1, 60, client)[0] for _ in range(2)]

        assert results == [True, False]

    def test_no_client_without_redis_url(self):
        assert rate_limiter.get_redis_client() is None
