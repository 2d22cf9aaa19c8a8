import asyncio
import time

import pytest

from apiclientx.core import RateLimiter
from apiclientx.models import RateLimitConfig


def test_rate_limiter_initialization():
    """Test that RateLimiter can be initialized with default config."""
    limiter = RateLimiter()
    assert isinstance(limiter.config, RateLimitConfig)
    assert limiter.config.max_requests == 5000
    assert limiter.config.burst_size == 100
    assert limiter.state.estimated is True


def test_rate_limiter_custom_config():
    """Test that RateLimiter can be initialized with custom config."""
    config = RateLimitConfig(max_requests=10, time_window=60, burst_size=5)
    limiter = RateLimiter(config=config)
    assert limiter.config.refill_rate == pytest.approx(10 / 60)
    assert limiter.get_status().local_capacity == 5
    assert limiter.get_status().limit == 10


def test_update_limits_ignores_older_reset():
    limiter = RateLimiter()
    reset_at = time.time() + 1000

    limiter.update_limits(remaining=100, reset_at=reset_at)
    limiter.update_limits(remaining=50, reset_at=reset_at - 500)

    assert limiter.state.reset_at == reset_at
    assert limiter.state.remaining == 100


def test_update_limits_is_idempotent():
    limiter = RateLimiter()
    reset_at = time.time() + 1000

    limiter.update_limits(remaining=100, reset_at=reset_at, limit=5000)
    first = limiter.state.model_copy()
    limiter.update_limits(remaining=100, reset_at=reset_at, limit=5000)

    assert limiter.state == first


def test_update_limits_same_window_only_lowers_remaining():
    limiter = RateLimiter()
    reset_at = time.time() + 1000

    limiter.update_limits(remaining=100, reset_at=reset_at)
    limiter.update_limits(remaining=120, reset_at=reset_at)
    assert limiter.state.remaining == 100

    limiter.update_limits(remaining=80, reset_at=reset_at)
    assert limiter.state.remaining == 80


def test_update_limits_newer_window_replaces_state():
    limiter = RateLimiter()
    reset_at = time.time() + 1000

    limiter.update_limits(remaining=0, reset_at=reset_at)
    limiter.update_limits(remaining=4999, reset_at=reset_at + 3600)

    assert limiter.state.remaining == 4999
    assert limiter.state.reset_at == reset_at + 3600


def test_update_from_headers(mock_time):
    limiter = RateLimiter()
    limiter.update_from_headers({
        'X-RateLimit-Limit': '100',
        'X-RateLimit-Remaining': '42',
        'X-RateLimit-Reset': '1700000300',
    })

    assert limiter.state.limit == 100
    assert limiter.state.remaining == 42
    assert limiter.state.reset_at == 1_700_000_300
    assert limiter.state.estimated is False


def test_update_from_headers_without_quota_headers_is_noop():
    limiter = RateLimiter()
    before = limiter.state.model_copy()
    limiter.update_from_headers({'content-type': 'application/json'})
    assert limiter.state == before
    assert limiter.last_update is None


def test_time_until_available():
    limiter = RateLimiter()
    assert limiter.time_until_available() == 0.0

    limiter.update_limits(remaining=0, reset_at=time.time() + 50)
    assert 49 < limiter.time_until_available() <= 50


def test_recommended_batch_size():
    limiter = RateLimiter(RateLimitConfig(max_requests=5000, time_window=3600, burst_size=100))
    assert limiter.recommended_batch_size() == 10

    limiter.update_limits(remaining=5, reset_at=time.time() + 100)
    assert limiter.recommended_batch_size() == 1


def test_reset_restores_budgets():
    limiter = RateLimiter()
    limiter.update_limits(remaining=0, reset_at=time.time() + 100)
    limiter.reset()

    status = limiter.get_status()
    assert status.remaining == 5000
    assert status.can_make_request is True
    assert limiter.get_stats().total_requests == 0


def test_buffer_ratio_keeps_reserve():
    limiter = RateLimiter(RateLimitConfig(max_requests=100, buffer_ratio=0.1))
    limiter.update_limits(remaining=10, reset_at=time.time() + 100)
    assert limiter.get_status().can_make_request is False

    limiter.update_limits(remaining=11, reset_at=time.time() + 200)
    assert limiter.get_status().can_make_request is True


@pytest.mark.asyncio
class TestWaitForToken:
    async def test_acquire_within_budget_does_not_wait(self):
        limiter = RateLimiter(RateLimitConfig(max_requests=10, time_window=1, burst_size=3))

        for _ in range(3):
            assert await limiter.wait_for_token() == 0.0

        stats = limiter.get_stats()
        assert stats.total_requests == 3
        assert stats.total_wait_time == 0
        assert stats.remote_remaining == 7

    async def test_waits_when_local_bucket_is_empty(self):
        limiter = RateLimiter(RateLimitConfig(max_requests=10, time_window=1, burst_size=1))

        await limiter.acquire()
        waited = await limiter.wait_for_token()

        assert waited > 0
        assert limiter.get_stats().rate_limit_hits == 1
        assert limiter.get_stats().total_requests == 2

    async def test_waiters_are_released_in_arrival_order(self):
        limiter = RateLimiter(RateLimitConfig(max_requests=20, time_window=1, burst_size=2))
        order = []

        async def waiter(index):
            waited = await limiter.wait_for_token()
            order.append(index)
            return waited

        waits = await asyncio.gather(*(waiter(i) for i in range(6)))

        assert order == list(range(6))
        # Exactly the burst capacity proceeds at once
        assert waits[0] == 0.0 and waits[1] == 0.0
        assert all(w > 0 for w in waits[2:])

    async def test_replenishes_when_reset_is_in_the_past(self):
        limiter = RateLimiter(RateLimitConfig(max_requests=50))
        limiter.update_limits(remaining=0, reset_at=time.time() - 10)

        waited = await asyncio.wait_for(limiter.wait_for_token(), timeout=1)

        assert waited == 0.0
        assert limiter.state.remaining == 49

    async def test_blocks_until_remote_reset(self):
        limiter = RateLimiter()
        limiter.update_limits(remaining=0, reset_at=time.time() + 0.5)

        start = time.monotonic()
        await limiter.wait_for_token()
        elapsed = time.monotonic() - start

        assert elapsed >= 0.4
        assert limiter.state.remaining == limiter.state.limit - 1

    async def test_update_wakes_waiter_early(self):
        limiter = RateLimiter()
        limiter.update_limits(remaining=0, reset_at=time.time() + 30)

        task = asyncio.ensure_future(limiter.wait_for_token())
        await asyncio.sleep(0.05)
        assert not task.done()
        assert limiter.get_status().queue_length == 1

        limiter.update_limits(remaining=10, reset_at=time.time() + 3600)
        await asyncio.wait_for(task, timeout=1)

        assert limiter.state.remaining == 9

    async def test_cancelled_waiter_does_not_consume(self):
        limiter = RateLimiter()
        limiter.update_limits(remaining=0, reset_at=time.time() + 30)

        task = asyncio.ensure_future(limiter.wait_for_token())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.get_status().queue_length == 0
        assert limiter.get_stats().total_requests == 0
        assert not limiter._lock.locked()
