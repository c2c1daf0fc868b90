"""Tests for the token bucket rate limiters."""

import asyncio
import threading
import time

import pytest

from harvestpy import AsyncRateLimiter, RateLimiter


def join_all(threads: list[threading.Thread], timeout: float = 10.0) -> None:
    """Join every thread against one shared deadline, failing if any is stuck."""
    deadline = time.monotonic() + timeout
    for thread in threads:
        thread.join(timeout=max(0.0, deadline - time.monotonic()))
    stuck = [thread.name for thread in threads if thread.is_alive()]
    assert not stuck, f"threads did not finish: {stuck}"


def assert_within_quota(grant_times: list[float], capacity: int, interval: float) -> None:
    """Check that the k-th grant never happens before the bucket could refill it."""
    for k, granted_at in enumerate(sorted(grant_times), start=1):
        assert k <= capacity + int(granted_at / interval + 1e-6)


class TestRateLimiter:
    """Test the thread-safe rate limiter."""

    def test_burst_up_to_capacity_does_not_wait(self, fake_clock):
        """Test that a full bucket grants its capacity immediately."""
        limiter = RateLimiter(3, 1.0, clock=fake_clock, sleep=fake_clock.sleep)
        for _ in range(3):
            limiter.acquire()
        assert fake_clock.sleeps == []

    def test_waits_for_refill_when_empty(self, fake_clock):
        """Test that an empty bucket waits one interval per token."""
        limiter = RateLimiter(3, 1.0, clock=fake_clock, sleep=fake_clock.sleep)
        for _ in range(4):
            limiter.acquire()
        assert fake_clock.sleeps == [pytest.approx(1.0)]
        assert fake_clock.now == pytest.approx(1.0)

    def test_refill_is_capped_at_capacity(self, fake_clock):
        """Test that idle time never accumulates more than capacity tokens."""
        limiter = RateLimiter(2, 0.5, clock=fake_clock, sleep=fake_clock.sleep)
        fake_clock.now += 100.0
        for _ in range(3):
            limiter.acquire()
        assert fake_clock.sleeps == [pytest.approx(0.5)]

    def test_acquire_many_tokens(self, fake_clock):
        """Test acquiring several tokens at once."""
        limiter = RateLimiter(5, 0.2, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.acquire(5)
        limiter.acquire(2)
        assert sum(fake_clock.sleeps) == pytest.approx(0.4)

    def test_invalid_token_counts(self):
        """Test that unsatisfiable requests raise ValueError."""
        limiter = RateLimiter(2, 1.0)
        with pytest.raises(ValueError):
            limiter.acquire(0)
        with pytest.raises(ValueError):
            limiter.acquire(3)

    def test_invalid_configuration(self):
        """Test that a bucket needs a positive capacity and interval."""
        with pytest.raises(ValueError):
            RateLimiter(0, 1.0)
        with pytest.raises(ValueError):
            RateLimiter(1, 0)

    def test_rounding_residue_counts_as_a_full_token(self, fake_clock):
        """Test that a level a few ulps short of a token does not spin."""
        fake_clock.now = 3.5
        limiter = RateLimiter(5, 0.1, clock=fake_clock, sleep=fake_clock.sleep)
        limiter._bucket._tokens = 1 - 2**-52

        thread = threading.Thread(target=limiter.acquire, daemon=True)
        thread.start()
        join_all([thread], timeout=5)

        assert fake_clock.sleeps == []
        assert limiter._bucket._tokens == 0.0

    def test_waits_always_advance_the_clock(self, fake_clock):
        """Test that a tiny deficit still produces a wait the clock can register."""
        fake_clock.now = 3.5
        limiter = RateLimiter(1, 1e-12, clock=fake_clock, sleep=fake_clock.sleep)
        limiter._bucket._tokens = 1 - 1e-6

        wait = limiter._bucket.take(1)
        assert wait >= 1e-6
        assert fake_clock.now + wait > fake_clock.now

    def test_sequential_grants_stay_within_quota(self, fake_clock):
        """Test that accepted calls over time T never exceed C + T/interval."""
        limiter = RateLimiter(5, 0.5, clock=fake_clock, sleep=fake_clock.sleep)
        grant_times = []
        for _ in range(50):
            limiter.acquire()
            grant_times.append(fake_clock())

        assert_within_quota(grant_times, 5, 0.5)
        assert fake_clock.now == pytest.approx((50 - 5) * 0.5)

    def test_concurrent_grants_stay_within_quota(self, fake_clock):
        """Test that many threads sharing a limiter never oversubscribe it."""
        limiter = RateLimiter(5, 0.1, clock=fake_clock, sleep=fake_clock.sleep)
        grant_times: list[float] = []
        lock = threading.Lock()

        def worker():
            limiter.acquire()
            with lock:
                grant_times.append(fake_clock())

        threads = [threading.Thread(target=worker, daemon=True) for _ in range(40)]
        for thread in threads:
            thread.start()
        join_all(threads)

        assert len(grant_times) == 40
        assert_within_quota(grant_times, 5, 0.1)

    def test_concurrent_callers_are_delayed_in_real_time(self):
        """Test that threads beyond the burst are actually slowed down."""
        limiter = RateLimiter(2, 0.05)
        threads = [threading.Thread(target=limiter.acquire, daemon=True) for _ in range(6)]

        start = time.monotonic()
        for thread in threads:
            thread.start()
        join_all(threads)
        elapsed = time.monotonic() - start

        # Four tokens have to be regenerated
        assert elapsed >= 4 * 0.05 * 0.9


class TestAsyncRateLimiter:
    """Test the asyncio rate limiter."""

    @pytest.mark.asyncio
    async def test_burst_then_wait(self, fake_clock):
        """Test burst and refill behaviour."""
        limiter = AsyncRateLimiter(2, 1.0, clock=fake_clock, sleep=fake_clock.async_sleep)
        await limiter.acquire()
        await limiter.acquire()
        assert fake_clock.sleeps == []

        await limiter.acquire()
        assert fake_clock.sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_concurrent_tasks_stay_within_quota(self, fake_clock):
        """Test that concurrent tasks never oversubscribe the bucket."""
        limiter = AsyncRateLimiter(3, 0.25, clock=fake_clock, sleep=fake_clock.async_sleep)
        grant_times: list[float] = []

        async def worker():
            await limiter.acquire()
            grant_times.append(fake_clock())

        await asyncio.wait_for(asyncio.gather(*(worker() for _ in range(20))), timeout=10)

        assert len(grant_times) == 20
        assert_within_quota(grant_times, 3, 0.25)

    @pytest.mark.asyncio
    async def test_invalid_token_counts(self):
        """Test that unsatisfiable requests raise ValueError."""
        limiter = AsyncRateLimiter(2, 1.0)
        with pytest.raises(ValueError):
            await limiter.acquire(3)

    @pytest.mark.asyncio
    async def test_rounding_residue_counts_as_a_full_token(self, fake_clock):
        """Test that a level a few ulps short of a token is granted at once."""
        fake_clock.now = 3.5
        limiter = AsyncRateLimiter(5, 0.1, clock=fake_clock, sleep=fake_clock.async_sleep)
        limiter._bucket._tokens = 1 - 2**-52

        await limiter.acquire()
        assert fake_clock.sleeps == []
