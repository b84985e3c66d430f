"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

from tessera.api.ratelimit import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_limit():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=60, max_requests=3, clock=clock)
    decisions = [limiter.hit("1.2.3.4") for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]

    blocked = limiter.hit("1.2.3.4")
    assert not blocked.allowed
    assert blocked.retry_after == 60


def test_retry_after_counts_from_oldest_hit():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=60, max_requests=2, clock=clock)
    limiter.hit("a")
    clock.now = 20.0
    limiter.hit("a")
    clock.now = 45.5
    decision = limiter.hit("a")
    assert not decision.allowed
    assert decision.retry_after == 15


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=10, max_requests=2, clock=clock)
    limiter.hit("a")
    clock.now = 5.0
    limiter.hit("a")
    assert not limiter.hit("a").allowed

    clock.now = 10.0
    assert limiter.hit("a").allowed
    assert not limiter.hit("a").allowed

    clock.now = 15.0
    assert limiter.hit("a").allowed


def test_rejected_requests_do_not_extend_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=10, max_requests=1, clock=clock)
    limiter.hit("a")
    for t in range(1, 10):
        clock.now = float(t)
        assert not limiter.hit("a").allowed
    clock.now = 10.0
    assert limiter.hit("a").allowed


def test_clients_are_independent():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=60, max_requests=1, clock=clock)
    assert limiter.hit("a").allowed
    assert not limiter.hit("a").allowed
    assert limiter.hit("b").allowed


def test_retry_after_is_at_least_one_second():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=1, max_requests=1, clock=clock)
    limiter.hit("a")
    clock.now = 0.999
    assert limiter.hit("a").retry_after == 1


def test_sweep_drops_idle_clients():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=10, max_requests=5, sweep_threshold=3, clock=clock)
    for name in ("a", "b", "c"):
        limiter.hit(name)
    assert limiter.tracked_clients == 3

    clock.now = 11.0
    limiter.hit("d")
    # a, b and c are idle; only d survives the sweep
    assert limiter.tracked_clients == 1

    limiter.reset()
    assert limiter.tracked_clients == 0
