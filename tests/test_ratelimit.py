"""Tests for the cooldown gate and abuse counter."""

import asyncio

import pytest

from llm_relay.config import RateLimitConfig
from llm_relay.ratelimit import AbuseCounter, CooldownGate, RateLimiter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSleep:
    """Records requested waits; optionally advances the clock."""

    def __init__(self, clock: FakeClock = None):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock()


def test_first_request_is_not_delayed(clock):
    sleep = FakeSleep(clock)
    gate = CooldownGate(1000, clock=clock, sleep=sleep)

    waited = asyncio.run(gate.admit("1.2.3.4"))

    assert waited == 0
    assert sleep.calls == []
    assert gate.last_seen("1.2.3.4") == clock.now


def test_second_request_waits_remaining_cooldown(clock):
    sleep = FakeSleep(clock)
    gate = CooldownGate(1000, clock=clock, sleep=sleep)

    async def scenario():
        await gate.admit("1.2.3.4")
        clock.advance(0.3)
        return await gate.admit("1.2.3.4")

    waited = asyncio.run(scenario())

    assert waited == pytest.approx(0.7)
    assert sleep.calls == [pytest.approx(0.7)]


def test_request_after_cooldown_is_not_delayed(clock):
    sleep = FakeSleep(clock)
    gate = CooldownGate(200, clock=clock, sleep=sleep)

    async def scenario():
        await gate.admit("k")
        clock.advance(0.5)
        return await gate.admit("k")

    assert asyncio.run(scenario()) == 0
    assert sleep.calls == []


def test_keys_are_independent(clock):
    sleep = FakeSleep(clock)
    gate = CooldownGate(1000, clock=clock, sleep=sleep)

    async def scenario():
        await gate.admit("a")
        return await gate.admit("b")

    assert asyncio.run(scenario()) == 0
    assert len(gate) == 2


def test_concurrent_requests_are_spaced_by_cooldown(clock):
    """Concurrent requests from one key start one interval apart."""
    sleep = FakeSleep()
    gate = CooldownGate(1000, clock=clock, sleep=sleep)

    async def scenario():
        return await asyncio.gather(*(gate.admit("k") for _ in range(3)))

    waits = asyncio.run(scenario())

    assert waits == [0, pytest.approx(1.0), pytest.approx(2.0)]
    starts = [clock.now + w for w in waits]
    for earlier, later in zip(starts, starts[1:]):
        assert later - earlier >= 1.0 - 1e-9


def test_cooldown_invariant_over_many_requests(clock):
    """Admitted starts for a key are never closer than the cooldown."""
    sleep = FakeSleep(clock)
    gate = CooldownGate(250, clock=clock, sleep=sleep)
    gaps = [0.0, 0.1, 0.05, 0.4, 0.0, 0.3, 0.25]

    async def scenario():
        starts = []
        for gap in gaps:
            clock.advance(gap)
            await gate.admit("k")
            starts.append(clock.now)
        return starts

    starts = asyncio.run(scenario())

    for earlier, later in zip(starts, starts[1:]):
        assert later - earlier >= 0.25 - 1e-9


def test_zero_cooldown_never_sleeps(clock):
    sleep = FakeSleep(clock)
    gate = CooldownGate(0, clock=clock, sleep=sleep)

    async def scenario():
        for _ in range(5):
            await gate.admit("k")

    asyncio.run(scenario())
    assert sleep.calls == []


def test_abuse_counter_alerts_once_per_window(clock):
    counter = AbuseCounter(threshold=2, window_s=10, clock=clock)

    results = []
    for _ in range(4):
        results.append(counter.observe("k"))
        clock.advance(1)

    # Third request crosses the threshold, fourth is debounced
    assert results[0] is None
    assert results[1] is None
    assert results[2] is not None
    assert results[2].count == 3
    assert results[3] is None


def test_abuse_counter_resets_after_window(clock):
    counter = AbuseCounter(threshold=2, window_s=10, clock=clock)

    for _ in range(3):
        counter.observe("k")

    clock.advance(11)
    assert counter.observe("k") is None
    assert counter.get("k").count == 1


def test_abuse_counter_alerts_again_after_period(clock):
    counter = AbuseCounter(threshold=2, window_s=10, clock=clock)

    for _ in range(3):
        counter.observe("k")
    first_alert_at = counter.get("k").last_notified_at

    # New window, cross the threshold again
    clock.advance(11)
    counter.observe("k")
    counter.observe("k")
    window = counter.observe("k")

    assert window is not None
    assert window.last_notified_at - first_alert_at >= 10


def test_abuse_counter_is_per_key(clock):
    counter = AbuseCounter(threshold=1, window_s=60, clock=clock)

    counter.observe("a")
    assert counter.observe("b") is None
    assert counter.observe("a") is not None


def test_rate_limiter_from_config_and_stats(clock):
    sleep = FakeSleep(clock)
    limiter = RateLimiter.from_config(
        RateLimitConfig(cooldown_ms=500, abuse_threshold=1, abuse_window_s=60),
        clock=clock,
        sleep=sleep,
    )

    async def scenario():
        for _ in range(2):
            limiter.observe("k")
            await limiter.admit("k")

    asyncio.run(scenario())

    stats = limiter.stats
    assert stats["cooldown_ms"] == 500
    assert stats["abuse_threshold"] == 1
    assert stats["tracked_keys"] == 1
    assert stats["delayed_total"] == 1
    assert stats["alerts_total"] == 1
