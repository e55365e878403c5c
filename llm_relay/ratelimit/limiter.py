"""
Per-client rate limiting.

Two independent mechanisms share one service object per route:

- CooldownGate delays (never rejects) so that each client key starts at most
  one request per cooldown interval.
- AbuseCounter counts requests per monitoring window and reports when a key
  crosses the threshold, at most once per window. It never blocks.

State lives for the whole process and is never evicted, so the maps grow with
the number of distinct client keys seen.

Both maps are owned by the event loop. Every lookup-compute-store runs without
an intervening await, so updates for a key cannot interleave and no lock is
taken on the hot path. Each uvicorn worker process keeps its own state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from ..config import RateLimitConfig

logger = logging.getLogger("llm-relay.ratelimit")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class CooldownGate:
    """
    Minimum interval between request starts for a client key.

    The slot is reserved before suspending, so concurrent requests from the
    same key queue up one interval apart instead of waking together.
    """

    def __init__(self, cooldown_ms: int, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep):
        self.cooldown = max(cooldown_ms, 0) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._last_seen: Dict[str, float] = {}

    async def admit(self, client_key: str) -> float:
        """Wait out the cooldown for `client_key`. Returns seconds waited."""
        now = self._clock()
        last = self._last_seen.get(client_key)

        slot = now if last is None else max(now, last + self.cooldown)
        self._last_seen[client_key] = slot

        wait = slot - now
        if wait > 0:
            logger.debug(f"Cooldown: delaying {client_key} by {wait * 1000:.0f}ms")
            await self._sleep(wait)
        return wait

    def last_seen(self, client_key: str) -> Optional[float]:
        return self._last_seen.get(client_key)

    def __len__(self) -> int:
        return len(self._last_seen)


@dataclass
class AbuseWindow:
    """Request count for one client key in the current monitoring window."""
    window_start: float
    count: int = 0
    last_notified_at: Optional[float] = None


class AbuseCounter:
    """Sliding monitoring window used only to trigger operator alerts."""

    def __init__(self, threshold: int, window_s: float, clock: Clock = time.monotonic):
        self.threshold = threshold
        self.window = window_s
        self._clock = clock
        self._windows: Dict[str, AbuseWindow] = {}

    def observe(self, client_key: str) -> Optional[AbuseWindow]:
        """
        Count one request for `client_key`.

        Returns the window when an alert is due, None otherwise.
        """
        now = self._clock()
        state = self._windows.get(client_key)

        if state is None or now - state.window_start > self.window:
            if state is None:
                state = AbuseWindow(window_start=now)
                self._windows[client_key] = state
            state.window_start = now
            state.count = 1
        else:
            state.count += 1

        if state.count <= self.threshold:
            return None

        if state.last_notified_at is not None and now - state.last_notified_at < self.window:
            return None

        state.last_notified_at = now
        return state

    def get(self, client_key: str) -> Optional[AbuseWindow]:
        return self._windows.get(client_key)

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    """
    Rate limiting service for one route.

    Usage:
        limiter = RateLimiter.from_config(route.rate_limit)
        if limiter.observe(client_key):
            alert(client_key)
        await limiter.admit(client_key)
    """

    def __init__(
        self,
        cooldown_ms: int = 1000,
        abuse_threshold: int = 10,
        abuse_window_s: float = 300.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.cooldown = CooldownGate(cooldown_ms, clock=clock, sleep=sleep)
        self.abuse = AbuseCounter(abuse_threshold, abuse_window_s, clock=clock)

        # Stats
        self.delayed_total = 0
        self.alerts_total = 0

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> "RateLimiter":
        return cls(
            cooldown_ms=config.cooldown_ms,
            abuse_threshold=config.abuse_threshold,
            abuse_window_s=config.abuse_window_s,
            clock=clock,
            sleep=sleep,
        )

    async def admit(self, client_key: str) -> float:
        waited = await self.cooldown.admit(client_key)
        if waited > 0:
            self.delayed_total += 1
        return waited

    def observe(self, client_key: str) -> Optional[AbuseWindow]:
        """Count a request. Returns the window when an abuse alert is due."""
        window = self.abuse.observe(client_key)
        if window is None:
            return None

        self.alerts_total += 1
        logger.warning(
            f"Client {client_key} made {window.count} requests "
            f"(threshold {self.abuse.threshold} per {self.abuse.window:.0f}s)"
        )
        return window

    @property
    def stats(self) -> Dict[str, float]:
        return {
            "cooldown_ms": int(self.cooldown.cooldown * 1000),
            "abuse_threshold": self.abuse.threshold,
            "abuse_window_s": self.abuse.window,
            "tracked_keys": len(self.cooldown),
            "delayed_total": self.delayed_total,
            "alerts_total": self.alerts_total,
        }
