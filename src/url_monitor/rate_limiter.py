"""
Rate Limiter module for the URL monitor.

This module provides per-host throttling for liveness probes:
- Serial access per host (no parallel requests to the same host)
- Request tracking within a configurable time window
- A minimum delay between consecutive requests to the same host
"""

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from url_monitor.config import RateLimitRule


@dataclass
class RateLimitStatus:
    """Result of a rate limit check."""

    allowed: bool
    wait_seconds: float
    reason: Optional[str] = None


class HostRateLimiter:
    """
    Rate limiter with serial access control per host.

    Ensures:
    - No parallel requests to the same host (via asyncio.Lock)
    - Request counts stay within the configured window
    - Consecutive requests to one host are spaced by the minimum delay
    """

    def __init__(
        self,
        rule: Optional[RateLimitRule],
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            rule: Per-host limit, or None to disable throttling
            sleep: Awaitable sleep used while waiting for a slot
            clock: Monotonic clock
        """
        self._rule = rule
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._request_times: dict[str, list[float]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Callers inside acquire() per host, waiting or holding the lock
        self._users: dict[str, int] = defaultdict(int)

    @property
    def tracked_hosts(self) -> list[str]:
        """Hosts with recorded requests or a live lock."""
        return sorted(set(self._request_times) | set(self._locks))

    @asynccontextmanager
    async def acquire(self, host: str) -> AsyncIterator[RateLimitStatus]:
        """
        Wait for a slot on ``host`` and hold it for the duration of the block.

        The host lock is held while the caller makes the request; the
        request is recorded when the block exits. Hosts with no caller and
        no request inside the window are forgotten on the next acquire.

        Usage:
            async with limiter.acquire(host) as status:
                response = await make_request()

        Yields:
            RateLimitStatus describing how long the caller waited
        """
        if self._rule is None:
            yield RateLimitStatus(allowed=True, wait_seconds=0.0)
            return

        self._prune_idle_hosts()
        self._users[host] += 1
        try:
            async with self._locks[host]:
                waited = 0.0
                reason = None
                while True:
                    wait_seconds, why = self._calculate_wait_time(host)
                    if wait_seconds <= 0:
                        break
                    reason = reason or why
                    waited += wait_seconds
                    await self._sleep(wait_seconds)
                try:
                    yield RateLimitStatus(allowed=True, wait_seconds=waited, reason=reason)
                finally:
                    self.record_request(host)
        finally:
            self._users[host] -= 1
            if not self._users[host]:
                del self._users[host]

    def _prune_idle_hosts(self) -> None:
        window_start = self._clock() - self._rule.window_seconds
        for host in set(self._request_times) | set(self._locks):
            if host in self._users:
                continue
            if any(t > window_start for t in self._request_times.get(host, ())):
                continue
            self._request_times.pop(host, None)
            self._locks.pop(host, None)

    def _calculate_wait_time(self, host: str) -> tuple[float, Optional[str]]:
        rule = self._rule
        current_time = self._clock()

        window_start = current_time - rule.window_seconds
        self._request_times[host] = [
            t for t in self._request_times[host] if t > window_start
        ]
        times = self._request_times[host]

        if len(times) >= rule.max_requests:
            wait_until = min(times) + rule.window_seconds
            return (
                max(0.0, wait_until - current_time),
                f"Rate limit reached for {host}: {len(times)}/{rule.max_requests}",
            )

        if rule.min_delay_seconds > 0 and times:
            since_last = current_time - max(times)
            if since_last < rule.min_delay_seconds:
                return rule.min_delay_seconds - since_last, f"Minimum delay for {host}"

        return 0.0, None

    def record_request(self, host: str) -> None:
        """Record that a request to ``host`` was made."""
        if self._rule is not None:
            self._request_times[host].append(self._clock())
