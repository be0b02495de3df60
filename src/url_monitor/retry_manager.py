"""
Retry Manager for the URL monitor.

This module provides retry logic with exponential or linear backoff, shared
by the remote list sync and webhook delivery.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .config import RetryConfig
from .enums import BackoffStrategy

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]
    delays: list[float] = field(default_factory=list)


class RetryManager:
    """
    Manages retry logic with configurable backoff.

    ``RetryConfig.max_retries`` is the total number of attempts. The delay
    after failed attempt ``n`` (1-based) is ``base * 2^(n-1)`` for the
    exponential strategy and ``base * n`` for the linear one, capped at
    ``max_delay_seconds`` and optionally spread by a jitter ratio.
    """

    def __init__(
        self,
        config: RetryConfig,
        sleep: Optional[SleepFunc] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Retry configuration with attempt count, delays and strategy
            sleep: Awaitable sleep used between attempts (defaults to asyncio.sleep)
            rng: Random source for jitter
        """
        self._config = config
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return max(1, self._config.max_retries)

    def delay_for(self, attempt: int) -> float:
        """
        Calculate the wait time after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)

        Returns:
            The delay in seconds before the next attempt
        """
        base = self._config.base_delay_seconds
        if self._config.strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        else:
            delay = base * (2 ** (attempt - 1))
        delay = min(delay, self._config.max_delay_seconds)

        if self._config.jitter_ratio > 0 and delay > 0:
            spread = delay * self._config.jitter_ratio
            delay = max(0.0, delay + self._rng.uniform(-spread, spread))
        return delay

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
        on_retry: Optional[Callable[[int, Exception, float], Awaitable[None]]] = None,
        max_attempts: Optional[int] = None,
    ) -> RetryResult[T]:
        """
        Execute an operation with retry logic and backoff.

        Args:
            operation: The async operation to execute
            is_retryable: Optional function to determine if an exception is retryable.
                         If not provided, all exceptions are considered retryable.
            on_retry: Awaited after a failed attempt that will be retried, with
                      the attempt number, the error and the upcoming delay
            max_attempts: Override of the configured attempt budget

        Returns:
            RetryResult containing success status, result, attempts, and last error
        """
        last_error: Optional[Exception] = None
        attempts = 0
        delays: list[float] = []
        budget = self.max_attempts if max_attempts is None else max(1, max_attempts)

        while attempts < budget:
            try:
                result = await operation()
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempts + 1,
                    last_error=None,
                    delays=delays,
                )
            except Exception as e:
                last_error = e
                attempts += 1

                should_retry = is_retryable(e) if is_retryable else True

                if not should_retry or attempts >= budget:
                    break

                delay = self.delay_for(attempts)
                delays.append(delay)
                if on_retry is not None:
                    await on_retry(attempts, e, delay)
                await self._sleep(delay)

        return RetryResult(
            success=False,
            result=None,
            attempts=attempts,
            last_error=last_error,
            delays=delays,
        )
