"""
Check Cycle Orchestrator for the URL monitor.

This module runs one full liveness cycle over a list of monitored items:
- Targets are partitioned into fixed-size batches, processed one after another
- Probes within a batch run concurrently with staggered random start offsets
- Requests to one host are serialized and spaced through the rate limiter
- Any probe failure becomes an errored result; the cycle never partially fails
"""

import asyncio
import random
import time
import uuid
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import urlparse

from .audit_logger import AuditLogger
from .config import ProbeConfig
from .enums import LogLevel, ProbeErrorKind, ProbeStatus
from .models import CheckBatch, CheckSummary, MonitoredItem, ProbeResult, utc_now
from .rate_limiter import HostRateLimiter
from .url_prober import UrlProber


class CheckOrchestrator:
    """
    Fans a list of items out to the prober and collects one batch result.

    Output order always equals input order (after dropping items without
    a URL), regardless of the order in which probes complete.
    """

    def __init__(
        self,
        prober: UrlProber,
        config: Optional[ProbeConfig] = None,
        rate_limiter: Optional[HostRateLimiter] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize the check orchestrator.

        Args:
            prober: URL prober used for every target
            config: Probe configuration (batch size, jitter, per-host limit)
            rate_limiter: Optional per-host limiter; built from the config if omitted
            logger: Optional audit logger for logging
            sleep: Awaitable sleep used for start offsets
            rng: Random source for start offsets
        """
        self._prober = prober
        self._config = config or ProbeConfig()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._rate_limiter = rate_limiter or HostRateLimiter(
            self._config.per_host, sleep=self._sleep
        )
        self._logger = logger

    @property
    def rate_limiter(self) -> HostRateLimiter:
        """Get the rate limiter instance."""
        return self._rate_limiter

    def _start_offsets(self, count: int) -> list[float]:
        offsets = [0.0]
        low = self._config.min_jitter_seconds
        high = max(low, self._config.max_jitter_seconds)
        for _ in range(1, count):
            offsets.append(offsets[-1] + self._rng.uniform(low, high))
        return offsets[:count]

    async def _probe_item(self, item: MonitoredItem, offset: float) -> ProbeResult:
        if offset > 0:
            await self._sleep(offset)
        host = urlparse(item.url).hostname or ""
        async with self._rate_limiter.acquire(host) as status:
            if status.wait_seconds > 0:
                self._log(
                    LogLevel.DEBUG,
                    "RateLimiter",
                    f"Waited {status.wait_seconds:.2f}s for {host}",
                    {"host": host, "reason": status.reason},
                )
            return await self._prober.probe(
                item.url,
                timeout=self._config.timeout_seconds,
                identity=item.identity,
            )

    async def _run_batch(self, batch: list[MonitoredItem]) -> list[ProbeResult]:
        offsets = self._start_offsets(len(batch))
        outcomes = await asyncio.gather(
            *(self._probe_item(item, offset) for item, offset in zip(batch, offsets)),
            return_exceptions=True,
        )

        results = []
        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self._log(
                    LogLevel.ERROR,
                    "CheckOrchestrator",
                    f"Probe task failed for {item.url}",
                    {"error": str(outcome), "error_type": type(outcome).__name__},
                )
                outcome = ProbeResult(
                    identity=item.identity,
                    url=item.url,
                    status=ProbeStatus.ERROR,
                    latency_ms=0,
                    error_kind=ProbeErrorKind.NETWORK_ERROR.value,
                    error=str(outcome) or type(outcome).__name__,
                    at=utc_now(),
                )
            results.append(outcome)
        return results

    async def run_cycle(self, items: Iterable[MonitoredItem]) -> CheckBatch:
        """
        Probe every item that has a URL.

        Args:
            items: Monitored items from the current snapshot

        Returns:
            CheckBatch with one result per target, in input order
        """
        start_time = time.perf_counter()
        targets = [item for item in items if item.url]
        batch_size = max(1, self._config.batch_size)

        self._log(
            LogLevel.INFO,
            "CheckOrchestrator",
            f"Starting check cycle for {len(targets)} URL(s)",
            {"batch_size": batch_size},
        )

        results: list[ProbeResult] = []
        for start in range(0, len(targets), batch_size):
            results.extend(await self._run_batch(targets[start:start + batch_size]))

        batch = CheckBatch(
            batch_id=uuid.uuid4().hex,
            results=results,
            summary=CheckSummary.of(results),
            at=utc_now(),
        )

        self._log(
            LogLevel.INFO,
            "CheckOrchestrator",
            "Check cycle completed",
            {
                "batch_id": batch.batch_id,
                "summary": batch.summary.to_dict(),
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 1),
            },
        )
        return batch

    def _log(self, level: LogLevel, component: str, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, component, message, data)
