"""
Scheduler module for the URL monitor.

This module provides interval scheduling for the sync and check jobs. Each
job owns at most one periodic timer and executes on a single worker: a run
requested while another is in flight joins that run instead of starting a
second one. Enabled flags are persisted so a restarted process can re-arm
the jobs that were running.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .audit_logger import AuditLogger
from .enums import JobState, LogLevel
from .exceptions import StoreError
from .models import utc_now
from .store import StateStore


@dataclass
class ScheduledJob:
    """Represents a registered job."""

    name: str
    callback: Callable[[], Awaitable[Any]]
    interval_seconds: float
    state: JobState = JobState.IDLE
    runs: int = 0
    last_run: Optional[str] = None
    last_error: Optional[str] = None
    timer: Optional[asyncio.Task] = None
    current: Optional[asyncio.Task] = None

    @property
    def has_live_timer(self) -> bool:
        return self.timer is not None and not self.timer.done()

    @property
    def is_running(self) -> bool:
        return self.current is not None and not self.current.done()


class Scheduler:
    """
    Interval scheduler with one timer and one worker per job.

    Job lifecycle: Idle -> Scheduled -> Running -> (Idle | Scheduled).
    Stopping a job cancels its timer only; a run already in flight is
    allowed to finish.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            store: Optional state store for the persisted enabled flags
            logger: Optional audit logger for logging
            sleep: Awaitable sleep used by the timers
        """
        self._store = store
        self._logger = logger
        self._sleep = sleep or asyncio.sleep
        self._jobs: dict[str, ScheduledJob] = {}

    def register(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
    ) -> ScheduledJob:
        """
        Register a job.

        Raises:
            ValueError: If the name is taken or the interval is not positive
        """
        if name in self._jobs:
            raise ValueError(f"Job '{name}' already exists")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        job = ScheduledJob(name=name, callback=callback, interval_seconds=interval_seconds)
        self._jobs[name] = job
        return job

    def get_job(self, name: str) -> ScheduledJob:
        try:
            return self._jobs[name]
        except KeyError:
            raise ValueError(f"Unknown job '{name}'") from None

    def list_jobs(self) -> list[ScheduledJob]:
        """List all registered jobs."""
        return list(self._jobs.values())

    def state(self, name: str) -> JobState:
        return self.get_job(name).state

    def has_live_timer(self, name: str) -> bool:
        return self.get_job(name).has_live_timer

    def start(self, name: str, interval_seconds: Optional[float] = None) -> None:
        """
        Enable a job: replace any existing timer, run once now, then periodically.

        Args:
            name: Job name
            interval_seconds: Optional new interval
        """
        job = self.get_job(name)
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
            job.interval_seconds = interval_seconds

        self._cancel_timer(job)
        self._persist_flag(job, True)
        self._arm(job, immediate=True)
        self._log(
            LogLevel.INFO,
            f"Job '{name}' started",
            {"interval_seconds": job.interval_seconds},
        )

    def stop(self, name: str) -> None:
        """Disable a job. A run in flight finishes; no further runs start."""
        job = self.get_job(name)
        self._cancel_timer(job)
        self._persist_flag(job, False)
        if not job.is_running:
            job.state = JobState.IDLE
        self._log(LogLevel.INFO, f"Job '{name}' stopped", {})

    def reschedule(self, name: str, interval_seconds: float) -> None:
        """Change a job's interval; a live timer is re-armed without an immediate run."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        job = self.get_job(name)
        if job.interval_seconds == interval_seconds:
            return
        job.interval_seconds = interval_seconds
        if job.has_live_timer:
            self._cancel_timer(job)
            self._persist_flag(job, True)
            self._arm(job, immediate=False)

    async def run_now(self, name: str) -> Any:
        """
        Run a job once, or join the run already in flight.

        Returns:
            The callback's result, or None if it failed
        """
        return await self._run_job(self.get_job(name))

    def reenter(self) -> list[str]:
        """
        Re-arm every job flagged enabled in the store that has no live timer.

        Returns:
            Names of the jobs that were re-armed
        """
        if self._store is None:
            return []
        try:
            enabled = self._store.enabled_jobs()
        except StoreError as e:
            self._log_error("Enabled jobs could not be read", e)
            return []

        rearmed = []
        for name in enabled:
            job = self._jobs.get(name)
            if job is None or job.has_live_timer:
                continue
            try:
                interval = self._store.job_interval(name)
            except StoreError as e:
                self._log_error(f"Interval of job '{name}' could not be read", e)
                interval = None
            if interval:
                job.interval_seconds = float(interval)
            self._arm(job, immediate=False)
            rearmed.append(name)

        if rearmed:
            self._log(LogLevel.INFO, "Re-armed jobs", {"jobs": rearmed})
        return rearmed

    async def shutdown(self) -> None:
        """Cancel all timers and wait for in-flight runs. Enabled flags are kept."""
        for job in self._jobs.values():
            self._cancel_timer(job)
        running = [job.current for job in self._jobs.values() if job.is_running]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        for job in self._jobs.values():
            job.state = JobState.IDLE

    def _arm(self, job: ScheduledJob, immediate: bool) -> None:
        job.timer = asyncio.ensure_future(self._timer_loop(job, immediate))
        if not job.is_running:
            job.state = JobState.SCHEDULED

    def _cancel_timer(self, job: ScheduledJob) -> None:
        if job.timer is not None and not job.timer.done():
            job.timer.cancel()
        job.timer = None

    async def _timer_loop(self, job: ScheduledJob, immediate: bool) -> None:
        if not immediate:
            await self._sleep(job.interval_seconds)
        while True:
            await self._run_job(job)
            await self._sleep(job.interval_seconds)

    async def _run_job(self, job: ScheduledJob) -> Any:
        if not job.is_running:
            job.current = asyncio.ensure_future(self._execute(job))
        # Cancelling a waiter must not cancel the shared run
        return await asyncio.shield(job.current)

    async def _execute(self, job: ScheduledJob) -> Any:
        job.state = JobState.RUNNING
        job.last_run = utc_now()
        try:
            result = await job.callback()
            job.last_error = None
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = str(e)
            self._log_error(f"Job '{job.name}' failed", e)
            return None
        finally:
            job.runs += 1
            job.state = JobState.SCHEDULED if job.has_live_timer else JobState.IDLE

    def _persist_flag(self, job: ScheduledJob, enabled: bool) -> None:
        if self._store is None:
            return
        try:
            self._store.set_job_enabled(job.name, enabled, job.interval_seconds)
        except StoreError as e:
            self._log_error(f"Flag of job '{job.name}' could not be persisted", e)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "Scheduler", message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error("Scheduler", message, error=error)
