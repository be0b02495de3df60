"""
Monitor Service for the URL monitor.

This module provides the host-facing facade that wires all components into
one explicitly constructed instance:
- Configuration updates, persisted to the state store
- The periodic sync and check jobs on the scheduler
- Manual triggers and external re-entry after a wake-up
- Status, statistics and history for the host
"""

import copy
import random
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .check_orchestrator import CheckOrchestrator
from .config import MonitorConfig
from .delivery import WebhookDelivery, describe_device
from .enums import EventType, JobName, LogLevel
from .events import EventBus
from .exceptions import ConfigError, StoreError
from .models import (
    CheckReport,
    DeliveryOutcome,
    MonitoredItem,
    Snapshot,
    SyncResult,
)
from .scheduler import Scheduler
from .store import StateStore
from .sync_coordinator import SyncCoordinator
from .url_prober import UrlProber


class MonitorService:
    """
    Facade over sync, check, delivery and scheduling.

    All collaborators are injected or built per instance; nothing is shared
    between two services.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        store: Optional[StateStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        events: Optional[EventBus] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize the monitor service.

        Args:
            config: Configuration; loaded from the store (or defaults) if omitted
            store: State store; an in-memory store if omitted
            client: Optional shared HTTP client; not closed by the service
            events: Event bus for host observers
            logger: Audit logger; built from the logging configuration if omitted
            sleep: Awaitable sleep for retries, jitter and timers
            rng: Random source for jitter
            clock: Returns the current UTC datetime
        """
        self._store = store or StateStore()
        self._config = config or self._load_config()
        self._logger = logger or AuditLogger.from_config(self._config.logging)
        self._events = events or EventBus(logger=self._logger)

        self._client = client or httpx.AsyncClient(
            verify=True,
            timeout=httpx.Timeout(self._config.sync.timeout_seconds),
            follow_redirects=True,
        )
        self._owns_client = client is None

        self._device = describe_device(self._config.device, self._device_id())

        # Components hold references to the sub-configs, so in-place updates apply
        self._sync = SyncCoordinator(
            self._config.sync,
            self._store,
            client=self._client,
            events=self._events,
            logger=self._logger,
            sleep=sleep,
        )
        self._prober = UrlProber(self._config.probe, client=self._client)
        self._orchestrator = CheckOrchestrator(
            self._prober,
            self._config.probe,
            logger=self._logger,
            sleep=sleep,
            rng=rng,
        )
        self._delivery = WebhookDelivery(
            self._config.delivery,
            self._store,
            self._device,
            client=self._client,
            events=self._events,
            logger=self._logger,
            sleep=sleep,
            rng=rng,
            clock=clock,
        )

        self._scheduler = Scheduler(store=self._store, logger=self._logger, sleep=sleep)
        self._scheduler.register(
            JobName.SYNC.value, self._sync_job, self._config.sync.interval_seconds
        )
        self._scheduler.register(
            JobName.CHECK.value, self._check_job, self._config.probe.interval_seconds
        )

    async def __aenter__(self) -> "MonitorService":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def logger(self) -> AuditLogger:
        return self._logger

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def sync_coordinator(self) -> SyncCoordinator:
        return self._sync

    @property
    def delivery(self) -> WebhookDelivery:
        return self._delivery

    def _load_config(self) -> MonitorConfig:
        try:
            data = self._store.load_config()
        except StoreError:
            data = None
        return MonitorConfig.from_dict(data) if data else MonitorConfig()

    def _device_id(self) -> str:
        try:
            return self._store.device_id()
        except StoreError:
            return uuid.uuid4().hex

    def configure(self, options: dict[str, Any]) -> MonitorConfig:
        """
        Apply host options and persist the resulting configuration.

        Options are validated as a whole before any of them is applied.

        Raises:
            ConfigError: On an unknown key or an invalid value
        """
        candidate = copy.deepcopy(self._config)
        candidate.apply_options(options)
        self._config.apply_options(options)

        self._scheduler.reschedule(JobName.SYNC.value, self._config.sync.interval_seconds)
        self._scheduler.reschedule(JobName.CHECK.value, self._config.probe.interval_seconds)

        try:
            self._store.save_config(self._config.to_dict())
        except StoreError as e:
            self._logger.log_error("MonitorService", "Configuration could not be persisted", error=e)

        self._logger.log(
            LogLevel.INFO,
            "MonitorService",
            "Configuration updated",
            {"options": sorted(options)},
        )
        return self._config

    async def start(self) -> None:
        """
        Start the sync and check jobs.

        Deliveries left pending by a previous process are resumed first.

        Raises:
            ConfigError: If no remote endpoint is configured
        """
        if not self._config.sync.remote_endpoint:
            raise ConfigError(
                code="missing_endpoint",
                message="remoteEndpoint must be configured before starting",
            )
        if not self._config.delivery.callback_endpoint:
            self._logger.log(
                LogLevel.WARN,
                "MonitorService",
                "No callback endpoint configured; results are delivered only to item callback URLs",
                {},
            )

        await self._recover_pending_deliveries()
        self._scheduler.start(JobName.SYNC.value)
        self._scheduler.start(JobName.CHECK.value)

    def stop(self) -> None:
        """Stop both jobs; runs in flight finish."""
        self._scheduler.stop(JobName.SYNC.value)
        self._scheduler.stop(JobName.CHECK.value)

    async def run_sync_now(self) -> SyncResult:
        """Run the sync job once, or join the run in flight."""
        return await self._scheduler.run_now(JobName.SYNC.value)

    async def run_check_now(self) -> Optional[CheckReport]:
        """Run the check job once, or join the run in flight."""
        return await self._scheduler.run_now(JobName.CHECK.value)

    async def handle_wake(self) -> Optional[CheckReport]:
        """
        External re-entry after the host woke the process.

        Re-arms enabled jobs that lost their timers, resumes pending
        deliveries and runs one check cycle.
        """
        rearmed = self._scheduler.reenter()
        self._logger.log(LogLevel.INFO, "MonitorService", "Wake-up received", {"rearmed": rearmed})
        await self._recover_pending_deliveries()
        return await self.run_check_now()

    async def replay_failed_deliveries(self) -> list[DeliveryOutcome]:
        """Retry every archived failed delivery."""
        outcomes = await self._delivery.replay_failed()
        self._record_deliveries(outcomes)
        return outcomes

    async def _recover_pending_deliveries(self) -> list[DeliveryOutcome]:
        outcomes = await self._delivery.recover_pending()
        self._record_deliveries(outcomes)
        return outcomes

    def _record_deliveries(self, outcomes: list[DeliveryOutcome]) -> None:
        def record(stats) -> None:
            for outcome in outcomes:
                stats.record_delivery(outcome.delivered)

        if outcomes:
            self._update_service_stats(record)

    async def _sync_job(self) -> SyncResult:
        return await self._sync.sync(source="scheduler")

    async def _check_job(self) -> Optional[CheckReport]:
        start_time = time.perf_counter()

        snapshot = self._load_snapshot()
        if snapshot is None:
            result = await self._sync.sync(source="check")
            snapshot = result.snapshot if result.success else None
        if snapshot is None:
            self._logger.log(
                LogLevel.WARN,
                "MonitorService",
                "No item list available; check skipped",
                {},
            )
            return None

        items = self.select_items(snapshot.items)
        batch = await self._orchestrator.run_cycle(items)
        duration_ms = (time.perf_counter() - start_time) * 1000

        try:
            self._store.append_check_history(batch.to_dict())
        except StoreError as e:
            self._logger.log_error("MonitorService", "Check history could not be persisted", error=e)

        await self._events.emit(
            EventType.CHECK_COMPLETED,
            {
                "batchId": batch.batch_id,
                "summary": batch.summary.to_dict(),
                "urls": [result.to_payload_entry() for result in batch.results],
            },
        )

        delivery: Optional[DeliveryOutcome] = None
        endpoint = self._config.delivery.callback_endpoint or self._item_callback_url(items)
        if not batch.results:
            self._logger.log(LogLevel.INFO, "MonitorService", "Nothing to deliver", {})
        elif endpoint:
            delivery = await self._delivery.deliver(batch, endpoint)
        else:
            self._logger.log(
                LogLevel.WARN,
                "MonitorService",
                "No callback endpoint; results not delivered",
                {"batch_id": batch.batch_id},
            )

        def record(stats) -> None:
            stats.record_check(batch, duration_ms)
            if delivery is not None:
                stats.record_delivery(delivery.delivered)

        self._update_service_stats(record)
        return CheckReport(batch=batch, delivery=delivery)

    def select_items(self, items: list[MonitoredItem]) -> list[MonitoredItem]:
        """Keep items for the selected callback name; items without one always stay."""
        name = self._config.delivery.callback_name
        if not name:
            return list(items)
        return [item for item in items if item.callback_name in (None, name)]

    def _item_callback_url(self, items: list[MonitoredItem]) -> Optional[str]:
        for item in items:
            if item.callback_url:
                return item.callback_url
        return None

    def _load_snapshot(self) -> Optional[Snapshot]:
        try:
            return self._store.load_snapshot(self._config.sync.remote_endpoint)
        except StoreError as e:
            self._logger.log_error("MonitorService", "Snapshot could not be read", error=e)
            return None

    def _update_service_stats(self, update: Callable) -> None:
        try:
            stats = self._store.load_service_stats()
            update(stats)
            self._store.save_service_stats(stats)
        except StoreError as e:
            self._logger.log_error("MonitorService", "Statistics could not be persisted", error=e)

    def status(self) -> dict:
        """Snapshot of configuration, jobs, statistics and queues for the host."""
        status: dict[str, Any] = {
            "config": self._config.to_dict(),
            "device": self._device.to_dict(),
            "is_syncing": self._sync.is_syncing,
            "jobs": {},
        }

        for job in self._scheduler.list_jobs():
            status["jobs"][job.name] = {
                "state": job.state.value,
                "interval_seconds": job.interval_seconds,
                "timer_armed": job.has_live_timer,
                "runs": job.runs,
                "last_run": job.last_run,
                "last_error": job.last_error,
            }

        try:
            snapshot = self._store.load_snapshot()
            status["snapshot"] = (
                {
                    "items": len(snapshot.items),
                    "fingerprint": snapshot.fingerprint,
                    "timestamp": snapshot.captured_at,
                    "source": snapshot.source,
                }
                if snapshot
                else None
            )
            status["sync_stats"] = self._store.load_sync_stats().to_dict()
            status["service_stats"] = self._store.load_service_stats().to_dict()
            status["pending_deliveries"] = len(self._store.pending_deliveries())
            status["failed_deliveries"] = len(self._store.failed_deliveries())
            status["enabled_jobs"] = self._store.enabled_jobs()
        except StoreError as e:
            status["store_error"] = e.to_dict()

        return status

    def reset_stats(self) -> None:
        """Reset sync and service counters."""
        self._store.reset_stats()
        self._logger.log(LogLevel.INFO, "MonitorService", "Statistics reset", {})

    def check_history(self) -> list[dict]:
        return self._store.check_history()

    def sync_history(self) -> list[dict]:
        return self._store.sync_history()

    def recent_logs(self, limit: Optional[int] = None) -> list[dict]:
        return self._logger.recent(limit)

    async def close(self) -> None:
        """Cancel timers, wait for in-flight runs and release HTTP resources."""
        await self._scheduler.shutdown()
        await self._sync.aclose()
        await self._prober.close()
        await self._delivery.close()
        if self._owns_client:
            await self._client.aclose()
