"""
Sync Coordinator for the remote source-of-truth list.

This module fetches the remote item list, validates it, diffs it against the
stored snapshot and atomically replaces the snapshot. It integrates:
- Single-flight execution (concurrent callers share one in-flight sync)
- Whole-attempt retries with exponential backoff
- Sync statistics, a bounded sync history and sync events
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .config import SyncConfig
from .diff_engine import build_items, diff, fingerprint, validate_items
from .enums import EventType, LogLevel, SyncErrorCode
from .events import EventBus
from .exceptions import (
    FormatError,
    NetworkError,
    StoreError,
    ValidationError,
)
from .models import ChangeSet, Snapshot, SyncError, SyncResult, utc_now
from .retry_manager import RetryManager
from .store import StateStore
from .url_prober import classify_transport_error


def extract_items(payload: Any) -> list:
    """
    Accept a bare array or an object wrapping the array in ``data``.

    Raises:
        FormatError: For any other shape
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    raise FormatError(
        code=SyncErrorCode.INVALID_FORMAT.value,
        message="Expected an array or an object with a 'data' array",
        details={"type": type(payload).__name__},
    )


def cause_code(error: Optional[BaseException]) -> SyncErrorCode:
    """Map the exception that failed a sync attempt to a sync error code."""
    if isinstance(error, FormatError):
        return SyncErrorCode.INVALID_FORMAT
    if isinstance(error, ValidationError):
        return SyncErrorCode.VALIDATION_FAILED
    if isinstance(error, StoreError):
        return SyncErrorCode.STORE
    if isinstance(error, NetworkError) and error.code == "http_status":
        return SyncErrorCode.HTTP_STATUS
    return SyncErrorCode.NETWORK


class SyncCoordinator:
    """
    Reconciles the stored snapshot with the remote list.

    A failed attempt never touches the stored snapshot; the snapshot is
    replaced in a single store write only after the new list has been
    validated and diffed.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: StateStore,
        client: Optional[httpx.AsyncClient] = None,
        events: Optional[EventBus] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        """
        Initialize the sync coordinator.

        Args:
            config: Sync configuration (endpoint, timeout, validation, retry)
            store: State store holding the snapshot and sync statistics
            client: Optional shared HTTP client; not closed by the coordinator
            events: Optional event bus for sync outcomes
            logger: Optional audit logger for logging
            sleep: Awaitable sleep used between attempts
        """
        self._config = config
        self._store = store
        self._client = client
        self._owns_client = client is None
        self._events = events
        self._logger = logger
        self._retry_manager = RetryManager(config.retry, sleep=sleep)
        self._inflight: Optional[asyncio.Task] = None
        self._fetch_count = 0

    async def __aenter__(self) -> "SyncCoordinator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.aclose()

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def fetch_count(self) -> int:
        """Number of HTTP fetches issued so far."""
        return self._fetch_count

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._config.timeout_seconds),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def sync(self, source: str = "manual") -> SyncResult:
        """
        Run one sync, or join the sync already in flight.

        Args:
            source: Label of the trigger (manual, scheduled, check)

        Returns:
            SyncResult with a change set or a sync error
        """
        if self._inflight is None or self._inflight.done():
            task = asyncio.ensure_future(self._sync_with_retry(source))
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        else:
            self._log(LogLevel.DEBUG, "Joining sync already in progress", {"source": source})
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _sync_with_retry(self, source: str) -> SyncResult:
        start_time = time.perf_counter()
        timestamp = utc_now()

        if not self._config.remote_endpoint:
            error = SyncError(
                code=SyncErrorCode.NOT_CONFIGURED,
                message="No remote endpoint configured",
            )
            self._log(LogLevel.WARN, error.message, {"source": source})
            return SyncResult(
                success=False,
                timestamp=timestamp,
                attempts=0,
                duration_ms=0.0,
                error=error,
            )

        self._log(
            LogLevel.INFO,
            "Starting sync",
            {"source": source, "endpoint": self._config.remote_endpoint},
        )

        async def on_retry(number: int, error: Exception, delay: float) -> None:
            self._log(
                LogLevel.WARN,
                f"Sync attempt {number} failed, retrying in {delay:.1f}s",
                {"error": str(error), "code": getattr(error, "code", None)},
            )

        result = await self._retry_manager.execute_with_retry(
            self._sync_once, on_retry=on_retry
        )
        duration_ms = (time.perf_counter() - start_time) * 1000

        if result.success:
            change_set, snapshot, previous_count = result.result
            sync_result = SyncResult(
                success=True,
                timestamp=timestamp,
                attempts=result.attempts,
                duration_ms=duration_ms,
                change_set=change_set,
                snapshot=snapshot,
                previous_count=previous_count,
            )
            await self._record_success(sync_result, source)
        else:
            cause = cause_code(result.last_error)
            sync_result = SyncResult(
                success=False,
                timestamp=timestamp,
                attempts=result.attempts,
                duration_ms=duration_ms,
                error=SyncError(
                    code=SyncErrorCode.RETRIES_EXHAUSTED,
                    message=str(result.last_error),
                    attempts=result.attempts,
                    cause_code=cause.value,
                ),
            )
            await self._record_failure(sync_result, source, result.last_error)

        return sync_result

    async def _sync_once(self) -> tuple[ChangeSet, Snapshot, int]:
        endpoint = self._config.remote_endpoint
        previous = self._store.load_snapshot(endpoint)
        payload = await self._fetch()

        raw_items = extract_items(payload)
        validate_items(raw_items, strict=self._config.strict_validation)
        items = build_items(raw_items)
        new_fingerprint = fingerprint(items)

        previous_items = previous.items if previous else []
        change_set = diff(previous_items, items)

        if previous is not None and previous.fingerprint == new_fingerprint:
            return change_set, previous, len(previous_items)

        snapshot = Snapshot(
            items=items,
            fingerprint=new_fingerprint,
            captured_at=utc_now(),
            source=endpoint,
        )
        self._store.save_snapshot(snapshot)
        return change_set, snapshot, len(previous_items)

    async def _fetch(self) -> Any:
        client = self._ensure_client()
        endpoint = self._config.remote_endpoint
        self._fetch_count += 1
        try:
            response = await client.get(
                endpoint,
                headers={"Accept": "application/json", "Cache-Control": "no-cache"},
                timeout=httpx.Timeout(self._config.timeout_seconds),
            )
        except Exception as e:
            raise NetworkError(
                code=classify_transport_error(e).value,
                message=f"Failed to fetch remote list: {str(e) or type(e).__name__}",
                details={"endpoint": endpoint},
            ) from e

        if not 200 <= response.status_code < 300:
            raise NetworkError(
                code="http_status",
                message=f"Remote list responded with HTTP {response.status_code}",
                details={"endpoint": endpoint, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise FormatError(
                code=SyncErrorCode.INVALID_FORMAT.value,
                message=f"Remote list is not valid JSON: {e}",
                details={"endpoint": endpoint},
            ) from e

    async def _record_success(self, result: SyncResult, source: str) -> None:
        change_set = result.change_set
        snapshot = result.snapshot

        def update_stats() -> None:
            stats = self._store.load_sync_stats()
            stats.record_success(
                result.timestamp, result.duration_ms, len(snapshot.items), len(change_set.added)
            )
            stats.data_integrity_checks += 1
            self._store.save_sync_stats(stats)

        self._persist(update_stats)
        self._persist(lambda: self._store.append_sync_history(result.to_history_entry()))

        self._log(
            LogLevel.INFO,
            "Sync completed",
            {
                "source": source,
                "items": len(snapshot.items),
                "added": len(change_set.added),
                "removed": len(change_set.removed),
                "modified": len(change_set.modified),
                "attempts": result.attempts,
            },
        )
        if self._events:
            await self._events.emit(
                EventType.SYNC_SUCCESS,
                {
                    "source": source,
                    "changeSet": change_set.to_dict(),
                    "fingerprint": snapshot.fingerprint,
                    "itemCount": len(snapshot.items),
                },
            )

    async def _record_failure(
        self, result: SyncResult, source: str, error: Optional[Exception]
    ) -> None:
        def update_stats() -> None:
            stats = self._store.load_sync_stats()
            stats.record_failure(result.timestamp)
            self._store.save_sync_stats(stats)

        self._persist(update_stats)
        self._persist(lambda: self._store.append_sync_history(result.to_history_entry()))

        if self._logger:
            self._logger.log_error(
                "SyncCoordinator",
                "Sync failed after all attempts",
                error=error,
                request_url=self._config.remote_endpoint,
                additional_data={"source": source, "attempts": result.attempts},
            )
        if self._events:
            await self._events.emit(
                EventType.SYNC_ERROR,
                {"source": source, "error": result.error.to_dict()},
            )

    def _persist(self, operation: Callable[[], None]) -> None:
        try:
            operation()
        except StoreError as e:
            if self._logger:
                self._logger.log_error(
                    "SyncCoordinator", "Sync bookkeeping could not be persisted", error=e
                )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "SyncCoordinator", message, data)

    async def aclose(self) -> None:
        """Wait for an in-flight sync and close the HTTP client if owned."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
