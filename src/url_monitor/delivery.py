"""
Webhook delivery for check results.

Delivers each check batch to the callback endpoint with at-least-once
semantics:
- The attempt is persisted to the pending queue before the first POST
- Failures are retried with backoff, updating the persisted bookkeeping
- Exhausted attempts move to a bounded failed-delivery log for replay
- Every request carries the batch id as an idempotency key
"""

import platform
import random
import sys
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .config import DeliveryConfig, DeviceConfig
from .enums import EventType, LogLevel
from .events import EventBus
from .exceptions import ConfigError, NetworkError, StoreError
from .models import CheckBatch, DeliveryAttempt, DeliveryOutcome, DeviceInfo
from .retry_manager import RetryManager
from .store import StateStore
from .url_prober import classify_transport_error

USER_AGENT = "url-monitor/0.1"


def describe_device(config: DeviceConfig, device_id: str) -> DeviceInfo:
    """Fill unset device fields from the running host."""
    return DeviceInfo(
        id=config.id or device_id,
        platform=config.platform or sys.platform,
        model=config.model or platform.machine() or "unknown",
        version=config.version or platform.release() or "unknown",
    )


class WebhookDelivery:
    """
    Delivers check batches to a webhook with retries and a persisted queue.

    By default any HTTP response counts as delivered. With
    ``DeliveryConfig.strict_status`` only 2xx responses do; everything
    else is retried like a transport failure.
    """

    def __init__(
        self,
        config: DeliveryConfig,
        store: StateStore,
        device: DeviceInfo,
        client: Optional[httpx.AsyncClient] = None,
        events: Optional[EventBus] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize the webhook delivery.

        Args:
            config: Delivery configuration (endpoint, timeout, retry policy)
            store: State store holding the pending and failed queues
            device: Device metadata included in every payload
            client: Optional shared HTTP client; not closed by this object
            events: Optional event bus for delivery outcomes
            logger: Optional audit logger for logging
            sleep: Awaitable sleep used between attempts
            rng: Random source for retry jitter
            clock: Returns the current UTC datetime
        """
        self._config = config
        self._store = store
        self._device = device
        self._client = client
        self._owns_client = client is None
        self._events = events
        self._logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._retry_manager = RetryManager(config.retry, sleep=sleep, rng=rng)
        # Attempt ids currently owned by a retry loop in this process
        self._in_flight: set[str] = set()

    @property
    def config(self) -> DeliveryConfig:
        return self._config

    @property
    def max_attempts(self) -> int:
        return self._retry_manager.max_attempts

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def build_payload(self, batch: CheckBatch, attempt_number: int = 1) -> dict:
        """Render the JSON body posted to the webhook."""
        return {
            "checkType": self._config.check_type,
            "timestamp": batch.at,
            "isBackground": self._config.is_background,
            "batchId": batch.batch_id,
            "attempt": attempt_number,
            "summary": batch.summary.to_dict(),
            "urls": [result.to_payload_entry() for result in batch.results],
            "device": self._device.to_dict(),
            "callbackName": self._config.callback_name,
        }

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._config.timeout_seconds),
            )
            self._owns_client = True
        return self._client

    async def deliver(
        self, batch: CheckBatch, endpoint: Optional[str] = None
    ) -> DeliveryOutcome:
        """
        Deliver a batch, retrying until success or the attempt budget is spent.

        Args:
            batch: The check batch to deliver
            endpoint: Override of the configured callback endpoint

        Returns:
            DeliveryOutcome; delivery failures never raise

        Raises:
            ConfigError: If no endpoint is configured or given
        """
        endpoint = endpoint or self._config.callback_endpoint
        if not endpoint:
            raise ConfigError(
                code="missing_endpoint",
                message="No callback endpoint configured for delivery",
            )

        now = self._clock().isoformat()
        attempt = DeliveryAttempt(
            batch=batch,
            endpoint=endpoint,
            attempts_made=0,
            next_attempt_at=now,
            created_at=now,
        )
        self._persist(self._store.add_pending_delivery, attempt)
        return await self._run(attempt, self.max_attempts)

    async def recover_pending(self) -> list[DeliveryOutcome]:
        """
        Resume attempts a previous process left in the pending queue.

        Each attempt continues with its remaining budget; attempts with no
        budget left are archived as failed. Attempts still being sent by
        this process are left to their own retry loop.
        """
        outcomes = []
        for attempt in self._load(self._store.pending_deliveries):
            if attempt.attempt_id in self._in_flight:
                self._log(
                    LogLevel.DEBUG,
                    f"Pending delivery {attempt.attempt_id} is already in flight",
                    {},
                )
                continue
            remaining = self.max_attempts - attempt.attempts_made
            self._log(
                LogLevel.INFO,
                f"Recovering pending delivery {attempt.attempt_id}",
                {"attempts_made": attempt.attempts_made, "remaining": remaining},
            )
            if remaining <= 0:
                outcomes.append(await self._give_up(attempt, None, []))
                continue
            outcomes.append(await self._run(attempt, remaining))
        return outcomes

    async def replay_failed(self) -> list[DeliveryOutcome]:
        """Give every archived failure a fresh round of attempts."""
        outcomes = []
        for attempt in self._load(self._store.failed_deliveries):
            self._persist(self._store.remove_failed_delivery, attempt.attempt_id)
            attempt.attempts_made = 0
            attempt.last_error = None
            attempt.next_attempt_at = self._clock().isoformat()
            self._persist(self._store.add_pending_delivery, attempt)
            outcomes.append(await self._run(attempt, self.max_attempts))
        return outcomes

    async def _run(self, attempt: DeliveryAttempt, budget: int) -> DeliveryOutcome:
        self._in_flight.add(attempt.attempt_id)
        try:
            return await self._send_with_retry(attempt, budget)
        finally:
            self._in_flight.discard(attempt.attempt_id)

    async def _send_with_retry(self, attempt: DeliveryAttempt, budget: int) -> DeliveryOutcome:
        client = self._ensure_client()
        last_status: dict[str, Optional[int]] = {"code": None}

        async def send() -> int:
            attempt.attempts_made += 1
            number = attempt.attempts_made
            try:
                response = await client.post(
                    attempt.endpoint,
                    json=self.build_payload(attempt.batch, number),
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": USER_AGENT,
                        "Idempotency-Key": attempt.attempt_id,
                        "X-Delivery-Attempt": str(number),
                    },
                    timeout=httpx.Timeout(self._config.timeout_seconds),
                )
            except Exception as e:
                kind = classify_transport_error(e)
                raise NetworkError(
                    code=kind.value,
                    message=f"Delivery request failed: {str(e) or type(e).__name__}",
                    details={"endpoint": attempt.endpoint, "attempt": number},
                ) from e

            last_status["code"] = response.status_code
            if self._config.strict_status and not 200 <= response.status_code < 300:
                raise NetworkError(
                    code="http_status",
                    message=f"Webhook responded with HTTP {response.status_code}",
                    details={"endpoint": attempt.endpoint, "status_code": response.status_code},
                )
            return response.status_code

        async def on_retry(number: int, error: Exception, delay: float) -> None:
            attempt.last_error = str(error)
            attempt.next_attempt_at = (self._clock() + timedelta(seconds=delay)).isoformat()
            self._persist(self._store.update_pending_delivery, attempt)
            self._log(
                LogLevel.WARN,
                f"Delivery attempt {number} failed, retrying in {delay:.1f}s",
                {"batch_id": attempt.attempt_id, "error": str(error)},
            )

        result = await self._retry_manager.execute_with_retry(
            send, on_retry=on_retry, max_attempts=budget
        )

        if result.success:
            attempt.last_error = None
            self._persist(self._store.remove_pending_delivery, attempt.attempt_id)
            self._log(
                LogLevel.INFO,
                f"Delivered batch {attempt.attempt_id}",
                {"endpoint": attempt.endpoint, "attempts": attempt.attempts_made,
                 "status_code": result.result},
            )
            if self._events:
                await self._events.emit(
                    EventType.DELIVERY_SUCCESS,
                    {"attempt": _event_view(attempt), "statusCode": result.result},
                )
            return DeliveryOutcome(
                delivered=True,
                attempt=attempt,
                status_code=result.result,
                retry_delays=result.delays,
            )

        outcome = await self._give_up(attempt, result.last_error, result.delays)
        outcome.status_code = last_status["code"]
        return outcome

    async def _give_up(
        self,
        attempt: DeliveryAttempt,
        error: Optional[Exception],
        delays: list[float],
    ) -> DeliveryOutcome:
        if error is not None:
            attempt.last_error = str(error)
        message = attempt.last_error or "Attempt budget exhausted"

        self._persist(self._store.remove_pending_delivery, attempt.attempt_id)
        archived = self._persist(self._store.archive_failed_delivery, attempt)

        if self._logger:
            self._logger.log_error(
                "WebhookDelivery",
                f"All delivery attempts failed for batch {attempt.attempt_id}",
                error=error,
                request_url=attempt.endpoint,
                additional_data={"attempts": attempt.attempts_made},
            )
        if self._events:
            await self._events.emit(
                EventType.DELIVERY_FAILED,
                {"attempt": _event_view(attempt), "error": message},
            )
        return DeliveryOutcome(
            delivered=False,
            attempt=attempt,
            error=message,
            archived=archived,
            retry_delays=delays,
        )

    def _persist(self, operation, *args) -> bool:
        try:
            operation(*args)
            return True
        except StoreError as e:
            if self._logger:
                self._logger.log_error(
                    "WebhookDelivery", "Delivery bookkeeping could not be persisted", error=e
                )
            return False

    def _load(self, operation) -> list[DeliveryAttempt]:
        try:
            return operation()
        except StoreError as e:
            if self._logger:
                self._logger.log_error(
                    "WebhookDelivery", "Delivery queue could not be read", error=e
                )
            return []

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "WebhookDelivery", message, data)

    async def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _event_view(attempt: DeliveryAttempt) -> dict:
    return {
        "attemptId": attempt.attempt_id,
        "endpoint": attempt.endpoint,
        "attemptsMade": attempt.attempts_made,
        "nextAttemptAt": attempt.next_attempt_at,
        "createdAt": attempt.created_at,
        "lastError": attempt.last_error,
        "summary": attempt.batch.summary.to_dict(),
    }
