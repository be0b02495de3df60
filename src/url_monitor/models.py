"""
Data models for the URL monitor.

This module defines all data structures used for monitored items, snapshots,
change sets, probe results, webhook delivery bookkeeping and statistics.
Every persisted record converts to and from plain JSON dictionaries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import ProbeStatus, SyncErrorCode

# Recognized item fields; everything else is carried verbatim in ``extra``.
CORE_FIELDS = ("id", "url", "callback_name", "callback_url", "title")


@dataclass
class MonitoredItem:
    """An entry of the remote source-of-truth list."""

    identity: str  # Derived, see diff_engine.derive_identity
    url: Optional[str] = None
    id: Any = None
    callback_name: Optional[str] = None
    callback_url: Optional[str] = None
    title: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict, identity: str) -> "MonitoredItem":
        """Split a raw record into typed core fields and pass-through extras."""
        core = {k: raw[k] for k in CORE_FIELDS if raw.get(k) is not None}
        extra = {k: v for k, v in raw.items() if k not in core}
        return cls(
            identity=identity,
            url=core.get("url"),
            id=core.get("id"),
            callback_name=core.get("callback_name"),
            callback_url=core.get("callback_url"),
            title=core.get("title"),
            extra=extra,
        )

    def to_dict(self) -> dict:
        """Reproduce the raw record (core fields plus extras)."""
        raw = dict(self.extra)
        for key in CORE_FIELDS:
            value = getattr(self, key)
            if value is not None:
                raw[key] = value
        return raw


@dataclass
class Snapshot:
    """The last accepted list for a source."""

    items: list[MonitoredItem]
    fingerprint: str
    captured_at: str
    source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "items": [item.to_dict() for item in self.items],
            "identities": [item.identity for item in self.items],
            "fingerprint": self.fingerprint,
            "timestamp": self.captured_at,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        raws = data.get("items", [])
        identities = data.get("identities") or []
        if len(identities) != len(raws):
            # Older records without identities are re-derived by the caller
            identities = [""] * len(raws)
        return cls(
            items=[
                MonitoredItem.from_raw(raw, identity)
                for raw, identity in zip(raws, identities)
            ],
            fingerprint=data.get("fingerprint", ""),
            captured_at=data.get("timestamp", ""),
            source=data.get("source"),
        )


@dataclass
class ChangeSet:
    """Classified difference between two item lists."""

    added: list[MonitoredItem] = field(default_factory=list)
    removed: list[MonitoredItem] = field(default_factory=list)
    modified: list[MonitoredItem] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

    def to_dict(self) -> dict:
        return {
            "added": [item.to_dict() for item in self.added],
            "removed": [item.to_dict() for item in self.removed],
            "modified": [item.to_dict() for item in self.modified],
        }


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of liveness-checking one URL."""

    identity: str
    url: str
    status: ProbeStatus
    latency_ms: int
    at: str
    status_code: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ProbeStatus.ACTIVE

    def to_payload_entry(self) -> dict:
        """Render the per-URL entry of the webhook payload."""
        entry: dict[str, Any] = {"url": self.url, "status": self.status.value}
        if self.status_code is not None:
            entry["statusCode"] = self.status_code
        entry["responseTime"] = self.latency_ms
        if self.error is not None:
            entry["error"] = self.error
        if self.error_kind is not None:
            entry["errorType"] = self.error_kind
        return entry

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "url": self.url,
            "status": self.status.value,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "error_kind": self.error_kind,
            "error": self.error,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProbeResult":
        return cls(
            identity=data.get("identity", ""),
            url=data["url"],
            status=ProbeStatus(data["status"]),
            status_code=data.get("status_code"),
            latency_ms=int(data.get("latency_ms", 0)),
            error_kind=data.get("error_kind"),
            error=data.get("error"),
            at=data.get("at", ""),
        )


@dataclass
class CheckSummary:
    """Counts over a check batch; ``inactive`` includes errored probes."""

    total: int
    active: int
    inactive: int

    @classmethod
    def of(cls, results: list[ProbeResult]) -> "CheckSummary":
        active = sum(1 for r in results if r.is_active)
        return cls(total=len(results), active=active, inactive=len(results) - active)

    def to_dict(self) -> dict:
        return {"total": self.total, "active": self.active, "inactive": self.inactive}


@dataclass
class CheckBatch:
    """A full cycle's worth of probe results."""

    batch_id: str
    results: list[ProbeResult]
    summary: CheckSummary
    at: str

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CheckBatch":
        results = [ProbeResult.from_dict(r) for r in data.get("results", [])]
        return cls(
            batch_id=data["batch_id"],
            results=results,
            summary=CheckSummary.of(results),
            at=data.get("at", ""),
        )


@dataclass
class DeliveryAttempt:
    """A pending or retrying webhook delivery."""

    batch: CheckBatch
    endpoint: str
    attempts_made: int
    next_attempt_at: str
    created_at: str
    last_error: Optional[str] = None

    @property
    def attempt_id(self) -> str:
        return self.batch.batch_id

    def to_dict(self) -> dict:
        return {
            "batch": self.batch.to_dict(),
            "endpoint": self.endpoint,
            "attempts_made": self.attempts_made,
            "next_attempt_at": self.next_attempt_at,
            "created_at": self.created_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryAttempt":
        return cls(
            batch=CheckBatch.from_dict(data["batch"]),
            endpoint=data["endpoint"],
            attempts_made=int(data.get("attempts_made", 0)),
            next_attempt_at=data.get("next_attempt_at", ""),
            created_at=data.get("created_at", ""),
            last_error=data.get("last_error"),
        )


@dataclass
class DeliveryOutcome:
    """Result of delivering one batch."""

    delivered: bool
    attempt: DeliveryAttempt
    status_code: Optional[int] = None
    error: Optional[str] = None
    archived: bool = False
    retry_delays: list[float] = field(default_factory=list)

    @property
    def strict_success(self) -> bool:
        """True only for a 2xx response."""
        return self.status_code is not None and 200 <= self.status_code < 300


@dataclass
class SyncError:
    """Why a sync failed."""

    code: SyncErrorCode
    message: str
    attempts: int = 0
    cause_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "attempts": self.attempts,
            "cause_code": self.cause_code,
        }


@dataclass
class SyncResult:
    """Outcome of one sync: a change set or a sync error."""

    success: bool
    timestamp: str
    attempts: int
    duration_ms: float
    change_set: Optional[ChangeSet] = None
    snapshot: Optional[Snapshot] = None
    previous_count: int = 0
    error: Optional[SyncError] = None

    def to_history_entry(self) -> dict:
        entry = {
            "success": self.success,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "duration_ms": round(self.duration_ms, 1),
            "previous_count": self.previous_count,
        }
        if self.snapshot is not None:
            entry["new_count"] = len(self.snapshot.items)
            entry["fingerprint"] = self.snapshot.fingerprint
        if self.change_set is not None:
            entry["added"] = len(self.change_set.added)
            entry["removed"] = len(self.change_set.removed)
            entry["modified"] = len(self.change_set.modified)
        if self.error is not None:
            entry["error"] = self.error.to_dict()
        return entry


@dataclass
class SyncStats:
    """Monotonic sync counters."""

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    consecutive_failures: int = 0
    last_sync_time: Optional[str] = None
    last_success_time: Optional[str] = None
    total_items_found: int = 0
    total_new_items: int = 0
    average_duration_ms: float = 0.0
    data_integrity_checks: int = 0

    def record_success(
        self, timestamp: str, duration_ms: float, item_count: int, added: int
    ) -> None:
        self.total_syncs += 1
        self.successful_syncs += 1
        self.consecutive_failures = 0
        self.last_sync_time = timestamp
        self.last_success_time = timestamp
        self.total_items_found = item_count
        self.total_new_items += added
        self.average_duration_ms = _rolling_mean(
            self.average_duration_ms, self.successful_syncs, duration_ms
        )

    def record_failure(self, timestamp: str) -> None:
        self.total_syncs += 1
        self.failed_syncs += 1
        self.consecutive_failures += 1
        self.last_sync_time = timestamp

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: dict) -> "SyncStats":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ServiceStats:
    """Monotonic check and delivery counters."""

    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    successful_callbacks: int = 0
    failed_callbacks: int = 0
    consecutive_failures: int = 0
    last_check_time: Optional[str] = None
    average_duration_ms: float = 0.0

    def record_check(self, batch: CheckBatch, duration_ms: float) -> None:
        """A check counts as successful when at least one target is active."""
        self.total_checks += 1
        self.last_check_time = batch.at
        if batch.summary.total == 0 or batch.summary.active > 0:
            self.successful_checks += 1
        else:
            self.failed_checks += 1
        self.average_duration_ms = _rolling_mean(
            self.average_duration_ms, self.total_checks, duration_ms
        )

    def record_delivery(self, delivered: bool) -> None:
        if delivered:
            self.successful_callbacks += 1
            self.consecutive_failures = 0
        else:
            self.failed_callbacks += 1
            self.consecutive_failures += 1

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceStats":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class DeviceInfo:
    """Device/source metadata sent with every webhook payload."""

    id: str
    platform: str
    model: str
    version: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "model": self.model,
            "version": self.version,
        }


@dataclass
class CheckReport:
    """What one check job produced."""

    batch: CheckBatch
    delivery: Optional[DeliveryOutcome] = None


def _rolling_mean(previous: float, count: int, sample: float) -> float:
    if count <= 1:
        return float(sample)
    return (previous * (count - 1) + sample) / count


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()
