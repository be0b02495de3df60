"""
State Store module for persistent monitor state.

This module provides a small key-value contract with an in-memory and an
HMAC-protected JSON file backend, plus ``StateStore``, a typed facade over
the keys the monitor persists (configuration, snapshot, statistics,
histories, and the pending and failed delivery queues).
"""

import copy
import hashlib
import hmac
import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from .exceptions import StoreError, TamperingError
from .models import (
    DeliveryAttempt,
    ServiceStats,
    Snapshot,
    SyncStats,
)
from .diff_engine import derive_identity


@runtime_checkable
class KeyValueStore(Protocol):
    """Key-value contract for persisted state; values are JSON-compatible."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...


class MemoryStore:
    """In-process store. Values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """
    Persistent key-value storage with HMAC protection.

    All keys live in one JSON file. Every write rewrites the file through a
    temporary file and an atomic rename, so a crash never leaves a partial
    document. The HMAC covers version, timestamp and data.
    """

    VERSION = 1

    def __init__(self, file_path: Path, hmac_secret: str) -> None:
        """
        Initialize the file store.

        Args:
            file_path: Path to the state file (JSON format)
            hmac_secret: Secret key for HMAC computation
        """
        if not hmac_secret:
            raise StoreError(
                code="missing_secret",
                message="An HMAC secret is required for the state file",
            )
        self._file_path = Path(file_path)
        self._hmac_secret = hmac_secret.encode("utf-8")

    @property
    def file_path(self) -> Path:
        """Get the state file path."""
        return self._file_path

    def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._load().get(key))

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = copy.deepcopy(value)
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def keys(self) -> list[str]:
        return sorted(self._load())

    def _load(self) -> dict[str, Any]:
        """
        Read and validate the state file.

        The file is read on every call so writes made by another process
        sharing the file are never overwritten with stale data.

        Raises:
            TamperingError: If HMAC validation fails
            StoreError: If the file cannot be read or parsed
        """
        if not self._file_path.exists():
            return {}

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e
        except OSError as e:
            raise StoreError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        if not isinstance(raw_data, dict):
            raise StoreError(
                code="parse_error",
                message="State file does not contain an object",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        data_for_hmac = {
            "version": raw_data.get("version"),
            "data": raw_data.get("data", {}),
            "updated_at": raw_data.get("updated_at"),
        }
        computed_hmac = self.compute_hmac(data_for_hmac)

        if not self.validate_hmac(str(stored_hmac), computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - data may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        data = raw_data.get("data", {})
        if not isinstance(data, dict):
            raise StoreError(
                code="parse_error",
                message="State file data is not an object",
                details={"file_path": str(self._file_path)},
            )
        return data

    def _save(self, data: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        data_for_hmac = {
            "version": self.VERSION,
            "data": data,
            "updated_at": now,
        }
        output_data = dict(data_for_hmac, hmac=self.compute_hmac(data_for_hmac))

        tmp_path = self._file_path.with_name(self._file_path.name + ".tmp")
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(output_data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._file_path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(
                code="io_error",
                message=f"Failed to write state file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

    def compute_hmac(self, data: dict) -> str:
        """
        Compute HMAC-SHA256 over serialized data.

        Args:
            data: Dictionary to compute HMAC over

        Returns:
            Hexadecimal HMAC string
        """
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        return hmac.compare_digest(stored_hmac, computed_hmac)


class StateStore:
    """
    Typed access to the persisted monitor state.

    Every read and write goes through the underlying ``KeyValueStore``;
    backend failures surface as ``StoreError``.
    """

    CONFIG = "config"
    SNAPSHOT = "snapshot"
    SYNC_STATS = "sync_stats"
    SERVICE_STATS = "service_stats"
    CHECK_HISTORY = "check_history"
    SYNC_HISTORY = "sync_history"
    PENDING_DELIVERIES = "pending_deliveries"
    FAILED_DELIVERIES = "failed_deliveries"
    JOBS = "jobs"
    DEVICE_ID = "device_id"

    SYNC_HISTORY_LIMIT = 10

    def __init__(
        self,
        backend: Optional[KeyValueStore] = None,
        history_limit: int = 20,
        failed_delivery_limit: int = 10,
    ) -> None:
        self._backend = backend if backend is not None else MemoryStore()
        self._history_limit = history_limit
        self._failed_delivery_limit = failed_delivery_limit

    @property
    def backend(self) -> KeyValueStore:
        return self._backend

    def _get(self, key: str, default: Any = None) -> Any:
        try:
            value = self._backend.get(key)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(code="read_failed", message=f"Failed to read {key}: {e}") from e
        return default if value is None else value

    def _set(self, key: str, value: Any) -> None:
        try:
            self._backend.set(key, value)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(code="write_failed", message=f"Failed to write {key}: {e}") from e

    def _delete(self, key: str) -> None:
        try:
            self._backend.delete(key)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(code="write_failed", message=f"Failed to delete {key}: {e}") from e

    # Configuration

    def load_config(self) -> Optional[dict]:
        return self._get(self.CONFIG)

    def save_config(self, config: dict) -> None:
        self._set(self.CONFIG, config)

    # Snapshot

    def load_snapshot(self, source: Optional[str] = None) -> Optional[Snapshot]:
        """
        Return the current snapshot.

        When ``source`` is given, a snapshot taken from any other source
        (or from an unknown one) is treated as absent.
        """
        data = self._get(self.SNAPSHOT)
        if not data:
            return None
        snapshot = Snapshot.from_dict(data)
        if source is not None and snapshot.source != source:
            return None
        for item in snapshot.items:
            if not item.identity:
                item.identity = derive_identity(item.to_dict())
        return snapshot

    def save_snapshot(self, snapshot: Snapshot) -> None:
        """Replace the current snapshot in one write."""
        self._set(self.SNAPSHOT, snapshot.to_dict())

    def clear_snapshot(self) -> None:
        self._delete(self.SNAPSHOT)

    # Statistics

    def load_sync_stats(self) -> SyncStats:
        return SyncStats.from_dict(self._get(self.SYNC_STATS, {}))

    def save_sync_stats(self, stats: SyncStats) -> None:
        self._set(self.SYNC_STATS, stats.to_dict())

    def load_service_stats(self) -> ServiceStats:
        return ServiceStats.from_dict(self._get(self.SERVICE_STATS, {}))

    def save_service_stats(self, stats: ServiceStats) -> None:
        self._set(self.SERVICE_STATS, stats.to_dict())

    # Histories

    def append_check_history(self, entry: dict) -> None:
        history = self._get(self.CHECK_HISTORY, [])
        history.append(entry)
        self._set(self.CHECK_HISTORY, history[-self._history_limit:])

    def check_history(self) -> list[dict]:
        return self._get(self.CHECK_HISTORY, [])

    def append_sync_history(self, entry: dict) -> None:
        history = self._get(self.SYNC_HISTORY, [])
        history.append(entry)
        self._set(self.SYNC_HISTORY, history[-self.SYNC_HISTORY_LIMIT:])

    def sync_history(self) -> list[dict]:
        return self._get(self.SYNC_HISTORY, [])

    # Pending deliveries

    def pending_deliveries(self) -> list[DeliveryAttempt]:
        return [
            DeliveryAttempt.from_dict(data)
            for data in self._get(self.PENDING_DELIVERIES, [])
        ]

    def add_pending_delivery(self, attempt: DeliveryAttempt) -> None:
        """Insert or replace the pending entry with the same attempt id."""
        pending = [
            data
            for data in self._get(self.PENDING_DELIVERIES, [])
            if data.get("batch", {}).get("batch_id") != attempt.attempt_id
        ]
        pending.append(attempt.to_dict())
        self._set(self.PENDING_DELIVERIES, pending)

    def update_pending_delivery(self, attempt: DeliveryAttempt) -> None:
        pending = self._get(self.PENDING_DELIVERIES, [])
        for index, data in enumerate(pending):
            if data.get("batch", {}).get("batch_id") == attempt.attempt_id:
                pending[index] = attempt.to_dict()
                self._set(self.PENDING_DELIVERIES, pending)
                return
        self.add_pending_delivery(attempt)

    def remove_pending_delivery(self, attempt_id: str) -> None:
        pending = self._get(self.PENDING_DELIVERIES, [])
        remaining = [
            data for data in pending
            if data.get("batch", {}).get("batch_id") != attempt_id
        ]
        if len(remaining) != len(pending):
            self._set(self.PENDING_DELIVERIES, remaining)

    # Failed deliveries

    def failed_deliveries(self) -> list[DeliveryAttempt]:
        return [
            DeliveryAttempt.from_dict(data)
            for data in self._get(self.FAILED_DELIVERIES, [])
        ]

    def archive_failed_delivery(self, attempt: DeliveryAttempt) -> None:
        """Append to the failed log, evicting the oldest entries beyond the cap."""
        failed = [
            data
            for data in self._get(self.FAILED_DELIVERIES, [])
            if data.get("batch", {}).get("batch_id") != attempt.attempt_id
        ]
        failed.append(attempt.to_dict())
        self._set(self.FAILED_DELIVERIES, failed[-self._failed_delivery_limit:])

    def remove_failed_delivery(self, attempt_id: str) -> None:
        failed = self._get(self.FAILED_DELIVERIES, [])
        remaining = [
            data for data in failed
            if data.get("batch", {}).get("batch_id") != attempt_id
        ]
        if len(remaining) != len(failed):
            self._set(self.FAILED_DELIVERIES, remaining)

    # Jobs

    def job_enabled(self, name: str) -> bool:
        return bool(self._get(self.JOBS, {}).get(name, {}).get("enabled", False))

    def job_interval(self, name: str) -> Optional[float]:
        return self._get(self.JOBS, {}).get(name, {}).get("interval_seconds")

    def set_job_enabled(
        self, name: str, enabled: bool, interval_seconds: Optional[float] = None
    ) -> None:
        jobs = self._get(self.JOBS, {})
        job = jobs.get(name, {})
        job["enabled"] = enabled
        if interval_seconds is not None:
            job["interval_seconds"] = interval_seconds
        jobs[name] = job
        self._set(self.JOBS, jobs)

    def enabled_jobs(self) -> list[str]:
        jobs = self._get(self.JOBS, {})
        return sorted(name for name, job in jobs.items() if job.get("enabled"))

    # Device

    def device_id(self) -> str:
        """Return the persisted device id, creating one on first use."""
        device_id = self._get(self.DEVICE_ID)
        if not device_id:
            device_id = uuid.uuid4().hex
            self._set(self.DEVICE_ID, device_id)
        return device_id

    def reset_stats(self) -> None:
        self._set(self.SYNC_STATS, SyncStats().to_dict())
        self._set(self.SERVICE_STATS, ServiceStats().to_dict())
