"""
Enumeration types for the URL monitor.

These enums provide type-safe constants for probe outcomes, error kinds,
job states and event names throughout the system.
"""

from enum import Enum


class ProbeStatus(Enum):
    """Liveness classification of a single probe."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class ProbeErrorKind(Enum):
    """Transport-level failure categories."""

    TIMEOUT = "timeout"
    DNS_ERROR = "dns_error"
    CONNECTION_REFUSED = "connection_refused"
    NETWORK_ERROR = "network_error"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class SyncErrorCode(Enum):
    """Error codes for sync failures."""

    INVALID_FORMAT = "invalid_format"
    VALIDATION_FAILED = "validation_failed"
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    STORE = "store"
    NOT_CONFIGURED = "not_configured"
    RETRIES_EXHAUSTED = "retries_exhausted"


class BackoffStrategy(Enum):
    """How retry delays grow with the attempt number."""

    EXPONENTIAL = "exponential"  # base * 2^(attempt-1)
    LINEAR = "linear"  # base * attempt


class JobName(Enum):
    """Jobs owned by the scheduler."""

    SYNC = "sync"
    CHECK = "check"


class JobState(Enum):
    """Lifecycle of a scheduled job."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


class EventType(Enum):
    """Events emitted to the host."""

    SYNC_SUCCESS = "sync.success"
    SYNC_ERROR = "sync.error"
    CHECK_COMPLETED = "check.completed"
    DELIVERY_SUCCESS = "delivery.success"
    DELIVERY_FAILED = "delivery.failed"
