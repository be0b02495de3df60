"""
URL Monitor - URL liveness monitoring with remote list sync and webhook delivery.

This package periodically checks a set of target URLs for liveness, keeps the
set reconciled with a remote source-of-truth list, and reliably delivers check
results to a webhook endpoint across transient failures and restarts.
"""

__version__ = "0.1.0"
__author__ = "URL Monitor Team"

from url_monitor.exceptions import (
    MonitorError,
    ConfigError,
    NetworkError,
    FormatError,
    ValidationError,
    StoreError,
    TamperingError,
)
from url_monitor.enums import (
    ProbeStatus,
    ProbeErrorKind,
    LogLevel,
    SyncErrorCode,
    BackoffStrategy,
    JobName,
    JobState,
    EventType,
)
from url_monitor.config import (
    RetryConfig,
    RateLimitRule,
    SyncConfig,
    ProbeConfig,
    DeliveryConfig,
    PersistenceConfig,
    LoggingConfig,
    DeviceConfig,
    MonitorConfig,
    OPTION_KEYS,
)
from url_monitor.models import (
    MonitoredItem,
    Snapshot,
    ChangeSet,
    ProbeResult,
    CheckSummary,
    CheckBatch,
    DeliveryAttempt,
    DeliveryOutcome,
    SyncError,
    SyncResult,
    SyncStats,
    ServiceStats,
    DeviceInfo,
    CheckReport,
)
from url_monitor.diff_engine import (
    derive_identity,
    normalize,
    rolling_hash,
    fingerprint,
    diff,
    validate_items,
    build_items,
)
from url_monitor.audit_logger import AuditLogger, LogEntry, mask
from url_monitor.store import KeyValueStore, MemoryStore, JsonFileStore, StateStore
from url_monitor.retry_manager import RetryManager, RetryResult
from url_monitor.rate_limiter import HostRateLimiter, RateLimitStatus
from url_monitor.url_prober import UrlProber, classify_transport_error, is_active_status
from url_monitor.check_orchestrator import CheckOrchestrator
from url_monitor.events import Event, EventBus
from url_monitor.delivery import WebhookDelivery, describe_device
from url_monitor.sync_coordinator import SyncCoordinator, extract_items
from url_monitor.scheduler import Scheduler, ScheduledJob
from url_monitor.service import MonitorService
from url_monitor.cli import (
    main as cli_main,
    create_parser,
    load_config_from_file,
    load_config_from_env,
    save_config_to_file,
)

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "MonitorError",
    "ConfigError",
    "NetworkError",
    "FormatError",
    "ValidationError",
    "StoreError",
    "TamperingError",
    # Enums
    "ProbeStatus",
    "ProbeErrorKind",
    "LogLevel",
    "SyncErrorCode",
    "BackoffStrategy",
    "JobName",
    "JobState",
    "EventType",
    # Config
    "RetryConfig",
    "RateLimitRule",
    "SyncConfig",
    "ProbeConfig",
    "DeliveryConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "DeviceConfig",
    "MonitorConfig",
    "OPTION_KEYS",
    # Models
    "MonitoredItem",
    "Snapshot",
    "ChangeSet",
    "ProbeResult",
    "CheckSummary",
    "CheckBatch",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "SyncError",
    "SyncResult",
    "SyncStats",
    "ServiceStats",
    "DeviceInfo",
    "CheckReport",
    # Diff Engine
    "derive_identity",
    "normalize",
    "rolling_hash",
    "fingerprint",
    "diff",
    "validate_items",
    "build_items",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    "mask",
    # Store
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "StateStore",
    # Retry Manager
    "RetryManager",
    "RetryResult",
    # Rate Limiter
    "HostRateLimiter",
    "RateLimitStatus",
    # URL Prober
    "UrlProber",
    "classify_transport_error",
    "is_active_status",
    # Check Orchestrator
    "CheckOrchestrator",
    # Events
    "Event",
    "EventBus",
    # Delivery
    "WebhookDelivery",
    "describe_device",
    # Sync Coordinator
    "SyncCoordinator",
    "extract_items",
    # Scheduler
    "Scheduler",
    "ScheduledJob",
    # Service
    "MonitorService",
    # CLI
    "cli_main",
    "create_parser",
    "load_config_from_file",
    "load_config_from_env",
    "save_config_to_file",
]
