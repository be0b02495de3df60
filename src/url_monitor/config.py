"""
Configuration dataclasses for the URL monitor.

This module defines all configuration structures used throughout the system,
including retry policies, the remote list sync, probing, webhook delivery,
persistence, and logging configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .enums import BackoffStrategy
from .exceptions import ConfigError


@dataclass
class RetryConfig:
    """Retry behavior configuration.

    ``max_retries`` is the total number of attempts, the first one included.
    """

    max_retries: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter_ratio: float = 0.0


@dataclass
class RateLimitRule:
    """A single rate limit rule."""

    max_requests: int
    window_seconds: float
    min_delay_seconds: float = 0.0


@dataclass
class SyncConfig:
    """Remote source-of-truth list configuration."""

    remote_endpoint: Optional[str] = None
    interval_seconds: float = 30 * 60.0
    timeout_seconds: float = 15.0
    strict_validation: bool = False
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class ProbeConfig:
    """Liveness probing configuration."""

    interval_seconds: float = 15 * 60.0
    timeout_seconds: float = 30.0
    method: str = "GET"
    batch_size: int = 5
    min_jitter_seconds: float = 0.5
    max_jitter_seconds: float = 2.0
    per_host: Optional[RateLimitRule] = field(
        default_factory=lambda: RateLimitRule(
            max_requests=30, window_seconds=60.0, min_delay_seconds=1.0
        )
    )


@dataclass
class DeliveryConfig:
    """Webhook delivery configuration."""

    callback_endpoint: Optional[str] = None
    callback_name: Optional[str] = None
    timeout_seconds: float = 20.0
    strict_status: bool = False
    check_type: str = "background"
    is_background: bool = True
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(
            max_retries=3,
            base_delay_seconds=5.0,
            max_delay_seconds=30.0,
            strategy=BackoffStrategy.LINEAR,
        )
    )


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Optional[Path] = None
    hmac_secret: Optional[str] = None
    history_limit: int = 20
    failed_delivery_limit: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'
    buffer_size: int = 50


@dataclass
class DeviceConfig:
    """Static device/source metadata reported in webhook payloads."""

    id: Optional[str] = None
    platform: Optional[str] = None
    model: Optional[str] = None
    version: Optional[str] = None


@dataclass
class MonitorConfig:
    """Main configuration combining all sub-configurations."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)

    def apply_options(self, options: dict[str, Any]) -> None:
        """
        Apply host-facing ``configure()`` options in place.

        Recognized keys: remoteEndpoint, callbackEndpoint, callbackName,
        checkIntervalMs, syncIntervalMs, maxRetries, retryDelayMs, timeoutMs,
        strictValidation, strictDeliveryStatus, batchSize.

        Raises:
            ConfigError: On an unknown key or an invalid value
        """
        unknown = sorted(set(options) - set(OPTION_KEYS))
        if unknown:
            raise ConfigError(
                code="unknown_option",
                message=f"Unknown configuration option(s): {', '.join(unknown)}",
                details={"options": unknown},
            )

        for key, value in options.items():
            if key == "remoteEndpoint":
                self.sync.remote_endpoint = _endpoint(key, value)
            elif key == "callbackEndpoint":
                self.delivery.callback_endpoint = _endpoint(key, value)
            elif key == "callbackName":
                if value is not None and not isinstance(value, str):
                    raise _invalid(key, value)
                self.delivery.callback_name = value or None
            elif key == "checkIntervalMs":
                self.probe.interval_seconds = _positive_ms(key, value)
            elif key == "syncIntervalMs":
                self.sync.interval_seconds = _positive_ms(key, value)
            elif key == "maxRetries":
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise _invalid(key, value)
                self.sync.retry.max_retries = value
                self.delivery.retry.max_retries = value
            elif key == "retryDelayMs":
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                    raise _invalid(key, value)
                self.sync.retry.base_delay_seconds = value / 1000.0
                self.delivery.retry.base_delay_seconds = value / 1000.0
            elif key == "timeoutMs":
                seconds = _positive_ms(key, value)
                self.sync.timeout_seconds = seconds
                self.probe.timeout_seconds = seconds
                self.delivery.timeout_seconds = seconds
            elif key == "strictValidation":
                self.sync.strict_validation = _flag(key, value)
            elif key == "strictDeliveryStatus":
                self.delivery.strict_status = _flag(key, value)
            elif key == "batchSize":
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise _invalid(key, value)
                self.probe.batch_size = value

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "sync": {
                "remote_endpoint": self.sync.remote_endpoint,
                "interval_seconds": self.sync.interval_seconds,
                "timeout_seconds": self.sync.timeout_seconds,
                "strict_validation": self.sync.strict_validation,
                "retry": _retry_to_dict(self.sync.retry),
            },
            "probe": {
                "interval_seconds": self.probe.interval_seconds,
                "timeout_seconds": self.probe.timeout_seconds,
                "method": self.probe.method,
                "batch_size": self.probe.batch_size,
                "min_jitter_seconds": self.probe.min_jitter_seconds,
                "max_jitter_seconds": self.probe.max_jitter_seconds,
                "per_host": (
                    {
                        "max_requests": self.probe.per_host.max_requests,
                        "window_seconds": self.probe.per_host.window_seconds,
                        "min_delay_seconds": self.probe.per_host.min_delay_seconds,
                    }
                    if self.probe.per_host
                    else None
                ),
            },
            "delivery": {
                "callback_endpoint": self.delivery.callback_endpoint,
                "callback_name": self.delivery.callback_name,
                "timeout_seconds": self.delivery.timeout_seconds,
                "strict_status": self.delivery.strict_status,
                "check_type": self.delivery.check_type,
                "is_background": self.delivery.is_background,
                "retry": _retry_to_dict(self.delivery.retry),
            },
            "persistence": {
                "state_file_path": (
                    str(self.persistence.state_file_path)
                    if self.persistence.state_file_path
                    else None
                ),
                "history_limit": self.persistence.history_limit,
                "failed_delivery_limit": self.persistence.failed_delivery_limit,
            },
            "logging": {
                "level": self.logging.level,
                "output_format": self.logging.output_format,
                "buffer_size": self.logging.buffer_size,
            },
            "device": {
                "id": self.device.id,
                "platform": self.device.platform,
                "model": self.device.model,
                "version": self.device.version,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorConfig":
        """
        Build a configuration from a dictionary produced by ``to_dict``.

        Missing sections and keys fall back to defaults. The HMAC secret is
        never read from here; it is supplied separately.

        Raises:
            ConfigError: If a value has the wrong type
        """
        config = cls()
        try:
            sync = data.get("sync") or {}
            config.sync = SyncConfig(
                remote_endpoint=sync.get("remote_endpoint"),
                interval_seconds=float(sync.get("interval_seconds", config.sync.interval_seconds)),
                timeout_seconds=float(sync.get("timeout_seconds", config.sync.timeout_seconds)),
                strict_validation=bool(sync.get("strict_validation", False)),
                retry=_retry_from_dict(sync.get("retry"), config.sync.retry),
            )

            probe = data.get("probe") or {}
            per_host = probe.get("per_host", "default")
            config.probe = ProbeConfig(
                interval_seconds=float(probe.get("interval_seconds", config.probe.interval_seconds)),
                timeout_seconds=float(probe.get("timeout_seconds", config.probe.timeout_seconds)),
                method=str(probe.get("method", config.probe.method)).upper(),
                batch_size=int(probe.get("batch_size", config.probe.batch_size)),
                min_jitter_seconds=float(probe.get("min_jitter_seconds", config.probe.min_jitter_seconds)),
                max_jitter_seconds=float(probe.get("max_jitter_seconds", config.probe.max_jitter_seconds)),
            )
            if per_host is None:
                config.probe.per_host = None
            elif per_host != "default":
                config.probe.per_host = RateLimitRule(
                    max_requests=int(per_host["max_requests"]),
                    window_seconds=float(per_host["window_seconds"]),
                    min_delay_seconds=float(per_host.get("min_delay_seconds", 0.0)),
                )

            delivery = data.get("delivery") or {}
            config.delivery = DeliveryConfig(
                callback_endpoint=delivery.get("callback_endpoint"),
                callback_name=delivery.get("callback_name"),
                timeout_seconds=float(delivery.get("timeout_seconds", config.delivery.timeout_seconds)),
                strict_status=bool(delivery.get("strict_status", False)),
                check_type=str(delivery.get("check_type", config.delivery.check_type)),
                is_background=bool(delivery.get("is_background", True)),
                retry=_retry_from_dict(delivery.get("retry"), config.delivery.retry),
            )

            persistence = data.get("persistence") or {}
            state_file = persistence.get("state_file_path")
            config.persistence = PersistenceConfig(
                state_file_path=Path(state_file) if state_file else None,
                history_limit=int(persistence.get("history_limit", 20)),
                failed_delivery_limit=int(persistence.get("failed_delivery_limit", 10)),
            )

            logging_data = data.get("logging") or {}
            config.logging = LoggingConfig(
                level=str(logging_data.get("level", "info")),
                output_format=str(logging_data.get("output_format", "text")),
                buffer_size=int(logging_data.get("buffer_size", 50)),
            )

            device = data.get("device") or {}
            config.device = DeviceConfig(
                id=device.get("id"),
                platform=device.get("platform"),
                model=device.get("model"),
                version=device.get("version"),
            )
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise ConfigError(
                code="invalid_config",
                message=f"Invalid configuration: {e}",
            ) from e

        return config


OPTION_KEYS = (
    "remoteEndpoint",
    "callbackEndpoint",
    "callbackName",
    "checkIntervalMs",
    "syncIntervalMs",
    "maxRetries",
    "retryDelayMs",
    "timeoutMs",
    "strictValidation",
    "strictDeliveryStatus",
    "batchSize",
)


def _invalid(key: str, value: Any) -> ConfigError:
    return ConfigError(
        code="invalid_option",
        message=f"Invalid value for {key}: {value!r}",
        details={"option": key},
    )


def _endpoint(key: str, value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not value.startswith(("http://", "https://")):
        raise _invalid(key, value)
    return value


def _positive_ms(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise _invalid(key, value)
    return value / 1000.0


def _flag(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise _invalid(key, value)
    return value


def _retry_to_dict(retry: RetryConfig) -> dict:
    return {
        "max_retries": retry.max_retries,
        "base_delay_seconds": retry.base_delay_seconds,
        "max_delay_seconds": retry.max_delay_seconds,
        "strategy": retry.strategy.value,
        "jitter_ratio": retry.jitter_ratio,
    }


def _retry_from_dict(data: Optional[dict], default: RetryConfig) -> RetryConfig:
    if not data:
        return default
    return RetryConfig(
        max_retries=int(data.get("max_retries", default.max_retries)),
        base_delay_seconds=float(data.get("base_delay_seconds", default.base_delay_seconds)),
        max_delay_seconds=float(data.get("max_delay_seconds", default.max_delay_seconds)),
        strategy=BackoffStrategy(data.get("strategy", default.strategy.value)),
        jitter_ratio=float(data.get("jitter_ratio", default.jitter_ratio)),
    )
