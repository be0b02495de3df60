"""
Audit Logger module for the URL monitor.

Every component reports through one ``AuditLogger``. Entries are rendered as
JSON lines, as human-readable text, or both; entries below the configured
level are dropped, secrets in the attached data are masked before anything is
written, and the newest entries stay readable in memory for ``status()``.
"""

import json
import sys
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TextIO

from url_monitor.enums import LogLevel

MASK = "***MASKED***"

# Substrings that mark a data key as secret (matched case-insensitively)
SENSITIVE_MARKERS = (
    "authorization",
    "auth",
    "credential",
    "password",
    "secret",
    "hmac",
    "token",
    "api_key",
    "private_key",
)

_SEVERITY = {level: rank for rank, level in enumerate(
    (LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR)
)}


@dataclass
class LogEntry:
    """One audit log record."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        record = asdict(self)
        record["level"] = self.level.value
        return record


def is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def mask(value: Any) -> Any:
    """
    Return a copy of ``value`` with secret entries replaced by ``MASK``.

    Dictionaries are walked at any depth, including those nested in lists
    and tuples. The input is never modified.
    """
    if isinstance(value, dict):
        return {
            key: MASK if is_sensitive(key) else mask(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [mask(item) for item in value]
    return value


def render_json(entry: LogEntry) -> str:
    return json.dumps(entry.to_dict(), ensure_ascii=False, default=str)


def render_text(entry: LogEntry) -> str:
    """Render ``[timestamp] LEVEL [component] message {data}``."""
    line = f"[{entry.timestamp}] {entry.level.value.upper()} [{entry.component}] {entry.message}"
    if entry.data:
        line += " " + json.dumps(entry.data, ensure_ascii=False, default=str)
    return line


RENDERERS: dict[str, tuple[Callable[[LogEntry], str], ...]] = {
    "json": (render_json,),
    "text": (render_text,),
    "both": (render_json, render_text),
}


class AuditLogger:
    """
    Structured logger shared by all components.

    Entries are masked, rendered by the renderers of the chosen output
    format and kept in a bounded in-memory buffer.
    """

    MASK_VALUE = MASK

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
        buffer_size: int = 50,
    ):
        """
        Initialize the audit logger.

        Args:
            output_format: 'json', 'text', or 'both'
            output_stream: Destination stream (defaults to sys.stderr)
            min_level: Entries below this level are neither written nor kept
            buffer_size: Number of recent entries kept in memory

        Raises:
            ValueError: On an unknown format or a buffer smaller than one
        """
        if output_format not in RENDERERS:
            raise ValueError(f"Invalid output_format: {output_format}")
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")

        self._output_format = output_format
        self._renderers = RENDERERS[output_format]
        self._stream = output_stream or sys.stderr
        self._min_level = min_level
        self._buffer: deque[LogEntry] = deque(maxlen=buffer_size)

    @classmethod
    def from_config(cls, config, output_stream: Optional[TextIO] = None) -> "AuditLogger":
        """Build a logger from a ``LoggingConfig``."""
        return cls(
            output_format=config.output_format,
            output_stream=output_stream,
            min_level=LogLevel(config.level),
            buffer_size=config.buffer_size,
        )

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def entries(self) -> list[LogEntry]:
        """Buffered entries, oldest first."""
        return list(self._buffer)

    def recent(self, limit: Optional[int] = None) -> list[dict]:
        """The newest ``limit`` buffered entries as dictionaries, oldest first."""
        if limit is not None and limit <= 0:
            return []
        selected = list(self._buffer)[-limit:] if limit else list(self._buffer)
        return [entry.to_dict() for entry in selected]

    def is_enabled_for(self, level: LogLevel) -> bool:
        return _SEVERITY[level] >= _SEVERITY[self._min_level]

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record an entry.

        Returns:
            The entry, or None when ``level`` is below the threshold
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=mask(data or {}),
        )
        self._buffer.append(entry)
        for render in self._renderers:
            self._stream.write(render(entry) + "\n")
        self._stream.flush()
        return entry

    def debug(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, component, message, data)

    def info(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, component, message, data)

    def warn(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, component, message, data)

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[Exception] = None,
        request_url: Optional[str] = None,
        response_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record an ERROR entry with the failure context attached.

        The exception contributes its message, class name and, for monitor
        errors, its string ``code``.
        """
        data = dict(additional_data or {})
        if error is not None:
            data.update(error_message=str(error), error_type=type(error).__name__)
            if isinstance(getattr(error, "code", None), str):
                data["error_code"] = error.code
        if request_url is not None:
            data["request_url"] = request_url
        if response_status_code is not None:
            data["response_status_code"] = response_status_code
        return self.log(LogLevel.ERROR, component, message, data)

    def clear_entries(self) -> None:
        self._buffer.clear()
