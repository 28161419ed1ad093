"""In-memory, level-filtered log of sync activity.

Keeps the most recent entries so the UI can show what the sync engine
has been doing.  Every kept entry is also forwarded to the standard
``logging`` logger ``healthsync.wearables.sync``.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any

from healthsync.wearables.base import Clock, LogLevel, utc_now

logger = logging.getLogger("healthsync.wearables.sync")

DEFAULT_MAX_ENTRIES = 1000

_STDLIB_LEVELS: dict[LogLevel, int] = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    """One log record.

    Attributes:
        timestamp: UTC ISO-8601 timestamp.
        level:     Severity.
        message:   Human-readable message.
        data:      JSON-encoded attached data, if any.
    """

    timestamp: str
    level: LogLevel
    message: str
    data: str | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "data": self.data,
        }


def _safe_json(data: Any) -> str:
    """Serialize ``data`` to JSON, tolerating odd objects and cycles."""
    try:
        return json.dumps(data, default=_fallback)
    except ValueError:
        # circular reference
        return json.dumps(_break_cycles(data, set()), default=_fallback)


def _fallback(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "value") and not callable(value.value):
        return value.value
    return str(value)


def _break_cycles(value: Any, seen: set[int]) -> Any:
    if isinstance(value, (dict, list, tuple, set)):
        if id(value) in seen:
            return "[Circular]"
        seen = seen | {id(value)}
        if isinstance(value, dict):
            return {str(k): _break_cycles(v, seen) for k, v in value.items()}
        return [_break_cycles(v, seen) for v in value]
    return value


class SyncLogger:
    """Append-only log with bounded retention.

    Args:
        level:       Minimum level kept.
        max_entries: Oldest entries are dropped beyond this many.
        clock:       Time source for entry timestamps.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = utc_now,
    ) -> None:
        self._level = LogLevel(level)
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._clock = clock

    @property
    def level(self) -> LogLevel:
        return self._level

    def debug(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.DEBUG, message, data)

    def info(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.INFO, message, data)

    def warn(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.WARN, message, data)

    def error(self, message: str, data: Any = None) -> None:
        if isinstance(data, BaseException):
            data = {"error": type(data).__name__, "message": str(data)}
        self._log(LogLevel.ERROR, message, data)

    def get_logs(self, limit: int | None = None) -> list[LogEntry]:
        """Return entries in chronological order, the last ``limit`` if given."""
        entries = list(self._entries)
        if limit:
            return entries[-limit:]
        return entries

    def clear_logs(self) -> None:
        self._entries.clear()

    def set_log_level(self, level: LogLevel) -> None:
        self._level = LogLevel(level)

    def __len__(self) -> int:
        return len(self._entries)

    def _log(self, level: LogLevel, message: str, data: Any) -> None:
        if level.rank < self._level.rank:
            return
        entry = LogEntry(
            timestamp=self._clock().isoformat(),
            level=level,
            message=message,
            data=_safe_json(data) if data is not None else None,
        )
        self._entries.append(entry)
        if entry.data is not None:
            logger.log(_STDLIB_LEVELS[level], "%s %s", message, entry.data)
        else:
            logger.log(_STDLIB_LEVELS[level], "%s", message)
