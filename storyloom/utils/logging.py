"""
Logging for Storyloom.

Every AppLogger call goes to stdlib logging and to an in-memory ring
buffer that the admin routes read. Story pipeline calls carry the ids of
the run they belong to (journal entry, offline request, pipeline run);
those are lifted out of the free-form metadata into first-class fields so
the admin log view can trace one entry or one replay end to end.
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def is_error(self) -> bool:
        return self in (LogLevel.ERROR, LogLevel.CRITICAL)


# Metadata keys promoted to LogEntry fields
TRACE_FIELDS = ("journal_entry_id", "request_id", "run_id")


@dataclass
class LogEntry:
    level: LogLevel
    message: str
    source: str = "system"
    journal_entry_id: Optional[str] = None
    request_id: Optional[str] = None
    run_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, level: LogLevel, message: str, source: str, metadata: Dict[str, Any]) -> "LogEntry":
        """Split trace ids out of call-site metadata"""
        extra = dict(metadata)
        trace = {key: extra.pop(key) for key in TRACE_FIELDS if extra.get(key) is not None}
        return cls(level, message, source, metadata=extra, **{k: str(v) for k, v in trace.items()})

    def matches(self, **filters: Any) -> bool:
        return all(value is None or getattr(self, key) == value for key, value in filters.items())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "journal_entry_id": self.journal_entry_id,
            "request_id": self.request_id,
            "run_id": self.run_id,
            "metadata": self.metadata,
        }


class LogBuffer:
    """
    Bounded, thread-safe store of recent entries.

    Error and warning totals survive eviction from the ring so the stats
    endpoint reports everything since start-up (or the last clear).
    """

    def __init__(self, max_size: int = 1000):
        self._entries: deque = deque(maxlen=max_size)
        self._lock = Lock()
        self._totals: Counter = Counter()

    def add(self, entry: LogEntry):
        with self._lock:
            self._entries.append(entry)
            if entry.level.is_error:
                self._totals["error"] += 1
            elif entry.level == LogLevel.WARNING:
                self._totals["warning"] += 1

    def _snapshot(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def get_recent(
        self,
        limit: int = 100,
        level: Optional[LogLevel] = None,
        source: Optional[str] = None,
        journal_entry_id: Optional[str] = None,
        request_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Newest first, narrowed by any combination of filters"""
        matching = [
            entry for entry in reversed(self._snapshot())
            if entry.matches(
                level=level,
                source=source,
                journal_entry_id=journal_entry_id,
                request_id=request_id,
                run_id=run_id,
            )
        ]
        return [entry.to_dict() for entry in matching[:limit]]

    def get_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        errors = [entry for entry in reversed(self._snapshot()) if entry.level.is_error]
        return [entry.to_dict() for entry in errors[:limit]]

    def get_stats(self) -> Dict[str, Any]:
        entries = self._snapshot()
        return {
            "total": len(entries),
            "by_level": dict(Counter(entry.level.value for entry in entries)),
            "by_source": dict(Counter(entry.source for entry in entries)),
            "error_count": self._totals["error"],
            "warning_count": self._totals["warning"],
        }

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._totals.clear()


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    return _log_buffer


def configure_logging(level: str = "INFO"):
    """Configure the stdlib root logger once at process start."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class AppLogger:
    """
    Logger for one area of the app (story pipeline, queue, network, api).

    Usage:
        story_logger.info("Chapter saved", run_id=run.run_id, chapter_id="ch-1")
    """

    def __init__(self, source: str):
        self.source = source
        self._logger = logging.getLogger(f"storyloom.{source}")

    def _log(self, level: LogLevel, message: str, metadata: Dict[str, Any]):
        _log_buffer.add(LogEntry.create(level, message, self.source, metadata))
        suffix = f" | {metadata}" if metadata else ""
        self._logger.log(getattr(logging, level.name), f"{message}{suffix}")

    def debug(self, message: str, **metadata):
        self._log(LogLevel.DEBUG, message, metadata)

    def info(self, message: str, **metadata):
        self._log(LogLevel.INFO, message, metadata)

    def warning(self, message: str, **metadata):
        self._log(LogLevel.WARNING, message, metadata)

    def error(self, message: str, **metadata):
        self._log(LogLevel.ERROR, message, metadata)

    def critical(self, message: str, **metadata):
        self._log(LogLevel.CRITICAL, message, metadata)


def get_logger(source: str) -> AppLogger:
    return AppLogger(source)


story_logger = AppLogger("story_pipeline")
queue_logger = AppLogger("offline_queue")
network_logger = AppLogger("network")
api_logger = AppLogger("api")
