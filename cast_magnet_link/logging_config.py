"""
Logging setup for Cast Magnet Link.

Console output is colored text or one JSON object per line, optionally mirrored
to a rotating file. Recent records are kept in memory for ``/api/logs``.
Context fields (link id, torrent id, directory, ...) are attached per asyncio
task through a context variable, so concurrent requests never see each
other's context.
"""

import json
import logging
import logging.handlers
import sys
import threading
from collections import deque
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from .utils import format_timestamp, parse_timestamp, utc_now

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

CONTEXT_FIELDS = (
    "link_id",
    "torrent_id",
    "infohash",
    "media_name",
    "directory",
    "phase",
    "operation",
    "error",
    "duration_ms",
    "size_bytes",
)

# Attributes every LogRecord carries; anything else was added via extra= or context
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message", "asctime",
))

_log_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("cast_magnet_link_log_context", default=None)


def context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The known context fields set on a record."""
    return {
        field: getattr(record, field)
        for field in CONTEXT_FIELDS
        if getattr(record, field, None) is not None
    }


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
    }


class ContextFilter(logging.Filter):
    """Copies the current task's log context onto every record."""

    @staticmethod
    def get_context() -> Dict[str, Any]:
        return dict(_log_context.get() or {})

    @classmethod
    def set_context(cls, **kwargs) -> None:
        _log_context.set({**cls.get_context(), **kwargs})

    @classmethod
    def clear_context(cls, *keys) -> None:
        """Drop the given keys, or everything when called without keys."""
        if not keys:
            _log_context.set({})
            return
        _log_context.set({k: v for k, v in cls.get_context().items() if k not in keys})

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in (_log_context.get() or {}).items():
            setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields and extras are top-level keys."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": format_timestamp(utc_now()),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(context_fields(record))

        if record.exc_info:
            exc_type = record.exc_info[0]
            payload["exception_type"] = exc_type.__name__ if exc_type else None
            payload["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            for key, value in _extra_fields(record).items():
                payload.setdefault(key, value)

        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Console lines with a colored level and a short context suffix."""

    LEVEL_COLORS = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }
    SUMMARY_FIELDS = ("media_name", "directory", "phase")

    def __init__(self, use_colors: bool = True):
        super().__init__(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)

        color = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        if color:
            line = line.replace(record.levelname, f"\033[{color}m{record.levelname}\033[0m", 1)

        summary = ", ".join(
            f"{field}={getattr(record, field)}"
            for field in self.SUMMARY_FIELDS
            if getattr(record, field, None)
        )
        return f"{line} [{summary}]" if summary else line


@dataclass
class ActivityLogEntry:
    """One record in the in-memory activity log."""
    timestamp: str
    level: str
    logger: str
    message: str
    link_id: Optional[str] = None
    torrent_id: Optional[str] = None
    media_name: Optional[str] = None
    directory: Optional[str] = None
    phase: Optional[str] = None


_ENTRY_CONTEXT_FIELDS = ("link_id", "torrent_id", "media_name", "directory", "phase")


class ActivityLogHandler(logging.Handler):
    """Ring buffer of recent records, queried by ``/api/logs``."""

    def __init__(self, max_entries: int = 1000, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self._entries: Deque[ActivityLogEntry] = deque(maxlen=max_entries)
        self._entries_lock = threading.Lock()

    @property
    def max_entries(self) -> Optional[int]:
        return self._entries.maxlen

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = ActivityLogEntry(
                timestamp=format_timestamp(utc_now()),
                level=record.levelname,
                logger=record.name,
                message=record.getMessage(),
                **{field: getattr(record, field, None) for field in _ENTRY_CONTEXT_FIELDS},
            )
        except Exception:
            self.handleError(record)
            return

        with self._entries_lock:
            self._entries.append(entry)

    def get_logs(
        self,
        limit: int = 100,
        level: Optional[str] = None,
        link_id: Optional[str] = None,
        torrent_id: Optional[str] = None,
        directory: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Most recent entries matching every given filter, oldest first.

        ``level`` is a minimum level name; ``since`` is an ISO timestamp and is
        ignored when it cannot be parsed.
        """
        with self._entries_lock:
            entries = list(self._entries)

        if level:
            threshold = logging.getLevelName(level.upper())
            if isinstance(threshold, int):
                entries = [e for e in entries if logging.getLevelName(e.level) >= threshold]

        for field, wanted in (("link_id", link_id), ("torrent_id", torrent_id), ("directory", directory)):
            if wanted:
                entries = [e for e in entries if getattr(e, field) == wanted]

        cutoff = parse_timestamp(since) if since else None
        if cutoff:
            entries = [e for e in entries if parse_timestamp(e.timestamp) >= cutoff]

        if limit <= 0:
            return []
        return [asdict(e) for e in entries[-limit:]]


# Per-logger levels applied after the root level
COMPONENT_LOG_LEVELS = {
    "cast_magnet_link": "INFO",
    "cast_magnet_link.server": "INFO",
    "cast_magnet_link.rd_client": "INFO",
    "cast_magnet_link.dmm_client": "INFO",
    "cast_magnet_link.pipeline": "INFO",
    "cast_magnet_link.directory": "INFO",
    "cast_magnet_link.link_cache": "INFO",
    "cast_magnet_link.persistence": "WARNING",
    "aiohttp": "WARNING",
    "aiohttp.client": "WARNING",
    "aiosqlite": "WARNING",
    "redis": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "uvicorn.error": "INFO",
    "fastapi": "INFO",
}


def _formatter(log_format: str, console: bool, use_colors: bool) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    if console:
        return ColoredFormatter(use_colors=use_colors)
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
    activity_log_size: int = 1000,
) -> ActivityLogHandler:
    """
    Replace the root logger's handlers with the service's handlers.

    Args:
        log_level: Root level name
        log_file: Also write to this file, rotated at ``max_file_size_mb``
        log_format: "text" or "json"
        max_file_size_mb: Rotation size of the log file
        backup_count: Rotated files to keep
        use_colors: Color the console level names when stdout is a terminal
        activity_log_size: Capacity of the in-memory activity log

    Returns:
        The ActivityLogHandler backing ``/api/logs``
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    context_filter = ContextFilter()
    handlers: List[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_formatter(log_format, console=True, use_colors=use_colors))
    handlers.append(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        rotating.setFormatter(_formatter(log_format, console=False, use_colors=False))
        handlers.append(rotating)

    activity = ActivityLogHandler(max_entries=activity_log_size)
    handlers.append(activity)

    for handler in handlers:
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(getattr(logging, level))

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level}, format={log_format}, file={log_file or 'none'}"
    )
    return activity


class LogContext:
    """
    Set context fields for the duration of a block.

        with LogContext(link_id="ABCDEF123", directory="downloads"):
            logger.info("Serving link")

    None values are skipped. Leaving the block restores the enclosing context.
    """

    def __init__(self, **kwargs):
        self.context = {k: v for k, v in kwargs.items() if v is not None}
        self._token = None

    def __enter__(self):
        self._token = _log_context.set({**ContextFilter.get_context(), **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)
        return False


def log_operation(logger: logging.Logger, operation: str, level: int = logging.INFO, **fields) -> None:
    """Log ``operation`` as the message with ``operation=`` and ``fields`` in context."""
    with LogContext(operation=operation, **fields):
        logger.log(level, operation)
