"""
Logging handlers and formatters for cleanup runs.

Records emitted inside a LoggingContext carry the bound fields (vm_dir,
job, ...) as ``record.context`` so that handlers can store or render them.
"""
import contextvars
import json
import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import List, Dict, Any, Optional
from logging.handlers import RotatingFileHandler as BaseRotatingFileHandler
from pathlib import Path

from vmrepo.core.config import settings

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "vmrepo_log_context", default={}
)


class LoggingContext:
    """
    Bind contextual fields to every log record emitted inside the block.

    Backed by a ContextVar, so the fields follow asyncio tasks created
    inside the block.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token = None

    def __enter__(self):
        merged = {**_log_context.get(), **self.fields}
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, exc_type, exc, tb):
        _log_context.reset(self._token)
        return False


def get_log_context() -> Dict[str, Any]:
    """Return the fields bound by the enclosing LoggingContext blocks."""
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copy the current LoggingContext fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "context"):
            record.context = get_log_context()
        return True


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class InMemoryLogHandler(logging.Handler):
    """
    Custom log handler that stores recent log entries in memory.
    Thread-safe circular buffer with a maximum size.
    """

    def __init__(self, max_records: int = 1000):
        """
        Initialize the in-memory log handler.

        Args:
            max_records: Maximum number of log records to keep in memory
        """
        super().__init__()
        self.max_records = max_records
        self.records = deque(maxlen=max_records)
        # Handler.handle() already holds self.lock around emit()
        self._records_lock = Lock()
        self.addFilter(ContextFilter())

    def emit(self, record: logging.LogRecord):
        """
        Store a log record in memory.

        Args:
            record: LogRecord to store
        """
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "context": getattr(record, "context", {}),
            }

            if record.exc_info:
                log_entry["exception"] = self.formatter.formatException(record.exc_info) if self.formatter else str(record.exc_info)

            with self._records_lock:
                self.records.append(log_entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: Optional[str] = None,
        logger: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Get filtered log entries, newest first.

        Args:
            level: Filter by log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            logger: Filter by logger name (partial match)
            search: Search in log messages (case-insensitive)
            limit: Maximum number of records to return
            offset: Number of records to skip from the newest

        Returns:
            List of log entry dictionaries
        """
        with self._records_lock:
            logs = list(self.records)

        if level:
            logs = [log for log in logs if log["level"] == level.upper()]

        if logger:
            logs = [log for log in logs if logger.lower() in log["logger"].lower()]

        if search:
            search_lower = search.lower()
            logs = [log for log in logs if search_lower in log["message"].lower()]

        logs.reverse()
        return logs[offset:offset + limit]

    def get_stats(self) -> Dict[str, Any]:
        """Get counts of stored records by level."""
        with self._records_lock:
            logs = list(self.records)

        level_counts = {
            "DEBUG": 0,
            "INFO": 0,
            "WARNING": 0,
            "ERROR": 0,
            "CRITICAL": 0,
        }

        for log in logs:
            level = log["level"]
            if level in level_counts:
                level_counts[level] += 1

        return {
            "total": len(logs),
            "max_records": self.max_records,
            "by_level": level_counts,
        }

    def clear(self):
        """Clear all stored log records."""
        with self._records_lock:
            self.records.clear()


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def get_file_log_handler(
    log_file: str,
    max_bytes: int = 100 * 1024 * 1024,  # 100 MB
    backup_count: int = 10,
    log_format: str = "text"
) -> BaseRotatingFileHandler:
    """Create a rotating file handler, creating the log directory if needed."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = BaseRotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    handler.setFormatter(_make_formatter(log_format))
    handler.addFilter(ContextFilter())
    return handler


def get_memory_log_handler() -> Optional[InMemoryLogHandler]:
    """Return the in-memory handler attached by setup_logging, if any."""
    for handler in logging.getLogger("vmrepo").handlers:
        if isinstance(handler, InMemoryLogHandler):
            return handler
    return None


def setup_logging(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Attach handlers to the ``vmrepo`` logger.

    The root logger is left alone so embedding applications keep control
    of their own logging. Calling this twice does not duplicate handlers.
    Recent records are kept in memory unless LOG_MEMORY_RECORDS is 0;
    read them with get_memory_log_handler().
    """
    level = level or settings.LOG_LEVEL
    log_format = log_format or settings.LOG_FORMAT
    log_file = log_file if log_file is not None else settings.LOG_FILE

    logger = logging.getLogger("vmrepo")
    logger.setLevel(level.upper())

    if not any(getattr(h, "_vmrepo_stream", False) for h in logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(_make_formatter(log_format))
        stream_handler.addFilter(ContextFilter())
        stream_handler._vmrepo_stream = True
        logger.addHandler(stream_handler)

    if settings.LOG_MEMORY_RECORDS > 0 and get_memory_log_handler() is None:
        memory_handler = InMemoryLogHandler(max_records=settings.LOG_MEMORY_RECORDS)
        memory_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(memory_handler)

    if log_file and not any(
        isinstance(h, BaseRotatingFileHandler) and h.baseFilename == str(Path(log_file).absolute())
        for h in logger.handlers
    ):
        logger.addHandler(get_file_log_handler(
            log_file,
            max_bytes=settings.LOG_MAX_BYTES,
            backup_count=settings.LOG_BACKUP_COUNT,
            log_format=log_format,
        ))

    return logger
