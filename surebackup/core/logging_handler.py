"""
Custom logging handlers and context propagation for recovery runs.
"""
import logging
import contextvars
from collections import deque
from datetime import datetime
from threading import Lock
from typing import List, Dict, Any, Optional
from logging.handlers import RotatingFileHandler as BaseRotatingFileHandler
from pathlib import Path


CONSOLE_HANDLER_NAME = "surebackup-console"

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "surebackup_log_context", default={}
)


class LoggingContext:
    """
    Attach contextual fields (correlation_id, vm_name, run_id, ...) to every
    log record emitted inside the ``with`` block on the current thread.

    Example:
        with LoggingContext(vm_name="web01", correlation_id=ctx.correlation_id):
            logger.info("Powering on")
    """

    def __init__(self, **fields: Any):
        self.fields = {k: v for k, v in fields.items() if v is not None}
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LoggingContext":
        merged = dict(_log_context.get())
        merged.update(self.fields)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
        return False


def current_log_context() -> Dict[str, Any]:
    """Return a copy of the fields bound by the active LoggingContext."""
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copy LoggingContext fields onto each record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = current_log_context()
        record.context = context
        record.correlation_id = context.get("correlation_id", "-")
        record.vm_name = context.get("vm_name", "-")
        return True


class InMemoryLogHandler(logging.Handler):
    """
    Custom log handler that stores recent log entries in memory.
    Thread-safe circular buffer with a maximum size.

    One instance is owned by each recovery run so that the reporting layer can
    read back everything the run logged without touching global state.
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
        self.lock = Lock()
        self.addFilter(ContextFilter())

    def emit(self, record: logging.LogRecord):
        """
        Store a log record in memory.

        Args:
            record: LogRecord to store
        """
        try:
            context = getattr(record, "context", {})
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "module": record.module,
                "funcName": record.funcName,
                "lineno": record.lineno,
                "correlation_id": context.get("correlation_id"),
                "vm_name": context.get("vm_name"),
                "run_id": context.get("run_id"),
            }

            if record.exc_info:
                log_entry["exception"] = self.formatter.formatException(record.exc_info) if self.formatter else str(record.exc_info)

            with self.lock:
                self.records.append(log_entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: str = None,
        logger: str = None,
        search: str = None,
        vm_name: str = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Get filtered log entries.

        Args:
            level: Filter by log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            logger: Filter by logger name (partial match)
            search: Search in log messages (case-insensitive)
            vm_name: Only entries emitted while working on this VM
            limit: Maximum number of records to return
            offset: Number of records to skip from the end

        Returns:
            List of log entry dictionaries, newest first
        """
        with self.lock:
            logs = list(self.records)

        if level:
            logs = [log for log in logs if log["level"] == level.upper()]

        if logger:
            logs = [log for log in logs if logger.lower() in log["logger"].lower()]

        if search:
            search_lower = search.lower()
            logs = [log for log in logs if search_lower in log["message"].lower()]

        if vm_name:
            logs = [log for log in logs if log.get("vm_name") == vm_name]

        logs.reverse()

        start = offset
        end = offset + limit
        return logs[start:end]

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about stored logs.

        Returns:
            Dictionary with log statistics
        """
        with self.lock:
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
        with self.lock:
            self.records.clear()


def attach_handler(handler: logging.Handler, level: str = "INFO") -> logging.Logger:
    """Attach a handler to the package logger (never the root logger)."""
    logger = logging.getLogger("surebackup")
    if handler not in logger.handlers:
        logger.addHandler(handler)
    if logger.level == logging.NOTSET:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


def detach_handler(handler: logging.Handler):
    """Remove a handler previously added with attach_handler."""
    logging.getLogger("surebackup").removeHandler(handler)


def setup_logging(level: str = "INFO") -> logging.Handler:
    """
    Setup console logging for the surebackup package.

    Returns:
        The stream handler that was attached
    """
    console_handler = logging.StreamHandler()
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.addFilter(ContextFilter())
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(name)s - [%(vm_name)s] [%(correlation_id)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    attach_handler(console_handler, level)

    # requests/urllib3 log every connection at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return console_handler


def get_file_log_handler(
    log_dir: str,
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5
) -> BaseRotatingFileHandler:
    """Create a rotating file handler writing to <log_dir>/surebackup.log."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = BaseRotatingFileHandler(
        filename=str(log_path / "surebackup.log"),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.addFilter(ContextFilter())
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - '
        '[%(vm_name)s] [%(correlation_id)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    return file_handler


def setup_file_logging(
    log_dir: str,
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5,
    level: str = "INFO"
) -> Optional[logging.Handler]:
    """Setup file logging with rotation. Returns None if the directory is unusable."""
    logger = logging.getLogger(__name__)
    try:
        file_handler = get_file_log_handler(log_dir, max_bytes, backup_count)
    except OSError as e:
        logger.warning(f"File logging disabled, cannot use {log_dir}: {e}")
        return None

    attach_handler(file_handler, level)
    return file_handler
