"""Logging configuration and the append-only action log."""

import json
import logging
import logging.handlers
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Iterable, List, Optional, Union

from .types import ActionLogEntry, EntryKind


_RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'message', 'asctime',
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        """Format record as JSON with structured fields."""
        log_entry = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Add any extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    structured: bool = False,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """Set up logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (if None, logs to console only)
        structured: Whether to use structured JSON logging
        max_file_size: Maximum log file size before rotation
        backup_count: Number of backup files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    configure_library_loggers()

    root_logger.debug("Logging configured", extra={
        'log_level': log_level,
        'log_file': log_file,
        'structured': structured
    })


def configure_library_loggers():
    """Configure logging for third-party libraries."""
    logging.getLogger('urllib3.connectionpool').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
    logging.getLogger('docker').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


class _ActionEntryFormatter(logging.Formatter):
    """Serializes the ``entry`` attached to a record as one JSON line."""

    def format(self, record):
        return json.dumps(record.entry.to_dict(), default=str)


_LEVELS = {
    EntryKind.DECISION: logging.INFO,
    EntryKind.ACTION: logging.INFO,
    EntryKind.HEALTH: logging.INFO,
    EntryKind.WARNING: logging.WARNING,
    EntryKind.ERROR: logging.ERROR,
}


class ActionLog:
    """Append-only log of scaling decisions, lifecycle actions and errors.

    Entries are written as JSON lines through a dedicated logger that does not
    propagate to the root logger. The backing file is only ever appended to,
    never rotated or truncated. The most recent entries are also kept in
    memory so ``tail`` works without a backing file.
    """

    def __init__(self, log_file: Optional[Union[str, Path]] = None, keep: int = 500):
        """Initialize action log.

        Args:
            log_file: Path to the action log file (memory only if None)
            keep: Number of recent entries retained in memory
        """
        self.log_file = Path(log_file) if log_file else None
        self._recent: Deque[ActionLogEntry] = deque(maxlen=keep)

        # Unregistered logger: each action log owns its handlers
        self.logger = logging.Logger('fleet_scaler.actions', logging.INFO)
        self.logger.propagate = False

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(self.log_file, mode='a')
            handler.setFormatter(_ActionEntryFormatter())
            self.logger.addHandler(handler)
        else:
            self.logger.addHandler(logging.NullHandler())

    def record(self, kind: EntryKind, message: str, **details: Any) -> ActionLogEntry:
        """Append an entry.

        Args:
            kind: Entry class
            message: Human readable message
            **details: Structured context stored with the entry

        Returns:
            The recorded entry
        """
        entry = ActionLogEntry(kind=kind, message=message, details=details)
        self._recent.append(entry)
        self.logger.log(_LEVELS[kind], message, extra={'entry': entry})
        return entry

    def decision(self, message: str, **details: Any) -> ActionLogEntry:
        return self.record(EntryKind.DECISION, message, **details)

    def action(self, message: str, **details: Any) -> ActionLogEntry:
        return self.record(EntryKind.ACTION, message, **details)

    def health(self, message: str, **details: Any) -> ActionLogEntry:
        return self.record(EntryKind.HEALTH, message, **details)

    def warning(self, message: str, **details: Any) -> ActionLogEntry:
        return self.record(EntryKind.WARNING, message, **details)

    def error(self, message: str, **details: Any) -> ActionLogEntry:
        return self.record(EntryKind.ERROR, message, **details)

    def tail(self, count: int = 10, kinds: Optional[Iterable[EntryKind]] = None) -> List[ActionLogEntry]:
        """Return the most recent entries, oldest first.

        Args:
            count: Maximum number of entries
            kinds: Restrict to these entry classes

        Returns:
            Up to ``count`` entries
        """
        wanted = set(kinds) if kinds else None

        if self.log_file and self.log_file.exists():
            entries = self.read_entries()
        else:
            entries = list(self._recent)

        if wanted is not None:
            entries = [e for e in entries if e.kind in wanted]

        return entries[-count:] if count > 0 else []

    def read_entries(self, offset: int = 0) -> List[ActionLogEntry]:
        """Read entries from the backing file, skipping ``offset`` lines."""
        if not self.log_file or not self.log_file.exists():
            return []

        entries = []
        with open(self.log_file, 'r') as f:
            for line_number, line in enumerate(f):
                if line_number < offset or not line.strip():
                    continue
                try:
                    entries.append(ActionLogEntry.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    logging.getLogger(__name__).debug(
                        f"Skipping malformed action log line {line_number + 1}: {e}"
                    )
        return entries

    def line_count(self) -> int:
        if not self.log_file or not self.log_file.exists():
            return 0
        with open(self.log_file, 'r') as f:
            return sum(1 for _ in f)

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()
