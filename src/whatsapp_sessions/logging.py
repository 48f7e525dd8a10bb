"""Package logging setup and the per-session error ledger."""

import logging
import sys
import traceback
from collections import deque
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from .exceptions import (
    AlreadyActiveError,
    CredentialInvalidError,
    OTPError,
    PairingFailedError,
    ReconnectExhaustedError,
    StorageError,
    TerminalAuthError,
    TransportError,
    ValidationError,
)

PACKAGE_LOGGER = "whatsapp_sessions"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogLevel(str, Enum):
    """Logging level enumeration."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# Failures a caller caused or that fix themselves on the next request
_WARNING_ERRORS = (
    ValidationError,
    OTPError,
    AlreadyActiveError,
    PairingFailedError,
    CredentialInvalidError,
)
# Failures that ended a session or hit the store or bridge
_ERROR_ERRORS = (
    TerminalAuthError,
    ReconnectExhaustedError,
    TransportError,
    StorageError,
)


def severity_for(exception: BaseException) -> LogLevel:
    """Severity of an exception by its family; anything unknown is critical."""
    if isinstance(exception, _WARNING_ERRORS):
        return LogLevel.WARNING
    if isinstance(exception, _ERROR_ERRORS):
        return LogLevel.ERROR
    return LogLevel.CRITICAL


class ErrorHandler:
    """
    Owns the package logger and remembers recent failures per session.

    Every recorded failure carries the identity key it belongs to (None for
    process-wide failures) and the operation that failed, so ``/ping`` can
    show which sessions are in trouble.
    """

    _instance: Optional["ErrorHandler"] = None

    def __new__(cls) -> "ErrorHandler":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._initialized = True
        self.logger = logging.getLogger(PACKAGE_LOGGER)
        self.log_level = LogLevel.INFO
        self.max_history = 1000
        self.error_history: Deque[Dict[str, Any]] = deque(maxlen=self.max_history)

        if not self.logger.handlers:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(getattr(logging, self.log_level.value))
            console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
            self.logger.addHandler(console)
        self.logger.setLevel(logging.DEBUG)

    def set_log_level(self, level: LogLevel) -> None:
        """Apply ``level`` to every handler; file handlers included."""
        self.log_level = level
        for handler in self.logger.handlers:
            handler.setLevel(getattr(logging, level.value))

    def set_max_history(self, size: int) -> None:
        """Resize the ledger, keeping the newest entries."""
        self.max_history = size
        self.error_history = deque(self.error_history, maxlen=size)

    def add_file_handler(self, log_file: str) -> None:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(getattr(logging, self.log_level.value))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.logger.addHandler(file_handler)

    def handle_exception(
        self,
        exception: BaseException,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        severity: Optional[LogLevel] = None,
    ) -> LogLevel:
        """
        Log a failure and add it to the ledger.

        Args:
            exception: The failure
            key: Identity key of the session it belongs to
            operation: What was being done (``reconnect``, ``GET /``, a hook name...)
            severity: Override for the family-based severity

        Returns:
            The severity it was recorded with
        """
        level = severity or severity_for(exception)
        self.error_history.append(
            {
                "timestamp": datetime.now().isoformat(),
                "key": key,
                "operation": operation,
                "type": type(exception).__name__,
                "message": str(exception),
                "severity": level.value,
                "traceback": "".join(
                    traceback.format_exception(type(exception), exception, exception.__traceback__)
                ),
            }
        )

        where = "/".join(part for part in (key, operation) if part) or "-"
        self.logger.log(
            getattr(logging, level.value),
            f"[{where}] {type(exception).__name__}: {exception}",
        )
        return level

    def get_error_history(
        self,
        count: int = 10,
        key: Optional[str] = None,
        severity: Optional[LogLevel] = None,
    ) -> List[Dict[str, Any]]:
        """Newest ``count`` entries (all when 0), optionally for one key or severity."""
        entries = [
            e
            for e in self.error_history
            if (key is None or e["key"] == key)
            and (severity is None or e["severity"] == severity.value)
        ]
        return entries[-count:] if count else entries

    def clear_error_history(self, key: Optional[str] = None) -> None:
        """Forget everything, or only the entries of one session."""
        if key is None:
            self.error_history.clear()
            return
        kept = [e for e in self.error_history if e["key"] != key]
        self.error_history = deque(kept, maxlen=self.max_history)

    def get_error_summary(self) -> Dict[str, Any]:
        """
        Counts by type and severity, plus a per-session breakdown.

        ``by_key`` maps each identity key to its error count and its latest
        failure; process-wide failures are not listed there.
        """
        summary: Dict[str, Any] = {
            "total_errors": len(self.error_history),
            "by_type": {},
            "by_severity": {},
            "by_key": {},
        }

        for entry in self.error_history:
            by_type = summary["by_type"]
            by_type[entry["type"]] = by_type.get(entry["type"], 0) + 1
            by_severity = summary["by_severity"]
            by_severity[entry["severity"]] = by_severity.get(entry["severity"], 0) + 1

            if entry["key"] is None:
                continue
            session = summary["by_key"].setdefault(entry["key"], {"count": 0})
            session["count"] += 1
            session["last_error"] = {
                "timestamp": entry["timestamp"],
                "operation": entry["operation"],
                "type": entry["type"],
                "message": entry["message"],
            }

        return summary


_error_handler = ErrorHandler()


def get_error_handler() -> ErrorHandler:
    """Get global error handler instance."""
    return _error_handler


def configure_logging(
    log_level: LogLevel = LogLevel.INFO, log_file: Optional[str] = None
) -> None:
    """Set the package log level and optionally add a log file."""
    handler = get_error_handler()
    handler.set_log_level(log_level)
    if log_file:
        handler.add_file_handler(log_file)


def handle_exception(
    exception: BaseException,
    key: Optional[str] = None,
    operation: Optional[str] = None,
    severity: Optional[LogLevel] = None,
) -> LogLevel:
    """Record a failure on the global handler."""
    return _error_handler.handle_exception(exception, key, operation, severity)
