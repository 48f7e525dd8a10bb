"""Tests for error handling and logging."""

import logging
import tempfile
from pathlib import Path

import pytest

from whatsapp_sessions.exceptions import (
    AlreadyActiveError,
    CredentialInvalidError,
    PairingFailedError,
    StorageError,
    TerminalAuthError,
    TransportError,
    ValidationError,
)
from whatsapp_sessions.logging import (
    ErrorHandler,
    LogLevel,
    configure_logging,
    get_error_handler,
    handle_exception,
)


def remove_file_handlers(logger):
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            handler.close()
            logger.removeHandler(handler)


class TestErrorHandler:
    """Test ErrorHandler class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.handler = ErrorHandler()
        self.handler.clear_error_history()
        remove_file_handlers(self.handler.logger)

    def teardown_method(self):
        """Clean up after each test."""
        remove_file_handlers(self.handler.logger)
        self.handler.set_log_level(LogLevel.INFO)

    def test_singleton_pattern(self):
        """Test that ErrorHandler is a singleton."""
        assert ErrorHandler() is ErrorHandler()
        assert get_error_handler() is ErrorHandler()

    def test_set_log_level(self):
        """Test setting log level."""
        self.handler.set_log_level(LogLevel.DEBUG)
        assert self.handler.log_level == LogLevel.DEBUG

        self.handler.set_log_level(LogLevel.ERROR)
        assert self.handler.log_level == LogLevel.ERROR

    def test_handle_exception_records_history(self):
        """Test an exception lands in the history with its session and operation."""
        error = PairingFailedError("Could not obtain pairing code")
        level = self.handler.handle_exception(error, key="15551230000", operation="pair")

        entry = self.handler.error_history[0]
        assert level == LogLevel.WARNING
        assert entry["key"] == "15551230000"
        assert entry["operation"] == "pair"
        assert entry["type"] == "PairingFailedError"
        assert entry["message"] == "Could not obtain pairing code"
        assert entry["severity"] == "WARNING"
        assert "timestamp" in entry

    def test_severity_override(self):
        """Test an explicit severity wins over the exception family."""
        self.handler.handle_exception(TransportError("flaky"), severity=LogLevel.DEBUG)

        assert self.handler.error_history[0]["severity"] == "DEBUG"

    @pytest.mark.parametrize(
        "error, level",
        [
            (ValidationError("bad number"), logging.WARNING),
            (AlreadyActiveError("active"), logging.WARNING),
            (CredentialInvalidError("revoked"), logging.WARNING),
            (TerminalAuthError("logged out"), logging.ERROR),
            (TransportError("socket closed"), logging.ERROR),
            (StorageError("repo unreachable"), logging.ERROR),
            (RuntimeError("unexpected"), logging.CRITICAL),
        ],
    )
    def test_log_level_by_exception_family(self, caplog, error, level):
        """Test each exception family is logged at its level."""
        with caplog.at_level(logging.DEBUG, logger="whatsapp_sessions"):
            self.handler.handle_exception(error, key="15551230000", operation="reconnect")

        assert caplog.records[-1].levelno == level
        assert "[15551230000/reconnect]" in caplog.records[-1].getMessage()

    def test_log_prefix_without_session(self, caplog):
        """Test process-wide failures are logged without a session prefix."""
        with caplog.at_level(logging.DEBUG, logger="whatsapp_sessions"):
            self.handler.handle_exception(StorageError("down"))

        assert caplog.records[-1].getMessage() == "[-] StorageError: down"

    def test_error_history_limit(self):
        """Test that history is bounded and keeps the newest entries."""
        self.handler.set_max_history(5)
        try:
            for i in range(8):
                self.handler.handle_exception(TransportError(f"error {i}"))

            assert len(self.handler.error_history) == 5
            assert self.handler.error_history[0]["message"] == "error 3"
        finally:
            self.handler.set_max_history(1000)

    def test_get_error_history_filters(self):
        """Test filtering history by severity and by session."""
        self.handler.handle_exception(ValidationError("a"), key="111")
        self.handler.handle_exception(StorageError("b"), key="222")
        self.handler.handle_exception(StorageError("c"), key="111")

        assert [e["message"] for e in self.handler.get_error_history(severity=LogLevel.WARNING)] == ["a"]
        assert [e["message"] for e in self.handler.get_error_history(key="111")] == ["a", "c"]
        assert [e["message"] for e in self.handler.get_error_history(count=1, key="111")] == ["c"]

    def test_clear_error_history_for_one_session(self):
        """Test clearing one session keeps the others."""
        self.handler.handle_exception(StorageError("a"), key="111")
        self.handler.handle_exception(StorageError("b"), key="222")

        self.handler.clear_error_history("111")

        assert [e["key"] for e in self.handler.error_history] == ["222"]

    def test_get_error_summary(self):
        """Test the summary counts by type, severity and session."""
        self.handler.handle_exception(TransportError("a"), key="111", operation="reconnect")
        self.handler.handle_exception(TransportError("b"), key="111", operation="hook about_status")
        self.handler.handle_exception(ValidationError("c"), operation="GET /")

        summary = self.handler.get_error_summary()

        assert summary["total_errors"] == 3
        assert summary["by_type"] == {"TransportError": 2, "ValidationError": 1}
        assert summary["by_severity"] == {"ERROR": 2, "WARNING": 1}
        assert list(summary["by_key"]) == ["111"]
        assert summary["by_key"]["111"]["count"] == 2
        last = summary["by_key"]["111"]["last_error"]
        assert last["operation"] == "hook about_status"
        assert last["message"] == "b"

    def test_error_summary_with_no_errors(self):
        """Test the summary when nothing was recorded."""
        assert self.handler.get_error_summary() == {
            "total_errors": 0,
            "by_type": {},
            "by_severity": {},
            "by_key": {},
        }


class TestLoggingFunctions:
    """Test module-level functions."""

    def setup_method(self):
        """Set up test fixtures."""
        get_error_handler().clear_error_history()
        remove_file_handlers(get_error_handler().logger)

    def teardown_method(self):
        """Clean up after each test."""
        remove_file_handlers(get_error_handler().logger)
        get_error_handler().set_log_level(LogLevel.INFO)

    def test_handle_exception_function(self):
        """Test handle_exception() records on the global handler."""
        handle_exception(StorageError("locked"), key="15551230000", operation="save credential")

        entry = get_error_handler().error_history[-1]
        assert entry["key"] == "15551230000"
        assert entry["operation"] == "save credential"

    def test_configure_logging(self):
        """Test configure_logging() sets the level."""
        configure_logging(LogLevel.DEBUG)

        assert get_error_handler().log_level == LogLevel.DEBUG

    def test_configure_logging_with_file(self):
        """Test module loggers reach the configured log file."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "logs" / "sessions.log"

            configure_logging(LogLevel.INFO, str(log_file))
            logging.getLogger("whatsapp_sessions.supervisor").info("Connection opened for 15551230000")
            remove_file_handlers(get_error_handler().logger)

            assert "Connection opened for 15551230000" in log_file.read_text()
