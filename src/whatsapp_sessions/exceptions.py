"""Custom exceptions for the WhatsApp session manager."""


class WhatsAppSessionError(Exception):
    """Base exception for all session manager errors."""

    pass


class ValidationError(WhatsAppSessionError):
    """Input validation error."""

    pass


class StorageError(WhatsAppSessionError):
    """Session store operation failed."""

    pass


class BlobNotFoundError(StorageError):
    """No blob stored under the requested key."""

    pass


class VersionConflictError(StorageError):
    """Conditional write lost against a concurrent update."""

    pass


class TransportError(WhatsAppSessionError):
    """Transport (bridge) communication failed."""

    pass


class CredentialInvalidError(WhatsAppSessionError):
    """Stored credential cannot be used to resume the session."""

    pass


class PairingFailedError(WhatsAppSessionError):
    """Pairing code could not be obtained or pairing never completed."""

    pass


class AlreadyActiveError(WhatsAppSessionError):
    """A live connection is already registered for the key."""

    pass


class ReconnectExhaustedError(WhatsAppSessionError):
    """Session dropped after the maximum number of reconnect attempts."""

    pass


class TerminalAuthError(WhatsAppSessionError):
    """Transport reported unauthorized / logged out."""

    pass


class SessionNotFoundError(WhatsAppSessionError):
    """No active session for the key."""

    pass


class OTPError(ValidationError):
    """One-time password missing, expired or wrong."""

    pass


class RetryExhaustedError(WhatsAppSessionError):
    """Bounded retry gave up."""

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
