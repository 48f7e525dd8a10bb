"""
WhatsApp Session Manager

Runs many independent WhatsApp bot sessions, one per phone number: pairs new
numbers, persists their credentials, reconnects dropped connections with
backoff, and dispatches chat commands.
"""

from .config import SessionConfig, StoreBackend, get_config
from .exceptions import (
    WhatsAppSessionError,
    ValidationError,
    StorageError,
    BlobNotFoundError,
    VersionConflictError,
    TransportError,
    CredentialInvalidError,
    PairingFailedError,
    AlreadyActiveError,
    ReconnectExhaustedError,
    TerminalAuthError,
    SessionNotFoundError,
    OTPError,
    RetryExhaustedError,
)
from .models import (
    BulkOutcome,
    BulkStatus,
    PairResult,
    PairStatus,
    RegistryStatus,
    SessionState,
    UserConfig,
    normalize_identity_key,
)
from .async_utils import TaskManager, retry, exponential_backoff, linear_backoff
from .cache import TTLCache
from .supervisor import ConnectionSupervisor
from .registry import SessionRegistry
from .pairing import PairingCoordinator
from .commands import CommandRouter
from .manager import SessionManager

__version__ = "0.1.0"
__all__ = [
    "SessionConfig",
    "StoreBackend",
    "get_config",
    "WhatsAppSessionError",
    "ValidationError",
    "StorageError",
    "BlobNotFoundError",
    "VersionConflictError",
    "TransportError",
    "CredentialInvalidError",
    "PairingFailedError",
    "AlreadyActiveError",
    "ReconnectExhaustedError",
    "TerminalAuthError",
    "SessionNotFoundError",
    "OTPError",
    "RetryExhaustedError",
    "BulkOutcome",
    "BulkStatus",
    "PairResult",
    "PairStatus",
    "RegistryStatus",
    "SessionState",
    "UserConfig",
    "normalize_identity_key",
    "TaskManager",
    "retry",
    "exponential_backoff",
    "linear_backoff",
    "TTLCache",
    "ConnectionSupervisor",
    "SessionRegistry",
    "PairingCoordinator",
    "CommandRouter",
    "SessionManager",
]
