"""Data models for the WhatsApp session manager."""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ValidationError

_NON_DIGITS = re.compile(r"[^0-9]")

STATUS_BROADCAST_JID = "status@broadcast"
USER_JID_SUFFIX = "@s.whatsapp.net"


def normalize_identity_key(value: Any) -> str:
    """
    Normalize a phone number into an identity key.

    Every non-digit character is dropped, so ``"+1 (555) 123-0000"`` and
    ``"15551230000"`` name the same session.

    Raises:
        ValidationError: If no digit remains
    """
    digits = _NON_DIGITS.sub("", str(value or ""))
    if not digits:
        raise ValidationError(f"Invalid phone number: {value!r}")
    return digits


def jid_for(key: str) -> str:
    """User JID for an identity key."""
    return f"{normalize_identity_key(key)}{USER_JID_SUFFIX}"


def key_from_jid(jid: str) -> str:
    """Identity key for a user JID (device suffix ignored)."""
    user = jid.split("@", 1)[0].split(":", 1)[0]
    return normalize_identity_key(user)


class SessionState(str, Enum):
    """Lifecycle states of one session."""

    IDLE = "idle"
    PAIRING = "pairing"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    TERMINATED = "terminated"


class PairStatus(str, Enum):
    """Outcome of a pairing request."""

    CODE = "code"
    ALREADY_CONNECTED = "already_connected"
    IN_PROGRESS = "in_progress"
    CONNECTED = "connected"
    CONNECTING = "connecting"
    ERROR = "error"


class PairResult(BaseModel):
    """Result returned to callers of ``pair``."""

    key: str
    status: PairStatus
    code: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != PairStatus.ERROR


class GroupJoinResult(BaseModel):
    """Outcome of joining the configured group on open."""

    gid: Optional[str] = None
    error: Optional[str] = None

    @property
    def joined(self) -> bool:
        return self.gid is not None

    def describe(self) -> str:
        if self.joined:
            return f"Joined (ID: {self.gid})"
        return f"Failed to join group: {self.error}"


class PendingPairing(BaseModel):
    """In-flight pairing flow for a key."""

    key: str
    started_at: float = Field(default_factory=time.time)


@dataclass
class SessionRecord:
    """Registry entry for one live session."""

    key: str
    connection: Any
    created_at: float = field(default_factory=time.time)

    @property
    def restart_attempts(self) -> int:
        return getattr(self.connection, "restart_attempts", 0)


class RegistryStatus(BaseModel):
    """Read-only registry snapshot."""

    count: int
    keys: List[str]


class BulkStatus(str, Enum):
    """Per-key status of a bulk connect/reconnect."""

    ALREADY_CONNECTED = "already_connected"
    CONNECTION_INITIATED = "connection_initiated"
    FAILED = "failed"
    SKIPPED = "skipped"


class BulkOutcome(BaseModel):
    """Per-key result of a bulk connect/reconnect."""

    key: str
    status: BulkStatus
    queued: bool = False
    error: Optional[str] = None


class UserConfig(BaseModel):
    """Per-session bot behaviour, stored next to the credential."""

    auto_view_status: bool = Field(default=True, alias="AUTO_VIEW_STATUS")
    auto_like_status: bool = Field(default=True, alias="AUTO_LIKE_STATUS")
    auto_recording: bool = Field(default=True, alias="AUTO_RECORDING")
    auto_like_emoji: List[str] = Field(
        default_factory=lambda: ["💥", "👍", "😍", "💗", "🎈", "🎉", "🥳", "😎", "🚀", "🔥"],
        alias="AUTO_LIKE_EMOJI",
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ===== Transport events =====


class TransportEventType(str, Enum):
    """Event kinds delivered by a transport connection."""

    CONNECTION_UPDATE = "connection.update"
    CREDS_UPDATE = "creds.update"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_DELETE = "messages.delete"


class ConnectionStatus(str, Enum):
    """Connection state reported in ``connection.update``."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class MessageKey(BaseModel):
    """Address of one message."""

    remote_jid: str = Field(alias="remoteJid")
    id: str = ""
    from_me: bool = Field(default=False, alias="fromMe")
    participant: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class InboundMessage(BaseModel):
    """Inbound message with its text already extracted by the bridge."""

    key: MessageKey
    text: str = ""
    push_name: Optional[str] = Field(default=None, alias="pushName")
    timestamp: int = 0
    # Set on channel posts; reactions address the post by it
    newsletter_server_id: Optional[int] = Field(default=None, alias="newsletterServerId")

    model_config = ConfigDict(populate_by_name=True)


class TransportEvent(BaseModel):
    """One ordered event from a transport connection."""

    type: TransportEventType
    connection: Optional[ConnectionStatus] = None
    status_code: Optional[int] = Field(default=None, alias="statusCode")
    credential: Optional[Dict[str, Any]] = None
    message: Optional[InboundMessage] = None
    keys: List[MessageKey] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def opened(cls) -> "TransportEvent":
        return cls(type=TransportEventType.CONNECTION_UPDATE, connection=ConnectionStatus.OPEN)

    @classmethod
    def closed(cls, status_code: Optional[int] = None) -> "TransportEvent":
        return cls(
            type=TransportEventType.CONNECTION_UPDATE,
            connection=ConnectionStatus.CLOSE,
            status_code=status_code,
        )
