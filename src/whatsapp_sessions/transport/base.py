"""Transport boundary: one messaging-protocol connection per session."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..models import MessageKey, TransportEvent

logger = logging.getLogger(__name__)

# Status codes a close event may carry that must never be retried
UNAUTHORIZED = 401
TERMINAL_STATUS_CODES = frozenset({UNAUTHORIZED})

_END_OF_STREAM = object()


class Transport(ABC):
    """
    One connection to the messaging protocol for one identity key.

    Implementations deliver connection changes, credential updates and
    messages through ``emit``; consumers read them in arrival order from
    ``events()``. Closing the transport ends the stream.
    """

    def __init__(self, identity_key: str) -> None:
        self.identity_key = identity_key
        self._events: "asyncio.Queue[Any]" = asyncio.Queue()
        self._stream_closed = False
        self.registered = False
        self.user_jid: Optional[str] = None

    @property
    def is_registered(self) -> bool:
        """Whether the credential is already bound to an account."""
        return self.registered

    def emit(self, event: TransportEvent) -> None:
        """Queue an event for the consumer."""
        if self._stream_closed:
            logger.debug(f"[{self.identity_key}] Dropping {event.type.value} after close")
            return
        self._events.put_nowait(event)

    def end_stream(self) -> None:
        """Finish the event stream after already-queued events."""
        if not self._stream_closed:
            self._stream_closed = True
            self._events.put_nowait(_END_OF_STREAM)

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Ordered events until the stream ends."""
        while True:
            item = await self._events.get()
            if item is _END_OF_STREAM:
                return
            yield item

    @abstractmethod
    async def open(self, credential: Optional[Dict[str, Any]]) -> None:
        """
        Open the connection, resuming ``credential`` when given.

        Raises:
            CredentialInvalidError: If the credential is rejected
            TransportError: If the connection cannot be opened
        """

    @abstractmethod
    async def request_pairing_code(self, number: str) -> str:
        """Ask the protocol for a pairing code for ``number``."""

    @abstractmethod
    async def send(self, jid: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send a message payload (text, react, image...) to ``jid``."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and end the event stream."""

    async def update_profile_status(self, text: str) -> None:
        """Set the account's about text."""
        raise NotImplementedError

    async def send_presence_update(self, presence: str, jid: Optional[str] = None) -> None:
        """Publish a presence state (``recording``, ``available``...)."""
        raise NotImplementedError

    async def read_messages(self, keys: List[MessageKey]) -> None:
        """Mark messages as read."""
        raise NotImplementedError

    async def fetch_status(self, jid: str) -> Dict[str, Any]:
        """About text of another account: ``{"status": ..., "setAt": ...}``."""
        raise NotImplementedError

    async def accept_group_invite(self, code: str) -> Dict[str, Any]:
        """
        Join a group through an invite code.

        Returns:
            The protocol response; ``gid`` holds the joined group's JID

        Raises:
            TransportError: With the protocol's reason (``not-authorized``,
                ``conflict``, ``gone``...) in the message
        """
        raise NotImplementedError

    async def newsletter_follow(self, jid: str) -> None:
        """Follow a channel."""
        raise NotImplementedError

    async def newsletter_react(self, jid: str, server_id: int, emoji: str) -> None:
        """React to a channel post addressed by its server id."""
        raise NotImplementedError


TransportFactory = Callable[[str], Transport]
