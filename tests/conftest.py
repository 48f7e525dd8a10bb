"""Shared fixtures: in-memory store and a scriptable fake transport."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from whatsapp_sessions.config import SessionConfig, StoreBackend
from whatsapp_sessions.exceptions import CredentialInvalidError, StorageError, TransportError
from whatsapp_sessions.models import (
    InboundMessage,
    MessageKey,
    TransportEvent,
    TransportEventType,
)
from whatsapp_sessions.storage import CredentialStore, MemorySessionStore
from whatsapp_sessions.transport import Transport


class FakeTransport(Transport):
    """Transport whose behaviour is driven by its factory's knobs."""

    def __init__(self, identity_key: str, factory: "FakeTransportFactory") -> None:
        super().__init__(identity_key)
        self.factory = factory
        self.credential: Optional[Dict[str, Any]] = None
        self.opened = False
        self.closed = False
        self.sent: List[tuple] = []
        self.presence: List[tuple] = []
        self.read: List[MessageKey] = []
        self.profile_status: List[str] = []
        self.pairing_requests = 0
        self.joined: List[str] = []
        self.followed: List[str] = []
        self.newsletter_reactions: List[tuple] = []

    async def open(self, credential: Optional[Dict[str, Any]]) -> None:
        factory = self.factory
        if factory.open_failures > 0:
            factory.open_failures -= 1
            raise TransportError("bridge unreachable")
        if credential is not None and factory.reject_credentials:
            raise CredentialInvalidError("bad_session")

        self.credential = credential
        self.opened = True
        self.registered = credential is not None
        if self.registered:
            self.user_jid = f"{self.identity_key}:3@s.whatsapp.net"
            if factory.auto_open:
                self.emit(TransportEvent.opened())

    async def request_pairing_code(self, number: str) -> str:
        self.pairing_requests += 1
        self.factory.pairing_requests += 1
        if self.factory.pairing_failures > 0:
            self.factory.pairing_failures -= 1
            raise TransportError("rate limited")
        await asyncio.sleep(self.factory.pairing_delay)
        return f"CODE{number[-4:]}"

    async def send(self, jid: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.factory.send_failures > 0:
            self.factory.send_failures -= 1
            raise TransportError("send failed")
        self.sent.append((jid, payload))
        return {"status": "ok"}

    async def update_profile_status(self, text: str) -> None:
        self.profile_status.append(text)

    async def send_presence_update(self, presence: str, jid: Optional[str] = None) -> None:
        self.presence.append((presence, jid))

    async def read_messages(self, keys: List[MessageKey]) -> None:
        self.read.extend(keys)

    async def fetch_status(self, jid: str) -> Dict[str, Any]:
        return {"status": f"about of {jid}", "setAt": 1700000000000}

    async def accept_group_invite(self, code: str) -> Dict[str, Any]:
        factory = self.factory
        if factory.group_errors:
            raise TransportError(factory.group_errors.pop(0))
        self.joined.append(code)
        return dict(factory.group_response)

    async def newsletter_follow(self, jid: str) -> None:
        if self.factory.newsletter_failures > 0:
            self.factory.newsletter_failures -= 1
            raise TransportError("newsletter unavailable")
        self.followed.append(jid)

    async def newsletter_react(self, jid: str, server_id: int, emoji: str) -> None:
        if self.factory.newsletter_failures > 0:
            self.factory.newsletter_failures -= 1
            raise TransportError("newsletter unavailable")
        self.newsletter_reactions.append((jid, server_id, emoji))

    async def close(self) -> None:
        self.closed = True
        self.end_stream()

    # Test helpers

    def open_event(self) -> None:
        self.emit(TransportEvent.opened())

    def close_event(self, status_code: Optional[int] = None) -> None:
        self.emit(TransportEvent.closed(status_code))

    def creds_event(self, credential: Dict[str, Any]) -> None:
        self.emit(TransportEvent(type=TransportEventType.CREDS_UPDATE, credential=credential))


class FakeTransportFactory:
    """Creates FakeTransports and remembers every one of them."""

    def __init__(self) -> None:
        self.created: List[FakeTransport] = []
        self.open_failures = 0
        self.pairing_failures = 0
        self.send_failures = 0
        self.pairing_requests = 0
        self.pairing_delay = 0.0
        self.reject_credentials = False
        self.auto_open = True
        self.group_errors: List[str] = []
        self.group_response: Dict[str, Any] = {"gid": "120363000000000000@g.us"}
        self.newsletter_failures = 0

    def __call__(self, identity_key: str) -> FakeTransport:
        transport = FakeTransport(identity_key, self)
        self.created.append(transport)
        return transport

    def for_key(self, key: str) -> List[FakeTransport]:
        return [t for t in self.created if t.identity_key == key]

    def latest(self, key: str) -> FakeTransport:
        return self.for_key(key)[-1]


class FakeSession:
    """Minimal stand-in for a connection supervisor."""

    def __init__(self, transport, key: str = "15551230000"):
        self.key = key
        self.transport = transport
        self.user_jid = f"{key}@s.whatsapp.net"
        self.uptime = 3723.0
        self.terminated = False

    async def send(self, jid: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.transport.send(jid, payload)

    async def terminate(self) -> None:
        self.terminated = True


def chat_message(
    text: str,
    remote_jid: str = "15550001111@s.whatsapp.net",
    from_me: bool = False,
    participant: Optional[str] = None,
    server_id: Optional[int] = None,
) -> TransportEvent:
    return TransportEvent(
        type=TransportEventType.MESSAGES_UPSERT,
        message=InboundMessage(
            key=MessageKey(remote_jid=remote_jid, id="MSG1", from_me=from_me, participant=participant),
            text=text,
            newsletter_server_id=server_id,
        ),
    )


def fail_reads(store, times: int) -> None:
    """Make the next ``times`` reads of ``store`` raise StorageError."""
    original = store.get
    remaining = {"count": times}

    async def get(key):
        if remaining["count"] > 0:
            remaining["count"] -= 1
            raise StorageError("store unavailable")
        return await original(key)

    store.get = get


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def config():
    """Config with delays small enough for tests."""
    return SessionConfig(
        store_backend=StoreBackend.MEMORY,
        reconnect_base_delay_seconds=0.01,
        max_reconnect_attempts=5,
        pairing_max_retries=3,
        pairing_initial_delay_seconds=0,
        pairing_retry_delay_seconds=0,
        pairing_timeout_seconds=5,
        connect_timeout_seconds=1,
        action_retry_delay_seconds=0,
        command_cooldown_seconds=0,
    )


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def credentials(store):
    return CredentialStore(store, write_base_delay=0)


@pytest.fixture
def factory():
    return FakeTransportFactory()
