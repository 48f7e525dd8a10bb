"""Pairing coordinator: first-time pairing and resumption of sessions."""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from .config import SessionConfig
from .exceptions import (
    AlreadyActiveError,
    ReconnectExhaustedError,
    StorageError,
    TerminalAuthError,
    WhatsAppSessionError,
)
from .models import (
    PairResult,
    PairStatus,
    PendingPairing,
    SessionState,
    normalize_identity_key,
)
from .registry import SessionRegistry
from .storage import CredentialStore
from .supervisor import ConnectionSupervisor, EventSink, Hook
from .transport import TransportFactory

logger = logging.getLogger(__name__)


class PairingCoordinator:
    """
    Starts sessions and hands them to the registry once they open.

    Concurrent ``pair`` calls for the same key share one flow: the first one
    opens the transport, the others get ``in_progress``. A key already in the
    registry gets ``already_connected`` without touching the transport.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        credentials: CredentialStore,
        transport_factory: TransportFactory,
        config: SessionConfig,
        hooks: Sequence[Hook] = (),
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.registry = registry
        self.credentials = credentials
        self.transport_factory = transport_factory
        self.config = config
        self.hooks = list(hooks)
        self.event_sink = event_sink

        self._pending: Dict[str, PendingPairing] = {}
        self._flows: Dict[str, ConnectionSupervisor] = {}
        self._lock = asyncio.Lock()

    def is_pending(self, identity: str) -> bool:
        return normalize_identity_key(identity) in self._pending

    def pending(self) -> List[PendingPairing]:
        return list(self._pending.values())

    def flows(self) -> List[ConnectionSupervisor]:
        """Supervisors that have not opened yet."""
        return list(self._flows.values())

    async def pair(self, identity: str, wait_settled: bool = False) -> PairResult:
        """
        Pair (or resume) the session for a number.

        Args:
            identity: Phone number in any formatting
            wait_settled: Block until the flow has left the pairing state

        Returns:
            ``code`` with the pairing code, ``connected``/``connecting`` when a
            registered credential was resumed, ``already_connected``,
            ``in_progress``, or ``error``

        Raises:
            ValidationError: If the number has no digits
        """
        key = normalize_identity_key(identity)

        if self.registry.contains(key):
            return PairResult(key=key, status=PairStatus.ALREADY_CONNECTED)

        async with self._lock:
            if self.registry.contains(key):
                return PairResult(key=key, status=PairStatus.ALREADY_CONNECTED)
            if key in self._pending:
                logger.info(f"Pairing already in progress for {key}")
                return PairResult(key=key, status=PairStatus.IN_PROGRESS)

            supervisor = self._create_supervisor(key)
            self._pending[key] = PendingPairing(key=key)
            self._flows[key] = supervisor

        try:
            await self._cleanup(key)
            code = await supervisor.start()
        except WhatsAppSessionError as e:
            self._clear_pending(supervisor)
            logger.error(f"Pairing failed for {key}: {e}")
            return PairResult(key=key, status=PairStatus.ERROR, error=str(e))
        except BaseException:
            self._clear_pending(supervisor)
            await supervisor.terminate()
            raise

        if code is not None:
            if wait_settled:
                await supervisor.wait_settled()
            return PairResult(key=key, status=PairStatus.CODE, code=code)

        timeout = None if wait_settled else self.config.connect_timeout_seconds
        state = await supervisor.wait_settled(timeout=timeout)
        if state == SessionState.OPEN:
            return PairResult(key=key, status=PairStatus.CONNECTED)
        if state in (SessionState.FAILED, SessionState.TERMINATED):
            return PairResult(key=key, status=PairStatus.ERROR, error=str(supervisor.error))
        return PairResult(key=key, status=PairStatus.CONNECTING)

    async def cancel(self, identity: str) -> bool:
        """Terminate the pending flow for a key; False if there is none."""
        key = normalize_identity_key(identity)
        supervisor = self._flows.get(key)
        if supervisor is None:
            return False
        logger.info(f"Cancelling pairing for {key}")
        await supervisor.terminate()
        self._clear_pending(supervisor)
        return True

    async def _cleanup(self, key: str) -> None:
        try:
            deleted = await self.credentials.cleanup_duplicates(key)
        except StorageError as e:
            logger.warning(f"Duplicate cleanup failed for {key}: {e}")
            return
        if deleted:
            logger.info(f"Removed {len(deleted)} duplicate credential(s) for {key}")

    def _create_supervisor(self, key: str) -> ConnectionSupervisor:
        return ConnectionSupervisor(
            key,
            self.transport_factory,
            self.credentials,
            self.config,
            on_open=self._handle_open,
            on_finished=self._handle_finished,
            hooks=self.hooks,
            event_sink=self.event_sink,
        )

    def _clear_pending(self, supervisor: ConnectionSupervisor) -> None:
        if self._flows.get(supervisor.key) is supervisor:
            del self._flows[supervisor.key]
            self._pending.pop(supervisor.key, None)

    async def _handle_open(self, supervisor: ConnectionSupervisor) -> bool:
        try:
            await self.registry.register(supervisor.key, supervisor)
        except AlreadyActiveError:
            logger.warning(f"Another connection won the race for {supervisor.key}")
            self._clear_pending(supervisor)
            return False
        self._clear_pending(supervisor)
        return True

    async def _handle_finished(
        self, supervisor: ConnectionSupervisor, error: Optional[Exception]
    ) -> None:
        self._clear_pending(supervisor)
        await self.registry.unregister(supervisor.key, supervisor)

        if isinstance(error, TerminalAuthError):
            try:
                await self.credentials.delete_credential(supervisor.key)
            except StorageError as e:
                logger.error(f"Failed to delete credential for {supervisor.key}: {e}")
        elif isinstance(error, ReconnectExhaustedError):
            logger.error(f"Session {supervisor.key} dropped, credential kept for later resume")
