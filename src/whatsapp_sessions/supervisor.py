"""Connection supervisor: lifecycle of one session's transport connection."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .async_utils import exponential_backoff, linear_backoff, retry
from .config import SessionConfig
from .exceptions import (
    CredentialInvalidError,
    PairingFailedError,
    ReconnectExhaustedError,
    RetryExhaustedError,
    StorageError,
    TerminalAuthError,
    TransportError,
)
from .logging import handle_exception
from .models import (
    ConnectionStatus,
    SessionState,
    TransportEvent,
    TransportEventType,
    jid_for,
)
from .storage import CredentialStore
from .transport import TERMINAL_STATUS_CODES, Transport, TransportFactory

logger = logging.getLogger(__name__)

OpenCallback = Callable[["ConnectionSupervisor"], Awaitable[bool]]
FinishedCallback = Callable[["ConnectionSupervisor", Optional[Exception]], Awaitable[None]]
Hook = Callable[["ConnectionSupervisor"], Awaitable[None]]
EventSink = Callable[["ConnectionSupervisor", TransportEvent], Awaitable[None]]

_FINAL_STATES = (SessionState.FAILED, SessionState.TERMINATED)


class ConnectionSupervisor:
    """
    Owns the transport connection of one identity key.

    States follow ``idle -> pairing -> open <-> reconnecting`` and end in
    ``failed`` or ``terminated``. Events of the connection are consumed by a
    single task in arrival order. A close carrying a terminal status code ends
    the session; any other close is retried with exponential backoff until
    ``max_reconnect_attempts`` is reached. The attempt counter resets on every
    ``open``.

    Example:
        >>> supervisor = ConnectionSupervisor(key, factory, credentials, config)
        >>> code = await supervisor.start()
        >>> await supervisor.wait_settled(timeout=60)
    """

    def __init__(
        self,
        key: str,
        transport_factory: TransportFactory,
        credentials: CredentialStore,
        config: SessionConfig,
        on_open: Optional[OpenCallback] = None,
        on_finished: Optional[FinishedCallback] = None,
        hooks: Sequence[Hook] = (),
        event_sink: Optional[EventSink] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize supervisor.

        Args:
            key: Normalized identity key
            transport_factory: Creates a transport for a key
            credentials: Credential store used to resume and persist the session
            config: Reconnect and pairing settings
            on_open: Called on every ``open``; returning False closes the session
            on_finished: Called once when the session fails or is terminated
            hooks: Side effects run after a successful ``open``
            event_sink: Receives message events
            sleep: Sleep function (replaced in tests)
        """
        self.key = key
        self.transport_factory = transport_factory
        self.credentials = credentials
        self.config = config
        self.on_open = on_open
        self.on_finished = on_finished
        self.hooks: List[Hook] = list(hooks)
        self.event_sink = event_sink
        self._sleep = sleep

        self.state = SessionState.IDLE
        self.transport: Optional[Transport] = None
        self.restart_attempts = 0
        self.reconnect_delays: List[float] = []
        self.created_at = time.time()
        self.connected_at: Optional[float] = None
        self.pairing_code: Optional[str] = None
        self.error: Optional[Exception] = None

        self._backoff = exponential_backoff(config.reconnect_base_delay_seconds)
        self._terminated = False
        self._finished = False
        self._settled = asyncio.Event()
        self._event_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None

    # ===== Properties =====

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def user_jid(self) -> str:
        """JID of the session's own chat."""
        if self.transport is not None and self.transport.user_jid:
            return self.transport.user_jid
        return jid_for(self.key)

    @property
    def uptime(self) -> float:
        """Seconds since the supervisor was created."""
        return time.time() - self.created_at

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for monitoring."""
        return {
            "key": self.key,
            "state": self.state.value,
            "restart_attempts": self.restart_attempts,
            "created_at": self.created_at,
            "connected_at": self.connected_at,
            "error": str(self.error) if self.error else None,
        }

    # ===== Lifecycle =====

    async def start(self) -> Optional[str]:
        """
        Open the connection and, for an unregistered credential, get a pairing code.

        Returns:
            Pairing code, or None when a registered credential was resumed

        Raises:
            PairingFailedError: If no pairing code could be obtained
            TransportError: If the transport could not be opened
        """
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Session {self.key} already started ({self.state.value})")

        self.state = SessionState.PAIRING
        logger.info(f"[{self.key}] Starting session")

        try:
            self.transport = await self._open_transport(allow_fresh=True)
        except Exception as e:
            await self._abort(e)
            raise

        self._event_task = asyncio.create_task(self._run(), name=f"session-{self.key}")
        self._timeout_task = asyncio.create_task(
            self._pairing_timeout(), name=f"pairing-timeout-{self.key}"
        )

        if self.transport.is_registered:
            logger.info(f"[{self.key}] Resuming registered credential")
            return None

        try:
            self.pairing_code = await self._request_pairing_code()
        except PairingFailedError as e:
            await self._abort(e)
            raise
        logger.info(f"[{self.key}] Pairing code issued")
        return self.pairing_code

    async def terminate(self) -> None:
        """
        Stop the session for good.

        Cancels a pending backoff sleep and the event task, then closes the
        transport. Safe to call from inside the session's own event task.
        """
        await self._finish(SessionState.TERMINATED, None)

    async def wait_settled(self, timeout: Optional[float] = None) -> SessionState:
        """Wait until the session has left ``pairing``; returns the state."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.state

    async def send(self, jid: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send through the current transport."""
        if self.transport is None or self._terminated:
            raise TransportError(f"Session {self.key} has no live connection")
        return await self.transport.send(jid, payload)

    # ===== Transport =====

    async def _load_credential(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.credentials.load_credential(self.key)
        except CredentialInvalidError as e:
            logger.warning(f"[{self.key}] Stored credential unusable, starting fresh: {e}")
            await self._discard_credential()
            return None

    async def _discard_credential(self) -> None:
        try:
            await self.credentials.delete_credential(self.key)
        except StorageError as e:
            logger.error(f"[{self.key}] Failed to delete credential: {e}")

    async def _open_transport(self, allow_fresh: bool) -> Transport:
        """
        Open a new transport with the stored credential.

        Args:
            allow_fresh: Fall back to a fresh (unpaired) transport when the
                credential is missing or rejected

        Raises:
            TerminalAuthError: If the credential is rejected and no fallback is allowed
            PairingFailedError: If there is nothing to resume and no fallback is allowed
            TransportError: If the transport cannot be opened
        """
        credential = await self._load_credential()
        if credential is None and not allow_fresh:
            raise PairingFailedError(f"No stored credential to resume session {self.key}")

        transport = self.transport_factory(self.key)
        try:
            await transport.open(credential)
            return transport
        except CredentialInvalidError as e:
            await transport.close()
            await self._discard_credential()
            if credential is None or not allow_fresh:
                raise TerminalAuthError(f"Credential rejected for {self.key}: {e}") from e
            logger.warning(f"[{self.key}] Credential rejected, falling back to fresh pairing")
        except BaseException:
            await transport.close()
            raise

        transport = self.transport_factory(self.key)
        try:
            await transport.open(None)
        except BaseException:
            await transport.close()
            raise
        return transport

    async def _request_pairing_code(self) -> str:
        transport = self.transport

        async def attempt() -> str:
            return await transport.request_pairing_code(self.key)

        await self._sleep(self.config.pairing_initial_delay_seconds)
        try:
            return await retry(
                attempt,
                self.config.pairing_max_retries,
                linear_backoff(self.config.pairing_retry_delay_seconds),
                retry_on=(TransportError,),
                should_abort=lambda: self._terminated,
                description=f"[{self.key}] pairing code request",
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            raise PairingFailedError(
                f"Could not obtain pairing code for {self.key}: {e.last_error}"
            ) from e

    # ===== Event loop =====

    async def _run(self) -> None:
        try:
            await self._supervise()
        except Exception as e:
            await self._finish(SessionState.FAILED, e)

    async def _supervise(self) -> None:
        """Consume events; on close decide between reconnect and shutdown."""
        while not self._terminated:
            close_event = await self._consume(self.transport)
            if self._terminated:
                return

            status_code = close_event.status_code if close_event else None
            if status_code in TERMINAL_STATUS_CODES:
                logger.error(f"[{self.key}] Logged out (status {status_code}), not retrying")
                await self._finish(
                    SessionState.TERMINATED,
                    TerminalAuthError(f"Session {self.key} unauthorized ({status_code})"),
                )
                return

            logger.warning(f"[{self.key}] Connection closed (status {status_code})")
            try:
                await self._reconnect()
            except (ReconnectExhaustedError, PairingFailedError) as e:
                await self._finish(SessionState.FAILED, e)
                return
            except TerminalAuthError as e:
                await self._finish(SessionState.TERMINATED, e)
                return

    async def _consume(self, transport: Transport) -> Optional[TransportEvent]:
        """Handle events until a close arrives; None if the stream just ended."""
        async for event in transport.events():
            if (
                event.type == TransportEventType.CONNECTION_UPDATE
                and event.connection == ConnectionStatus.CLOSE
            ):
                return event
            await self._handle_event(event)
            if self._terminated:
                return None
        return None

    async def _handle_event(self, event: TransportEvent) -> None:
        if event.type == TransportEventType.CONNECTION_UPDATE:
            if event.connection == ConnectionStatus.OPEN:
                await self._handle_open()
            else:
                logger.debug(f"[{self.key}] Connection {event.connection}")
        elif event.type == TransportEventType.CREDS_UPDATE:
            await self._save_credential(event.credential)
        elif self.event_sink is not None:
            try:
                await self.event_sink(self, event)
            except Exception as e:
                logger.error(f"[{self.key}] Error handling {event.type.value}: {e}")

    async def _handle_open(self) -> None:
        self.restart_attempts = 0
        self.state = SessionState.OPEN
        self.connected_at = time.time()
        self._settled.set()
        self._cancel_timeout()
        logger.info(f"[{self.key}] Connection open")

        if self.on_open is not None and not await self.on_open(self):
            logger.warning(f"[{self.key}] Registration refused, closing connection")
            await self.terminate()
            return

        for hook in self.hooks:
            if self._terminated:
                return
            try:
                await hook(self)
            except Exception as e:
                name = getattr(hook, "name", None) or getattr(hook, "__name__", repr(hook))
                handle_exception(e, key=self.key, operation=f"hook {name}")

    async def _save_credential(self, credential: Optional[Dict[str, Any]]) -> None:
        if credential is None:
            return
        try:
            await self.credentials.save_credential(self.key, credential)
        except StorageError as e:
            logger.error(f"[{self.key}] Failed to persist credential: {e}")

    async def _reconnect(self) -> None:
        """
        Replace the closed transport, backing off between attempts.

        A transport or store failure while reopening uses up one attempt.

        Raises:
            ReconnectExhaustedError: If ``max_reconnect_attempts`` is reached
        """
        if self.transport is not None:
            await self.transport.close()

        max_attempts = self.config.max_reconnect_attempts
        while not self._terminated:
            if self.restart_attempts >= max_attempts:
                raise ReconnectExhaustedError(
                    f"Session {self.key} gave up after {max_attempts} reconnect attempt(s)"
                )

            self.restart_attempts += 1
            delay = self._backoff(self.restart_attempts)
            self.reconnect_delays.append(delay)
            if self.state != SessionState.PAIRING:
                self.state = SessionState.RECONNECTING
            logger.warning(
                f"[{self.key}] Reconnecting in {delay}s "
                f"(attempt {self.restart_attempts}/{max_attempts})"
            )

            await self._sleep(delay)
            if self._terminated:
                return

            try:
                self.transport = await self._open_transport(allow_fresh=False)
                return
            except (TransportError, StorageError) as e:
                logger.error(f"[{self.key}] Reconnect attempt {self.restart_attempts} failed: {e}")

    async def _pairing_timeout(self) -> None:
        await asyncio.sleep(self.config.pairing_timeout_seconds)
        if self.state == SessionState.PAIRING and not self._terminated:
            logger.warning(f"[{self.key}] Pairing not completed in time")
            await self._finish(
                SessionState.FAILED,
                PairingFailedError(f"Pairing timed out for {self.key}"),
            )

    # ===== Shutdown =====

    def _cancel_timeout(self) -> None:
        task = self._timeout_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [
            t for t in (self._event_task, self._timeout_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.transport is not None:
            try:
                await self.transport.close()
            except TransportError as e:
                logger.debug(f"[{self.key}] Error closing transport: {e}")

    async def _abort(self, error: Exception) -> None:
        """Fail during ``start``; the caller sees the exception instead of a callback."""
        self._finished = True
        self._terminated = True
        self.state = SessionState.FAILED
        self.error = error
        self._settled.set()
        await self._teardown()
        handle_exception(error, key=self.key, operation="start")

    async def _finish(self, state: SessionState, error: Optional[Exception]) -> None:
        if self._finished:
            return
        self._finished = True
        self._terminated = True
        self.state = state
        self.error = error
        self._settled.set()

        await self._teardown()
        if error is None:
            logger.info(f"[{self.key}] Session terminated")
        else:
            handle_exception(error, key=self.key, operation=f"session {state.value}")

        if self.on_finished is not None:
            try:
                await self.on_finished(self, error)
            except Exception as e:
                logger.error(f"[{self.key}] Finish callback failed: {e}")

    def __repr__(self) -> str:
        return f"ConnectionSupervisor(key={self.key!r}, state={self.state.value})"
