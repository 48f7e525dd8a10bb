"""Session manager: wires configuration, storage, registry, pairing and commands."""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .async_utils import TaskManager
from .commands import CommandRouter, install_default_handlers
from .config import SessionConfig, get_config
from .exceptions import OTPError, SessionNotFoundError, TransportError, ValidationError
from .hooks import default_hooks, local_timestamp
from .logging import get_error_handler
from .models import (
    BulkOutcome,
    BulkStatus,
    PairResult,
    RegistryStatus,
    UserConfig,
    jid_for,
    normalize_identity_key,
)
from .pairing import PairingCoordinator
from .registry import SessionRegistry
from .storage import SessionStore, create_credential_store, create_store
from .supervisor import ConnectionSupervisor
from .transport import BridgeTransportFactory, TransportFactory

logger = logging.getLogger(__name__)

OTP_DIGITS = 6


@dataclass
class PendingConfigUpdate:
    """Config change waiting for its OTP."""

    otp: str
    expires_at: float
    config: UserConfig


class SessionManager:
    """
    Facade over the whole session system.

    Example:
        >>> async with SessionManager(config) as manager:
        ...     result = await manager.pair("+1 555 123 0000")
        ...     print(result.code)
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        store: Optional[SessionStore] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        """
        Initialize session manager.

        Args:
            config: Configuration (global config if not provided)
            store: Session store (built from config if not provided)
            transport_factory: Transport factory (bridge transport if not provided)
        """
        self.config = config or get_config()
        self.store = store if store is not None else create_store(self.config)
        self.credentials = create_credential_store(self.config, self.store)
        self.transport_factory = transport_factory or BridgeTransportFactory(
            self.config.bridge_url, self.config.bridge_request_timeout_seconds
        )

        self.registry = SessionRegistry(self.config.max_concurrent_pairings)
        self.router = CommandRouter(
            self.config.command_prefix,
            self.config.command_cooldown_seconds,
            newsletter_jid=self.config.newsletter_jid,
        )
        self.handlers = install_default_handlers(
            self.router, self.config, self.registry, self.credentials, self.delete_session
        )
        self.hooks = default_hooks(self.config, self.credentials, self.router.commands)
        self.coordinator = PairingCoordinator(
            self.registry,
            self.credentials,
            self.transport_factory,
            self.config,
            hooks=self.hooks,
            event_sink=self.router.dispatch,
        )

        self.tasks = TaskManager()
        self.started_at = time.time()
        self._otps: Dict[str, PendingConfigUpdate] = {}
        self._closed = False

    # ===== Sessions =====

    async def pair(self, number: str) -> PairResult:
        """Pair or resume the session for ``number``."""
        return await self.coordinator.pair(number)

    def status(self) -> RegistryStatus:
        return self.registry.status()

    def get_session(self, number: str) -> ConnectionSupervisor:
        """
        Raises:
            SessionNotFoundError: If the number has no active session
        """
        return self.registry.get(number).connection

    async def _bulk_pair(self, key: str) -> PairResult:
        return await self.coordinator.pair(key, wait_settled=True)

    async def connect_all(self) -> List[BulkOutcome]:
        """
        Connect every number in the known-numbers list.

        Raises:
            SessionNotFoundError: If no numbers are known
        """
        numbers = await self.credentials.known_numbers()
        if not numbers:
            raise SessionNotFoundError("No numbers found to connect")
        return await self.registry.reconnect_all(numbers, self._bulk_pair)

    async def reconnect(self) -> List[BulkOutcome]:
        """
        Resume every session that has a stored credential.

        Raises:
            SessionNotFoundError: If no credentials are stored
        """
        keys = await self.credentials.list_identity_keys()
        if not keys:
            raise SessionNotFoundError("No session files found")
        return await self.registry.reconnect_all(keys, self._bulk_pair)

    async def _restore_sessions(self) -> None:
        try:
            outcomes = await self.reconnect()
        except SessionNotFoundError:
            logger.info("No stored sessions to restore")
            return
        restored = sum(1 for o in outcomes if o.status != BulkStatus.FAILED)
        logger.info(f"Restored {restored}/{len(outcomes)} stored session(s)")

    async def start_auto_reconnect(self) -> asyncio.Task:
        """Resume every stored session in the background."""
        return await self.tasks.create_task(self._restore_sessions(), name="auto-reconnect")

    async def delete_session(self, number: str) -> List[str]:
        """
        Stop the session for ``number`` and delete all its stored data.

        Returns:
            Names of the deleted blobs
        """
        key = normalize_identity_key(number)
        await self.coordinator.cancel(key)

        if self.registry.contains(key):
            supervisor = self.registry.get(key).connection
            await supervisor.terminate()
            await self.registry.unregister(key, supervisor)

        self._otps.pop(key, None)
        self.router.forget(key)
        self.handlers.forget(key)
        for hook in self.hooks:
            hook.forget(key)
        get_error_handler().clear_error_history(key)
        deleted = await self.credentials.delete_session(key)
        logger.info(f"Deleted session {key}")
        return deleted

    # ===== Per-session config =====

    async def request_config_update(
        self, number: str, config: Union[UserConfig, Dict[str, Any]]
    ) -> None:
        """
        Stage a config change and send its OTP to the session's own chat.

        Raises:
            SessionNotFoundError: If the number has no active session
            ValidationError: If ``config`` is not a valid user config
            TransportError: If the OTP could not be sent
        """
        session = self.get_session(number)
        key = session.key

        if isinstance(config, UserConfig):
            new_config = config
        else:
            try:
                new_config = UserConfig.model_validate(config)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid config format: {e}") from e

        otp = "".join(secrets.choice("0123456789") for _ in range(OTP_DIGITS))
        self._otps[key] = PendingConfigUpdate(
            otp=otp,
            expires_at=time.time() + self.config.otp_expiry_seconds,
            config=new_config,
        )

        minutes = max(int(self.config.otp_expiry_seconds // 60), 1)
        try:
            await session.send(
                session.user_jid,
                {
                    "text": "OTP VERIFICATION\n"
                    f"Your OTP for config update is: *{otp}*\n"
                    f"This OTP will expire in {minutes} minutes."
                },
            )
        except TransportError:
            self._otps.pop(key, None)
            raise
        logger.info(f"OTP sent to {key}")

    async def verify_config_update(self, number: str, otp: str) -> UserConfig:
        """
        Apply a staged config change.

        Raises:
            OTPError: If there is no request, it expired, or the OTP is wrong
        """
        key = normalize_identity_key(number)
        pending = self._otps.get(key)
        if pending is None:
            raise OTPError("No OTP request found for this number")
        if time.time() > pending.expires_at:
            del self._otps[key]
            raise OTPError("OTP has expired")
        if not secrets.compare_digest(pending.otp, str(otp).strip()):
            raise OTPError("Invalid OTP")

        await self.credentials.save_user_config(key, pending.config)
        del self._otps[key]

        if self.registry.contains(key):
            session = self.get_session(key)
            try:
                await session.send(
                    session.user_jid,
                    {"text": "CONFIG UPDATED\nYour configuration has been successfully updated!"},
                )
            except TransportError as e:
                logger.warning(f"Failed to confirm config update to {key}: {e}")
        return pending.config

    # ===== Queries =====

    def _format_set_at(self, value: Any) -> str:
        if value in (None, ""):
            return "Unknown"
        if isinstance(value, (int, float)):
            # Millisecond timestamps are what the bridge usually sends
            seconds = value / 1000 if value > 1e11 else value
            return local_timestamp(self.config.timezone, seconds)
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return str(value)
        return local_timestamp(self.config.timezone, parsed.timestamp())

    async def get_about(self, number: str, target: str) -> Dict[str, Any]:
        """
        About text of ``target`` as seen from the session of ``number``.

        Raises:
            SessionNotFoundError: If the number has no active session
            TransportError: If the status could not be fetched
        """
        session = self.get_session(number)
        data = await session.transport.fetch_status(jid_for(target))
        return {
            "number": target,
            "about": data.get("status") or "No status available",
            "setAt": self._format_set_at(data.get("setAt")),
        }

    def health(self) -> Dict[str, Any]:
        return {
            "active": self.registry.count(),
            "pending": len(self.coordinator.pending()),
            "uptime": int(time.time() - self.started_at),
        }

    # ===== Shutdown =====

    async def close(self) -> None:
        """Terminate every session and close the store."""
        if self._closed:
            return
        self._closed = True
        logger.info("Closing session manager")
        await self.tasks.cancel_all()

        for supervisor in self.coordinator.flows():
            await supervisor.terminate()
        for record in self.registry.records():
            await record.connection.terminate()

        await self.store.close()

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
