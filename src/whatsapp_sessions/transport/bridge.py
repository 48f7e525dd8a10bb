"""Transport speaking JSON over a websocket to a messaging-protocol bridge."""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import websockets
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import CredentialInvalidError, TransportError
from ..models import MessageKey, TransportEvent, TransportEventType
from .base import Transport

logger = logging.getLogger(__name__)

# Bridge error codes meaning the supplied credential cannot be resumed
CREDENTIAL_ERROR_CODES = frozenset({"bad_session", "unauthorized", "logged_out"})

_EVENT_TYPES = {t.value for t in TransportEventType}


class BridgeTransport(Transport):
    """
    One websocket to the bridge per session.

    Frames sent: ``{"type": <command>, "requestId": ..., "payload": {...}}``.
    Frames received: ``{"type": "response", "requestId": ..., "payload" | "error"}``
    for commands, and ``{"type": <event type>, "payload": {...}}`` for events.
    """

    def __init__(
        self,
        identity_key: str,
        bridge_url: str,
        request_timeout: float = 30.0,
    ) -> None:
        """
        Initialize bridge transport.

        Args:
            identity_key: Session identity key
            bridge_url: Bridge websocket URL (ws/wss)
            request_timeout: Seconds to wait for a command response
        """
        super().__init__(identity_key)
        self.bridge_url = bridge_url.rstrip("/")
        self.request_timeout = request_timeout

        self._ws: Optional[Any] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def open(self, credential: Optional[Dict[str, Any]]) -> None:
        if self._closed:
            raise TransportError("Transport is closed")

        logger.info(f"[{self.identity_key}] Connecting to bridge: {self.bridge_url}")
        try:
            self._ws = await websockets.connect(
                self.bridge_url,
                ping_interval=30,
                ping_timeout=10,
                max_size=None,
            )
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Bridge connection failed: {e}") from e

        self._receive_task = asyncio.create_task(
            self._receive_loop(), name=f"bridge-{self.identity_key}"
        )

        try:
            result = await self._command(
                "open", {"identity": self.identity_key, "credential": credential}
            )
        except (TransportError, CredentialInvalidError):
            await self.close()
            raise

        self.registered = bool(result.get("registered"))
        user = result.get("user") or {}
        self.user_jid = user.get("id") or self.user_jid
        logger.info(
            f"[{self.identity_key}] Bridge session opened (registered={self.registered})"
        )

    async def request_pairing_code(self, number: str) -> str:
        result = await self._command("requestPairingCode", {"number": number})
        code = result.get("code")
        if not code:
            raise TransportError("Bridge returned no pairing code")
        return str(code)

    async def send(self, jid: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._command("sendMessage", {"jid": jid, "content": payload})

    async def update_profile_status(self, text: str) -> None:
        await self._command("updateProfileStatus", {"text": text})

    async def send_presence_update(self, presence: str, jid: Optional[str] = None) -> None:
        await self._command("sendPresenceUpdate", {"presence": presence, "jid": jid})

    async def read_messages(self, keys: List[MessageKey]) -> None:
        await self._command(
            "readMessages", {"keys": [k.model_dump(by_alias=True) for k in keys]}
        )

    async def fetch_status(self, jid: str) -> Dict[str, Any]:
        return await self._command("fetchStatus", {"jid": jid})

    async def accept_group_invite(self, code: str) -> Dict[str, Any]:
        return await self._command("groupAcceptInvite", {"code": code})

    async def newsletter_follow(self, jid: str) -> None:
        await self._command("newsletterFollow", {"jid": jid})

    async def newsletter_react(self, jid: str, server_id: int, emoji: str) -> None:
        await self._command(
            "newsletterReactMessage", {"jid": jid, "serverId": server_id, "reaction": emoji}
        )

    async def close(self) -> None:
        """Close the websocket permanently."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"[{self.identity_key}] Closing bridge transport")

        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._receive_task = None

        if self._ws is not None:
            try:
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"[{self.identity_key}] Error closing websocket: {e}")
            self._ws = None

        self._fail_pending("Transport closed")
        self.end_stream()

    async def _command(self, command: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send a command frame and wait for its response.

        Raises:
            TransportError: If not connected, the bridge errors or times out
            CredentialInvalidError: If ``open`` is rejected for the credential
        """
        if not self.is_connected:
            raise TransportError("Not connected to bridge")

        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        frame = {"type": command, "requestId": request_id, "payload": payload}
        try:
            async with self._send_lock:
                await self._ws.send(json.dumps(frame))
            logger.debug(f"[{self.identity_key}] Sent {command}")
            response = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{command} timed out after {self.request_timeout}s") from e
        except websockets.exceptions.WebSocketException as e:
            raise TransportError(f"Failed to send {command}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

        error = response.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", code) if isinstance(error, dict) else str(error)
            if command == "open" and code in CREDENTIAL_ERROR_CODES:
                raise CredentialInvalidError(f"Bridge rejected credential: {message}")
            raise TransportError(f"{command} failed: {message}")

        result = response.get("payload")
        return result if isinstance(result, dict) else {}

    async def _receive_loop(self) -> None:
        """Route response frames to waiters and queue events."""
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    logger.error(f"[{self.identity_key}] Invalid JSON received: {e}")
                    continue
                if isinstance(data, dict):
                    self._route_frame(data)
                else:
                    logger.warning(f"[{self.identity_key}] Invalid bridge frame shape")
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"[{self.identity_key}] Bridge connection closed")
        finally:
            if not self._closed:
                # Lost the bridge without being asked to close
                self._closed = True
                self._ws = None
                self._fail_pending("Bridge connection lost")
                self.emit(TransportEvent.closed())
                self.end_stream()

    def _route_frame(self, data: Dict[str, Any]) -> None:
        frame_type = data.get("type")

        if frame_type == "response":
            future = self._pending.get(data.get("requestId"))
            if future is not None and not future.done():
                future.set_result(data)
            return

        if frame_type not in _EVENT_TYPES:
            logger.debug(f"[{self.identity_key}] Unknown frame type: {frame_type}")
            return

        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        try:
            event = TransportEvent.model_validate({**payload, "type": frame_type})
        except PydanticValidationError as e:
            logger.warning(f"[{self.identity_key}] Dropping malformed {frame_type} event: {e}")
            return

        if event.type == TransportEventType.CONNECTION_UPDATE:
            user = payload.get("user")
            if isinstance(user, dict) and user.get("id"):
                self.user_jid = user["id"]
                self.registered = True

        self.emit(event)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()


class BridgeTransportFactory:
    """Creates one ``BridgeTransport`` per identity key."""

    def __init__(self, bridge_url: str, request_timeout: float = 30.0) -> None:
        self.bridge_url = bridge_url
        self.request_timeout = request_timeout

    def __call__(self, identity_key: str) -> BridgeTransport:
        return BridgeTransport(
            identity_key, self.bridge_url, request_timeout=self.request_timeout
        )
