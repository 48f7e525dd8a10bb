"""HTTP API over the session manager (aiohttp.web)."""

import json
import logging
from typing import Dict, Optional

from aiohttp import web

from .exceptions import (
    OTPError,
    PairingFailedError,
    SessionNotFoundError,
    TransportError,
    ValidationError,
    WhatsAppSessionError,
)
from .logging import get_error_handler, handle_exception
from .manager import SessionManager
from .models import PairStatus, normalize_identity_key

logger = logging.getLogger(__name__)

MANAGER_KEY = web.AppKey("manager", SessionManager)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _status_for(exc: WhatsAppSessionError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, SessionNotFoundError):
        return 404
    if isinstance(exc, PairingFailedError):
        return 503
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn session errors into JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except WhatsAppSessionError as e:
        handle_exception(e, key=_request_key(request), operation=f"{request.method} {request.path}")
        return _error(_status_for(e), str(e))


def _request_key(request: web.Request) -> Optional[str]:
    """Identity key named by the `number` query parameter, if it is valid."""
    try:
        return normalize_identity_key(request.query.get("number"))
    except ValidationError:
        return None


def _require(request: web.Request, *names: str) -> Dict[str, str]:
    values = {name: request.query.get(name, "").strip() for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValidationError(f"Missing required parameter(s): {', '.join(missing)}")
    return values


class SessionAPI:
    """Route handlers; one instance per application."""

    def __init__(self, manager: SessionManager) -> None:
        self.manager = manager

    async def pair(self, request: web.Request) -> web.Response:
        number = _require(request, "number")["number"]
        result = await self.manager.pair(number)

        if result.status == PairStatus.CODE:
            return web.json_response({"code": result.code})
        if result.status == PairStatus.ALREADY_CONNECTED:
            return web.json_response(
                {"status": "already_connected", "message": "This number is already connected"}
            )
        if result.status == PairStatus.IN_PROGRESS:
            return web.json_response(
                {"status": "in_progress", "message": "Pairing already in progress"}, status=202
            )
        if result.status == PairStatus.ERROR:
            return web.json_response(
                {"error": "Service Unavailable", "detail": result.error}, status=503
            )
        return web.json_response({"status": result.status.value})

    async def active(self, request: web.Request) -> web.Response:
        status = self.manager.status()
        return web.json_response({"count": status.count, "numbers": status.keys})

    async def ping(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "active",
                "message": "Session bot is running",
                "activesession": self.manager.registry.count(),
                **self.manager.health(),
                "errors": get_error_handler().get_error_summary(),
            }
        )

    async def connect_all(self, request: web.Request) -> web.Response:
        outcomes = await self.manager.connect_all()
        return web.json_response(
            {"status": "success", "connections": [o.model_dump(mode="json") for o in outcomes]}
        )

    async def reconnect(self, request: web.Request) -> web.Response:
        outcomes = await self.manager.reconnect()
        return web.json_response(
            {"status": "success", "connections": [o.model_dump(mode="json") for o in outcomes]}
        )

    async def update_config(self, request: web.Request) -> web.Response:
        params = _require(request, "number", "config")
        try:
            new_config = json.loads(params["config"])
        except ValueError:
            return _error(400, "Invalid config format")
        if not isinstance(new_config, dict):
            return _error(400, "Invalid config format")

        try:
            await self.manager.request_config_update(params["number"], new_config)
        except TransportError as e:
            handle_exception(e, key=_request_key(request), operation="update-config")
            return _error(500, "Failed to send OTP")
        return web.json_response({"status": "otp_sent", "message": "OTP sent to your number"})

    async def verify_otp(self, request: web.Request) -> web.Response:
        params = _require(request, "number", "otp")
        try:
            await self.manager.verify_config_update(params["number"], params["otp"])
        except OTPError as e:
            return _error(400, str(e))
        return web.json_response({"status": "success", "message": "Config updated successfully"})

    async def get_about(self, request: web.Request) -> web.Response:
        params = _require(request, "number", "target")
        try:
            about = await self.manager.get_about(params["number"], params["target"])
        except (TransportError, NotImplementedError) as e:
            logger.error(f"Failed to fetch status for {params['target']}: {e}")
            return web.json_response(
                {
                    "status": "error",
                    "message": f"Failed to fetch About status for {params['target']}.",
                },
                status=500,
            )
        return web.json_response({"status": "success", **about})

    async def delete_session(self, request: web.Request) -> web.Response:
        number = _require(request, "number")["number"]
        key = normalize_identity_key(number)
        was_active = self.manager.registry.contains(key)
        deleted = await self.manager.delete_session(key)
        if not was_active and not deleted:
            return _error(404, f"No session found for {key}")
        return web.json_response({"status": "deleted", "number": key, "deleted": deleted})


def create_app(manager: SessionManager, close_manager: bool = True) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        manager: Session manager to serve
        close_manager: Close the manager when the application shuts down
    """
    app = web.Application(middlewares=[error_middleware])
    app[MANAGER_KEY] = manager
    api = SessionAPI(manager)

    app.router.add_get("/", api.pair)
    app.router.add_get("/active", api.active)
    app.router.add_get("/ping", api.ping)
    app.router.add_get("/connect-all", api.connect_all)
    app.router.add_get("/reconnect", api.reconnect)
    app.router.add_get("/update-config", api.update_config)
    app.router.add_get("/verify-otp", api.verify_otp)
    app.router.add_get("/getabout", api.get_about)
    app.router.add_delete("/session", api.delete_session)

    if close_manager:

        async def on_cleanup(app: web.Application) -> None:
            await app[MANAGER_KEY].close()

        app.on_cleanup.append(on_cleanup)

    return app


async def start_server(
    manager: SessionManager, host: Optional[str] = None, port: Optional[int] = None
) -> web.AppRunner:
    """Start serving in the current loop; the caller owns the returned runner."""
    host = host or manager.config.api_host
    port = port or manager.config.api_port

    runner = web.AppRunner(create_app(manager))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"API listening on http://{host}:{port}")
    return runner
