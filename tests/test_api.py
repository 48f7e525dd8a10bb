"""Tests for the HTTP API."""

import asyncio
import json
import re

import pytest
import pytest_asyncio
from aiohttp import test_utils

from whatsapp_sessions.api import create_app
from whatsapp_sessions.exceptions import TransportError
from whatsapp_sessions.logging import get_error_handler
from whatsapp_sessions.manager import SessionManager

KEY = "15551230000"


@pytest_asyncio.fixture
async def manager(config, store, factory):
    return SessionManager(config, store=store, transport_factory=factory)


@pytest_asyncio.fixture
async def client(manager):
    client = test_utils.TestClient(test_utils.TestServer(create_app(manager)))
    await client.start_server()
    yield client
    await client.close()


async def resume(manager, key=KEY):
    await manager.credentials.save_credential(key, {"me": key})
    await manager.pair(key)
    for _ in range(400):
        if key in await manager.credentials.known_numbers():
            break
        await asyncio.sleep(0.005)


class TestPairing:
    """Test GET /."""

    @pytest.mark.asyncio
    async def test_pair_returns_code(self, client):
        """Test a fresh number gets its code."""
        resp = await client.get("/", params={"number": "+1 555 123 0000"})

        assert resp.status == 200
        assert await resp.json() == {"code": "CODE0000"}

    @pytest.mark.asyncio
    async def test_missing_number(self, client):
        """Test the number parameter is required."""
        resp = await client.get("/")

        assert resp.status == 400
        assert "number" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_invalid_number(self, client):
        """Test a number without digits is rejected."""
        resp = await client.get("/", params={"number": "abc"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_already_connected(self, client, manager):
        """Test pairing an active number."""
        await resume(manager)

        resp = await client.get("/", params={"number": KEY})

        assert resp.status == 200
        assert (await resp.json())["status"] == "already_connected"

    @pytest.mark.asyncio
    async def test_in_progress(self, client, factory):
        """Test a second request while the first is pairing."""
        factory.pairing_delay = 0.1

        first, second = await asyncio.gather(
            client.get("/", params={"number": KEY}),
            client.get("/", params={"number": KEY}),
        )

        assert sorted([first.status, second.status]) == [200, 202]

    @pytest.mark.asyncio
    async def test_pairing_failure(self, client, factory):
        """Test exhausted pairing retries map to 503."""
        factory.pairing_failures = 3

        resp = await client.get("/", params={"number": KEY})

        assert resp.status == 503
        body = await resp.json()
        assert body["error"] == "Service Unavailable"
        assert "pairing code" in body["detail"]


class TestStatus:
    """Test /active, /ping, /connect-all and /reconnect."""

    @pytest.mark.asyncio
    async def test_active(self, client, manager):
        """Test the active list reflects the registry."""
        await resume(manager)

        resp = await client.get("/active")

        assert await resp.json() == {"count": 1, "numbers": [KEY]}

    @pytest.mark.asyncio
    async def test_ping(self, client):
        """Test the health payload."""
        resp = await client.get("/ping")
        body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "active"
        assert body["activesession"] == 0
        assert "total_errors" in body["errors"]

    @pytest.mark.asyncio
    async def test_ping_breaks_errors_down_by_number(self, client):
        """Test failed requests show up under their number on /ping."""
        get_error_handler().clear_error_history()
        await client.get("/update-config", params={"number": "+1 555 123 0000", "config": "{}"})
        await client.get("/update-config", params={"number": "", "config": "{}"})

        body = await (await client.get("/ping")).json()

        errors = body["errors"]
        assert errors["total_errors"] == 2
        assert list(errors["by_key"]) == [KEY]
        last = errors["by_key"][KEY]["last_error"]
        assert last["operation"] == "GET /update-config"
        assert last["type"] == "SessionNotFoundError"

    @pytest.mark.asyncio
    async def test_connect_all_nothing_known(self, client):
        """Test connect-all with no known numbers."""
        resp = await client.get("/connect-all")

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_reconnect(self, client, manager):
        """Test reconnect resumes stored sessions."""
        await manager.credentials.save_credential(KEY, {"me": KEY})

        resp = await client.get("/reconnect")
        body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "success"
        assert body["connections"] == [
            {"key": KEY, "status": "connection_initiated", "queued": False, "error": None}
        ]


class TestConfig:
    """Test /update-config and /verify-otp."""

    @pytest.mark.asyncio
    async def test_update_and_verify(self, client, manager, factory):
        """Test the OTP round through the API."""
        await resume(manager)

        resp = await client.get(
            "/update-config",
            params={"number": KEY, "config": json.dumps({"AUTO_LIKE_STATUS": False})},
        )
        assert resp.status == 200
        assert (await resp.json())["status"] == "otp_sent"

        text = factory.latest(KEY).sent[-1][1]["text"]
        otp = re.search(r"\*(\d{6})\*", text).group(1)

        resp = await client.get("/verify-otp", params={"number": KEY, "otp": otp})
        assert resp.status == 200
        assert (await manager.credentials.load_user_config(KEY)).auto_like_status is False

    @pytest.mark.asyncio
    async def test_invalid_config_json(self, client, manager):
        """Test a config that is not a JSON object."""
        await resume(manager)

        resp = await client.get("/update-config", params={"number": KEY, "config": "{oops"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid config format"

    @pytest.mark.asyncio
    async def test_update_unknown_session(self, client):
        """Test a config update for an inactive number."""
        resp = await client.get("/update-config", params={"number": KEY, "config": "{}"})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_otp_send_failure(self, client, manager, factory):
        """Test a failed OTP send maps to 500."""
        await resume(manager)
        factory.send_failures = 1

        resp = await client.get("/update-config", params={"number": KEY, "config": "{}"})

        assert resp.status == 500
        assert (await resp.json())["error"] == "Failed to send OTP"

    @pytest.mark.asyncio
    async def test_verify_without_request(self, client):
        """Test verifying when no OTP was requested."""
        resp = await client.get("/verify-otp", params={"number": KEY, "otp": "123456"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "No OTP request found for this number"


class TestAboutAndDelete:
    """Test /getabout and DELETE /session."""

    @pytest.mark.asyncio
    async def test_get_about(self, client, manager):
        """Test the about lookup."""
        await resume(manager)

        resp = await client.get("/getabout", params={"number": KEY, "target": "15550009999"})
        body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "success"
        assert body["about"] == "about of 15550009999@s.whatsapp.net"

    @pytest.mark.asyncio
    async def test_get_about_failure(self, client, manager, factory):
        """Test a failed status fetch maps to 500."""
        await resume(manager)

        async def failing(jid):
            raise TransportError("timeout")

        factory.latest(KEY).fetch_status = failing

        resp = await client.get("/getabout", params={"number": KEY, "target": "15550009999"})

        assert resp.status == 500
        assert (await resp.json())["status"] == "error"

    @pytest.mark.asyncio
    async def test_delete_session(self, client, manager):
        """Test deleting an active session."""
        await resume(manager)

        resp = await client.delete("/session", params={"number": KEY})
        body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "deleted"
        assert manager.status().count == 0

    @pytest.mark.asyncio
    async def test_delete_unknown_session(self, client):
        """Test deleting a number with nothing stored."""
        resp = await client.delete("/session", params={"number": KEY})

        assert resp.status == 404
