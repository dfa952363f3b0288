"""
Tests for the loopback callback listener.

Each test binds an ephemeral port and drives the listener with a real
aiohttp client.
"""

import asyncio
import socket

import aiohttp
import pytest

from harvest_client.auth.callback_server import (
    CALLBACK_PATH, CANCELLED_PAGE, SUCCESS_PAGE, CallbackServer, error_page
)
from harvest_shared.exceptions import (
    AuthorizationDeniedError, AuthorizationTimeoutError, CallbackListenError,
    MissingCodeError, StateMismatchError
)

STATE = "expected-state"


def callback_url(server, path=CALLBACK_PATH):
    return f"http://127.0.0.1:{server.port}{path}"


async def hit(server, path=CALLBACK_PATH, **params):
    async with aiohttp.ClientSession() as session:
        async with session.get(callback_url(server, path), params=params) as response:
            return response.status, await response.text()


class TestCallbackServer:
    """Test the callback outcomes."""

    @pytest.mark.asyncio
    async def test_success(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            status, body = await hit(server, code="auth-code", state=STATE)
            code = await server.wait_for_code(1.0)

        assert status == 200
        assert body == SUCCESS_PAGE
        assert code == "auth-code"

    @pytest.mark.asyncio
    async def test_redirect_uri_uses_bound_port(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        try:
            assert server.port != 0
            assert server.redirect_uri == f"http://localhost:{server.port}{CALLBACK_PATH}"
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_denied(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            status, body = await hit(server, error="access_denied", error_description="User said no")
            with pytest.raises(AuthorizationDeniedError) as exc_info:
                await server.wait_for_code(1.0)

        assert status == 200
        assert body == CANCELLED_PAGE
        assert "access_denied" in exc_info.value.message
        assert exc_info.value.context['oauth_error'] == "access_denied"

    @pytest.mark.asyncio
    async def test_state_mismatch(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            status, body = await hit(server, code="auth-code", state="other-state")
            with pytest.raises(StateMismatchError):
                await server.wait_for_code(1.0)

        assert status == 400
        assert "Sign-in failed" in body

    @pytest.mark.asyncio
    async def test_missing_state_is_mismatch(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            status, _ = await hit(server, code="auth-code")
            with pytest.raises(StateMismatchError):
                await server.wait_for_code(1.0)

        assert status == 400

    @pytest.mark.asyncio
    async def test_missing_code(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            status, _ = await hit(server, state=STATE)
            with pytest.raises(MissingCodeError):
                await server.wait_for_code(1.0)

        assert status == 400

    @pytest.mark.asyncio
    async def test_other_paths_not_served(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            status, _ = await hit(server, path="/favicon.ico")
            with pytest.raises(AuthorizationTimeoutError):
                await server.wait_for_code(0.05)

        assert status == 404

    @pytest.mark.asyncio
    async def test_first_code_wins(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            await hit(server, code="first", state=STATE)
            status, _ = await hit(server, code="second", state=STATE)
            code = await server.wait_for_code(1.0)

        assert status == 200
        assert code == "first"

    @pytest.mark.asyncio
    async def test_first_error_wins(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            await hit(server, state=STATE)
            await hit(server, code="x", state="wrong")
            with pytest.raises(MissingCodeError):
                await server.wait_for_code(1.0)

    @pytest.mark.asyncio
    async def test_timeout(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            with pytest.raises(AuthorizationTimeoutError) as exc_info:
                await server.wait_for_code(0.05)

        assert exc_info.value.context['timeout_seconds'] == 0.05

    @pytest.mark.asyncio
    async def test_closed_listener_refuses_connections(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            port = server.port

        async with aiohttp.ClientSession() as session:
            with pytest.raises(aiohttp.ClientConnectionError):
                await session.get(f"http://127.0.0.1:{port}{CALLBACK_PATH}")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        await server.start()
        await server.close()
        await server.close()

    def test_busy_port(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            port = blocker.getsockname()[1]
            with pytest.raises(CallbackListenError) as exc_info:
                CallbackServer(STATE, port=port).bind()
        finally:
            blocker.close()

        assert str(port) in exc_info.value.context['address']
        assert "--manual" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_external_cancellation(self):
        server = CallbackServer(STATE, port=0)
        server.bind()
        async with server:
            waiter = asyncio.ensure_future(server.wait_for_code(10.0))
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter


class TestErrorPage:
    """Test the failure page."""

    def test_message_is_escaped(self):
        page = error_page("<script>alert(1)</script>")
        assert "<script>" not in page
        assert "&lt;script&gt;" in page
