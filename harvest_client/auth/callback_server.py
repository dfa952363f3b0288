"""
Loopback HTTP listener that receives the OAuth redirect.

The listener socket is bound synchronously so a busy port is reported
before the browser is opened. Requests are answered by a small aiohttp
application; each outcome is offered to one of two single-slot queues
(authorization code or error) and only the first offer is kept.
"""

import asyncio
import hmac
import html
import logging
import socket
import sys
from typing import Optional

from aiohttp import web

from harvest_shared.exceptions import (
    AuthorizationDeniedError, AuthorizationTimeoutError, CallbackListenError,
    HarvestAuthError, MissingCodeError, StateMismatchError
)

logger = logging.getLogger(__name__)

CALLBACK_HOST = "127.0.0.1"
CALLBACK_PORT = 8484
CALLBACK_PATH = "/oauth/callback"

_PAGE_STYLE = (
    "body{font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',sans-serif;"
    "display:flex;align-items:center;justify-content:center;min-height:100vh;margin:0;"
    "background:#f7f4f0;color:#1d1e1c}"
    ".card{background:#fff;border-radius:12px;padding:40px 48px;max-width:420px;"
    "text-align:center;box-shadow:0 4px 24px rgba(0,0,0,.08)}"
    "h1{font-size:22px;margin:0 0 12px}p{margin:0;color:#5c5c5c;line-height:1.5}"
    "code{display:block;margin-top:16px;padding:12px;background:#fbeaea;color:#8a1f11;"
    "border-radius:6px;font-size:13px;word-break:break-word}"
)


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html lang=\"en\"><head><meta charset=\"utf-8\">"
        f"<title>{title}</title><style>{_PAGE_STYLE}</style></head>"
        f"<body><div class=\"card\">{body}</div></body></html>"
    )


SUCCESS_PAGE = _page(
    "Harvest CLI: signed in",
    "<h1>You're signed in</h1><p>Return to your terminal to finish. You can close this tab.</p>"
)

CANCELLED_PAGE = _page(
    "Harvest CLI: sign-in cancelled",
    "<h1>Sign-in cancelled</h1><p>No credentials were saved. Run <strong>harvest auth login</strong> "
    "again whenever you're ready.</p>"
)


def error_page(message: str) -> str:
    """Error page showing the (escaped) reason the sign-in failed."""
    return _page(
        "Harvest CLI: sign-in failed",
        "<h1>Sign-in failed</h1><p>Return to your terminal and try again.</p>"
        f"<code>{html.escape(message)}</code>"
    )


def _states_equal(received: str, expected: str) -> bool:
    return hmac.compare_digest(received.encode('utf-8'), expected.encode('utf-8'))


class CallbackServer:
    """
    One-shot OAuth redirect receiver.

    Usage::

        server = CallbackServer(state)
        server.bind()
        async with server:
            code = await server.wait_for_code(timeout)
    """

    def __init__(
        self,
        state: str,
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
        path: str = CALLBACK_PATH
    ):
        self.state = state
        self.host = host
        self.path = path
        self._requested_port = port
        self._sock: Optional[socket.socket] = None
        self._runner: Optional[web.AppRunner] = None

        self._codes: "asyncio.Queue[str]" = asyncio.Queue(maxsize=1)
        self._errors: "asyncio.Queue[HarvestAuthError]" = asyncio.Queue(maxsize=1)

    @property
    def port(self) -> int:
        """Port actually bound (differs from the requested one for port 0)."""
        if self._sock is not None:
            return self._sock.getsockname()[1]
        return self._requested_port

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{self.path}"

    def bind(self) -> None:
        """
        Bind the listening socket.

        Raises:
            CallbackListenError: When the address is unavailable
        """
        address = f"{self.host}:{self._requested_port}"
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if sys.platform != 'win32':
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self._requested_port))
            sock.listen(8)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise CallbackListenError(address, cause=e)

        self._sock = sock
        logger.debug(f"Callback listener bound on {self.host}:{self.port}")

    async def start(self) -> None:
        """Start answering requests on the bound socket."""
        if self._sock is None:
            self.bind()

        app = web.Application()
        app.router.add_get(self.path, self._handle_callback)

        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.SockSite(self._runner, self._sock)
        await site.start()

    async def close(self) -> None:
        """Stop the responder and release the socket. Safe to call repeatedly."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()
        logger.debug("Callback listener closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @staticmethod
    def _offer(queue: asyncio.Queue, item) -> None:
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.debug("Ignoring callback after the flow already has a result")

    async def _handle_callback(self, request: web.Request) -> web.Response:
        query = request.query

        error = query.get('error')
        if error:
            description = query.get('error_description')
            logger.info(f"Authorization server returned error: {error}")
            self._offer(self._errors, AuthorizationDeniedError(error, description))
            return web.Response(text=CANCELLED_PAGE, content_type='text/html')

        if not _states_equal(query.get('state', ''), self.state):
            logger.warning("Callback state did not match the login request")
            self._offer(self._errors, StateMismatchError())
            return web.Response(
                text=error_page("State mismatch: this sign-in link does not belong to the running login."),
                content_type='text/html',
                status=400
            )

        code = query.get('code')
        if not code:
            self._offer(self._errors, MissingCodeError())
            return web.Response(
                text=error_page("No authorization code was received."),
                content_type='text/html',
                status=400
            )

        self._offer(self._codes, code)
        return web.Response(text=SUCCESS_PAGE, content_type='text/html')

    async def wait_for_code(self, timeout: float) -> str:
        """
        Wait for the first outcome.

        Returns:
            The authorization code

        Raises:
            AuthorizationDeniedError, StateMismatchError, MissingCodeError:
                When the error slot is filled first
            AuthorizationTimeoutError: When nothing arrives within ``timeout``
        """
        code_task = asyncio.ensure_future(self._codes.get())
        error_task = asyncio.ensure_future(self._errors.get())
        try:
            done, _ = await asyncio.wait(
                {code_task, error_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (code_task, error_task):
                if not task.done():
                    task.cancel()

        if code_task in done:
            return code_task.result()
        if error_task in done:
            raise error_task.result()
        raise AuthorizationTimeoutError(timeout)
