"""
OAuth2 authorization code flow for the Harvest CLI.

This module contains the token endpoint client, the platform browser
launcher and the interactive login orchestrator. The orchestrator runs
either with a local callback listener (the browser redirects back to the
CLI) or in manual mode, where the user pastes the redirect URL.
"""

import logging
import secrets
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, TextIO, Tuple
from urllib.parse import urlencode, urlparse, parse_qs

from aiohttp import ClientSession
from jose import jwt, JWTError

from harvest_shared.exceptions import (
    AuthorizationDeniedError, ExchangeError, MissingClientCredentialsError, MissingCodeError,
    NetworkError, NoRefreshTokenError, SelectionError, StateMismatchError,
    SystemIntegrationError, UnsupportedPlatformError, BrowserLaunchError, ValidationError
)
from harvest_shared.models import AuthorizationResult, ClientCredentials, TokenGrant, utc_now
from harvest_client.api_client import HarvestHTTPClient, error_detail
from harvest_client.auth.accounts import AccountDirectoryClient, HARVEST_PRODUCT, select_account
from harvest_client.auth.callback_server import (
    CALLBACK_HOST, CALLBACK_PATH, CALLBACK_PORT, CallbackServer
)

logger = logging.getLogger(__name__)

AUTH_URL = "https://id.getharvest.com/oauth2/authorize"
TOKEN_URL = "https://id.getharvest.com/api/v2/oauth2/token"
REDIRECT_URI = f"http://localhost:{CALLBACK_PORT}{CALLBACK_PATH}"

DEFAULT_FLOW_TIMEOUT = 120.0
STATE_BYTES = 32
FALLBACK_TOKEN_LIFETIME = timedelta(hours=1)


def generate_state() -> str:
    """Random URL-safe correlation token for one login attempt."""
    return secrets.token_urlsafe(STATE_BYTES)


def _expiry_from_jwt(access_token: str) -> Optional[datetime]:
    """Read the ``exp`` claim of a JWT access token without verifying it."""
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError:
        return None
    exp = claims.get('exp')
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


class OAuthClient:
    """
    Client for the Harvest ID authorization and token endpoints.

    Client credentials are sent in the form body. Grants are never retried.
    """

    def __init__(
        self,
        credentials: ClientCredentials,
        auth_url: str = AUTH_URL,
        token_url: str = TOKEN_URL,
        redirect_uri: Optional[str] = None,
        session: Optional[ClientSession] = None,
        timeout: float = 30.0
    ):
        self.credentials = credentials
        self.auth_url = auth_url
        self.token_url = token_url
        self.redirect_uri = redirect_uri or credentials.redirect_uri or REDIRECT_URI
        self._session = session
        self._timeout = timeout

    def authorization_url(self, state: str, force_consent: bool = False,
                          redirect_uri: Optional[str] = None) -> str:
        """Build the URL the user opens to grant access."""
        params = {
            'client_id': self.credentials.client_id,
            'redirect_uri': redirect_uri or self.redirect_uri,
            'response_type': 'code',
            'state': state,
            'access_type': 'offline',
        }
        if force_consent:
            params['prompt'] = 'consent'
        separator = '&' if '?' in self.auth_url else '?'
        return f"{self.auth_url}{separator}{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> TokenGrant:
        """Trade an authorization code for tokens."""
        return await self._grant({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri or self.redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Mint a new access token from a refresh token."""
        return await self._grant({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

    async def _grant(self, form: Dict[str, str]) -> TokenGrant:
        grant_type = form['grant_type']
        form = dict(form)
        form['client_id'] = self.credentials.client_id
        form['client_secret'] = self.credentials.client_secret

        async with HarvestHTTPClient(timeout=self._timeout, session=self._session) as http:
            try:
                status, payload, text = await http.post_form(self.token_url, form)
            except NetworkError as e:
                raise ExchangeError(f"{grant_type} grant failed: {e.message}", cause=e)

        if status < 200 or status >= 300:
            oauth_error = payload.get('error') if isinstance(payload, dict) else None
            raise ExchangeError(
                f"{grant_type} grant failed ({status}): {error_detail(payload, text)}",
                status_code=status,
                oauth_error=oauth_error
            )

        if not isinstance(payload, dict) or not payload.get('access_token'):
            raise ExchangeError(f"{grant_type} grant returned no access token", status_code=status)

        return self._parse_grant(payload)

    @staticmethod
    def _parse_grant(payload: Dict) -> TokenGrant:
        access_token = payload['access_token']

        expires_at = None
        expires_in = payload.get('expires_in')
        if expires_in is not None:
            try:
                expires_at = utc_now() + timedelta(seconds=float(expires_in))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed expires_in: {expires_in!r}")
        if expires_at is None:
            expires_at = _expiry_from_jwt(access_token)
        if expires_at is None:
            expires_at = utc_now() + FALLBACK_TOKEN_LIFETIME

        scope = payload.get('scope') or ""
        return TokenGrant(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=payload.get('refresh_token') or "",
            token_type=payload.get('token_type') or "Bearer",
            scopes=scope.split() if isinstance(scope, str) else list(scope),
        )


def browser_command(url: str, platform: Optional[str] = None) -> List[str]:
    """
    Command line that opens ``url`` in the default browser.

    Raises:
        UnsupportedPlatformError: When no launcher is known for the platform
    """
    platform = platform or sys.platform
    if platform == 'darwin':
        return ['open', url]
    if platform.startswith(('linux', 'freebsd', 'openbsd', 'netbsd')):
        return ['xdg-open', url]
    if platform in ('win32', 'cygwin'):
        return ['rundll32', 'url.dll,FileProtocolHandler', url]
    raise UnsupportedPlatformError(platform)


def open_browser(url: str, platform: Optional[str] = None) -> None:
    """Start the platform browser launcher without waiting for it."""
    command = browser_command(url, platform)
    try:
        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL
        )
    except OSError as e:
        raise BrowserLaunchError(f"failed to run {command[0]}: {e}", cause=e)


def parse_redirect_url(raw_url: str, expected_state: str) -> str:
    """
    Extract the authorization code from a pasted redirect URL.

    The state is checked only when the URL carries one.

    Raises:
        ValidationError: When the input is empty or not a URL
        AuthorizationDeniedError: When the URL carries an OAuth error
        MissingCodeError: When the URL has no code
        StateMismatchError: When the URL's state differs from the expected one
    """
    raw_url = (raw_url or "").strip()
    if not raw_url:
        raise ValidationError("no redirect URL entered", field_name='redirect_url')

    parsed = urlparse(raw_url)
    if not parsed.query and not parsed.scheme:
        raise ValidationError(f"not a redirect URL: {raw_url!r}", field_name='redirect_url')

    query = parse_qs(parsed.query)

    def first(name: str) -> str:
        values = query.get(name) or [""]
        return values[0]

    if first('error'):
        raise AuthorizationDeniedError(first('error'), first('error_description') or None)

    code = first('code')
    if not code:
        raise MissingCodeError("no code found in the redirect URL")

    state = first('state')
    if state and state != expected_state:
        raise StateMismatchError()

    return code


@dataclass
class AuthorizeOptions:
    """Knobs of a single interactive login."""
    manual: bool = False
    force_consent: bool = False
    timeout: float = DEFAULT_FLOW_TIMEOUT
    product: str = HARVEST_PRODUCT


class AuthorizationFlow:
    """
    Interactive login orchestrator.

    Drives the consent flow, exchanges the code, looks up the user's
    accounts and picks one. The caller decides where the result is stored.
    """

    def __init__(
        self,
        oauth_client: OAuthClient,
        directory: Optional[AccountDirectoryClient] = None,
        options: Optional[AuthorizeOptions] = None,
        state_factory: Callable[[], str] = generate_state,
        browser_opener: Callable[[str], None] = open_browser,
        read_line: Callable[[], str] = input,
        output: Optional[TextIO] = None,
        callback_host: str = CALLBACK_HOST,
        callback_port: int = CALLBACK_PORT
    ):
        self.oauth_client = oauth_client
        self.directory = directory or AccountDirectoryClient()
        self.options = options or AuthorizeOptions()
        self.state_factory = state_factory
        self.browser_opener = browser_opener
        self.read_line = read_line
        self.output = output or sys.stderr
        self.callback_host = callback_host
        self.callback_port = callback_port

    def _say(self, text: str = "") -> None:
        self.output.write(text + "\n")
        self.output.flush()

    def _read_console(self, prompt: Optional[str] = None) -> str:
        """
        Read one console line on the event loop thread.

        asyncio.run turns Ctrl-C into a task cancellation, which a blocked
        read never sees, so SIGINT raises KeyboardInterrupt while waiting.
        """
        previous = None
        if threading.current_thread() is threading.main_thread():
            previous = signal.signal(signal.SIGINT, signal.default_int_handler)
        try:
            if prompt:
                self.output.write(prompt)
                self.output.flush()
            return self.read_line()
        finally:
            if previous is not None:
                signal.signal(signal.SIGINT, previous)

    def _check_credentials(self) -> None:
        credentials = self.oauth_client.credentials
        if not credentials.client_id:
            raise MissingClientCredentialsError('client_id')
        if not credentials.client_secret:
            raise MissingClientCredentialsError('client_secret')

    async def authorize(self) -> AuthorizationResult:
        """
        Run the whole login.

        Returns:
            AuthorizationResult with email, selected account and token grant
        """
        self._check_credentials()
        state = self.state_factory()

        if self.options.manual:
            code, redirect_uri = await self._authorize_manual(state)
        else:
            code, redirect_uri = await self._authorize_with_callback(state)

        return await self._finish(code, redirect_uri)

    async def _authorize_with_callback(self, state: str) -> Tuple[str, str]:
        server = CallbackServer(state, host=self.callback_host, port=self.callback_port)
        server.bind()
        try:
            await server.start()

            redirect_uri = server.redirect_uri
            auth_url = self.oauth_client.authorization_url(
                state, force_consent=self.options.force_consent, redirect_uri=redirect_uri
            )

            self._say("Opening browser for authorization...")
            self._say("If the browser doesn't open, visit this URL:")
            self._say(auth_url)
            try:
                self.browser_opener(auth_url)
            except SystemIntegrationError as e:
                logger.warning(f"Could not open browser: {e.message}")

            self._say("Waiting for authorization...")
            code = await server.wait_for_code(self.options.timeout)
        finally:
            await server.close()

        return code, redirect_uri

    async def _authorize_manual(self, state: str) -> Tuple[str, str]:
        redirect_uri = self.oauth_client.redirect_uri
        auth_url = self.oauth_client.authorization_url(
            state, force_consent=self.options.force_consent, redirect_uri=redirect_uri
        )

        self._say("Visit this URL to authorize:")
        self._say(auth_url)
        self._say()
        self._say("After authorizing, you'll be redirected to a URL that may not load.")
        self._say("Copy that URL from your browser's address bar and paste it below.")
        self._say()

        try:
            line = self._read_console("Paste redirect URL: ")
        except EOFError:
            raise ValidationError("no redirect URL entered", field_name='redirect_url')

        return parse_redirect_url(line, state), redirect_uri

    async def _finish(self, code: str, redirect_uri: str) -> AuthorizationResult:
        grant = await self.oauth_client.exchange_code(code, redirect_uri=redirect_uri)
        if not grant.refresh_token:
            raise NoRefreshTokenError()

        response = await self.directory.fetch_accounts(grant.access_token)
        if not response.accounts:
            raise SelectionError("no Harvest accounts found for this user")

        account_id = select_account(response.accounts, self.options.product, self._read_console, self.output)

        logger.info(f"Authorized {response.user.email} for account {account_id}")
        return AuthorizationResult(email=response.user.email, account_id=account_id, token=grant)
