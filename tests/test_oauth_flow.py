"""
Tests for the OAuth client, redirect parsing, browser launching and the
interactive authorization flow.
"""

import asyncio
import io
import signal
import socket
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from jose import jwt

from harvest_client.auth.accounts import AccountDirectoryClient
from harvest_client.auth.callback_server import CallbackServer
from harvest_client.auth.oauth import (
    AuthorizationFlow, AuthorizeOptions, OAuthClient, browser_command, generate_state,
    open_browser, parse_redirect_url
)
from harvest_shared.exceptions import (
    AuthorizationDeniedError, AuthorizationTimeoutError, BrowserLaunchError, CallbackListenError,
    ExchangeError, MissingClientCredentialsError, MissingCodeError, NoRefreshTokenError,
    SelectionError, StateMismatchError, UnsupportedPlatformError, ValidationError
)
from harvest_shared.models import Account, AccountsResponse, ClientCredentials, TokenGrant, User

CREDENTIALS = ClientCredentials(client_id="client-1", client_secret="secret-1")


def token_app(status=200, payload=None):
    forms = []

    async def token(request):
        forms.append(dict(await request.post()))
        return web.json_response(payload, status=status)

    app = web.Application()
    app.router.add_post("/oauth2/token", token)
    return app, forms


class TestAuthorizationURL:
    """Test the consent URL."""

    def test_parameters(self):
        client = OAuthClient(CREDENTIALS, auth_url="https://id.example.com/oauth2/authorize")

        url = client.authorization_url("state-1", redirect_uri="http://localhost:9999/oauth/callback")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.netloc == "id.example.com"
        assert params == {
            'client_id': ["client-1"],
            'redirect_uri': ["http://localhost:9999/oauth/callback"],
            'response_type': ["code"],
            'state': ["state-1"],
            'access_type': ["offline"],
        }

    def test_force_consent(self):
        client = OAuthClient(CREDENTIALS)
        params = parse_qs(urlparse(client.authorization_url("s", force_consent=True)).query)
        assert params['prompt'] == ["consent"]

    def test_default_redirect_uri(self):
        client = OAuthClient(CREDENTIALS)
        params = parse_qs(urlparse(client.authorization_url("s")).query)
        assert params['redirect_uri'] == ["http://localhost:8484/oauth/callback"]

    def test_configured_redirect_uri(self):
        credentials = ClientCredentials("id", "secret", redirect_uri="http://127.0.0.1:7000/cb")
        assert OAuthClient(credentials).redirect_uri == "http://127.0.0.1:7000/cb"

    def test_state_is_random(self):
        first, second = generate_state(), generate_state()
        assert first != second
        assert len(first) >= 43


class TestTokenGrants:
    """Test the token endpoint client."""

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        app, forms = token_app(payload={
            'access_token': "at-1", 'refresh_token': "rt-1", 'expires_in': 3600,
            'token_type': "bearer", 'scope': "harvest:all"
        })
        async with TestServer(app) as server:
            client = OAuthClient(CREDENTIALS, token_url=str(server.make_url("/oauth2/token")))
            before = datetime.now(timezone.utc)
            grant = await client.exchange_code("code-1", redirect_uri="http://localhost:1/cb")

        assert forms == [{
            'grant_type': "authorization_code",
            'code': "code-1",
            'redirect_uri': "http://localhost:1/cb",
            'client_id': "client-1",
            'client_secret': "secret-1",
        }]
        assert grant.access_token == "at-1"
        assert grant.refresh_token == "rt-1"
        assert grant.scopes == ["harvest:all"]
        assert before + timedelta(seconds=3590) < grant.expires_at < before + timedelta(seconds=3700)

    @pytest.mark.asyncio
    async def test_refresh(self):
        app, forms = token_app(payload={'access_token': "at-2", 'expires_in': 600})
        async with TestServer(app) as server:
            client = OAuthClient(CREDENTIALS, token_url=str(server.make_url("/oauth2/token")))
            grant = await client.refresh("rt-1")

        assert forms[0]['grant_type'] == "refresh_token"
        assert forms[0]['refresh_token'] == "rt-1"
        assert forms[0]['client_secret'] == "secret-1"
        assert grant.refresh_token == ""

    @pytest.mark.asyncio
    async def test_expiry_from_jwt_claim(self):
        exp = int(time.time()) + 7200
        access_token = jwt.encode({'exp': exp, 'sub': "user"}, "signing-key", algorithm="HS256")
        app, _ = token_app(payload={'access_token': access_token, 'refresh_token': "rt"})
        async with TestServer(app) as server:
            client = OAuthClient(CREDENTIALS, token_url=str(server.make_url("/oauth2/token")))
            grant = await client.exchange_code("code")

        assert grant.expires_at == datetime.fromtimestamp(exp, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_expiry_fallback(self):
        app, _ = token_app(payload={'access_token': "opaque", 'refresh_token': "rt"})
        async with TestServer(app) as server:
            client = OAuthClient(CREDENTIALS, token_url=str(server.make_url("/oauth2/token")))
            before = datetime.now(timezone.utc)
            grant = await client.exchange_code("code")

        assert before + timedelta(minutes=59) < grant.expires_at < before + timedelta(minutes=61)

    @pytest.mark.asyncio
    async def test_rejected_grant(self):
        app, _ = token_app(status=400, payload={'error': "invalid_grant", 'error_description': "bad code"})
        async with TestServer(app) as server:
            client = OAuthClient(CREDENTIALS, token_url=str(server.make_url("/oauth2/token")))
            with pytest.raises(ExchangeError) as exc_info:
                await client.exchange_code("code")

        assert exc_info.value.status_code == 400
        assert exc_info.value.oauth_error == "invalid_grant"
        assert "bad code" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_access_token(self):
        app, _ = token_app(payload={'refresh_token': "rt"})
        async with TestServer(app) as server:
            client = OAuthClient(CREDENTIALS, token_url=str(server.make_url("/oauth2/token")))
            with pytest.raises(ExchangeError):
                await client.refresh("rt")

    @pytest.mark.asyncio
    async def test_unreachable_token_endpoint(self, unused_tcp_port):
        client = OAuthClient(CREDENTIALS, token_url=f"http://127.0.0.1:{unused_tcp_port}/token", timeout=2.0)
        with pytest.raises(ExchangeError):
            await client.refresh("rt")


class TestParseRedirectURL:
    """Test manual-mode redirect parsing."""

    def test_code_and_matching_state(self):
        url = "http://localhost:8484/oauth/callback?code=abc&state=s1"
        assert parse_redirect_url(url, "s1") == "abc"

    def test_state_is_optional(self):
        assert parse_redirect_url("http://localhost:8484/oauth/callback?code=abc", "s1") == "abc"

    def test_state_mismatch(self):
        with pytest.raises(StateMismatchError):
            parse_redirect_url("http://localhost/cb?code=abc&state=other", "s1")

    def test_denied(self):
        with pytest.raises(AuthorizationDeniedError):
            parse_redirect_url("http://localhost/cb?error=access_denied&state=s1", "s1")

    def test_missing_code(self):
        with pytest.raises(MissingCodeError):
            parse_redirect_url("http://localhost/cb?state=s1", "s1")

    @pytest.mark.parametrize("raw", ["", "   ", "just some words"])
    def test_not_a_url(self, raw):
        with pytest.raises(ValidationError):
            parse_redirect_url(raw, "s1")


class TestBrowserCommand:
    """Test platform browser launchers."""

    URL = "https://id.example.com/oauth2/authorize?a=1&b=2"

    @pytest.mark.parametrize("platform,expected", [
        ("darwin", ["open"]),
        ("linux", ["xdg-open"]),
        ("freebsd13", ["xdg-open"]),
        ("win32", ["rundll32", "url.dll,FileProtocolHandler"]),
    ])
    def test_platforms(self, platform, expected):
        assert browser_command(self.URL, platform) == expected + [self.URL]

    def test_unsupported_platform(self):
        with pytest.raises(UnsupportedPlatformError):
            browser_command(self.URL, "plan9")

    def test_launch_failure(self):
        with patch("harvest_client.auth.oauth.subprocess.Popen", side_effect=FileNotFoundError("xdg-open")):
            with pytest.raises(BrowserLaunchError):
                open_browser(self.URL, "linux")

    def test_launch_does_not_wait(self):
        with patch("harvest_client.auth.oauth.subprocess.Popen") as popen:
            open_browser(self.URL, "darwin")

        popen.assert_called_once()
        assert popen.call_args[0][0] == ["open", self.URL]
        popen.return_value.wait.assert_not_called()


class FakeOAuthClient(OAuthClient):
    """OAuth client whose code exchange is answered locally."""

    def __init__(self, credentials=CREDENTIALS, grant=None):
        super().__init__(credentials, auth_url="https://id.example.com/oauth2/authorize")
        self.grant = grant or TokenGrant(
            access_token="at-1",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            refresh_token="rt-1"
        )
        self.exchanges = []

    async def exchange_code(self, code, redirect_uri=None):
        self.exchanges.append((code, redirect_uri))
        return self.grant


class FakeDirectory(AccountDirectoryClient):
    """Account directory with a fixed answer."""

    def __init__(self, accounts=None):
        super().__init__()
        self.accounts = [Account(100, "Acme", "harvest")] if accounts is None else accounts
        self.tokens = []

    async def fetch_accounts(self, access_token):
        self.tokens.append(access_token)
        return AccountsResponse(user=User(id=1, email="ada@example.com"), accounts=self.accounts)


class FakeBrowser:
    """Browser that follows the consent URL and redirects straight back."""

    def __init__(self, **overrides):
        self.overrides = overrides
        self.urls = []
        self.port = None
        self.tasks = []

    def __call__(self, url):
        self.urls.append(url)
        params = {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}
        redirect = urlparse(params['redirect_uri'])
        self.port = redirect.port
        query = {'code': "code-1", 'state': params['state']}
        query.update(self.overrides)
        query = {key: value for key, value in query.items() if value is not None}
        target = f"http://127.0.0.1:{redirect.port}{redirect.path}"
        self.tasks.append(asyncio.get_running_loop().create_task(self._visit(target, query)))

    @staticmethod
    async def _visit(target, query):
        async with aiohttp.ClientSession() as session:
            async with session.get(target, params=query) as response:
                return response.status


async def assert_port_released(port):
    server = CallbackServer("s", port=port)
    server.bind()
    await server.close()


def make_flow(oauth=None, directory=None, browser=None, **options):
    return AuthorizationFlow(
        oauth or FakeOAuthClient(),
        directory=directory or FakeDirectory(),
        options=AuthorizeOptions(**options),
        browser_opener=browser or FakeBrowser(),
        output=io.StringIO(),
        callback_port=0
    )


class TestAuthorizationFlowWithCallback:
    """Test the browser and local callback login."""

    @pytest.mark.asyncio
    async def test_happy_path(self):
        oauth = FakeOAuthClient()
        directory = FakeDirectory()
        browser = FakeBrowser()
        flow = make_flow(oauth, directory, browser, timeout=5.0)

        result = await flow.authorize()

        assert result.email == "ada@example.com"
        assert result.account_id == 100
        assert result.token.refresh_token == "rt-1"
        assert oauth.exchanges == [("code-1", f"http://localhost:{browser.port}/oauth/callback")]
        assert directory.tokens == ["at-1"]
        await asyncio.gather(*browser.tasks, return_exceptions=True)
        await assert_port_released(browser.port)

    @pytest.mark.asyncio
    async def test_url_printed(self):
        browser = FakeBrowser()
        flow = make_flow(browser=browser, timeout=5.0)

        await flow.authorize()

        assert browser.urls[0] in flow.output.getvalue()

    @pytest.mark.asyncio
    async def test_force_consent(self):
        browser = FakeBrowser()
        await make_flow(browser=browser, timeout=5.0, force_consent=True).authorize()
        assert "prompt=consent" in browser.urls[0]

    @pytest.mark.asyncio
    async def test_browser_failure_is_not_fatal(self):
        browser = FakeBrowser()

        def failing_browser(url):
            browser(url)
            raise BrowserLaunchError("no browser")

        result = await make_flow(browser=failing_browser, timeout=5.0).authorize()

        assert result.account_id == 100

    @pytest.mark.asyncio
    async def test_denied(self):
        browser = FakeBrowser(error="access_denied", code=None)
        with pytest.raises(AuthorizationDeniedError):
            await make_flow(browser=browser, timeout=5.0).authorize()
        await assert_port_released(browser.port)

    @pytest.mark.asyncio
    async def test_state_mismatch(self):
        browser = FakeBrowser(state="forged")
        oauth = FakeOAuthClient()
        with pytest.raises(StateMismatchError):
            await make_flow(oauth, browser=browser, timeout=5.0).authorize()
        assert oauth.exchanges == []

    @pytest.mark.asyncio
    async def test_timeout_closes_listener(self):
        ports = []

        def idle_browser(url):
            ports.append(urlparse(parse_qs(urlparse(url).query)['redirect_uri'][0]).port)

        with pytest.raises(AuthorizationTimeoutError):
            await make_flow(browser=idle_browser, timeout=0.05).authorize()
        await assert_port_released(ports[0])

    @pytest.mark.asyncio
    async def test_busy_port(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        opened = []
        try:
            flow = make_flow(browser=opened.append)
            flow.callback_port = blocker.getsockname()[1]
            with pytest.raises(CallbackListenError):
                await flow.authorize()
        finally:
            blocker.close()

        assert opened == []

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self):
        opened = []
        oauth = FakeOAuthClient(credentials=ClientCredentials(client_id="id", client_secret=""))
        with pytest.raises(MissingClientCredentialsError):
            await make_flow(oauth, browser=opened.append).authorize()
        assert opened == []

    @pytest.mark.asyncio
    async def test_no_refresh_token(self):
        oauth = FakeOAuthClient(grant=TokenGrant(
            access_token="at", expires_at=datetime.now(timezone.utc) + timedelta(hours=1)
        ))
        directory = FakeDirectory()
        with pytest.raises(NoRefreshTokenError) as exc_info:
            await make_flow(oauth, directory, timeout=5.0).authorize()

        assert "--force-consent" in exc_info.value.message
        assert directory.tokens == []

    @pytest.mark.asyncio
    async def test_no_accounts(self):
        with pytest.raises(SelectionError):
            await make_flow(directory=FakeDirectory(accounts=[]), timeout=5.0).authorize()


class TestAuthorizationFlowManual:
    """Test the paste-the-redirect login."""

    def make_manual_flow(self, lines, oauth=None, directory=None):
        answers = iter(lines)

        def read_line():
            answer = next(answers, None)
            if answer is None:
                raise EOFError()
            return answer

        opened = []
        flow = AuthorizationFlow(
            oauth or FakeOAuthClient(),
            directory=directory or FakeDirectory(),
            options=AuthorizeOptions(manual=True),
            state_factory=lambda: "fixed-state",
            browser_opener=opened.append,
            read_line=read_line,
            output=io.StringIO()
        )
        return flow, opened

    @pytest.mark.asyncio
    async def test_manual_login(self):
        oauth = FakeOAuthClient()
        flow, opened = self.make_manual_flow(
            ["http://localhost:8484/oauth/callback?code=pasted&state=fixed-state"], oauth=oauth
        )

        result = await flow.authorize()

        assert result.account_id == 100
        assert oauth.exchanges == [("pasted", "http://localhost:8484/oauth/callback")]
        assert opened == []
        assert "Paste redirect URL" in flow.output.getvalue()

    @pytest.mark.asyncio
    async def test_manual_state_mismatch(self):
        flow, _ = self.make_manual_flow(["http://localhost:8484/oauth/callback?code=c&state=other"])
        with pytest.raises(StateMismatchError):
            await flow.authorize()

    @pytest.mark.asyncio
    async def test_manual_eof(self):
        flow, _ = self.make_manual_flow([])
        with pytest.raises(ValidationError):
            await flow.authorize()

    @pytest.mark.asyncio
    async def test_ctrl_c_interrupts_paste_prompt(self):
        handlers = []

        def interrupted():
            handlers.append(signal.getsignal(signal.SIGINT))
            raise KeyboardInterrupt()

        flow, _ = self.make_manual_flow([])
        flow.read_line = interrupted
        previous = signal.getsignal(signal.SIGINT)

        with pytest.raises(KeyboardInterrupt):
            await flow.authorize()

        assert handlers == [signal.default_int_handler]
        assert signal.getsignal(signal.SIGINT) is previous

    @pytest.mark.asyncio
    async def test_manual_account_prompt(self):
        directory = FakeDirectory(accounts=[Account(1, "A", "harvest"), Account(2, "B", "harvest")])
        flow, _ = self.make_manual_flow(
            ["http://localhost:8484/oauth/callback?code=c&state=fixed-state", "2"], directory=directory
        )

        result = await flow.authorize()

        assert result.account_id == 2
