"""
Tests for Personal Access Token validation and storage.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from harvest_client.auth.backends import MemorySecretBackend
from harvest_client.auth.pat import delete_pat, get_pat, get_pat_from_env, store_pat, validate_pat
from harvest_client.auth.token_storage import SecureTokenStorage
from harvest_shared.exceptions import (
    DirectoryError, MissingRefreshTokenError, NotAuthenticatedError, ValidationError
)


def users_app(status=200, payload=None):
    seen = {}

    async def me(request):
        seen.update(request.headers)
        return web.json_response(payload or {"id": 1, "email": "ada@example.com"}, status=status)

    app = web.Application()
    app.router.add_get("/v2/users/me", me)
    return app, seen


class TestValidatePAT:
    """Test PAT validation against the users endpoint."""

    @pytest.mark.asyncio
    async def test_valid_token(self):
        app, seen = users_app()
        async with TestServer(app) as server:
            email = await validate_pat("pat-1", 100, users_url=str(server.make_url("/v2/users/me")))

        assert email == "ada@example.com"
        assert seen["Authorization"] == "Bearer pat-1"
        assert seen["Harvest-Account-Id"] == "100"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,message", [
        (401, "invalid token or account ID"),
        (403, "token lacks required permissions"),
        (500, "unexpected status 500"),
    ])
    async def test_rejected(self, status, message):
        app, _ = users_app(status=status, payload={"message": "nope"})
        async with TestServer(app) as server:
            with pytest.raises(DirectoryError) as exc_info:
                await validate_pat("pat-1", 100, users_url=str(server.make_url("/v2/users/me")))

        assert message in exc_info.value.message
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_missing_email(self):
        app, _ = users_app(payload={"id": 1, "email": ""})
        async with TestServer(app) as server:
            with pytest.raises(DirectoryError):
                await validate_pat("pat-1", 100, users_url=str(server.make_url("/v2/users/me")))

    @pytest.mark.asyncio
    async def test_empty_token(self):
        with pytest.raises(MissingRefreshTokenError):
            await validate_pat("", 100, users_url="http://127.0.0.1:1/unused")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account_id", [0, -1])
    async def test_bad_account(self, account_id):
        with pytest.raises(ValidationError):
            await validate_pat("pat-1", account_id, users_url="http://127.0.0.1:1/unused")


class TestStoredPAT:
    """Test PAT persistence under the reserved client."""

    def test_store_get_delete(self):
        store = SecureTokenStorage(MemorySecretBackend())

        store_pat(store, "Ada@Example.com", 100, "pat-1")
        assert get_pat(store, "ada@example.com") == ("pat-1", 100)
        assert store.get_token("pat", "ada@example.com").refresh_token == "pat-1"

        delete_pat(store, "ada@example.com")
        with pytest.raises(NotAuthenticatedError):
            get_pat(store, "ada@example.com")

    def test_separate_from_oauth_tokens(self):
        store = SecureTokenStorage(MemorySecretBackend())
        store_pat(store, "ada@example.com", 100, "pat-1")
        with pytest.raises(NotAuthenticatedError):
            store.get_token("", "ada@example.com")


class TestPATFromEnvironment:
    """Test HARVESTCLI_TOKEN / HARVESTCLI_ACCOUNT_ID parsing."""

    def test_unset(self):
        assert get_pat_from_env({}) is None
        assert get_pat_from_env({'HARVESTCLI_TOKEN': "  "}) is None

    def test_set(self):
        environ = {'HARVESTCLI_TOKEN': "pat-1", 'HARVESTCLI_ACCOUNT_ID': " 42 "}
        assert get_pat_from_env(environ) == ("pat-1", 42)

    @pytest.mark.parametrize("account", [None, "", "abc", "0", "-3"])
    def test_invalid_account(self, account):
        environ = {'HARVESTCLI_TOKEN': "pat-1"}
        if account is not None:
            environ['HARVESTCLI_ACCOUNT_ID'] = account
        with pytest.raises(ValidationError):
            get_pat_from_env(environ)

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("HARVESTCLI_TOKEN", "pat-env")
        monkeypatch.setenv("HARVESTCLI_ACCOUNT_ID", "7")
        assert get_pat_from_env() == ("pat-env", 7)
