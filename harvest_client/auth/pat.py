"""
Personal Access Token support.

A PAT is a long-lived token created in the Harvest web UI. It needs no
browser flow: it is validated once against the users endpoint and then
stored like an OAuth refresh token under the reserved "pat" client.
"""

import logging
import os
from datetime import timedelta
from typing import Mapping, Optional, Tuple

from aiohttp import ClientSession

from harvest_shared.exceptions import (
    DirectoryError, MissingRefreshTokenError, NetworkError, NotAuthenticatedError, ValidationError
)
from harvest_shared.interfaces import ICredentialStore, ITokenSource
from harvest_shared.models import AccessToken, Token, utc_now
from harvest_client.api_client import HarvestHTTPClient, error_detail

logger = logging.getLogger(__name__)

PAT_CLIENT_NAME = "pat"
ENV_TOKEN = "HARVESTCLI_TOKEN"
ENV_ACCOUNT_ID = "HARVESTCLI_ACCOUNT_ID"
USERS_ME_URL = "https://api.harvestapp.com/v2/users/me"

# PATs do not expire on a schedule the CLI can see
PAT_LIFETIME = timedelta(days=3650)


async def validate_pat(
    token: str,
    account_id: int,
    users_url: str = USERS_ME_URL,
    session: Optional[ClientSession] = None,
    timeout: float = 30.0
) -> str:
    """
    Check a PAT against the Harvest API.

    Args:
        token: Personal Access Token
        account_id: Harvest account id the token is used with
        users_url: "Who am I" endpoint

    Returns:
        The email of the token's owner

    Raises:
        DirectoryError: When the token is rejected or the answer is unusable
    """
    if not token:
        raise MissingRefreshTokenError("missing personal access token")
    if not account_id or account_id <= 0:
        raise ValidationError("account ID must be a positive integer", field_name='account_id')

    async with HarvestHTTPClient(timeout=timeout, session=session) as http:
        try:
            status, payload, text = await http.get_json(
                users_url, headers=http.bearer_headers(token, account_id)
            )
        except NetworkError as e:
            raise DirectoryError(f"failed to validate token: {e.message}", cause=e)

    if status == 401:
        raise DirectoryError("invalid token or account ID", status_code=status)
    if status == 403:
        raise DirectoryError("token lacks required permissions", status_code=status)
    if status != 200:
        raise DirectoryError(
            f"unexpected status {status}: {error_detail(payload, text)}", status_code=status
        )

    email = (payload.get('email') or "").strip() if isinstance(payload, dict) else ""
    if not email:
        raise DirectoryError("no email in user response", status_code=status)

    logger.debug(f"Personal access token belongs to {email}")
    return email


def store_pat(store: ICredentialStore, email: str, account_id: int, token: str) -> None:
    """Persist a PAT in the refresh token slot of the "pat" client."""
    store.set_token(PAT_CLIENT_NAME, email, account_id, Token(refresh_token=token))


def get_pat(store: ICredentialStore, email: str) -> Tuple[str, int]:
    """
    Load a stored PAT.

    Returns:
        Tuple of (token, account_id)

    Raises:
        NotAuthenticatedError: When no PAT is stored for the email
    """
    record = store.get_token(PAT_CLIENT_NAME, email)
    return record.refresh_token, record.account_id


def delete_pat(store: ICredentialStore, email: str) -> None:
    store.delete_token(PAT_CLIENT_NAME, email)


def get_pat_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[Tuple[str, int]]:
    """
    Read a PAT from HARVESTCLI_TOKEN / HARVESTCLI_ACCOUNT_ID.

    Returns:
        (token, account_id), or None when HARVESTCLI_TOKEN is unset

    Raises:
        ValidationError: When the token is set but the account id is missing or invalid
    """
    environ = os.environ if environ is None else environ
    token = (environ.get(ENV_TOKEN) or "").strip()
    if not token:
        return None

    raw_account = (environ.get(ENV_ACCOUNT_ID) or "").strip()
    if not raw_account:
        raise ValidationError(f"{ENV_ACCOUNT_ID} must be set when {ENV_TOKEN} is used",
                              field_name=ENV_ACCOUNT_ID)
    try:
        account_id = int(raw_account)
    except ValueError:
        raise ValidationError(f"invalid {ENV_ACCOUNT_ID}: {raw_account!r}", field_name=ENV_ACCOUNT_ID)
    if account_id <= 0:
        raise ValidationError(f"invalid {ENV_ACCOUNT_ID}: {raw_account!r}", field_name=ENV_ACCOUNT_ID)

    return token, account_id


class PATTokenSource(ITokenSource):
    """Token source that hands out a PAT with a far-future expiry."""

    def __init__(self, token: str):
        self.token = token

    async def get_token(self) -> AccessToken:
        if not self.token:
            raise NotAuthenticatedError("no personal access token")
        return AccessToken(access_token=self.token, expires_at=utc_now() + PAT_LIFETIME)

    async def invalidate(self) -> None:
        # Nothing cached; a PAT cannot be refreshed
        return None
