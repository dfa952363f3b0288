"""
Token Manager for the Harvest CLI.

This module keeps a short-lived access token in memory and refreshes it
from the stored refresh token when it is missing or about to expire. It
also decides which credential an API call should use: a PAT from the
environment, a stored PAT, or a stored OAuth refresh token.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Mapping, Optional

from harvest_shared.exceptions import HarvestAuthError, NotAuthenticatedError, SelectionError
from harvest_shared.interfaces import ICredentialStore, ITokenSource
from harvest_shared.models import AccessToken, ClientCredentials
from harvest_client.config import ClientConfiguration
from harvest_client.auth.oauth import OAuthClient, TOKEN_URL
from harvest_client.auth.pat import PAT_CLIENT_NAME, PATTokenSource, get_pat_from_env
from harvest_client.auth.token_storage import normalize_client_name, normalize_email

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(seconds=30)


class TokenManager(ITokenSource):
    """
    Lazily refreshed access token for one stored identity.

    All reads, refreshes and invalidations go through a single asyncio.Lock
    that is held for the whole refresh, network round trip included, so
    concurrent callers wait for the refresh in progress.
    """

    def __init__(
        self,
        store: ICredentialStore,
        email: str,
        client: str = "",
        oauth_client: Optional[OAuthClient] = None,
        credentials_loader: Optional[Callable[[str], ClientCredentials]] = None,
        token_url: str = TOKEN_URL,
        refresh_margin: timedelta = REFRESH_MARGIN
    ):
        self.store = store
        self.email = normalize_email(email)
        self.client = normalize_client_name(client)
        self.oauth_client = oauth_client
        self.credentials_loader = credentials_loader
        self.token_url = token_url
        self.refresh_margin = refresh_margin

        self._lock = asyncio.Lock()
        self._cached: Optional[AccessToken] = None

    def _oauth(self) -> OAuthClient:
        if self.oauth_client is None:
            loader = self.credentials_loader
            if loader is None:
                loader = ClientConfiguration().read_client_credentials
            self.oauth_client = OAuthClient(loader(self.client), token_url=self.token_url)
        return self.oauth_client

    async def get_token(self) -> AccessToken:
        """
        Return a usable access token, refreshing it if needed.

        Raises:
            NotAuthenticatedError: When no refresh token is stored
            ExchangeError: When the token endpoint rejects the refresh
        """
        async with self._lock:
            if self._cached is None or not self._cached.is_valid(self.refresh_margin):
                await self._refresh()
            return self._cached

    async def invalidate(self) -> None:
        """Drop the cached access token; the next call refreshes."""
        async with self._lock:
            self._cached = None

    async def authorization_header(self) -> Dict[str, str]:
        token = await self.get_token()
        return {'Authorization': f'Bearer {token.access_token}'}

    async def _refresh(self) -> None:
        # Store calls block (keyring may wait on an unlock prompt)
        record = await asyncio.to_thread(self.store.get_token, self.client, self.email)
        if not record.refresh_token:
            raise NotAuthenticatedError(f"no refresh token stored for {self.email}")

        logger.debug(f"Refreshing access token for {self.email} (client: {self.client})")
        grant = await self._oauth().refresh(record.refresh_token)

        self._cached = AccessToken(access_token=grant.access_token, expires_at=grant.expires_at)

        if grant.refresh_token and grant.refresh_token != record.refresh_token:
            record.refresh_token = grant.refresh_token
            try:
                await asyncio.to_thread(
                    self.store.set_token, self.client, self.email, record.account_id, record
                )
                logger.debug("Stored rotated refresh token")
            except HarvestAuthError as e:
                logger.warning(f"Failed to persist rotated refresh token: {e.message}")


@dataclass
class ResolvedTokenSource:
    """Token source for an API call and the account it applies to."""
    source: ITokenSource
    email: str
    account_id: int
    method: str


def resolve_email(store: ICredentialStore, email: Optional[str] = None,
                  default_account: Optional[str] = None) -> str:
    """
    Decide which stored identity to use.

    An explicit email wins, then the configured default account, then the
    only stored identity.

    Raises:
        NotAuthenticatedError: When nothing is stored
        SelectionError: When several identities are stored and none was chosen
    """
    for candidate in (email, default_account):
        if candidate and candidate.strip():
            return normalize_email(candidate)

    emails = sorted({token.email for token in store.list_tokens()})
    if not emails:
        raise NotAuthenticatedError("no stored credentials")
    if len(emails) > 1:
        raise SelectionError(
            "multiple accounts stored; pass --email or run 'harvest auth switch EMAIL': " + ", ".join(emails)
        )
    return emails[0]


def resolve_token_source(
    store: ICredentialStore,
    email: Optional[str] = None,
    client: str = "",
    account_id: Optional[int] = None,
    default_account: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    credentials_loader: Optional[Callable[[str], ClientCredentials]] = None,
    token_url: str = TOKEN_URL
) -> ResolvedTokenSource:
    """
    Pick the credential for an API call.

    Priority: PAT from the environment, then a stored PAT, then the stored
    OAuth refresh token. ``account_id`` overrides the stored account.
    """
    env_pat = get_pat_from_env(environ)
    if env_pat is not None:
        token, env_account = env_pat
        logger.debug("Using personal access token from environment")
        return ResolvedTokenSource(PATTokenSource(token), normalize_email(email), account_id or env_account, "env")

    resolved_email = resolve_email(store, email, default_account)

    try:
        record = store.get_token(PAT_CLIENT_NAME, resolved_email)
    except NotAuthenticatedError:
        record = None
    if record is not None and record.refresh_token:
        logger.debug(f"Using stored personal access token for {resolved_email}")
        return ResolvedTokenSource(
            PATTokenSource(record.refresh_token), resolved_email, account_id or record.account_id, "pat"
        )

    record = store.get_token(client, resolved_email)
    manager = TokenManager(
        store, resolved_email, client=client,
        credentials_loader=credentials_loader, token_url=token_url
    )
    return ResolvedTokenSource(manager, resolved_email, account_id or record.account_id, "oauth")
