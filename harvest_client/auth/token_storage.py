"""
Secure Token Storage for the Harvest CLI.

This module persists OAuth refresh tokens (and Personal Access Tokens) keyed
by OAuth client name and email. Values go through a pluggable secret backend:
the system keyring when available, a permission-protected file otherwise.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional, List, Tuple

from harvest_shared.exceptions import (
    InvalidClientNameError, InvalidTokenKeyError, MissingAccountIDError,
    MissingEmailError, MissingRefreshTokenError, NotAuthenticatedError, TokenStorageError
)
from harvest_shared.interfaces import ICredentialStore, ISecretBackend
from harvest_shared.models import Token, utc_now
from harvest_client.auth.backends import DEFAULT_KEYRING_TIMEOUT, open_backend

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "default"
TOKEN_KEY_PREFIX = "token:"

_CLIENT_NAME_PATTERN = re.compile(r'^[a-z0-9._-]+$')


def normalize_client_name(raw: Optional[str]) -> str:
    """
    Normalize an OAuth client name.

    Args:
        raw: Client name as typed by the user or read from config

    Returns:
        Lowercased, trimmed name; "default" when empty

    Raises:
        InvalidClientNameError: When the name has characters outside [a-z0-9._-]
    """
    name = (raw or "").strip().lower()
    if not name:
        return DEFAULT_CLIENT_NAME
    if not _CLIENT_NAME_PATTERN.match(name):
        raise InvalidClientNameError(name)
    return name


def normalize_email(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


def token_key(client: str, email: str) -> str:
    """Build the store key for a (client, email) pair."""
    return f"{TOKEN_KEY_PREFIX}{normalize_client_name(client)}:{normalize_email(email)}"


def legacy_token_key(email: str) -> str:
    """Key layout written before per-client tokens existed."""
    return f"{TOKEN_KEY_PREFIX}{normalize_email(email)}"


def parse_token_key(key: str) -> Tuple[str, str]:
    """
    Split a store key into (client, email).

    Accepts ``token:<client>:<email>`` and the legacy ``token:<email>``,
    which belongs to the default client.

    Raises:
        InvalidTokenKeyError: For anything else
    """
    if not key.startswith(TOKEN_KEY_PREFIX):
        raise InvalidTokenKeyError(key)

    parts = key[len(TOKEN_KEY_PREFIX):].split(':')
    if len(parts) == 1 and parts[0]:
        return DEFAULT_CLIENT_NAME, parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise InvalidTokenKeyError(key)


class SecureTokenStorage(ICredentialStore):
    """
    Credential store for refresh tokens.

    Every record is identified by (client, email). Client names are
    normalized and validated, emails lowercased, and the record value is
    a JSON document holding the refresh token, account id, scopes and
    creation time.
    """

    def __init__(self, backend: ISecretBackend):
        self.backend = backend
        logger.debug(f"Token storage initialized (backend: {type(backend).__name__})")

    def set_token(self, client: str, email: str, account_id: int, token: Token) -> None:
        """
        Store a refresh token.

        Args:
            client: OAuth client name ("" for the default client)
            email: Email of the authenticated user
            account_id: Harvest account the token is used with
            token: Token record; refresh_token is required

        Raises:
            MissingEmailError, MissingRefreshTokenError, MissingAccountIDError:
                When a required field is empty
            TokenStorageError: When the backend fails
        """
        client = normalize_client_name(client)
        email = normalize_email(email)

        if not email:
            raise MissingEmailError()
        if not token.refresh_token:
            raise MissingRefreshTokenError()
        if not account_id or account_id <= 0:
            raise MissingAccountIDError()

        record = Token(
            refresh_token=token.refresh_token,
            account_id=account_id,
            email=email,
            client=client,
            scopes=list(token.scopes),
            created_at=token.created_at or utc_now(),
        )
        self.backend.set(token_key(client, email), json.dumps(record.to_dict()))

        logger.info(f"Token stored for {email} (client: {client})")

    def get_token(self, client: str, email: str) -> Token:
        """
        Load a refresh token.

        Raises:
            NotAuthenticatedError: When nothing is stored for (client, email)
        """
        client = normalize_client_name(client)
        email = normalize_email(email)
        if not email:
            raise MissingEmailError()

        raw = self.backend.get(token_key(client, email))
        if raw is None and client == DEFAULT_CLIENT_NAME:
            raw = self.backend.get(legacy_token_key(email))
        if raw is None:
            raise NotAuthenticatedError(f"no stored credentials for {email} (client: {client})")

        try:
            return self._decode(raw, client, email)
        except (ValueError, TypeError) as e:
            raise TokenStorageError(f"stored credentials for {email} are unreadable: {e}", cause=e)

    def delete_token(self, client: str, email: str) -> None:
        """Remove a refresh token; removing an absent token is not an error."""
        client = normalize_client_name(client)
        email = normalize_email(email)
        if not email:
            raise MissingEmailError()

        removed = self.backend.delete(token_key(client, email))
        if client == DEFAULT_CLIENT_NAME:
            removed = self.backend.delete(legacy_token_key(email)) or removed

        if removed:
            logger.info(f"Token removed for {email} (client: {client})")
        else:
            logger.debug(f"No token to remove for {email} (client: {client})")

    def list_tokens(self) -> List[Token]:
        """
        List every stored token.

        Keys outside the token namespace are ignored; malformed keys and
        unreadable values are skipped with a warning.
        """
        tokens = []
        for key in self.backend.keys():
            if not key.startswith(TOKEN_KEY_PREFIX):
                continue
            try:
                client, email = parse_token_key(key)
            except InvalidTokenKeyError:
                logger.warning(f"Skipping malformed credential key {key!r}")
                continue

            raw = self.backend.get(key)
            if raw is None:
                continue
            try:
                tokens.append(self._decode(raw, client, email))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable credential {key!r}: {e}")

        return tokens

    @staticmethod
    def _decode(raw: str, client: str, email: str) -> Token:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("stored credential is not a JSON object")
        return Token.from_dict(data, client=client, email=email)


def open_store(
    backend_name: str = "",
    keyring_dir: Optional[Path] = None,
    keyring_timeout: float = DEFAULT_KEYRING_TIMEOUT
) -> SecureTokenStorage:
    """Open the credential store on the backend chosen by the selection policy."""
    backend = open_backend(backend_name, file_directory=keyring_dir, timeout=keyring_timeout)
    return SecureTokenStorage(backend)
