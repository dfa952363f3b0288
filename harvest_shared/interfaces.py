"""
Core interfaces for the Harvest CLI authentication subsystem.

This module defines the abstract interfaces that secret backends, credential
stores and token sources must implement so implementations stay
interchangeable (native keyring, plaintext file, in-memory test double).
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import Token, AccessToken


class ISecretBackend(ABC):
    """Interface for raw key/value secret storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Create or replace a value."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a value; returns False when the key was absent."""
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """List every stored key."""
        pass


class ICredentialStore(ABC):
    """Interface for refresh credential persistence keyed by (client, email)."""

    @abstractmethod
    def set_token(self, client: str, email: str, account_id: int, token: Token) -> None:
        """Persist a refresh credential."""
        pass

    @abstractmethod
    def get_token(self, client: str, email: str) -> Token:
        """Load a refresh credential or raise NotAuthenticatedError."""
        pass

    @abstractmethod
    def delete_token(self, client: str, email: str) -> None:
        """Remove a refresh credential; absent keys are ignored."""
        pass

    @abstractmethod
    def list_tokens(self) -> List[Token]:
        """List every stored credential."""
        pass


class ITokenSource(ABC):
    """Interface for anything that can hand out bearer access tokens."""

    @abstractmethod
    async def get_token(self) -> AccessToken:
        """Return a usable access token."""
        pass

    @abstractmethod
    async def invalidate(self) -> None:
        """Forget any cached access token."""
        pass
