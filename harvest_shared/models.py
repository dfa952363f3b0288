"""
Core data models for the Harvest CLI authentication subsystem.

This module defines the records exchanged between the credential store,
the token endpoint client, the account directory and the login flow.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Token:
    """
    A persisted refresh credential.

    Client and email identify the record and are encoded in the store key;
    the remaining fields are serialized as the stored value.
    """
    refresh_token: str = ""
    account_id: int = 0
    email: str = ""
    client: str = ""
    scopes: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the stored value (client and email live in the key)."""
        return {
            'refresh_token': self.refresh_token,
            'account_id': self.account_id,
            'scopes': list(self.scopes),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], client: str = "", email: str = "") -> 'Token':
        """Create a Token from a stored value."""
        return cls(
            refresh_token=data.get('refresh_token') or "",
            account_id=int(data.get('account_id') or 0),
            email=email or data.get('email') or "",
            client=client or data.get('client') or "",
            scopes=list(data.get('scopes') or []),
            created_at=_parse_timestamp(data.get('created_at')),
        )


@dataclass
class Account:
    """A Harvest (or Forecast) account the user can access."""
    id: int
    name: str
    product: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=int(data['id']),
            name=data.get('name') or "",
            product=data.get('product') or "",
        )


@dataclass
class User:
    """The authenticated Harvest user."""
    id: int = 0
    first_name: str = ""
    last_name: str = ""
    email: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        return cls(
            id=int(data.get('id') or 0),
            first_name=data.get('first_name') or "",
            last_name=data.get('last_name') or "",
            email=data.get('email') or "",
        )


@dataclass
class AccountsResponse:
    """Response of the accounts directory endpoint."""
    user: User
    accounts: List[Account] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountsResponse':
        return cls(
            user=User.from_dict(data.get('user') or {}),
            accounts=[Account.from_dict(item) for item in data.get('accounts') or []],
        )


@dataclass
class TokenGrant:
    """What the token endpoint returned for a grant."""
    access_token: str
    expires_at: datetime
    refresh_token: str = ""
    token_type: str = "Bearer"
    scopes: List[str] = field(default_factory=list)


@dataclass
class AccessToken:
    """An in-memory access credential with its absolute expiry."""
    access_token: str
    expires_at: datetime

    def is_valid(self, margin: timedelta = timedelta(0), now: Optional[datetime] = None) -> bool:
        """True when the credential outlives ``now + margin``."""
        now = now or utc_now()
        return bool(self.access_token) and self.expires_at > now + margin


@dataclass
class ClientCredentials:
    """OAuth client registration stored per client name."""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'client_id': self.client_id, 'client_secret': self.client_secret}
        if self.redirect_uri:
            data['redirect_uri'] = self.redirect_uri
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientCredentials':
        return cls(
            client_id=(data.get('client_id') or "").strip(),
            client_secret=(data.get('client_secret') or "").strip(),
            redirect_uri=data.get('redirect_uri') or None,
        )


@dataclass
class AuthorizationResult:
    """Outcome of a completed interactive login."""
    email: str
    account_id: int
    token: TokenGrant
