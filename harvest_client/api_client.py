"""
HTTP client for the Harvest identity and API endpoints.

This module provides the small amount of HTTP plumbing the authentication
subsystem needs: a managed aiohttp session, bearer/account headers and a
single request helper that decodes JSON bodies and turns transport failures
into NetworkError. Callers decide what a given status code means.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, Tuple

from aiohttp import ClientSession, ClientTimeout, ClientError

from harvest_shared.exceptions import NetworkError

logger = logging.getLogger(__name__)

USER_AGENT = "harvest-cli"


class HarvestHTTPClient:
    """
    Thin async HTTP client shared by the token, accounts and users endpoints.

    A caller may hand in an existing ClientSession; otherwise the client owns
    one and closes it on exit. Requests are never retried.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        session: Optional[ClientSession] = None,
        user_agent: str = USER_AGENT
    ):
        self.timeout = ClientTimeout(total=timeout)
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': self.user_agent, 'Accept': 'application/json'}
            )
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    @staticmethod
    def bearer_headers(access_token: str, account_id: Optional[int] = None) -> Dict[str, str]:
        """Build authorization headers for Harvest API calls."""
        headers = {'Authorization': f'Bearer {access_token}'}
        if account_id:
            headers['Harvest-Account-Id'] = str(account_id)
        return headers

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        form: Optional[Dict[str, str]] = None
    ) -> Tuple[int, Any, str]:
        """
        Perform one HTTP request.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Extra request headers
            form: Form fields sent as application/x-www-form-urlencoded

        Returns:
            Tuple of (status, decoded JSON body or None, raw body text)

        Raises:
            NetworkError: When the request could not be completed
        """
        await self._ensure_session()

        logger.debug(f"Making {method} request to {url}")
        try:
            async with self._session.request(
                method=method,
                url=url,
                headers=headers or {},
                data=form
            ) as response:
                text = await response.text()
                try:
                    payload = json.loads(text) if text else None
                except json.JSONDecodeError:
                    payload = None
                logger.debug(f"{method} {url} returned {response.status}")
                return response.status, payload, text

        except (ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Network error calling {url}: {e}")
            raise NetworkError(f"request to {url} failed: {e}", cause=e)

    async def get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Tuple[int, Any, str]:
        """GET a JSON document."""
        return await self.request('GET', url, headers=headers)

    async def post_form(self, url: str, form: Dict[str, str]) -> Tuple[int, Any, str]:
        """POST a form and decode the JSON answer."""
        return await self.request('POST', url, form=form)


def error_detail(payload: Any, text: str) -> str:
    """Pick a human readable error message out of an error response."""
    if isinstance(payload, dict):
        for key in ('error_description', 'message', 'error', 'detail'):
            value = payload.get(key)
            if value:
                return str(value)
    return (text or "").strip()[:200] or "no response body"
