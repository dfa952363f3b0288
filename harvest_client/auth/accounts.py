"""
Account directory lookups and account selection.

After a login the CLI needs to know who the user is and which Harvest
account the credentials should be used with. This module calls the
accounts endpoint of Harvest ID and implements the selection rules.
"""

import logging
import sys
from typing import Callable, List, Optional, TextIO

from aiohttp import ClientSession

from harvest_shared.exceptions import DirectoryError, NetworkError, NotAuthenticatedError, SelectionError
from harvest_shared.models import Account, AccountsResponse
from harvest_client.api_client import HarvestHTTPClient, error_detail

logger = logging.getLogger(__name__)

ACCOUNTS_URL = "https://id.getharvest.com/api/v2/accounts"
HARVEST_PRODUCT = "harvest"


class AccountDirectoryClient:
    """Reads the authenticated user and their accounts from Harvest ID."""

    def __init__(
        self,
        accounts_url: str = ACCOUNTS_URL,
        session: Optional[ClientSession] = None,
        timeout: float = 30.0
    ):
        self.accounts_url = accounts_url
        self._session = session
        self._timeout = timeout

    async def fetch_accounts(self, access_token: str) -> AccountsResponse:
        """
        Fetch the user and account list for an access token.

        Args:
            access_token: Fresh OAuth access token

        Returns:
            AccountsResponse with the user and every accessible account

        Raises:
            NotAuthenticatedError: When no access token is given
            DirectoryError: On transport errors, non-200 answers or malformed payloads
        """
        if not access_token:
            raise NotAuthenticatedError("access token is required to list accounts")

        async with HarvestHTTPClient(timeout=self._timeout, session=self._session) as http:
            try:
                status, payload, text = await http.get_json(
                    self.accounts_url, headers=http.bearer_headers(access_token)
                )
            except NetworkError as e:
                raise DirectoryError(f"failed to fetch accounts: {e.message}", cause=e)

        if status != 200:
            raise DirectoryError(
                f"failed to fetch accounts ({status}): {error_detail(payload, text)}",
                status_code=status
            )
        if not isinstance(payload, dict):
            raise DirectoryError("failed to decode accounts response", status_code=status)

        try:
            response = AccountsResponse.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise DirectoryError(f"failed to decode accounts response: {e}", status_code=status, cause=e)

        logger.debug(f"Found {len(response.accounts)} account(s) for {response.user.email}")
        return response


def filter_accounts(accounts: List[Account], product: str = HARVEST_PRODUCT) -> List[Account]:
    """
    Keep accounts of the given product.

    The comparison ignores case. When nothing matches the unfiltered list
    is returned so users of other products can still pick an account.
    """
    wanted = product.lower()
    matching = [account for account in accounts if account.product.lower() == wanted]
    return matching or list(accounts)


def select_account(
    accounts: List[Account],
    product: str = HARVEST_PRODUCT,
    read_line: Callable[[], str] = input,
    output: Optional[TextIO] = None
) -> int:
    """
    Choose the account the credentials are bound to.

    A single candidate is chosen without asking; otherwise the candidates
    are listed and the user answers with a 1-based index.

    Raises:
        SelectionError: When there are no accounts or the answer is not a valid index
    """
    if not accounts:
        raise SelectionError("no Harvest accounts found for this user")

    candidates = filter_accounts(accounts, product)
    if len(candidates) == 1:
        return candidates[0].id

    output = output or sys.stderr
    output.write("Multiple accounts found:\n")
    for index, account in enumerate(candidates, start=1):
        output.write(f"  {index}. {account.name} (ID: {account.id}, {account.product})\n")
    output.write(f"Select account [1-{len(candidates)}]: ")
    output.flush()

    try:
        answer = read_line()
    except EOFError:
        raise SelectionError("no account selected")

    try:
        choice = int(answer.strip())
    except ValueError:
        raise SelectionError(f"invalid selection: {answer.strip()!r}")

    if choice < 1 or choice > len(candidates):
        raise SelectionError(f"invalid selection: {choice}")

    return candidates[choice - 1].id
