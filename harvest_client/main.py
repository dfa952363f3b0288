"""
Main entry point for the Harvest CLI authentication commands.

Provides ``harvest auth setup|login|logout|switch|status|list`` on top of the
credential store, the OAuth login flow and the Personal Access Token path.
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from typing import List, Optional

from harvest_shared.exceptions import (
    ConfigurationError, HarvestAuthError, NotAuthenticatedError, SelectionError, ValidationError, handle_exception
)
from harvest_shared.logging_config import (
    AuditEventType, AuditLogger, LogFormat, LogLevel, log_structured_error, setup_logging
)
from harvest_shared.models import ClientCredentials, Token
from harvest_client.config import ClientConfiguration
from harvest_client.auth.accounts import AccountDirectoryClient
from harvest_client.auth.oauth import AuthorizationFlow, AuthorizeOptions, OAuthClient
from harvest_client.auth.pat import (
    PAT_CLIENT_NAME, delete_pat, get_pat_from_env, store_pat, validate_pat
)
from harvest_client.auth.token_manager import TokenManager, resolve_email
from harvest_client.auth.token_storage import (
    SecureTokenStorage, normalize_client_name, normalize_email, open_store
)

logger = logging.getLogger(__name__)
audit = AuditLogger()


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="harvest",
        description="Harvest command line client",
        epilog="""
Examples:
  %(prog)s auth setup CLIENT_ID                 # Register your OAuth client
  %(prog)s auth login                           # Sign in with the browser
  %(prog)s auth login --manual                  # Paste the redirect URL instead
  %(prog)s auth login --pat --account-id 12345  # Use a Personal Access Token
  %(prog)s auth switch ada@example.com          # Change the default account
  %(prog)s auth status --check                  # Verify stored credentials
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    config_group = parser.add_argument_group("Configuration")
    config_group.add_argument("--config", metavar="FILE", help="Configuration file path")
    config_group.add_argument("--keyring-backend", metavar="NAME",
                              help="Secret store: auto, keychain, secret-service, wincred or file")

    logging_group = parser.add_argument_group("Logging")
    logging_group.add_argument("--debug", action="store_true", help="Enable debug logging")
    logging_group.add_argument("--log-file", metavar="FILE", help="Also write logs to FILE")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    auth = commands.add_parser("auth", help="Manage authentication")
    auth_commands = auth.add_subparsers(dest="auth_command", metavar="ACTION")
    auth_commands.required = True

    setup = auth_commands.add_parser("setup", help="Store OAuth client credentials")
    setup.add_argument("client_id", help="OAuth client ID from the Harvest developer tools")
    setup.add_argument("--client-secret", help="OAuth client secret (prompted when omitted)")
    setup.add_argument("--client-name", default=None, help="Name for this OAuth client")
    setup.add_argument("--redirect-uri", default=None, help="Redirect URI registered for the client")

    login = auth_commands.add_parser("login", help="Sign in and store credentials")
    login.add_argument("--client-name", default=None, help="OAuth client to use")
    login.add_argument("--manual", action="store_true",
                       help="Paste the redirect URL instead of running a local callback server")
    login.add_argument("--force-consent", action="store_true",
                       help="Ask Harvest to show the consent screen again")
    login.add_argument("--timeout", type=float, default=None, metavar="SECONDS",
                       help="How long to wait for the browser callback")
    login.add_argument("--pat", nargs="?", const="", default=None, metavar="TOKEN",
                       help="Use a Personal Access Token (prompted when no value is given)")
    login.add_argument("--account-id", type=int, default=None,
                       help="Harvest account ID for --pat")

    logout = auth_commands.add_parser("logout", help="Remove stored credentials")
    logout.add_argument("--email", default=None, help="Account email (default: the only stored one)")
    logout.add_argument("--client-name", default=None, help="OAuth client whose token is removed")
    logout.add_argument("--pat", action="store_true", help="Remove the stored Personal Access Token")
    logout.add_argument("--all", action="store_true", help="Remove every stored credential")

    switch = auth_commands.add_parser("switch", help="Set the default account")
    switch.add_argument("email", help="Email of a stored account")

    status = auth_commands.add_parser("status", help="Show authentication status")
    status.add_argument("--email", default=None, help="Account email")
    status.add_argument("--client-name", default=None, help="OAuth client")
    status.add_argument("--check", action="store_true", help="Mint an access token to verify the credentials")
    status.add_argument("--json", action="store_true", help="Output in JSON format")

    list_cmd = auth_commands.add_parser("list", help="List stored credentials")
    list_cmd.add_argument("--json", action="store_true", help="Output in JSON format")

    return parser.parse_args(argv)


def configure_logging(config: ClientConfiguration, args: argparse.Namespace) -> None:
    level_name = "DEBUG" if args.debug else config.get_log_level()
    try:
        level = LogLevel(level_name)
    except ValueError:
        level = LogLevel.WARNING
    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        audit_file=config.get_audit_file()
    )


def _open_store(config: ClientConfiguration) -> SecureTokenStorage:
    return open_store(
        config.get_keyring_backend(),
        keyring_dir=config.get_keyring_dir(),
        keyring_timeout=config.get_keyring_timeout()
    )


def _client_name(args: argparse.Namespace, config: ClientConfiguration) -> str:
    return normalize_client_name(getattr(args, 'client_name', None) or config.get_client_name())


def _default_if_unset(config: ClientConfiguration, email: str) -> None:
    """Make the first signed-in identity the default account."""
    if config.get_default_account():
        return
    email = normalize_email(email)
    config.set_config('auth.default_account', email)
    try:
        config.save_configuration()
    except ConfigurationError as e:
        logger.warning(f"Could not save default account: {e.message}")
        return
    print(f"Set {email} as default account")


async def cmd_setup(args: argparse.Namespace, config: ClientConfiguration) -> int:
    client = _client_name(args, config)
    client_id = args.client_id.strip()
    client_secret = args.client_secret
    if client_secret is None:
        client_secret = getpass.getpass("Client secret: ")
    client_secret = client_secret.strip()

    if not client_id:
        raise ValidationError("client ID must not be empty", field_name='client_id')
    if not client_secret:
        raise ValidationError("client secret must not be empty", field_name='client_secret')

    path = config.write_client_credentials(
        client, ClientCredentials(client_id=client_id, client_secret=client_secret,
                                  redirect_uri=args.redirect_uri)
    )
    audit.log_event(AuditEventType.CONFIGURATION_CHANGE, f"OAuth client {client!r} configured", client=client)
    print(f"Saved OAuth client {client!r} to {path}")
    print("Next: run 'harvest auth login'" + ("" if client == "default" else f" --client-name {client}"))
    return 0


async def cmd_login(args: argparse.Namespace, config: ClientConfiguration) -> int:
    if args.pat is not None:
        return await _login_with_pat(args, config)

    client = _client_name(args, config)
    credentials = config.read_client_credentials(client)
    oauth_client = OAuthClient(
        credentials,
        auth_url=config.get_auth_url(),
        token_url=config.get_token_url()
    )
    flow = AuthorizationFlow(
        oauth_client,
        directory=AccountDirectoryClient(accounts_url=config.get_accounts_url()),
        options=AuthorizeOptions(
            manual=args.manual,
            force_consent=args.force_consent,
            timeout=args.timeout or config.get_callback_timeout(),
            product=config.get_product()
        )
    )

    try:
        result = await flow.authorize()
    except HarvestAuthError as e:
        audit.log_authentication("", client, success=False, failure_reason=e.message)
        raise

    store = _open_store(config)
    store.set_token(
        client, result.email, result.account_id,
        Token(refresh_token=result.token.refresh_token, scopes=result.token.scopes)
    )
    audit.log_authentication(result.email, client, account_id=result.account_id)

    print(f"Authenticated as {result.email} (account {result.account_id})")
    _default_if_unset(config, result.email)
    return 0


async def _login_with_pat(args: argparse.Namespace, config: ClientConfiguration) -> int:
    token = args.pat
    account_id = args.account_id

    if not token:
        env_pat = get_pat_from_env()
        if env_pat is not None:
            token, env_account = env_pat
            account_id = account_id or env_account
    if not token:
        token = getpass.getpass("Personal access token: ").strip()
    if not account_id:
        raise ValidationError("--account-id is required with --pat", field_name='account_id')

    email = await validate_pat(token, account_id, users_url=config.get_users_url())

    store = _open_store(config)
    store_pat(store, email, account_id, token)
    audit.log_authentication(email, PAT_CLIENT_NAME, method="pat", account_id=account_id)

    print(f"Authenticated as {email} (account {account_id}) with a personal access token")
    _default_if_unset(config, email)
    return 0


async def cmd_logout(args: argparse.Namespace, config: ClientConfiguration) -> int:
    store = _open_store(config)

    if args.all:
        tokens = store.list_tokens()
        for token in tokens:
            store.delete_token(token.client, token.email)
            audit.log_logout(token.email, token.client)
        print(f"Removed {len(tokens)} stored credential(s)")
        return 0

    email = resolve_email(store, args.email, config.get_default_account())
    if args.pat:
        delete_pat(store, email)
        audit.log_logout(email, PAT_CLIENT_NAME)
        print(f"Removed personal access token for {email}")
        return 0

    client = _client_name(args, config)
    store.delete_token(client, email)
    audit.log_logout(email, client)
    print(f"Logged out {email} (client: {client})")
    return 0


async def cmd_switch(args: argparse.Namespace, config: ClientConfiguration) -> int:
    store = _open_store(config)
    email = normalize_email(args.email)
    if email not in {token.email for token in store.list_tokens()}:
        raise SelectionError(f"account {email!r} not found; run 'harvest auth list' to see available accounts")

    config.set_config('auth.default_account', email)
    config.save_configuration()
    audit.log_event(AuditEventType.CONFIGURATION_CHANGE, f"Default account set to {email}", email=email)
    print(f"Default account set to {email}")
    return 0


async def cmd_status(args: argparse.Namespace, config: ClientConfiguration) -> int:
    env_pat = get_pat_from_env()
    if env_pat is not None:
        status = {'authenticated': True, 'method': 'env', 'account_id': env_pat[1]}
        _print_status(status, args.json)
        return 0

    store = _open_store(config)
    client = _client_name(args, config)
    try:
        email = resolve_email(store, args.email, config.get_default_account())
    except NotAuthenticatedError:
        _print_status({'authenticated': False}, args.json)
        return 1

    records = {token.client: token for token in store.list_tokens() if token.email == email}
    record = records.get(client) or records.get(PAT_CLIENT_NAME)
    if record is None:
        _print_status({'authenticated': False, 'email': email}, args.json)
        return 1

    status = {
        'authenticated': True,
        'email': email,
        'client': record.client,
        'method': 'pat' if record.client == PAT_CLIENT_NAME else 'oauth',
        'account_id': record.account_id,
        'created_at': record.created_at.isoformat() if record.created_at else None,
        'backend': type(store.backend).__name__,
    }

    if args.check and record.client != PAT_CLIENT_NAME:
        manager = TokenManager(
            store, email, client=record.client,
            credentials_loader=config.read_client_credentials,
            token_url=config.get_token_url()
        )
        token = await manager.get_token()
        status['access_token_expires_at'] = token.expires_at.isoformat()
    elif args.check:
        await validate_pat(record.refresh_token, record.account_id, users_url=config.get_users_url())
        status['verified'] = True

    _print_status(status, args.json)
    return 0


def _print_status(status: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(status, indent=2))
        return
    if not status.get('authenticated'):
        suffix = f" for {status['email']}" if status.get('email') else ""
        print(f"Not authenticated{suffix}. Run 'harvest auth login'.")
        return
    if status.get('method') == 'env':
        print(f"Using personal access token from environment (account {status['account_id']})")
        return
    print(f"Authenticated as {status['email']}")
    print(f"  Method:     {status['method']}")
    print(f"  Client:     {status['client']}")
    print(f"  Account ID: {status['account_id']}")
    if status.get('created_at'):
        print(f"  Stored at:  {status['created_at']}")
    print(f"  Backend:    {status['backend']}")
    if status.get('access_token_expires_at'):
        print(f"  Access token valid until {status['access_token_expires_at']}")
    if status.get('verified'):
        print("  Token verified")


async def cmd_list(args: argparse.Namespace, config: ClientConfiguration) -> int:
    store = _open_store(config)
    tokens = sorted(store.list_tokens(), key=lambda t: (t.email, t.client))

    if args.json:
        print(json.dumps([
            {
                'email': t.email,
                'client': t.client,
                'account_id': t.account_id,
                'created_at': t.created_at.isoformat() if t.created_at else None,
            }
            for t in tokens
        ], indent=2))
        return 0

    if not tokens:
        print("No stored credentials")
        return 0

    print(f"{'EMAIL':<36} {'CLIENT':<16} {'ACCOUNT':>10}  CREATED")
    for t in tokens:
        created = t.created_at.strftime('%Y-%m-%d %H:%M') if t.created_at else "-"
        print(f"{t.email:<36} {t.client:<16} {t.account_id:>10}  {created}")
    return 0


AUTH_COMMANDS = {
    'setup': cmd_setup,
    'login': cmd_login,
    'logout': cmd_logout,
    'switch': cmd_switch,
    'status': cmd_status,
    'list': cmd_list,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit code."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(config_file=args.config)
        if args.keyring_backend:
            config.set_override('auth.keyring_backend', args.keyring_backend)
        configure_logging(config, args)

        handler = AUTH_COMMANDS[args.auth_command]
        return asyncio.run(handler(args, config))

    except HarvestAuthError as e:
        log_structured_error(logger, e, level=logging.DEBUG)
        audit.log_error(e)
        print(f"Error: {e.user_message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled", file=sys.stderr)
        return 130
    except Exception as e:
        error = handle_exception(e)
        logger.exception("Fatal error in main")
        print(f"Fatal error: {error.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
