"""
Configuration Management for the Harvest CLI.

This module handles CLI configuration (keyring backend, default account,
OAuth endpoints, logging) and the per-client OAuth credential files, with
support for a configuration file and environment variables.
"""

import os
import json
import logging
from configparser import ConfigParser, Error as ConfigParserError
from pathlib import Path
from typing import Optional, Dict, Any, List, Mapping

from harvest_shared.exceptions import ConfigurationError, ErrorCode
from harvest_shared.models import ClientCredentials

logger = logging.getLogger(__name__)

APP_DIR_NAME = "harvest"
CONFIG_FILE_NAME = "config.ini"
CLIENTS_DIR_NAME = "clients"
KEYRING_DIR_NAME = "keyring"


def get_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Resolve the configuration directory (HARVESTCLI_CONFIG_DIR, then XDG)."""
    environ = os.environ if environ is None else environ
    override = environ.get('HARVESTCLI_CONFIG_DIR')
    if override:
        return Path(override).expanduser()

    xdg_config = environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / APP_DIR_NAME
    return Path.home() / '.config' / APP_DIR_NAME


class ClientConfiguration:
    """
    Configuration manager for the Harvest CLI.

    Supports configuration from:
    1. Command line arguments (highest priority, via set_override)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(
        self,
        config_file: Optional[str] = None,
        config_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None
    ):
        self._environ = os.environ if environ is None else environ
        self._config_dir = Path(config_dir) if config_dir else get_config_dir(self._environ)
        self._config_file = config_file or str(self._config_dir / CONFIG_FILE_NAME)
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._file_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.debug(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser(interpolation=None)
        try:
            config.read(self._config_file, encoding='utf-8')
        except ConfigParserError as e:
            raise ConfigurationError(
                f"failed to parse {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Numbers and booleans are written as JSON literals
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data
            self._file_data[section_name] = dict(section_data)

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'HARVESTCLI_KEYRING_BACKEND': ('auth', 'keyring_backend'),
            'HARVESTCLI_ACCOUNT': ('auth', 'default_account'),
            'HARVESTCLI_CLIENT': ('auth', 'client_name'),
            'HARVESTCLI_LOG_LEVEL': ('logging', 'level'),
            'HARVESTCLI_LOG_FILE': ('logging', 'file'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = self._environ.get(env_var)
            if value is not None and value != "":
                self._config_data.setdefault(section, {})[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'auth': {
                'keyring_backend': 'auto',
                'default_account': None,
                'client_name': 'default',
                'product': 'harvest',
                'callback_timeout': 120,
                'keyring_timeout': 5,
            },
            'endpoints': {
                'auth_url': 'https://id.getharvest.com/oauth2/authorize',
                'token_url': 'https://id.getharvest.com/api/v2/oauth2/token',
                'accounts_url': 'https://id.getharvest.com/api/v2/accounts',
                'users_url': 'https://api.harvestapp.com/v2/users/me',
            },
            'logging': {
                'level': 'WARNING',
                'file': None,
                'format': 'standard',
                'audit_file': None,
            },
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]
        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """Set a persistent configuration value ('section.key')."""
        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value
        self._file_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """Override a value for this process only (command line flags)."""
        if value is None:
            self._overrides.pop(key, None)
        else:
            self._overrides[key] = value

    def save_configuration(self) -> None:
        """
        Write file-backed settings to the configuration file.

        Only values read from the file or changed with set_config are
        written; environment values and defaults stay out of the file.
        """
        config = ConfigParser(interpolation=None)
        for section, values in self._file_data.items():
            config[section] = {
                key: value if isinstance(value, str) else json.dumps(value)
                for key, value in values.items()
                if value is not None
            }

        path = Path(self._config_file)
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                config.write(f)
        except OSError as e:
            raise ConfigurationError(f"failed to write {path}: {e}", cause=e)

        logger.info(f"Configuration saved to: {path}")

    def get_config_dir(self) -> Path:
        return self._config_dir

    def get_keyring_dir(self) -> Path:
        """Directory used by the file keyring backend."""
        return self._config_dir / KEYRING_DIR_NAME

    def get_keyring_backend(self) -> str:
        return str(self.get_config('auth.keyring_backend', 'auto')).strip().lower()

    def get_keyring_timeout(self) -> float:
        return float(self.get_config('auth.keyring_timeout', 5))

    def get_default_account(self) -> Optional[str]:
        value = self.get_config('auth.default_account')
        return str(value).strip() if value else None

    def get_client_name(self) -> str:
        return str(self.get_config('auth.client_name', 'default'))

    def get_product(self) -> str:
        return str(self.get_config('auth.product', 'harvest'))

    def get_callback_timeout(self) -> float:
        return float(self.get_config('auth.callback_timeout', 120))

    def get_auth_url(self) -> str:
        return self.get_config('endpoints.auth_url')

    def get_token_url(self) -> str:
        return self.get_config('endpoints.token_url')

    def get_accounts_url(self) -> str:
        return self.get_config('endpoints.accounts_url')

    def get_users_url(self) -> str:
        return self.get_config('endpoints.users_url')

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'WARNING')).upper()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')

    # OAuth client credentials

    def get_clients_dir(self) -> Path:
        return self._config_dir / CLIENTS_DIR_NAME

    def client_credentials_path(self, client: str) -> Path:
        return self.get_clients_dir() / f"{client}.json"

    def client_credentials_exist(self, client: str) -> bool:
        return self.client_credentials_path(client).exists()

    def read_client_credentials(self, client: str) -> ClientCredentials:
        """
        Load the OAuth client registration stored for ``client``.

        Raises:
            ConfigurationError: When the file is missing or unreadable
        """
        path = self.client_credentials_path(client)
        if not path.exists():
            raise ConfigurationError(
                f"no OAuth client credentials for {client!r}",
                error_code=ErrorCode.CONFIG_MISSING_CLIENT,
                config_key='client_credentials',
                user_message=f"no OAuth client credentials for {client!r}; run 'harvest auth setup' first"
            )
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"failed to read {path}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )
        if not isinstance(data, dict):
            raise ConfigurationError(f"unexpected content in {path}", error_code=ErrorCode.CONFIG_INVALID_FORMAT)
        return ClientCredentials.from_dict(data)

    def write_client_credentials(self, client: str, credentials: ClientCredentials) -> Path:
        """Store an OAuth client registration with mode 0600."""
        path = self.client_credentials_path(client)
        tmp_path = path.with_suffix('.tmp')
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(credentials.to_dict(), f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            raise ConfigurationError(f"failed to write {path}: {e}", cause=e)

        logger.info(f"Client credentials stored for {client!r}")
        return path

    def delete_client_credentials(self, client: str) -> bool:
        path = self.client_credentials_path(client)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_clients(self) -> List[str]:
        clients_dir = self.get_clients_dir()
        if not clients_dir.is_dir():
            return []
        return sorted(p.stem for p in clients_dir.glob('*.json'))
