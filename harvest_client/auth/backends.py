"""
Secret backends for the credential store.

Three interchangeable implementations of ISecretBackend live here: the
native OS vault through the ``keyring`` library, a plaintext JSON file
protected by filesystem permissions, and an in-memory double for tests.
The backend selection policy is kept as pure functions of the requested
backend name, the host platform and the session bus address so it can be
tested without touching a real vault.
"""

import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional, Dict, List, Callable, Any, Mapping

import keyring
import keyring.errors
from keyring.backend import KeyringBackend

from harvest_shared.exceptions import (
    ConfigurationError, ErrorCode, HarvestAuthError, StoreLockedError, TokenStorageError
)
from harvest_shared.interfaces import ISecretBackend

logger = logging.getLogger(__name__)

SERVICE_NAME = "harvest-cli"
INDEX_KEY = "harvest-cli-index"
SECRETS_FILE_NAME = "secrets.json"

BACKEND_AUTO = "auto"
BACKEND_FILE = "file"
BACKEND_KEYCHAIN = "keychain"
BACKEND_SECRET_SERVICE = "secret-service"
BACKEND_WINCRED = "wincred"

NATIVE_BACKENDS = (BACKEND_KEYCHAIN, BACKEND_SECRET_SERVICE, BACKEND_WINCRED)

DEFAULT_KEYRING_TIMEOUT = 5.0

_LINUX_FAMILY = ("linux", "freebsd", "openbsd", "netbsd", "dragonfly")

_LOCKED_PHRASES = (
    "keychain is locked",
    "the user name or passphrase you entered is not correct",
    "user interaction is not allowed",
    "collection is locked",
    "failed to unlock",
    "prompt dismissed",
)


def is_linux_family(platform: str) -> bool:
    """True for hosts whose native vault is the freedesktop Secret Service."""
    return platform.lower().startswith(_LINUX_FAMILY)


def _is_auto(backend: str) -> bool:
    return backend.strip().lower() in ("", BACKEND_AUTO)


def allowed_backends(backend: str) -> List[str]:
    """
    Resolve a configured backend name.

    Returns an empty list for automatic selection, otherwise the single
    backend that was asked for.

    Raises:
        ConfigurationError: For unknown backend names
    """
    name = (backend or "").strip().lower()
    if name in ("", BACKEND_AUTO):
        return []
    if name == BACKEND_FILE or name in NATIVE_BACKENDS:
        return [name]
    raise ConfigurationError(
        f"invalid keyring_backend: {backend!r} (expected one of: auto, "
        f"{BACKEND_KEYCHAIN}, {BACKEND_SECRET_SERVICE}, {BACKEND_WINCRED}, {BACKEND_FILE})",
        config_key='auth.keyring_backend'
    )


def should_force_file_backend(platform: str, backend: str, dbus_address: Optional[str]) -> bool:
    """Automatic selection on Linux without a session bus has no usable vault."""
    return is_linux_family(platform) and _is_auto(backend or "") and not dbus_address


def should_use_timeout(platform: str, backend: str, dbus_address: Optional[str]) -> bool:
    """Secret Service calls can hang on an unlock prompt, so bound them."""
    return is_linux_family(platform) and _is_auto(backend or "") and bool(dbus_address)


def is_store_locked_error(message: Optional[str]) -> bool:
    """Classify backend error text as a locked-vault condition."""
    if not message:
        return False
    lowered = message.lower()
    return any(phrase in lowered for phrase in _LOCKED_PHRASES)


class KeyringSecretBackend(ISecretBackend):
    """
    Native OS vault accessed through a ``keyring`` backend.

    Vaults cannot enumerate their entries, so the list of stored keys is
    kept as a JSON array in one extra entry of the same service.
    """

    def __init__(
        self,
        backend: Optional[KeyringBackend] = None,
        service_name: str = SERVICE_NAME,
        timeout: Optional[float] = None
    ):
        self.backend = backend or keyring.get_keyring()
        self.service_name = service_name
        self.timeout = timeout
        self._index_lock = threading.Lock()

        logger.debug(f"Keyring backend: {type(self.backend).__name__} (timeout: {timeout})")

    def _guarded(self, description: str, func: Callable, *args) -> Any:
        try:
            return func(*args)
        except keyring.errors.KeyringLocked as e:
            raise StoreLockedError(cause=e)
        except keyring.errors.PasswordDeleteError:
            raise
        except Exception as e:
            if is_store_locked_error(str(e)):
                raise StoreLockedError(cause=e)
            raise TokenStorageError(f"keyring {description} failed: {e}", cause=e)

    def _call(self, description: str, func: Callable, *args) -> Any:
        if self.timeout is None:
            return self._guarded(description, func, *args)

        outcome: Dict[str, Any] = {}

        def runner():
            try:
                outcome['value'] = self._guarded(description, func, *args)
            except BaseException as e:
                outcome['error'] = e

        # Daemon thread: a call stuck on an unlock prompt must not block exit
        worker = threading.Thread(target=runner, name=f"keyring-{description}", daemon=True)
        worker.start()
        worker.join(self.timeout)
        if worker.is_alive():
            raise StoreLockedError(
                f"keyring {description} timed out after {self.timeout:g}s; the keyring may be locked"
            )
        if 'error' in outcome:
            raise outcome['error']
        return outcome.get('value')

    def _read_index(self) -> List[str]:
        raw = self._call("read", self.backend.get_password, self.service_name, INDEX_KEY)
        if not raw:
            return []
        try:
            keys = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Keyring key index is corrupt, starting a new one")
            return []
        return [key for key in keys if isinstance(key, str)]

    def _write_index(self, keys: List[str]) -> None:
        self._call("write", self.backend.set_password, self.service_name, INDEX_KEY,
                   json.dumps(sorted(set(keys))))

    def get(self, key: str) -> Optional[str]:
        return self._call("read", self.backend.get_password, self.service_name, key)

    def set(self, key: str, value: str) -> None:
        self._call("write", self.backend.set_password, self.service_name, key, value)
        with self._index_lock:
            keys = self._read_index()
            if key in keys:
                return
            try:
                self._write_index(keys + [key])
            except HarvestAuthError:
                # A secret missing from the index would never be listed
                self._discard(key)
                raise

    def _discard(self, key: str) -> None:
        try:
            self._call("delete", self.backend.delete_password, self.service_name, key)
            logger.warning(f"Key index update failed, removed {key} from the keyring")
        except (HarvestAuthError, keyring.errors.PasswordDeleteError) as e:
            logger.warning(f"Key index update failed and {key} could not be removed: {e}")

    def delete(self, key: str) -> bool:
        try:
            self._call("delete", self.backend.delete_password, self.service_name, key)
            removed = True
        except keyring.errors.PasswordDeleteError:
            removed = False

        with self._index_lock:
            keys = self._read_index()
            if key in keys:
                keys.remove(key)
                self._write_index(keys)
        return removed

    def keys(self) -> List[str]:
        with self._index_lock:
            return self._read_index()


class FileSecretBackend(ISecretBackend):
    """
    Plaintext JSON secrets file.

    The directory is created with mode 0700 and the file is rewritten
    atomically with mode 0600. No encryption is applied.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.path = self.directory / SECRETS_FILE_NAME
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8') or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise TokenStorageError(f"failed to read {self.path}: {e}", cause=e)
        if not isinstance(data, dict):
            raise TokenStorageError(
                f"unexpected content in {self.path}", error_code=ErrorCode.STORAGE_OPERATION_FAILED
            )
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, data: Dict[str, str]) -> None:
        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix('.tmp')
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise TokenStorageError(f"failed to write {self.path}: {e}", cause=e)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            data = self._load()
            if key not in data:
                return False
            del data[key]
            self._save(data)
            return True

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._load())


class MemorySecretBackend(ISecretBackend):
    """In-memory backend for tests; ``error`` is raised by every operation when set."""

    def __init__(self, items: Optional[Dict[str, str]] = None, error: Optional[Exception] = None):
        self.items: Dict[str, str] = dict(items or {})
        self.error = error

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self.items.get(key)

    def set(self, key: str, value: str) -> None:
        self._check()
        self.items[key] = value

    def delete(self, key: str) -> bool:
        self._check()
        return self.items.pop(key, None) is not None

    def keys(self) -> List[str]:
        self._check()
        return sorted(self.items)


def _native_keyring(name: str) -> KeyringBackend:
    """Instantiate the keyring backend behind an explicit vault name."""
    if name == BACKEND_KEYCHAIN:
        from keyring.backends import macOS
        backend_cls = macOS.Keyring
    elif name == BACKEND_SECRET_SERVICE:
        from keyring.backends import SecretService
        backend_cls = SecretService.Keyring
    else:
        from keyring.backends import Windows
        backend_cls = Windows.WinVaultKeyring

    if not backend_cls.viable:
        raise ConfigurationError(
            f"keyring backend {name!r} is not available on this system",
            config_key='auth.keyring_backend'
        )
    return backend_cls()


def _is_usable(backend: KeyringBackend) -> bool:
    from keyring.backends import fail, null
    if isinstance(backend, (fail.Keyring, null.Keyring)):
        return False
    backends = getattr(backend, 'backends', None)
    if backends is not None:
        return any(_is_usable(child) for child in backends)
    return True


def open_backend(
    requested: str = "",
    file_directory: Optional[Path] = None,
    platform: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_KEYRING_TIMEOUT
) -> ISecretBackend:
    """
    Open the secret backend chosen by the selection policy.

    Args:
        requested: Configured backend name ("", "auto", "file", or a vault name)
        file_directory: Directory for the file backend
        platform: Host platform, defaults to sys.platform
        environ: Environment mapping, defaults to os.environ
        timeout: Per-operation timeout applied to Secret Service calls

    Returns:
        An ISecretBackend implementation
    """
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ
    dbus_address = environ.get('DBUS_SESSION_BUS_ADDRESS')

    selected = allowed_backends(requested)

    def file_backend() -> FileSecretBackend:
        if file_directory is None:
            raise ConfigurationError("no directory configured for the file keyring backend",
                                     config_key='auth.keyring_dir')
        return FileSecretBackend(file_directory)

    if selected == [BACKEND_FILE]:
        logger.debug("Using file keyring backend (configured)")
        return file_backend()

    if should_force_file_backend(platform, requested, dbus_address):
        logger.info("No D-Bus session bus found, using file keyring backend")
        return file_backend()

    if selected:
        return KeyringSecretBackend(_native_keyring(selected[0]))

    native = keyring.get_keyring()
    if not _is_usable(native):
        logger.warning("No usable system keyring found, falling back to file backend")
        return file_backend()

    use_timeout = should_use_timeout(platform, requested, dbus_address)
    return KeyringSecretBackend(native, timeout=timeout if use_timeout else None)
