"""Key-value storage adapters for tokens and transient flow state.

Adapters map string keys to string values. MemoryStorageAdapter keeps them
in a dict for the life of the process and holds PKCE artifacts by default.
EncryptedFileStorageAdapter persists them in one Fernet-encrypted file whose
key sits in the OS keyring (Keychain, libsecret, DPAPI). The file is only
readable by its owner and every access takes a lock on a sidecar file.
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Protocol

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .errors import StorageError

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


@contextmanager
def _locked(path: Path, shared: bool = False) -> Generator[None, None, None]:
    """Hold a lock on ``<path>.lock`` while the block runs.

    Windows has no shared locks, so readers lock exclusively there.
    """
    lock_path = path.with_name(path.name + ".lock")
    lock_path.touch(exist_ok=True)

    with open(lock_path, "r+") as handle:
        fd = handle.fileno()
        if sys.platform == "win32":
            msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                try:
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass
        else:
            fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)


KEYRING_SERVICE = "hellojohn-auth"
KEYRING_USERNAME = "storage-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "hellojohn"
STORE_FILE = "store.json"


class StorageAdapter(Protocol):
    """String-keyed persistence used by the auth client."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorageAdapter:
    """In-memory adapter (tests, and per-process flow state)."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


def _derive_fallback_key() -> bytes:
    """Machine-derived Fernet key for hosts without a keyring backend."""
    parts = [str(Path.home()), os.environ.get("USER") or os.environ.get("USERNAME") or "hellojohn"]

    machine_id = Path("/etc/machine-id")
    if machine_id.exists():
        parts.insert(0, machine_id.read_text().strip())

    digest = hashlib.sha256(":".join(parts).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class EncryptedFileStorageAdapter:
    """Encrypted persistent storage adapter.

    Values are kept in a single JSON document encrypted with Fernet. The
    encryption key lives in the OS keyring; a machine-derived key is used
    when no keyring backend is available.

    Unreadable data (key changed, file corrupted) reads as empty so the user
    is simply treated as signed out.
    """

    def __init__(self, store_dir: Path | None = None, filename: str = STORE_FILE):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self.filename = filename
        self._cipher: Fernet | None = None
        self._using_keyring = False

        self._init_storage()
        self._init_encryption()

    @property
    def path(self) -> Path:
        return self.store_dir / self.filename

    def _init_storage(self) -> None:
        """Initialize storage directory with secure permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            # Any backend failure (no daemon, locked keychain) falls back
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key)."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def _read(self) -> dict[str, str]:
        """Read and decrypt the store with a shared lock."""
        if self._cipher is None:
            raise StorageError("Encryption not initialized")

        filepath = self.path
        if not filepath.exists():
            return {}

        try:
            with _locked(filepath, shared=True):
                encrypted = filepath.read_text()
            decrypted = self._cipher.decrypt(encrypted.encode("ascii")).decode("utf-8")
            data = json.loads(decrypted)
        except InvalidToken:
            logger.warning(
                f"Cannot decrypt {filepath}. The encryption key may have changed; "
                f"treating stored data as empty."
            )
            return {}
        except (OSError, UnicodeError, ValueError) as e:
            logger.warning(f"Stored data in {filepath} is unreadable ({e}); treating as empty.")
            return {}

        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: dict[str, str]) -> None:
        """Encrypt and write the store with an exclusive lock and 0600 permissions."""
        if self._cipher is None:
            raise StorageError("Encryption not initialized")

        filepath = self.path
        encrypted = self._cipher.encrypt(json.dumps(data).encode("utf-8")).decode("ascii")

        try:
            with _locked(filepath):
                filepath.write_text(encrypted)
        except OSError as e:
            raise StorageError(f"Could not write {filepath}: {e}") from e

        try:
            filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key not in data:
            return
        del data[key]
        self._write(data)

    def is_using_keyring(self) -> bool:
        """Check if keyring is being used for encryption key storage."""
        return self._using_keyring
