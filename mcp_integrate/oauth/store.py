"""Per-provider token storage.

The rest of the SDK only talks to the ProviderTokenStore interface, so the
storage backend can be swapped freely:

- MemoryTokenStore: process-local, the default for server-side use
- EncryptedFileTokenStore: durable storage for CLI/desktop use, using
  Fernet symmetric encryption with the key held in the OS keyring,
  owner-only file permissions and file locking
"""

import base64
import copy
import hashlib
import json
import logging
import os
import stat
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .tokens import ProviderTokenRecord

logger = logging.getLogger(__name__)

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


def _lock_path(filepath: Path) -> Path:
    return filepath.parent / f"{filepath.name}.lock"


@contextmanager
def _locked(filepath: Path, shared: bool = False) -> Iterator[None]:
    """Hold an advisory lock on a sidecar .lock file while the block runs.

    Windows has no shared locks, so readers take the exclusive lock there.
    """
    lock_path = _lock_path(filepath)
    lock_path.touch(exist_ok=True)

    with lock_path.open("r+") as handle:
        fd = handle.fileno()
        if sys.platform == "win32":
            msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        try:
            yield
        finally:
            if sys.platform == "win32":
                handle.seek(0)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)


KEYRING_SERVICE = "mcp-integrate"
KEYRING_USERNAME = "provider-token-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "mcp-integrate" / "oauth"

TOKENS_FILE = "provider_tokens.json"


class TokenStoreError(Exception):
    """Error in token storage operations."""

    pass


class TokenDecryptionError(TokenStoreError):
    """Failed to decrypt the token file.

    The encryption key changed (keyring cleared, different machine) or the
    file is corrupted. Callers should ask the user to re-authorize or call
    clear_all().
    """

    pass


def normalize_provider(provider: str) -> str:
    """Normalize a provider id for consistent key lookup."""
    return provider.strip().lower()


class ProviderTokenStore(ABC):
    """Key-value storage of ProviderTokenRecord by provider id.

    Implementations never touch the network. Records handed in and out
    are copies, so callers cannot mutate stored state directly.
    """

    @abstractmethod
    def get(self, provider: str) -> ProviderTokenRecord | None:
        """Get the token for a provider, or None."""
        pass

    @abstractmethod
    def set(self, provider: str, record: ProviderTokenRecord) -> None:
        """Store (or overwrite) the token for a provider."""
        pass

    @abstractmethod
    def clear(self, provider: str) -> bool:
        """Delete the token for a provider.

        Returns:
            True if a token was deleted, False if none was stored
        """
        pass

    @abstractmethod
    def clear_all(self) -> None:
        """Delete every stored token."""
        pass

    @abstractmethod
    def get_all(self) -> dict[str, ProviderTokenRecord]:
        """Get every stored token keyed by provider."""
        pass


class MemoryTokenStore(ProviderTokenStore):
    """Process-local token store."""

    def __init__(self) -> None:
        self._tokens: dict[str, ProviderTokenRecord] = {}

    def get(self, provider: str) -> ProviderTokenRecord | None:
        record = self._tokens.get(normalize_provider(provider))
        return copy.deepcopy(record) if record is not None else None

    def set(self, provider: str, record: ProviderTokenRecord) -> None:
        self._tokens[normalize_provider(provider)] = copy.deepcopy(record)
        logger.debug(f"Stored token for {provider}")

    def clear(self, provider: str) -> bool:
        removed = self._tokens.pop(normalize_provider(provider), None) is not None
        if removed:
            logger.debug(f"Cleared token for {provider}")
        return removed

    def clear_all(self) -> None:
        self._tokens.clear()

    def get_all(self) -> dict[str, ProviderTokenRecord]:
        return {provider: copy.deepcopy(record) for provider, record in self._tokens.items()}


def _machine_key() -> bytes:
    """Build a Fernet key from the machine id, home directory and user name.

    Only used without a keyring backend; tokens stay encrypted at rest but
    the key can be rebuilt by anyone on the same account.
    """
    machine_id = Path("/etc/machine-id")
    seed = [machine_id.read_text().strip()] if machine_id.is_file() else []
    seed += [str(Path.home()), os.environ.get("USER") or os.environ.get("USERNAME") or "mcpi"]

    digest = hashlib.sha256("|".join(seed).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _keyring_key() -> str:
    """Fetch the store key from the OS keyring, creating it on first use."""
    key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    if key is None:
        key = Fernet.generate_key().decode("ascii")
        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
        logger.info("Created token encryption key in the OS keyring")
    return key


class EncryptedFileTokenStore(ProviderTokenStore):
    """Encrypted, file-backed token store.

    Tokens live in a single Fernet-encrypted JSON file (0600) inside a
    0700 directory, ~/.cache/mcp-integrate/oauth by default or the
    directory named by MCPI_TOKEN_DIR.
    """

    def __init__(self, store_dir: Path | None = None):
        env_dir = os.environ.get("MCPI_TOKEN_DIR")
        self.store_dir = store_dir or (Path(env_dir) if env_dir else DEFAULT_STORE_DIR)

        self.store_dir.mkdir(parents=True, exist_ok=True)
        self._restrict(self.store_dir, stat.S_IRWXU)

        # Backends raise a wide range of errors (missing D-Bus, locked
        # collections, no backend at all), so any failure means fallback.
        try:
            self._cipher = Fernet(_keyring_key().encode("ascii"))
            self._using_keyring = True
        except Exception as e:
            logger.warning(f"OS keyring unavailable ({type(e).__name__}: {e}), using machine-derived key")
            self._cipher = Fernet(_machine_key())
            self._using_keyring = False

    @staticmethod
    def _restrict(path: Path, mode: int) -> None:
        try:
            path.chmod(mode)
        except OSError as e:
            logger.warning(f"Could not restrict permissions on {path}: {e}")

    @property
    def tokens_path(self) -> Path:
        return self.store_dir / TOKENS_FILE

    def _load(self) -> dict[str, Any]:
        """Decrypt the token file. The caller holds the lock.

        Raises:
            TokenDecryptionError: If the file cannot be decrypted or parsed
        """
        path = self.tokens_path
        if not path.exists():
            return {}

        try:
            return json.loads(self._cipher.decrypt(path.read_bytes()))
        except InvalidToken as e:
            raise TokenDecryptionError(
                f"{path} was encrypted with a different key. "
                f"Run 'mcpi auth logout' to remove it, then authorize again."
            ) from e
        except ValueError as e:
            raise TokenDecryptionError(
                f"{path} does not contain valid token data. "
                f"Run 'mcpi auth logout' to remove it, then authorize again."
            ) from e

    def _dump(self, data: dict[str, Any]) -> None:
        path = self.tokens_path
        path.write_bytes(self._cipher.encrypt(json.dumps(data).encode("utf-8")))
        self._restrict(path, stat.S_IRUSR | stat.S_IWUSR)

    def _read(self) -> dict[str, Any]:
        with _locked(self.tokens_path, shared=True):
            return self._load()

    def _write(self, data: dict[str, Any]) -> None:
        with _locked(self.tokens_path):
            self._dump(data)

    @contextmanager
    def _editing(self) -> Iterator[dict[str, Any]]:
        """Read, modify and write back the token map under one exclusive lock."""
        with _locked(self.tokens_path):
            data = self._load()
            yield data
            self._dump(data)

    def get(self, provider: str) -> ProviderTokenRecord | None:
        data = self._read().get(normalize_provider(provider))
        if data is None:
            return None

        try:
            return ProviderTokenRecord.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Invalid token data for {provider}: {e}")
            return None

    def set(self, provider: str, record: ProviderTokenRecord) -> None:
        with self._editing() as data:
            data[normalize_provider(provider)] = record.to_dict()
        logger.debug(f"Stored token for {provider}")

    def clear(self, provider: str) -> bool:
        with self._editing() as data:
            removed = data.pop(normalize_provider(provider), None) is not None
        if removed:
            logger.debug(f"Cleared token for {provider}")
        return removed

    def clear_all(self) -> None:
        """Delete the token file (works even if it can no longer be decrypted)."""
        with _locked(self.tokens_path):
            self.tokens_path.unlink(missing_ok=True)
        logger.info("Cleared all stored provider tokens")

    def get_all(self) -> dict[str, ProviderTokenRecord]:
        records: dict[str, ProviderTokenRecord] = {}
        for provider, data in self._read().items():
            try:
                records[provider] = ProviderTokenRecord.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid token data for {provider}: {e}")
        return records

    def is_using_keyring(self) -> bool:
        """Check if the OS keyring holds the encryption key."""
        return self._using_keyring
