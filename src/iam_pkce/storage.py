"""Key-value storage backends.

The flow engine only needs get/set/remove on string values, the same
contract as the browser's ``sessionStorage``. Two backends are provided:
an in-memory one and a Fernet-encrypted file that survives process
restarts, which is what lets a redirect flow resume after the browser
round trip.
"""

from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from iam_pkce.exceptions import StorageError
from iam_pkce.logging_config import get_logger

logger = get_logger(__name__)


DEFAULT_PREFIX = "iam_pkce_"


@dataclass(frozen=True)
class StorageKeys:
    """Fixed storage key layout under one prefix."""

    prefix: str = DEFAULT_PREFIX

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    @property
    def state(self) -> str:
        return self._key("state")

    @property
    def code_verifier(self) -> str:
        return self._key("code_verifier")

    @property
    def flow_mode(self) -> str:
        return self._key("flow_mode")

    @property
    def access_token(self) -> str:
        return self._key("access_token")

    @property
    def refresh_token(self) -> str:
        return self._key("refresh_token")

    @property
    def id_token(self) -> str:
        return self._key("id_token")

    @property
    def expires_at(self) -> str:
        return self._key("expires_at")

    @property
    def current_org(self) -> str:
        return self._key("current_org")

    @property
    def current_project(self) -> str:
        return self._key("current_project")


class KeyValueStorage(ABC):
    """String key-value storage capability."""

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove a key. Removing an absent key is a no-op."""

    def set_items(self, items: dict[str, str | None]) -> None:
        """Apply several writes; a None value removes the key."""
        for key, value in items.items():
            if value is None:
                self.remove_item(key)
            else:
                self.set_item(key, value)


class InMemoryStorage(KeyValueStorage):
    """Dictionary-backed storage, lost when the process exits."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        """Return the stored keys."""
        return list(self._data)


class EncryptedFileStorage(KeyValueStorage):
    """Fernet-encrypted JSON file storage.

    The whole mapping is encrypted as one blob and rewritten atomically
    on every change, so a batch written through ``set_items`` is never
    observed half-applied by another process.
    """

    def __init__(self, encryption_key: str, file_path: str | Path) -> None:
        """Initialize encrypted file storage.

        Args:
            encryption_key: Fernet-compatible encryption key
            file_path: Path to the storage file

        Raises:
            StorageError: If encryption key is invalid
        """
        try:
            self._fernet = Fernet(encryption_key.encode())
        except (ValueError, TypeError) as e:
            raise StorageError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)
        self._data: dict[str, str] | None = None

    @property
    def file_path(self) -> Path:
        return self._file_path

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data

        if not self._file_path.exists():
            self._data = {}
            return self._data

        try:
            decrypted = self._fernet.decrypt(self._file_path.read_bytes())
            data = json.loads(decrypted.decode())
        except InvalidToken:
            logger.error("Failed to decrypt storage file %s, wrong key?", self._file_path)
            raise StorageError("Failed to decrypt storage file") from None
        except json.JSONDecodeError as e:
            logger.error("Failed to parse storage file: %s", e)
            raise StorageError(f"Failed to parse storage file: {e}") from e

        self._data = {str(k): str(v) for k, v in data.items()}
        logger.debug("Loaded %d keys from %s", len(self._data), self._file_path)
        return self._data

    def _save(self, data: dict[str, str]) -> None:
        """Write ``data`` to disk, then make it the cached view."""
        encrypted = self._fernet.encrypt(json.dumps(data).encode())

        dir_path = self._file_path.parent
        temp_path: Path | None = None
        try:
            dir_path.mkdir(parents=True, exist_ok=True)
            fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
            temp_path = Path(temp_path_str)
            with os.fdopen(fd, "wb") as fh:
                fh.write(encrypted)
            temp_path.replace(self._file_path)
        except OSError as e:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to write storage file: {e}") from e

        self._data = data

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        self._save({**self._load(), key: value})

    def remove_item(self, key: str) -> None:
        data = dict(self._load())
        if data.pop(key, None) is not None:
            self._save(data)

    def set_items(self, items: dict[str, str | None]) -> None:
        data = dict(self._load())
        for key, value in items.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._save(data)


def create_storage(
    encryption_key: str | None = None,
    file_path: str | Path | None = None,
) -> KeyValueStorage:
    """Create a storage backend from configuration.

    Args:
        encryption_key: Optional Fernet encryption key
        file_path: Optional path for persistent storage

    Returns:
        EncryptedFileStorage when both are given, else InMemoryStorage
    """
    if file_path and encryption_key:
        return EncryptedFileStorage(encryption_key, file_path)
    return InMemoryStorage()
