"""
Key/value storage media for the ledger slot.

Each backend stores opaque strings under named keys, like browser local
storage. Backends raise PersistenceError when a write is rejected.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from txledger.exceptions import PersistenceError
from txledger.utils.logging import get_logger

logger = get_logger(__name__)


class KeyValueStorage(ABC):
    """Abstract string key/value medium."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        """Return the stored string or None when the key is absent."""
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store a string, replacing any previous value."""
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""
        pass


class MemoryStorage(KeyValueStorage):
    """In-process storage, optionally bounded by a byte quota."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._items: dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def _size_with(self, key: str, value: str) -> int:
        total = len(key.encode()) + len(value.encode())
        for k, v in self._items.items():
            if k != key:
                total += len(k.encode()) + len(v.encode())
        return total

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota_bytes is not None and self._size_with(key, value) > self.quota_bytes:
            raise PersistenceError("Storage quota exceeded", key=key)
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage(KeyValueStorage):
    """One file per key inside a directory. Writes replace the file atomically."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp_path, self._path(key))
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(str(e), key=key) from e

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(str(e), key=key) from e


def create_storage(settings) -> KeyValueStorage:
    """Build the backend selected by settings.storage_backend."""
    if settings.storage_backend == "file":
        logger.info("Using file storage", directory=settings.storage_dir)
        return FileStorage(settings.storage_dir)
    return MemoryStorage(quota_bytes=settings.storage_quota_bytes)
