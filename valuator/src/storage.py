"""Host storage primitives used by the persistent cache backends.

Provides a small string key-value store interface (with a JSON file
implementation) and the capability probe that decides which cache backend a
host can support. The probe is only ever called explicitly; library code
receives a StorageCapabilities value instead of inspecting the host itself.
"""

from __future__ import annotations

import importlib.util
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .errors import StorageQuotaExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageCapabilities:
    """Storage facilities available on the host.

    :ivar database: A structured local database (SQLite) can be used.
    :ivar key_value: A persistent string key-value store can be used.
    """

    database: bool = False
    key_value: bool = False

    def select_storage(self) -> str:
        """Pick the best cache storage: database, then key-value, then memory.

        .. code-block:: python

            >>> StorageCapabilities(database=False, key_value=True).select_storage()
            'key_value'
        """
        if self.database:
            return "database"
        if self.key_value:
            return "key_value"
        return "memory"


def probe_storage_capabilities(cache_dir: str | Path | None) -> StorageCapabilities:
    """Inspect the host for usable persistent storage.

    :param cache_dir: Directory that would hold cache files, or None for
        memory-only operation.
    :returns: Detected capabilities.
    """
    if cache_dir is None:
        return StorageCapabilities()

    path = Path(cache_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Cache directory {path} unavailable: {e}")
        return StorageCapabilities()

    writable = os.access(path, os.W_OK)
    has_sqlite = (
        importlib.util.find_spec("sqlite3") is not None
        and importlib.util.find_spec("aiosqlite") is not None
    )
    return StorageCapabilities(database=writable and has_sqlite, key_value=writable)


class KeyValueStore(ABC):
    """Synchronous string-to-string store with optional capacity limits.

    Mirrors the semantics of browser local storage: values are text, writes
    may fail with StorageQuotaExceeded, reads may fail on corrupt data.
    """

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the stored text for ``key`` or None."""
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store text under ``key``.

        :raises StorageQuotaExceeded: If the write would exceed the quota.
        """
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove ``key`` if present."""
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        """Return all stored keys."""
        pass

    def items(self) -> list[tuple[str, str]]:
        """Return all (key, text) pairs."""
        pairs: list[tuple[str, str]] = []
        for key in self.keys():
            text = self.get_item(key)
            if text is not None:
                pairs.append((key, text))
        return pairs

    def remove_items(self, keys: list[str]) -> None:
        """Remove several keys; missing keys are ignored."""
        for key in keys:
            self.remove_item(key)

    def __len__(self) -> int:
        return len(self.keys())


class JsonFileStore(KeyValueStore):
    """KeyValueStore persisted as a single JSON object on disk.

    Every call reads the whole file, and every write rewrites it, with
    blocking I/O. Meant for small caches (hundreds of entries); use
    ``items()`` and ``remove_items()`` for bulk work so the file is read
    and written once.

    :ivar path: Location of the JSON file.
    :ivar quota_bytes: Maximum encoded size of the store, None for unlimited.
    """

    def __init__(self, path: str | Path, quota_bytes: int | None = None) -> None:
        """Initialize the store.

        :param path: JSON file path (created on first write).
        :param quota_bytes: Optional size limit for the encoded file.
        """
        self.path = Path(path)
        self.quota_bytes = quota_bytes

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Corrupt key-value store at {self.path}")
        return data

    def _save(self, data: dict[str, str]) -> None:
        encoded = json.dumps(data)
        if self.quota_bytes is not None and len(encoded.encode("utf-8")) > self.quota_bytes:
            raise StorageQuotaExceeded(
                f"Key-value store quota of {self.quota_bytes} bytes exceeded"
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(encoded, encoding="utf-8")
        tmp_path.replace(self.path)

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)

    def remove_items(self, keys: list[str]) -> None:
        data = self._load()
        removed = [key for key in keys if data.pop(key, None) is not None]
        if removed:
            self._save(data)

    def keys(self) -> list[str]:
        return list(self._load().keys())

    def items(self) -> list[tuple[str, str]]:
        return list(self._load().items())
