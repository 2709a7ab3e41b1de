"""TieredCache: get/set/delete/clear over swappable storage backends.

Backends:
    - memory: insertion-ordered dict, evicts the oldest-inserted entry when full
    - key_value: JSON text in a KeyValueStore, evicts the oldest 10% when full
    - database: SQLite table accessed through aiosqlite

Every entry carries its own TTL. Expiry is checked lazily on read: an expired
entry reads as absent and is removed. Backend failures (quota, corruption,
unavailable driver) are logged and the operation falls through to an
in-memory fallback, so cache errors never reach the caller.

.. code-block:: python

    >>> cache = TieredCache(storage="memory", default_ttl=60.0)
    >>> await cache.set("BTC-USD", {"price": 50000.0})
    >>> await cache.get("BTC-USD")
    {'price': 50000.0}
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

import aiosqlite

from .errors import StorageQuotaExceeded
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

# Errors a backend may raise that the cache absorbs.
BACKEND_ERRORS = (
    OSError,
    ValueError,
    TypeError,
    KeyError,
    sqlite3.Error,
    StorageQuotaExceeded,
)


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its storage time and time-to-live.

    :ivar value: Cached value (must be JSON-serializable for persistent backends).
    :ivar stored_at: Unix timestamp of the write.
    :ivar ttl: Time-to-live in seconds.
    """

    value: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        """Check if the entry has outlived its TTL at ``now``."""
        return now - self.stored_at >= self.ttl

    def to_json(self) -> str:
        """Serialize the entry as JSON text."""
        return json.dumps(
            {"value": self.value, "stored_at": self.stored_at, "ttl": self.ttl}
        )

    @classmethod
    def from_json(cls, text: str) -> CacheEntry:
        """Parse an entry written by :meth:`to_json`.

        :raises ValueError: If the text is not valid JSON.
        :raises KeyError: If a field is missing.
        """
        data = json.loads(text)
        return cls(
            value=data["value"],
            stored_at=float(data["stored_at"]),
            ttl=float(data["ttl"]),
        )


class CacheBackend(ABC):
    """Storage backend for TieredCache entries."""

    name: ClassVar[str] = ""

    @abstractmethod
    async def get_entry(self, key: str) -> CacheEntry | None:
        """Return the stored entry for ``key`` (expired or not) or None."""
        pass

    @abstractmethod
    async def set_entry(self, key: str, entry: CacheEntry) -> None:
        """Store ``entry`` under ``key``, replacing any previous entry."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove all entries owned by this backend."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class MemoryBackend(CacheBackend):
    """In-process backend with insertion-order eviction (not LRU)."""

    name = "memory"

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get_entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def set_entry(self, key: str, entry: CacheEntry) -> None:
        # Rewriting a key counts as a fresh insertion
        self._entries.pop(key, None)
        self._entries[key] = entry
        if len(self._entries) > self.max_size:
            oldest_key, _ = self._entries.popitem(last=False)
            logger.debug(f"[memory] Evicted oldest entry {oldest_key}")

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()


class KeyValueBackend(CacheBackend):
    """Backend storing entries as JSON text in a KeyValueStore.

    When the number of cache keys exceeds ``max_size``, the oldest 10% of
    entries (by stored timestamp) are removed.
    """

    name = "key_value"
    KEY_PREFIX = "cache_"
    EVICT_FRACTION = 0.1

    def __init__(self, store: KeyValueStore, max_size: int) -> None:
        self.store = store
        self.max_size = max_size

    def _cache_keys(self) -> list[str]:
        return [k for k in self.store.keys() if k.startswith(self.KEY_PREFIX)]

    async def get_entry(self, key: str) -> CacheEntry | None:
        text = self.store.get_item(self.KEY_PREFIX + key)
        if text is None:
            return None
        return CacheEntry.from_json(text)

    async def set_entry(self, key: str, entry: CacheEntry) -> None:
        self.store.set_item(self.KEY_PREFIX + key, entry.to_json())
        if len(self._cache_keys()) > self.max_size:
            self._evict_oldest()

    async def delete(self, key: str) -> None:
        self.store.remove_item(self.KEY_PREFIX + key)

    async def clear(self) -> None:
        self.store.remove_items(self._cache_keys())

    def _evict_oldest(self) -> None:
        """Remove the oldest 10% of cache entries (rounded up)."""
        stamped: list[tuple[float, str]] = []
        for key, text in self.store.items():
            if not key.startswith(self.KEY_PREFIX):
                continue
            try:
                stored_at = CacheEntry.from_json(text).stored_at
            except (ValueError, KeyError, TypeError):
                stored_at = 0.0
            stamped.append((stored_at, key))

        stamped.sort()
        to_remove = math.ceil(len(stamped) * self.EVICT_FRACTION)
        self.store.remove_items([key for _, key in stamped[:to_remove]])
        logger.debug(f"[key_value] Evicted {to_remove} oldest entries")


class DatabaseBackend(CacheBackend):
    """SQLite-backed entries accessed asynchronously through aiosqlite.

    The database is opened lazily on first use.
    """

    name = "database"
    TABLE = "cache_entries"

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._conn: aiosqlite.Connection | None = None

    async def _connect(self) -> aiosqlite.Connection:
        if self._conn is None:
            conn = await aiosqlite.connect(self.path)
            try:
                await conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {self.TABLE} ("
                    "key TEXT PRIMARY KEY, value TEXT NOT NULL, "
                    "stored_at REAL NOT NULL, ttl REAL NOT NULL)"
                )
                await conn.commit()
            except sqlite3.Error:
                await conn.close()
                raise
            self._conn = conn
            logger.info(f"[database] Cache opened at {self.path}")
        return self._conn

    async def get_entry(self, key: str) -> CacheEntry | None:
        conn = await self._connect()
        async with conn.execute(
            f"SELECT value, stored_at, ttl FROM {self.TABLE} WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return CacheEntry(value=json.loads(row[0]), stored_at=row[1], ttl=row[2])

    async def set_entry(self, key: str, entry: CacheEntry) -> None:
        conn = await self._connect()
        await conn.execute(
            f"INSERT OR REPLACE INTO {self.TABLE} (key, value, stored_at, ttl) "
            "VALUES (?, ?, ?, ?)",
            (key, json.dumps(entry.value), entry.stored_at, entry.ttl),
        )
        await conn.commit()

    async def delete(self, key: str) -> None:
        conn = await self._connect()
        await conn.execute(f"DELETE FROM {self.TABLE} WHERE key = ?", (key,))
        await conn.commit()

    async def clear(self) -> None:
        conn = await self._connect()
        await conn.execute(f"DELETE FROM {self.TABLE}")
        await conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None


class TieredCache:
    """Cache facade over one storage backend plus an in-memory fallback.

    :ivar storage: Selected storage type ("memory", "key_value" or "database").
    :ivar default_ttl: TTL in seconds used when ``set`` gets none.
    :ivar max_size: Maximum entries kept by size-bounded backends.
    """

    STORAGE_TYPES = ("memory", "key_value", "database")
    DEFAULT_TTL_SECONDS = 60.0
    DEFAULT_MAX_SIZE = 1000

    def __init__(
        self,
        storage: str = "memory",
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        key_value_store: KeyValueStore | None = None,
        database_path: str | Path | None = None,
    ) -> None:
        """Initialize the cache.

        :param storage: Backend to use: "memory", "key_value" or "database".
        :param default_ttl: Default time-to-live in seconds.
        :param max_size: Maximum number of entries for size-bounded backends.
        :param key_value_store: Store for the "key_value" backend.
        :param database_path: SQLite file for the "database" backend.
        :raises ValueError: If the storage type or its parameters are invalid.
        """
        if storage not in self.STORAGE_TYPES:
            raise ValueError(
                f"Unknown storage '{storage}'. Available: {', '.join(self.STORAGE_TYPES)}"
            )
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.storage = storage
        self.default_ttl = default_ttl
        self.max_size = max_size

        self._memory = MemoryBackend(max_size)
        self._backend: CacheBackend

        if storage == "key_value":
            if key_value_store is None:
                raise ValueError("key_value storage requires a key_value_store")
            self._backend = KeyValueBackend(key_value_store, max_size)
        elif storage == "database":
            if database_path is None:
                raise ValueError("database storage requires a database_path")
            self._backend = DatabaseBackend(database_path)
        else:
            self._backend = self._memory

    @property
    def _has_fallback(self) -> bool:
        return self._backend is not self._memory

    async def get(self, key: str) -> Any | None:
        """Get a cached value.

        :param key: Cache key.
        :returns: The cached value, or None if absent or expired.
        """
        now = time.time()

        if self._has_fallback:
            try:
                entry = await self._backend.get_entry(key)
            except BACKEND_ERRORS as e:
                logger.warning(f"[{self._backend.name}] Cache read failed for {key}: {e}")
                entry = None
            if entry is not None:
                return await self._unexpired_value(self._backend, key, entry, now)

        entry = await self._memory.get_entry(key)
        if entry is None:
            return None
        return await self._unexpired_value(self._memory, key, entry, now)

    async def _unexpired_value(
        self, backend: CacheBackend, key: str, entry: CacheEntry, now: float
    ) -> Any | None:
        if not entry.is_expired(now):
            return entry.value
        logger.debug(f"[{backend.name}] Cache entry {key} expired")
        await self._delete_from(backend, key)
        return None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value.

        :param key: Cache key.
        :param value: Value to cache.
        :param ttl: Time-to-live in seconds (default: ``default_ttl``).
        """
        entry = CacheEntry(
            value=value,
            stored_at=time.time(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

        if self._has_fallback:
            try:
                await self._backend.set_entry(key, entry)
                await self._memory.delete(key)
                return
            except BACKEND_ERRORS as e:
                logger.warning(
                    f"[{self._backend.name}] Cache write failed for {key}, "
                    f"using memory: {e}"
                )
            # A stale backend entry would shadow the fallback on read
            await self._delete_from(self._backend, key)

        await self._memory.set_entry(key, entry)

    async def delete(self, key: str) -> None:
        """Remove a key from the backend and the fallback."""
        if self._has_fallback:
            await self._delete_from(self._backend, key)
        await self._memory.delete(key)

    async def _delete_from(self, backend: CacheBackend, key: str) -> None:
        try:
            await backend.delete(key)
        except BACKEND_ERRORS as e:
            logger.warning(f"[{backend.name}] Cache delete failed for {key}: {e}")

    async def clear(self) -> None:
        """Remove all entries from the backend and the fallback."""
        if self._has_fallback:
            try:
                await self._backend.clear()
            except BACKEND_ERRORS as e:
                logger.warning(f"[{self._backend.name}] Cache clear failed: {e}")
        await self._memory.clear()

    async def close(self) -> None:
        """Release backend resources (closes the database connection)."""
        try:
            await self._backend.close()
        except BACKEND_ERRORS as e:
            logger.warning(f"[{self._backend.name}] Cache close failed: {e}")
