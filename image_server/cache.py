"""
Cache backends for served images.

Defines:
- CacheBackend: abstract interface shared by every backend
- InMemoryCache: volatile dict-backed storage
- FileSystemCache: values spooled to a private scratch directory, integrity
  checked with a content digest on every read
- create_cache_backend: factory keyed on the configured backend type
"""
from __future__ import annotations

import hashlib
import logging
import random
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from common.types import CacheKey, CacheValue

log = logging.getLogger(__name__)

SCRATCH_DIR_PREFIX = "random_image_server_cache"


class CacheError(Exception):
    """A backend failed to persist a value."""


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    def get(self, key: CacheKey) -> Optional[CacheValue]:
        """Return the value stored under `key`, or None if unknown, stale or corrupted."""

    @abstractmethod
    def get_random(self) -> Optional[CacheValue]:
        """Return a uniformly chosen value; None iff the cache is empty."""

    @abstractmethod
    def set(self, key: CacheKey, value: CacheValue) -> None:
        """Insert or overwrite `key`. Raises CacheError if the value cannot be stored."""

    @abstractmethod
    def remove(self, key: CacheKey) -> Optional[CacheValue]:
        """Remove `key` and return its value, or None if the key was unknown."""

    @abstractmethod
    def size(self) -> int:
        """Number of entries."""

    @abstractmethod
    def keys(self) -> Tuple[CacheKey, ...]:
        """Keys in insertion order."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry. Safe to call repeatedly."""

    def is_empty(self) -> bool:
        return self.size() == 0

    def close(self) -> None:
        """Release backend resources. The default backend holds none."""

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return key in self.keys()

    def __enter__(self) -> "CacheBackend":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class InMemoryCache(CacheBackend):
    """
    Values held in a dict, with a parallel list recording insertion order.
    Values are immutable so no integrity check is needed.
    """

    def __init__(self) -> None:
        self._keys: List[CacheKey] = []
        self._cache: Dict[CacheKey, CacheValue] = {}

    def get(self, key: CacheKey) -> Optional[CacheValue]:
        return self._cache.get(key)

    def get_random(self) -> Optional[CacheValue]:
        if not self._keys:
            return None
        return self._cache[random.choice(self._keys)]

    def set(self, key: CacheKey, value: CacheValue) -> None:
        if key not in self._cache:
            self._keys.append(key)
        self._cache[key] = value

    def remove(self, key: CacheKey) -> Optional[CacheValue]:
        value = self._cache.pop(key, None)
        if value is not None:
            self._keys.remove(key)
        return value

    def size(self) -> int:
        return len(self._cache)

    def keys(self) -> Tuple[CacheKey, ...]:
        return tuple(self._keys)

    def clear(self) -> None:
        self._cache.clear()
        self._keys.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._cache


def _digest(data: bytes) -> str:
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


@dataclass(frozen=True)
class _SpooledFile:
    """Where a value lives on disk and what it looked like when written."""
    path: Path
    digest: str
    content_type: str


class FileSystemCache(CacheBackend):
    """
    Spools each value to a uniquely named file inside a process-private
    scratch directory:

        <tmp>/random_image_server_cache*/
          ├─ 3f2c...e1.cache
          └─ 9a0b...77.cache

    Only the path, content digest and content type are kept in memory. Every
    `get` re-reads the file and recomputes the digest; a mismatch means the
    file was corrupted or tampered with, so it is deleted and the entry
    dropped before any bytes reach a client.

    The scratch directory is removed on `close()`, on context-manager exit,
    or when the backend is garbage collected.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        self._tempdir = tempfile.TemporaryDirectory(prefix=SCRATCH_DIR_PREFIX, dir=root)
        self.directory = Path(self._tempdir.name)
        self._keys: List[CacheKey] = []
        self._cache: Dict[CacheKey, _SpooledFile] = {}
        log.debug("File system cache spooling to %s", self.directory)

    # -------- public API --------

    def get(self, key: CacheKey) -> Optional[CacheValue]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        data = self._read_verified(key, entry)
        if data is None:
            self._forget(key)
            return None
        return CacheValue(data=data, content_type=entry.content_type)

    def get_random(self) -> Optional[CacheValue]:
        # Each failed pick evicts its key, so this terminates.
        while self._keys:
            value = self.get(random.choice(self._keys))
            if value is not None:
                return value
        return None

    def set(self, key: CacheKey, value: CacheValue) -> None:
        path = self.directory / f"{uuid.uuid4().hex}.cache"
        try:
            path.write_bytes(value.data)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise CacheError(f"Failed to spool {key.describe()} to {path}: {e}") from e

        previous = self._cache.get(key)
        if previous is None:
            self._keys.append(key)
        else:
            log.warning("Key already exists in cache, replacing: %s", key.describe())
            previous.path.unlink(missing_ok=True)

        self._cache[key] = _SpooledFile(
            path=path,
            digest=_digest(value.data),
            content_type=value.content_type,
        )

    def remove(self, key: CacheKey) -> Optional[CacheValue]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        # Read before unlinking: the bytes are only recoverable while the file exists.
        data = self._read_verified(key, entry)
        self._forget(key)
        if data is None:
            return None
        return CacheValue(data=data, content_type=entry.content_type)

    def size(self) -> int:
        return len(self._cache)

    def keys(self) -> Tuple[CacheKey, ...]:
        return tuple(self._keys)

    def clear(self) -> None:
        for entry in self._cache.values():
            entry.path.unlink(missing_ok=True)
        self._cache.clear()
        self._keys.clear()

    def close(self) -> None:
        self._cache.clear()
        self._keys.clear()
        self._tempdir.cleanup()

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    # -------- internals --------

    def _read_verified(self, key: CacheKey, entry: _SpooledFile) -> Optional[bytes]:
        try:
            data = entry.path.read_bytes()
        except OSError as e:
            log.warning("Cached file for %s is unreadable: %s", key.describe(), e)
            return None
        if _digest(data) != entry.digest:
            log.warning("Hash mismatch for cached file: %s", entry.path)
            return None
        return data

    def _forget(self, key: CacheKey) -> None:
        entry = self._cache.pop(key)
        self._keys.remove(key)
        entry.path.unlink(missing_ok=True)


def create_cache_backend(backend_type: str) -> CacheBackend:
    """
    Factory function to create the configured cache backend.

    Args:
        backend_type: 'in_memory' or 'file_system' (a CacheBackendType works too)

    Raises:
        ValueError: for any other backend type
    """
    kind = str(getattr(backend_type, "value", backend_type)).lower()

    if kind == "in_memory":
        log.info("Using InMemoryCache")
        return InMemoryCache()

    if kind == "file_system":
        cache = FileSystemCache()
        log.info("Using FileSystemCache: %s", cache.directory)
        return cache

    raise ValueError(f"Unknown cache backend type: {backend_type}")
