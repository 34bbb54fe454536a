"""
SnapNote — Content Cache
=========================

What:  Storage for large binary model artifacts (quantized weights and
       their completion manifests).
How:   A narrow capability interface (`ContentCache`) with two adapters:
       - FileSystemContentCache: artifacts on disk, async writes via aiofiles
       - InMemoryContentCache:   dict-backed, for tests and ephemeral runs
Who:   Mutated only by ModelLifecycleManager and the engine loader it drives.

Key Layout:
    models/
    └── <model_id>/
        ├── <weights>.gguf     (may be partial while downloading)
        └── manifest.json      (written last; presence == fully cached)

Keys are relative POSIX paths. Absolute keys and ".." segments are
rejected so no key can escape the cache root.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Dict, List, Optional

import aiofiles

from snapnote.exceptions import PersistenceError
from snapnote.schemas.models import StorageInfo

logger = logging.getLogger(__name__)

MODEL_ROOT = "models/"
MANIFEST_NAME = "manifest.json"


def model_namespace(model_id: str) -> str:
    """Cache prefix owning every artifact of one model."""
    return f"{MODEL_ROOT}{model_id}/"


def manifest_key(model_id: str) -> str:
    return f"{model_namespace(model_id)}{MANIFEST_NAME}"


def _validate_key(key: str) -> str:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise PersistenceError(
            message="Invalid cache key",
            context={"key": key},
        )
    return key


class CacheWriter(ABC):
    """Streaming sink for one cache entry."""

    @abstractmethod
    async def write(self, chunk: bytes) -> None:
        ...


class ContentCache(ABC):
    """
    Capability interface over a platform cache for model artifacts.

    Contract:
        - has()/keys() are cheap existence checks and enumeration
        - open_writer() streams one entry; bytes written before a failure
          stay in the cache as a partial entry until deleted
        - delete_by_prefix() removes every entry under a prefix and returns
          the count; it raises PersistenceError if any deletion failed,
          after attempting all of them
        - usage() returns None when the backend cannot estimate storage
    """

    @abstractmethod
    async def has(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        ...

    @abstractmethod
    def open_writer(self, key: str):
        """Async context manager yielding a CacheWriter for `key`."""
        ...

    @abstractmethod
    async def delete_by_prefix(self, prefix: str) -> int:
        ...

    @abstractmethod
    async def usage(self) -> Optional[StorageInfo]:
        ...

    def local_path(self, key: str) -> Optional[Path]:
        """
        Filesystem path of an entry, for runtimes that load from disk.

        Backends without a filesystem representation return None.
        """
        return None

    async def put(self, key: str, data: bytes) -> None:
        async with self.open_writer(key) as writer:
            await writer.write(data)


# ══════════════════════════════════════════════════════════════════════════
# Filesystem Adapter
# ══════════════════════════════════════════════════════════════════════════


class _FileWriter(CacheWriter):
    def __init__(self, handle):
        self._handle = handle

    async def write(self, chunk: bytes) -> None:
        await self._handle.write(chunk)


class FileSystemContentCache(ContentCache):
    """
    Content cache rooted at a directory.

    Writes go through aiofiles so multi-gigabyte downloads never block
    the event loop on disk I/O.
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("FileSystemContentCache initialized with root=%s", self.root)

    def _path(self, key: str) -> Path:
        return self.root / _validate_key(key)

    def local_path(self, key: str) -> Optional[Path]:
        return self._path(key)

    async def has(self, key: str) -> bool:
        return self._path(key).is_file()

    async def keys(self, prefix: str = "") -> List[str]:
        found = []
        for path in self.root.rglob("*"):
            if path.is_file():
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    found.append(key)
        return sorted(found)

    @asynccontextmanager
    async def open_writer(self, key: str) -> AsyncIterator[CacheWriter]:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "wb") as handle:
                yield _FileWriter(handle)
        except OSError as e:
            # Disk full, permission denied, etc.
            logger.error("Failed to write cache entry %s: %s", key, str(e))
            raise PersistenceError(
                message="Failed to write model data to local storage.",
                context={"key": key, "os_error": str(e)},
            )

    async def delete_by_prefix(self, prefix: str) -> int:
        deleted = 0
        failures: Dict[str, str] = {}
        for key in await self.keys(prefix):
            try:
                os.remove(self._path(key))
                deleted += 1
            except FileNotFoundError:
                logger.debug("Cache entry already gone: %s", key)
            except OSError as e:
                failures[key] = str(e)
                logger.warning("Failed to delete cache entry %s: %s", key, str(e))

        self._prune_empty_dirs()

        if failures:
            raise PersistenceError(
                message="Some model files could not be removed from local storage.",
                context={"prefix": prefix, "failures": failures, "deleted": deleted},
            )
        logger.info("Deleted %d cache entries under '%s'", deleted, prefix)
        return deleted

    def _prune_empty_dirs(self) -> None:
        # Deepest first so parents become empty before they are visited
        dirs = sorted(
            (p for p in self.root.rglob("*") if p.is_dir()),
            key=lambda p: len(p.parts),
            reverse=True,
        )
        for directory in dirs:
            try:
                directory.rmdir()
            except OSError:
                continue

    async def usage(self) -> Optional[StorageInfo]:
        try:
            used = sum(p.stat().st_size for p in self.root.rglob("*") if p.is_file())
            free = shutil.disk_usage(self.root).free
        except OSError as e:
            logger.warning("Storage estimate unavailable: %s", str(e))
            return None
        return StorageInfo.from_bytes(used=used, quota=used + free)


# ══════════════════════════════════════════════════════════════════════════
# In-Memory Adapter
# ══════════════════════════════════════════════════════════════════════════


class _MemoryWriter(CacheWriter):
    def __init__(self, buffer: bytearray):
        self._buffer = buffer

    async def write(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)


class InMemoryContentCache(ContentCache):
    """
    Dict-backed content cache.

    Entries become visible as soon as their writer opens, so an
    interrupted stream leaves a partial entry behind exactly like the
    filesystem adapter does. Pass quota_bytes=None to emulate a platform
    without storage estimates.
    """

    def __init__(self, quota_bytes: Optional[int] = 8 * 1024 ** 3):
        self._entries: Dict[str, bytearray] = {}
        self.quota_bytes = quota_bytes
        self.write_count = 0

    async def has(self, key: str) -> bool:
        return _validate_key(key) in self._entries

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._entries if k.startswith(prefix))

    @asynccontextmanager
    async def open_writer(self, key: str) -> AsyncIterator[CacheWriter]:
        buffer = bytearray()
        self._entries[_validate_key(key)] = buffer
        self.write_count += 1
        yield _MemoryWriter(buffer)

    async def delete_by_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def usage(self) -> Optional[StorageInfo]:
        if self.quota_bytes is None:
            return None
        used = sum(len(v) for v in self._entries.values())
        return StorageInfo.from_bytes(used=used, quota=self.quota_bytes)

    def read(self, key: str) -> bytes:
        return bytes(self._entries[key])
