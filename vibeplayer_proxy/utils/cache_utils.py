import hashlib
import json
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Represents a cache entry with metadata."""

    data: Dict[str, Any]
    created_at: float


class LRUMemoryCache:
    """Thread-safe LRU memory cache bounded by entry count."""

    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._cache.pop(key, None)
            if entry is not None:
                self._cache[key] = entry
            return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._cache.pop(key, None)
            while len(self._cache) >= self.maxsize and self._cache:
                self._cache.popitem(last=False)
            self._cache[key] = entry

    def remove(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)


class ResolutionCache:
    """
    Two-tier cache of successful resolutions: memory first, then JSON files.

    Entries are keyed by the MD5 of the exact input URL and stored as
    ``resolve_<md5>.json`` in ``cache_dir``. An entry older than ``ttl`` seconds
    is treated as absent and removed when it is next read. Writes overwrite
    without locking; concurrent writers store equivalent data, last one wins.
    """

    def __init__(
        self,
        cache_dir: Path,
        ttl: int,
        max_memory_entries: int = 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.ttl = ttl
        self.memory_cache = LRUMemoryCache(maxsize=max_memory_entries)
        self._clock = clock
        os.makedirs(self.cache_dir, exist_ok=True)

    @staticmethod
    def _get_md5_hash(key: str) -> str:
        """Get the MD5 hash of a cache key."""
        return hashlib.md5(key.encode()).hexdigest()

    def _get_file_path(self, hashed_key: str) -> Path:
        return self.cache_dir / f"resolve_{hashed_key}.json"

    def _is_fresh(self, created_at: float) -> bool:
        return self._clock() - created_at < self.ttl

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Get a cached result, trying memory first then file.

        Args:
            key: The input URL.

        Returns:
            The stored result dict, or None if absent or stale.
        """
        hashed_key = self._get_md5_hash(key)

        entry = self.memory_cache.get(hashed_key)
        if entry is not None:
            if self._is_fresh(entry.created_at):
                return entry.data
            await self.delete(key)
            return None

        file_path = self._get_file_path(hashed_key)
        try:
            async with aiofiles.open(file_path, "r") as f:
                stored = json.loads(await f.read())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading from cache: {e}")
            return None

        created_at = stored.get("created_at", 0)
        if not self._is_fresh(created_at):
            logger.info(f"Cache entry expired (age: {self._clock() - created_at:.1f}s)")
            await self.delete(key)
            return None

        data = stored.get("result")
        if not isinstance(data, dict):
            return None
        self.memory_cache.set(hashed_key, CacheEntry(data=data, created_at=created_at))
        return data

    async def set(self, key: str, data: Dict[str, Any]) -> bool:
        """
        Store a result in both tiers, overwriting any previous entry.

        Returns:
            bool: Success status of the file write.
        """
        hashed_key = self._get_md5_hash(key)
        created_at = self._clock()
        self.memory_cache.set(hashed_key, CacheEntry(data=data, created_at=created_at))

        file_path = self._get_file_path(hashed_key)
        try:
            async with aiofiles.open(file_path, "w") as f:
                await f.write(json.dumps({"created_at": created_at, "result": data}))
            return True
        except OSError as e:
            logger.error(f"Error writing to cache: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete item from both tiers."""
        hashed_key = self._get_md5_hash(key)
        self.memory_cache.remove(hashed_key)

        try:
            await aiofiles.os.remove(self._get_file_path(hashed_key))
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(f"Error deleting from cache: {e}")
            return False

    def stats(self) -> Dict[str, Any]:
        """File count and writability of the cache directory."""
        writable = self.cache_dir.is_dir() and os.access(self.cache_dir, os.W_OK)
        files = list(self.cache_dir.glob("resolve_*.json")) if self.cache_dir.is_dir() else []
        return {"files_count": len(files), "directory_writable": writable}
