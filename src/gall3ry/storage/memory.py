"""In-memory storage adapter"""

from typing import Optional
from cachetools import LRUCache

from .base import CacheEntry, StorageAdapter
from ..config import Config


class MemoryStorage(StorageAdapter):
    """Bounded in-memory store; freshness is checked by the cache layer"""

    def __init__(self, config: Config):
        self.config = config
        self.cache: LRUCache = LRUCache(maxsize=config.cache_max_entries)

    async def get_cache(self, key: str) -> Optional[CacheEntry]:
        """Get cached entry"""
        return self.cache.get(key)

    async def set_cache(self, key: str, entry: CacheEntry) -> None:
        """Set cached entry"""
        self.cache[key] = entry

    async def delete_cache(self, key: str) -> None:
        """Delete cached entry"""
        self.cache.pop(key, None)

    async def sweep(self, now: float, version: int) -> int:
        stale = [key for key, entry in list(self.cache.items()) if not entry.is_fresh(now, version)]
        for key in stale:
            self.cache.pop(key, None)
        return len(stale)

    async def size(self) -> int:
        return len(self.cache)

    def clear(self) -> None:
        self.cache.clear()
