"""Base storage adapter"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class CacheEntry:
    """Stored value with its freshness metadata"""
    key: str
    value: Any
    inserted_at: float
    ttl: float
    version: int

    def is_fresh(self, now: float, version: int) -> bool:
        """Readable iff now - inserted_at <= ttl and the version matches"""
        return self.version == version and now - self.inserted_at <= self.ttl


class StorageAdapter(ABC):
    """Base storage adapter interface"""

    @abstractmethod
    async def get_cache(self, key: str) -> Optional[CacheEntry]:
        """Get cached entry, fresh or not"""
        pass

    @abstractmethod
    async def set_cache(self, key: str, entry: CacheEntry) -> None:
        """Store an entry, replacing any prior one"""
        pass

    @abstractmethod
    async def delete_cache(self, key: str) -> None:
        """Delete cached entry"""
        pass

    async def sweep(self, now: float, version: int) -> int:
        """Reclaim entries that are no longer readable"""
        return 0

    async def size(self) -> int:
        return 0

    async def close(self) -> None:
        pass
