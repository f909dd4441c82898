"""Storage adapters and the cache layer"""

from typing import Optional

from .base import CacheEntry, StorageAdapter
from .cache import CacheLayer
from .memory import MemoryStorage
from .redis_adapter import RedisStorage

__all__ = ["CacheEntry", "CacheLayer", "MemoryStorage", "RedisStorage", "StorageAdapter"]


def get_storage_adapter(config) -> StorageAdapter:
    """Primary in-process store"""
    return MemoryStorage(config)


def get_mirror(config) -> Optional[StorageAdapter]:
    """Persistent mirror when configured"""
    if config.cache_type == "redis" and config.redis_url:
        return RedisStorage(config)
    return None


def build_cache(config) -> CacheLayer:
    return CacheLayer(
        get_storage_adapter(config),
        version=config.cache_version,
        mirror=get_mirror(config),
    )
