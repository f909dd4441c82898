"""Redis storage adapter used as the persistent cache mirror"""

import json
import math
from typing import Any, Optional

import redis.asyncio as redis
from loguru import logger

from .base import CacheEntry, StorageAdapter
from ..config import Config


class RedisStorage(StorageAdapter):
    """Redis-based storage adapter; failures degrade to cache misses"""

    KEY_PREFIX = "gall3ry:"

    def __init__(self, config: Config, client: Optional[Any] = None):
        self.config = config
        self.redis_client: Optional[Any] = client
        self._initialized = client is not None

    async def _ensure_connected(self):
        """Ensure Redis connection is established"""
        if not self._initialized:
            if not self.config.redis_url:
                raise ValueError("Redis URL not configured")
            self.redis_client = redis.from_url(
                self.config.redis_url,
                decode_responses=True,
            )
            self._initialized = True

    async def get_cache(self, key: str) -> Optional[CacheEntry]:
        """Get cached entry from Redis"""
        try:
            await self._ensure_connected()
            raw = await self.redis_client.get(self.KEY_PREFIX + key)
            if not raw:
                return None
            data = json.loads(raw)
            return CacheEntry(
                key=key,
                value=data["value"],
                inserted_at=float(data["insertedAt"]),
                ttl=float(data["ttl"]),
                version=int(data["version"]),
            )
        except Exception as e:
            logger.warning(f"Redis get_cache error for {key}: {e}")
            return None

    async def set_cache(self, key: str, entry: CacheEntry) -> None:
        """Set cached entry in Redis with the entry's TTL"""
        try:
            await self._ensure_connected()
            serialized = json.dumps({
                "value": entry.value,
                "insertedAt": entry.inserted_at,
                "ttl": entry.ttl,
                "version": entry.version,
            })
            await self.redis_client.setex(self.KEY_PREFIX + key, max(1, math.ceil(entry.ttl)), serialized)
        except Exception as e:
            logger.warning(f"Redis set_cache error for {key}: {e}")

    async def delete_cache(self, key: str) -> None:
        """Delete cached entry from Redis"""
        try:
            await self._ensure_connected()
            await self.redis_client.delete(self.KEY_PREFIX + key)
        except Exception as e:
            logger.warning(f"Redis delete_cache error for {key}: {e}")

    async def close(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
