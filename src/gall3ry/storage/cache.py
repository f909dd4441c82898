"""
TTL cache layer with version tag and per-key single-flight loading
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from loguru import logger

from .base import CacheEntry, StorageAdapter
from ..models import Chain

Loader = Callable[[], Awaitable[Any]]


def identity_key(username_or_fid: Union[str, int]) -> str:
    return f"identity:{str(username_or_fid).lower()}"


def nfts_key(address: str, chain: Chain, page_size: int, exclude_spam: bool, page_token: Optional[str]) -> str:
    return (
        f"nfts:{address.lower()}:{Chain(chain).value}:{page_size}:"
        f"{str(bool(exclude_spam)).lower()}:{page_token or 'none'}"
    )


def owners_key(chain: Chain, contract: str) -> str:
    return f"owners:{Chain(chain).value}:{contract.lower()}"


def holders_key(chain: Chain, contract: str) -> str:
    return f"holders:{Chain(chain).value}:{contract.lower()}"


def following_key(fid: int) -> str:
    return f"following:{fid}"


def search_key(query: str, limit: int) -> str:
    return f"search:{query.strip().lower()}:{limit}"


def spam_key(chain: Chain, contract: str) -> str:
    return f"spam:{Chain(chain).value}:{contract.lower()}"


class CacheLayer:
    """
    Keyed TTL store in front of a primary adapter and an optional mirror

    Reads are served from the primary store, then from the mirror (which is
    promoted into the primary on a fresh hit). Entries whose version differs
    from the current one are discarded on read. Concurrent misses on the same
    key share one loader run; a loader failure reaches every waiter and is
    never stored.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        version: int = 1,
        mirror: Optional[StorageAdapter] = None,
        timer: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.mirror = mirror
        self.version = version
        self.timer = timer
        self.hits = 0
        self.misses = 0
        self._inflight: Dict[str, asyncio.Future] = {}

    async def _lookup(self, key: str) -> Optional[CacheEntry]:
        now = self.timer()
        entry = await self.storage.get_cache(key)
        if entry is not None:
            if entry.is_fresh(now, self.version):
                return entry
            await self.storage.delete_cache(key)

        if self.mirror is None:
            return None

        entry = await self.mirror.get_cache(key)
        if entry is None:
            return None
        if entry.version != self.version:
            logger.debug(f"Discarding mirrored entry {key} with version {entry.version}")
            await self.mirror.delete_cache(key)
            return None
        if not entry.is_fresh(now, self.version):
            return None
        await self.storage.set_cache(key, entry)
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        """Stored value if fresh and current, else default"""
        entry = await self._lookup(key)
        if entry is None:
            self.misses += 1
            return default
        self.hits += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value, replacing any prior entry"""
        entry = CacheEntry(key=key, value=value, inserted_at=self.timer(), ttl=ttl, version=self.version)
        await self.storage.set_cache(key, entry)
        if self.mirror is not None:
            await self.mirror.set_cache(key, entry)

    async def delete(self, key: str) -> None:
        await self.storage.delete_cache(key)
        if self.mirror is not None:
            await self.mirror.delete_cache(key)

    async def fetch(self, key: str, ttl: float, loader: Loader) -> Tuple[Any, bool]:
        """
        Single-flight read-through

        Returns:
            (value, served_from_cache)
        """
        inflight = self._inflight.get(key)
        if inflight is None:
            entry = await self._lookup(key)
            if entry is not None:
                self.hits += 1
                logger.debug(f"Cache hit for {key}")
                return entry.value, True
            inflight = self._inflight.get(key)

        if inflight is None:
            self.misses += 1
            logger.debug(f"Cache miss for {key}")
            inflight = asyncio.ensure_future(self._load(key, ttl, loader))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda task, k=key: self._settle(k, task))

        # A cancelled caller must not cancel the shared load
        return await asyncio.shield(inflight), False

    async def get_or_compute(self, key: str, ttl: float, loader: Loader) -> Any:
        value, _ = await self.fetch(key, ttl, loader)
        return value

    async def _load(self, key: str, ttl: float, loader: Loader) -> Any:
        value = await loader()
        await self.set(key, value, ttl)
        return value

    def _settle(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Loader for {key} failed: {task.exception()!r}")

    def bump_version(self) -> int:
        """Invalidate every stored entry"""
        self.version += 1
        if hasattr(self.storage, "clear"):
            self.storage.clear()
        logger.info(f"Cache version bumped to {self.version}")
        return self.version

    async def sweep(self) -> int:
        """Reclaim expired entries from the primary store"""
        removed = await self.storage.sweep(self.timer(), self.version)
        if removed:
            logger.debug(f"Cache sweep removed {removed} entries")
        return removed

    async def size(self) -> int:
        return await self.storage.size()

    async def close(self) -> None:
        await self.storage.close()
        if self.mirror is not None:
            await self.mirror.close()
