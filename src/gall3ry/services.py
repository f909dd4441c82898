"""
Service wiring shared by the gateway and the CLI
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .aggregator import Aggregator
from .clients import AlchemyClient, NeynarClient
from .config import Config, config as default_config
from .friends import CollectionFriendsResolver
from .storage import build_cache
from .storage.cache import CacheLayer


@dataclass
class Services:
    """Long-lived objects for one process"""
    config: Config
    cache: CacheLayer
    aggregator: Aggregator
    friends: CollectionFriendsResolver

    async def close(self) -> None:
        await self.cache.close()


def build_services(config_instance: Optional[Config] = None) -> Services:
    """Initialize provider clients and the cache from configuration"""
    cfg = config_instance or default_config
    client_options = {
        "timeout": cfg.adapter_timeout,
        "max_retries": cfg.max_retries,
        "retry_initial_delay": cfg.retry_initial_delay,
    }

    if not cfg.neynar_api_keys:
        logger.warning("NEYNAR_API_KEY is not set; identity and friends lookups will fail")
    if not cfg.alchemy_api_keys:
        logger.warning("ALCHEMY_API_KEY is not set; NFT and owner lookups will fail")

    neynar = NeynarClient(
        cfg.neynar_api_keys,
        base_url=cfg.neynar_base_url,
        hub_url=cfg.neynar_hub_url,
        **client_options,
    )
    alchemy = AlchemyClient(cfg.alchemy_api_keys, **client_options)
    cache = build_cache(cfg)

    return Services(
        config=cfg,
        cache=cache,
        aggregator=Aggregator(neynar, alchemy, cache, cfg),
        friends=CollectionFriendsResolver(neynar, alchemy, cache, cfg),
    )
