"""
Configuration management for Gall3ry
"""

import os
import sys
from typing import List, Optional
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv
from loguru import logger

# Load environment variables
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(env_path)


DEFAULT_IMAGE_HOSTS = [
    "https://ipfs.io/",
    "https://gateway.ipfs.io/",
    "https://dweb.link/",
    "https://cloudflare-ipfs.com/",
    "https://gateway.pinata.cloud/",
    "https://ipfs.filebase.io/",
    "https://arweave.net/",
    "https://nft-cdn.alchemy.com/",
    "https://res.cloudinary.com/",
    "https://i.seadn.io/",
    "https://openseauserdata.com/",
    "https://imagedelivery.net/",
    "https://i.imgur.com/",
]


@dataclass
class Config:
    """Main configuration class"""

    # Required fields first
    neynar_api_keys: List[str]
    alchemy_api_keys: List[str]

    # Upstream endpoints
    neynar_base_url: str = "https://api.neynar.com/v2/farcaster"
    neynar_hub_url: str = "https://hub-api.neynar.com/v1"

    # Gateway settings
    frontend_origin: str = "http://localhost:3000"
    dev_mode: bool = False
    gateway_api_token: Optional[str] = None
    rate_limit_per_minute: int = 120
    allowed_hosts: List[str] = field(default_factory=lambda: ["*"])
    trusted_proxies: List[str] = field(default_factory=list)
    image_proxy_allowed_hosts: List[str] = field(default_factory=lambda: list(DEFAULT_IMAGE_HOSTS))

    # Cache settings
    identity_cache_ttl: int = 1800  # 30 minutes
    nft_cache_ttl: int = 1800
    owners_cache_ttl: int = 1800
    following_cache_ttl: int = 1800
    cache_type: str = "memory"  # "memory" or "redis"
    redis_url: Optional[str] = None
    cache_version: int = 1
    cache_max_entries: int = 10000
    cache_sweep_interval: int = 300

    # Request settings
    max_parallel: int = 3  # upstream calls in flight per chain per request
    adapter_timeout: float = 15.0
    request_timeout: float = 60.0
    max_retries: int = 2
    retry_initial_delay: float = 1.0
    default_chains: List[str] = field(default_factory=lambda: ["eth", "base"])
    request_item_budget: int = 1000

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables"""

        def get_list(key_name: str) -> List[str]:
            """Get a comma-separated list"""
            value = os.getenv(key_name, "")
            if not value:
                return []
            return [k.strip() for k in value.split(",") if k.strip()]

        def get_bool(key_name: str, default: bool = False) -> bool:
            value = os.getenv(key_name)
            if value is None:
                return default
            return value.strip().lower() in ("1", "true", "yes", "on")

        return cls(
            neynar_api_keys=get_list("NEYNAR_API_KEY"),
            alchemy_api_keys=get_list("ALCHEMY_API_KEY"),
            neynar_base_url=os.getenv("NEYNAR_BASE_URL", "https://api.neynar.com/v2/farcaster"),
            neynar_hub_url=os.getenv("NEYNAR_HUB_URL", "https://hub-api.neynar.com/v1"),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            dev_mode=get_bool("DEV_MODE"),
            gateway_api_token=os.getenv("GATEWAY_API_TOKEN") or None,
            rate_limit_per_minute=int(os.getenv("RATE_LIMIT_PER_MINUTE", "120")),
            allowed_hosts=get_list("ALLOWED_HOSTS") or ["*"],
            trusted_proxies=get_list("TRUSTED_PROXIES"),
            image_proxy_allowed_hosts=get_list("IMAGE_PROXY_ALLOWED_HOSTS") or list(DEFAULT_IMAGE_HOSTS),
            identity_cache_ttl=int(os.getenv("IDENTITY_CACHE_TTL", "1800")),
            nft_cache_ttl=int(os.getenv("NFT_CACHE_TTL", "1800")),
            owners_cache_ttl=int(os.getenv("OWNERS_CACHE_TTL", "1800")),
            following_cache_ttl=int(os.getenv("FOLLOWING_CACHE_TTL", "1800")),
            cache_type=os.getenv("CACHE_TYPE", "memory"),
            redis_url=os.getenv("REDIS_URL"),
            cache_version=int(os.getenv("CACHE_VERSION", "1")),
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "10000")),
            cache_sweep_interval=int(os.getenv("CACHE_SWEEP_INTERVAL", "300")),
            max_parallel=int(os.getenv("MAX_PARALLEL", "3")),
            adapter_timeout=float(os.getenv("ADAPTER_TIMEOUT", "15")),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "60")),
            max_retries=int(os.getenv("MAX_RETRIES", "2")),
            retry_initial_delay=float(os.getenv("RETRY_INITIAL_DELAY", "1.0")),
            default_chains=get_list("DEFAULT_CHAINS") or ["eth", "base"],
            request_item_budget=int(os.getenv("REQUEST_ITEM_BUDGET", "1000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def cors_origins(self) -> List[str]:
        """Origins allowed by the gateway"""
        if self.dev_mode:
            return ["*"]
        return [self.frontend_origin]


def setup_logging(config_instance: "Config") -> None:
    """Replace the default loguru sink with one at the configured level"""
    logger.remove()
    logger.add(sys.stderr, level=config_instance.log_level.upper())


# Global config instance
config = Config.from_env()
