"""API clients for identity, NFT and collection providers"""

from .base import BaseAPIClient, CollectionProvider, IdentityProvider, NftProvider
from .alchemy import AlchemyClient
from .neynar import NeynarClient

__all__ = [
    "AlchemyClient",
    "BaseAPIClient",
    "CollectionProvider",
    "IdentityProvider",
    "NeynarClient",
    "NftProvider",
]
