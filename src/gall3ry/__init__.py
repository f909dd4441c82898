"""
Gall3ry - Farcaster NFT aggregation and collection-friends core
"""

__version__ = "1.0.0"
__author__ = "Gall3ry Team"

from .aggregator import Aggregator, NftQueryOptions
from .friends import CollectionFriendsResolver
from .models import Chain, FriendProfile, Identity, NftPage, NftRecord

__all__ = [
    "Aggregator",
    "Chain",
    "CollectionFriendsResolver",
    "FriendProfile",
    "Identity",
    "NftPage",
    "NftQueryOptions",
    "NftRecord",
]
