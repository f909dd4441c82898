"""
Collection-friends resolver: follow graph x collection owner set
"""

from typing import Dict, List, Optional, Tuple

from loguru import logger

from .clients.base import CollectionProvider, IdentityProvider
from .config import Config, config as default_config
from .models import Chain, Diagnostics, FriendProfile, FriendsResult, Identity, OwnerListing
from .normalizer import Normalizer
from .storage.cache import CacheLayer, following_key, holders_key, owners_key
from .utils import parse_fid, require_address

NO_SOCIAL_ADDRESSES = "no-social-addresses"

DEFAULT_FRIENDS_LIMIT = 50
MAX_FRIENDS_LIMIT = 500


def rank_profiles(profiles: List[FriendProfile]) -> List[FriendProfile]:
    """Holding count descending, then username ascending, then fid"""
    return sorted(profiles, key=lambda p: (-p.holding_count, p.username.casefold(), p.fid))


def intersect_follow_set(following: List[Identity], listing: OwnerListing) -> List[FriendProfile]:
    """
    Followed identities holding the collection, one profile per fid

    A followed identity qualifies when its custody or any verified address is
    in the owner set. Holding count sums the listing's per-address counts over
    the matching addresses, or is 1 when the listing carries none.
    """
    owner_set = {address.lower() for address in listing.owners}
    by_fid: Dict[int, Tuple[Identity, List[str]]] = {}

    for identity in following:
        matched = [a for a in identity.address_values() if a in owner_set]
        if not matched:
            continue
        if identity.fid in by_fid:
            _, known = by_fid[identity.fid]
            known.extend(a for a in matched if a not in known)
        else:
            by_fid[identity.fid] = (identity, matched)

    profiles = []
    for identity, matched in by_fid.values():
        counts = [listing.holding_count(a) for a in matched]
        holding = sum(c for c in counts if c) if listing.holdings else 1
        profiles.append(Normalizer.profile_from_identity(identity, max(1, holding), matched))
    return rank_profiles(profiles)


class CollectionFriendsResolver:
    """Ranks a viewer's follow graph against a collection's holders"""

    def __init__(
        self,
        identity_provider: IdentityProvider,
        collection_provider: CollectionProvider,
        cache: CacheLayer,
        config_instance: Optional[Config] = None,
    ):
        self.config = config_instance or default_config
        self.identity_provider = identity_provider
        self.collection_provider = collection_provider
        self.cache = cache

    async def get_following(self, fid: int) -> List[Identity]:
        async def load():
            following = await self.identity_provider.list_following(fid)
            return [identity.to_json() for identity in following]

        data = await self.cache.get_or_compute(following_key(fid), self.config.following_cache_ttl, load)
        return [Identity.model_validate(item) for item in data]

    async def get_owner_listing(self, contract: str, chain: Chain) -> OwnerListing:
        chain = Chain(chain)
        contract_address = require_address(contract)

        async def load():
            listing = await self.collection_provider.list_owners_for_collection(contract_address, chain)
            return listing.to_json()

        data = await self.cache.get_or_compute(
            owners_key(chain, contract_address), self.config.owners_cache_ttl, load
        )
        return OwnerListing.model_validate(data)

    async def get_collection_friends(
        self,
        contract: str,
        chain: Chain,
        viewer_fid: int,
        limit: Optional[int] = DEFAULT_FRIENDS_LIMIT,
    ) -> FriendsResult:
        """
        Followed identities that hold a collection

        Upstream failures of either fan-out propagate unchanged.
        """
        fid = parse_fid(viewer_fid)
        contract_address = require_address(contract)
        chain = Chain(chain)

        following = await self.get_following(fid)
        if not following:
            logger.info(f"fid {fid} follows nobody")
            return FriendsResult(friends=[], total=0, diagnostics=Diagnostics())

        if not any(identity.verified_addresses for identity in following):
            logger.info(f"None of the {len(following)} accounts followed by fid {fid} has a verified address")
            return FriendsResult(friends=[], total=0, diagnostics=Diagnostics(code=NO_SOCIAL_ADDRESSES))

        listing = await self.get_owner_listing(contract_address, chain)
        friends = intersect_follow_set(following, listing)
        total = len(friends)
        if limit is not None:
            friends = friends[:max(0, limit)]

        logger.info(
            f"{total} of {len(following)} accounts followed by fid {fid} hold "
            f"{contract_address} on {chain.value}"
        )
        return FriendsResult(friends=friends, total=total, diagnostics=Diagnostics())

    async def get_collection_holders(
        self,
        contract: str,
        chain: Chain,
        limit: Optional[int] = DEFAULT_FRIENDS_LIMIT,
    ) -> OwnerListing:
        """Owner listing enriched with the holders that have a social identity"""
        chain = Chain(chain)
        contract_address = require_address(contract)
        listing = await self.get_owner_listing(contract_address, chain)

        async def load():
            by_address = await self.identity_provider.lookup_by_addresses(listing.owners)
            identities: List[Identity] = [i for users in by_address.values() for i in users]
            return [p.to_json() for p in intersect_follow_set(identities, listing)]

        data = await self.cache.get_or_compute(
            holders_key(chain, contract_address), self.config.owners_cache_ttl, load
        )
        profiles = [FriendProfile.model_validate(item) for item in data]
        if limit is not None:
            profiles = profiles[:max(0, limit)]
        return listing.model_copy(update={"profiles": profiles})
