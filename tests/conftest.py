"""
Pytest configuration and shared fixtures for Gall3ry tests.

Provides:
- Fake identity, NFT and collection providers
- A manual clock for cache freshness tests
- Sample upstream payloads
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from gall3ry.aggregator import Aggregator
from gall3ry.clients.base import CollectionProvider, IdentityProvider, NftProvider
from gall3ry.config import Config
from gall3ry.errors import NotFound
from gall3ry.friends import CollectionFriendsResolver
from gall3ry.models import Chain, Identity, OwnerListing
from gall3ry.services import Services
from gall3ry.storage import CacheLayer, MemoryStorage

ADDR_CUSTODY = "0xabcd000000000000000000000000000000000001"
ADDR_VERIFIED = "0xdead00000000000000000000000000000000beef"
CONTRACT_A = "0xaaa0000000000000000000000000000000000001"
CONTRACT_B = "0xbbb0000000000000000000000000000000000002"


# ============================================================================
# Helpers
# ============================================================================


class ManualClock:
    """Controllable time source"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_nft(
    contract: str,
    token_id: Any,
    name: Optional[str] = None,
    collection: str = "Test Collection",
    floor_usd: Optional[float] = None,
    is_spam: Optional[bool] = None,
    last_activity: Optional[str] = None,
    acquired: Optional[str] = None,
) -> Dict[str, Any]:
    """Alchemy v3 style ownedNfts entry"""
    contract_data: Dict[str, Any] = {"address": contract, "name": collection, "tokenType": "ERC721"}
    if floor_usd is not None:
        contract_data["openSeaMetadata"] = {"floorPriceUsd": floor_usd}
    if is_spam is not None:
        contract_data["isSpam"] = is_spam
    item: Dict[str, Any] = {
        "contract": contract_data,
        "tokenId": str(token_id),
        "name": name or f"{collection} #{token_id}",
        "image": {"cachedUrl": f"https://nft-cdn.alchemy.com/{contract}/{token_id}.png"},
    }
    if last_activity:
        item["lastActivityTimestamp"] = last_activity
    if acquired:
        item["acquiredAt"] = {"blockTimestamp": acquired}
    return item


def make_config(**overrides: Any) -> Config:
    values: Dict[str, Any] = dict(
        neynar_api_keys=["neynar-test-key"],
        alchemy_api_keys=["alchemy-test-key"],
        request_timeout=5.0,
        cache_sweep_interval=0,
        rate_limit_per_minute=0,
    )
    values.update(overrides)
    return Config(**values)


# ============================================================================
# Fake Providers
# ============================================================================


class FakeIdentityProvider(IdentityProvider):
    """In-memory identity provider recording calls"""

    def __init__(self):
        self.identities: Dict[Any, Identity] = {}
        self.following: Dict[int, List[Identity]] = {}
        self.by_address: Dict[str, List[Identity]] = {}
        self.resolve_calls = 0
        self.following_calls = 0
        self.search_calls = 0
        self.following_error: Optional[Exception] = None

    def add(self, identity: Identity) -> Identity:
        self.identities[identity.fid] = identity
        if identity.username:
            self.identities[identity.username.lower()] = identity
        return identity

    async def resolve_identity(self, username_or_fid: Any) -> Identity:
        self.resolve_calls += 1
        key = username_or_fid.lower() if isinstance(username_or_fid, str) else username_or_fid
        if key not in self.identities:
            raise NotFound(f"No user {username_or_fid!r}")
        return self.identities[key]

    async def list_following(self, fid: int) -> List[Identity]:
        self.following_calls += 1
        if self.following_error is not None:
            raise self.following_error
        return list(self.following.get(fid, []))

    async def lookup_by_addresses(self, addresses: List[str]) -> Dict[str, List[Identity]]:
        return {a.lower(): self.by_address[a.lower()] for a in addresses if a.lower() in self.by_address}

    async def search_users(self, query: str, limit: int = 5) -> List[Identity]:
        self.search_calls += 1
        prefix = query.lower()
        matches = {
            identity.fid: identity
            for identity in self.identities.values()
            if identity.username and identity.username.lower().startswith(prefix)
        }
        return [matches[fid] for fid in sorted(matches)][:limit]


class FakeNftProvider(NftProvider, CollectionProvider):
    """
    Serves fixed NFT lists per (address, chain), paginated by offset

    delays/errors are keyed the same way; owners by (chain, contract).
    """

    def __init__(self):
        self.items: Dict[Tuple[str, Chain], List[Dict[str, Any]]] = {}
        self.delays: Dict[Tuple[str, Chain], float] = {}
        self.errors: Dict[Tuple[str, Chain], Exception] = {}
        self.owners: Dict[Tuple[Chain, str], OwnerListing] = {}
        self.spam: Dict[str, bool] = {}
        self.calls: List[Tuple[str, Chain, Optional[str], int]] = []
        self.owner_calls = 0
        self.spam_calls = 0

    def set_items(self, address: str, chain: Chain, items: List[Dict[str, Any]]) -> None:
        self.items[(address.lower(), Chain(chain))] = items

    async def list_nfts_for_owner(
        self,
        address: str,
        chain: Chain,
        page_key: Optional[str] = None,
        page_size: int = 100,
        exclude_spam: bool = True,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        key = (address.lower(), Chain(chain))
        self.calls.append((key[0], key[1], page_key, page_size))
        if key in self.delays:
            await asyncio.sleep(self.delays[key])
        if key in self.errors:
            raise self.errors[key]
        items = self.items.get(key, [])
        start = int(page_key or 0)
        end = start + page_size
        next_key = str(end) if end < len(items) else None
        return items[start:end], next_key

    async def is_spam_contract(self, contract: str, chain: Chain) -> bool:
        self.spam_calls += 1
        return self.spam.get(contract.lower(), False)

    async def list_owners_for_collection(self, contract: str, chain: Chain) -> OwnerListing:
        self.owner_calls += 1
        key = (Chain(chain), contract.lower())
        if key not in self.owners:
            raise NotFound(f"No owners for {contract}")
        return self.owners[key]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def test_config() -> Config:
    return make_config()


@pytest.fixture
def cache(test_config: Config, clock: ManualClock) -> CacheLayer:
    return CacheLayer(MemoryStorage(test_config), version=1, timer=clock)


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def nft_provider() -> FakeNftProvider:
    return FakeNftProvider()


@pytest.fixture
def vitalik(identity_provider: FakeIdentityProvider) -> Identity:
    """Identity with a custody address also listed as verified (mixed case)"""
    return identity_provider.add(Identity(
        fid=2,
        username="v",
        display_name="V",
        custody_address=ADDR_CUSTODY.upper().replace("0X", "0x"),
        verified_addresses=[ADDR_CUSTODY, "0xDEAD00000000000000000000000000000000BEEF"],
    ))


@pytest.fixture
def aggregator(
    identity_provider: FakeIdentityProvider,
    nft_provider: FakeNftProvider,
    cache: CacheLayer,
    test_config: Config,
) -> Aggregator:
    return Aggregator(identity_provider, nft_provider, cache, test_config)


@pytest.fixture
def resolver(
    identity_provider: FakeIdentityProvider,
    nft_provider: FakeNftProvider,
    cache: CacheLayer,
    test_config: Config,
) -> CollectionFriendsResolver:
    return CollectionFriendsResolver(identity_provider, nft_provider, cache, test_config)


@pytest.fixture
def services(
    test_config: Config,
    cache: CacheLayer,
    aggregator: Aggregator,
    resolver: CollectionFriendsResolver,
) -> Services:
    return Services(config=test_config, cache=cache, aggregator=aggregator, friends=resolver)


@pytest.fixture
def sample_neynar_user() -> Dict[str, Any]:
    return {
        "fid": 3,
        "username": "dwr.eth",
        "display_name": "Dan Romero",
        "pfp_url": "https://i.imgur.com/dwr.png",
        "custody_address": "0x6B0BDA3F2FFED5EFC83FA8C024ACFF1DD45793F1",
        "verified_addresses": {
            "eth_addresses": ["0xD7029BDEA1C17493893AAFE29AAD69EF892B8FF2"],
            "sol_addresses": [],
        },
    }


@pytest.fixture
def sample_alchemy_nft() -> Dict[str, Any]:
    return {
        "contract": {
            "address": "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D",
            "name": "BoredApeYachtClub",
            "symbol": "BAYC",
            "tokenType": "ERC721",
            "isSpam": False,
            "openSeaMetadata": {"floorPrice": 12.5, "safelistRequestStatus": "verified"},
        },
        "tokenId": "0x0f",
        "tokenType": "ERC721",
        "name": "Bored Ape #15",
        "description": "An ape",
        "image": {
            "cachedUrl": "https://nft-cdn.alchemy.com/eth-mainnet/abc",
            "originalUrl": "ipfs://QmeSjSinHpPnmXmspMjwiXyN6zS4E9zccariGR3jxcaWtq/15",
        },
        "raw": {"metadata": {"image": "ipfs://QmeSjSinHpPnmXmspMjwiXyN6zS4E9zccariGR3jxcaWtq/15"}},
        "balance": "1",
        "acquiredAt": {"blockTimestamp": "2023-05-01T12:00:00Z"},
        "timeLastUpdated": "2024-01-02T03:04:05Z",
    }
