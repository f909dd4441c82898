"""
Normalized Pydantic models for identities, NFTs and collection owners
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidInput


class Chain(str, Enum):
    """Supported EVM networks"""
    ETH = "eth"
    BASE = "base"
    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    ZORA = "zora"

    @classmethod
    def from_string(cls, chain_str: str) -> "Chain":
        """Convert string to Chain enum"""
        chain_str = (chain_str or "").lower().strip()
        mapping = {
            "eth": cls.ETH,
            "ethereum": cls.ETH,
            "mainnet": cls.ETH,
            "base": cls.BASE,
            "polygon": cls.POLYGON,
            "matic": cls.POLYGON,
            "arbitrum": cls.ARBITRUM,
            "arb": cls.ARBITRUM,
            "optimism": cls.OPTIMISM,
            "op": cls.OPTIMISM,
            "zora": cls.ZORA,
        }
        if chain_str not in mapping:
            raise InvalidInput(f"Unsupported chain: {chain_str!r}")
        return mapping[chain_str]


class AddressOrigin(str, Enum):
    CUSTODY = "custody"
    VERIFIED = "verified"


class SortKey(str, Enum):
    VALUE = "value"
    COLLECTION = "collection"
    RECENT = "recent"


class GalleryModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Address(GalleryModel):
    """On-chain address in canonical lowercase form"""
    value: str
    origin: AddressOrigin

    @field_validator("value")
    @classmethod
    def _lowercase(cls, v: str) -> str:
        return v.strip().lower()


class Identity(GalleryModel):
    """Social identity resolved from a username or FID"""
    fid: int = Field(ge=0)
    username: str = ""
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    custody_address: Optional[str] = None
    verified_addresses: List[str] = Field(default_factory=list)

    @field_validator("custody_address")
    @classmethod
    def _lowercase_custody(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else None

    @field_validator("verified_addresses")
    @classmethod
    def _lowercase_verified(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for address in v:
            if not address:
                continue
            address = address.strip().lower()
            if address not in seen:
                seen.append(address)
        return seen

    def addresses(self) -> List[Address]:
        """Effective address set: custody first, then verified, deduplicated"""
        result: List[Address] = []
        seen = set()
        if self.custody_address:
            result.append(Address(value=self.custody_address, origin=AddressOrigin.CUSTODY))
            seen.add(self.custody_address)
        for address in self.verified_addresses:
            if address not in seen:
                result.append(Address(value=address, origin=AddressOrigin.VERIFIED))
                seen.add(address)
        return result

    def address_values(self) -> List[str]:
        return [a.value for a in self.addresses()]


class FloorPrice(GalleryModel):
    """Floor price as reported upstream; never converted"""
    amount: float
    currency: str = "ETH"


class Collection(GalleryModel):
    """Collection reference embedded in each NFT"""
    id: str
    name: str = "Unknown Collection"
    network: Chain
    contract: str
    floor_price: Optional[FloorPrice] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NftRecord(GalleryModel):
    """Canonical NFT record"""
    id: str
    chain: Chain
    contract: str
    token_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    collection: Collection
    image_url: Optional[str] = None
    animation_url: Optional[str] = None
    is_spam: Optional[bool] = None
    owners: List[str] = Field(default_factory=list)
    floor_price_usd: Optional[float] = None
    token_type: Optional[str] = None
    balance: int = 1
    acquired_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    @field_validator("owners")
    @classmethod
    def _canonical_owners(cls, v: List[str]) -> List[str]:
        return sorted({address.lower() for address in v if address})


class FriendProfile(GalleryModel):
    """Followed identity that holds a given collection"""
    fid: int
    username: str = ""
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    holding_count: int = 1
    addresses: List[str] = Field(default_factory=list)


class OwnerListing(GalleryModel):
    """Owner set of a collection at enumeration time"""
    contract: str
    chain: Chain
    owners: List[str] = Field(default_factory=list)
    holdings: Dict[str, int] = Field(default_factory=dict)
    profiles: List[FriendProfile] = Field(default_factory=list)

    def holding_count(self, address: str) -> Optional[int]:
        if not self.holdings:
            return None
        return self.holdings.get(address.lower())


class FetchFailure(GalleryModel):
    """One failed (address, chain) contribution"""
    address: str
    chain: Chain
    error: str
    message: str


class Diagnostics(GalleryModel):
    """Per-request diagnostic envelope"""
    partial: bool = False
    timed_out: bool = False
    failures: List[FetchFailure] = Field(default_factory=list)
    streams: int = 0
    cache_hits: int = 0
    code: Optional[str] = None


class NftPage(GalleryModel):
    """Paged result of an identity aggregation"""
    items: List[NftRecord] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    has_more: bool = False
    diagnostics: Optional[Diagnostics] = None


class FriendsResult(GalleryModel):
    """Result of a collection-friends lookup"""
    friends: List[FriendProfile] = Field(default_factory=list)
    total: int = 0
    diagnostics: Optional[Diagnostics] = None
