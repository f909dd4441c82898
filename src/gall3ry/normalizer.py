"""Normalize provider payloads to canonical records"""

import json
import math
from typing import Dict, Any, Optional, List, Tuple

from loguru import logger
from .models import (
    Chain,
    Collection,
    FloorPrice,
    FriendProfile,
    Identity,
    NftRecord,
)
from .utils import parse_timestamp, to_decimal_token_id

UNKNOWN_COLLECTION = "Unknown Collection"

IPFS_GATEWAY = "https://cloudflare-ipfs.com/ipfs/"
ARWEAVE_GATEWAY = "https://arweave.net/"


def convert_ipfs_to_http(url: str) -> Optional[str]:
    """Convert ipfs:// and ar:// URLs to HTTP gateway URLs"""
    if not url or not isinstance(url, str):
        return None

    url = url.strip()

    # Already HTTP/HTTPS
    if url.startswith(("http://", "https://")):
        return url

    if url.startswith("ipfs://"):
        # Keep everything after the scheme (hash + path)
        ipfs_path = url[len("ipfs://"):].lstrip("/")
        if ipfs_path.startswith("ipfs/"):
            ipfs_path = ipfs_path[len("ipfs/"):]
        return f"{IPFS_GATEWAY}{ipfs_path}"

    if url.startswith("ar://"):
        return f"{ARWEAVE_GATEWAY}{url[len('ar://'):].lstrip('/')}"

    # Bare CIDv0 hash, optionally with a path
    if url.startswith("Qm") and len(url.split("/")[0]) > 40:
        return f"{IPFS_GATEWAY}{url}"

    return url


def _first_non_empty(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


def _split_composite_id(value: Any) -> Tuple[Optional[str], Optional[str]]:
    """Split ids of the form chain:contract:token or chain:contract-token"""
    if not isinstance(value, str) or ":" not in value:
        return None, None
    parts = value.split(":")
    if len(parts) >= 3:
        return parts[1] or None, parts[-1] or None
    rest = parts[1]
    if "-" in rest:
        contract, token_id = rest.rsplit("-", 1)
        return contract or None, token_id or None
    return rest or None, None


class Normalizer:
    """Convert provider-specific payloads to canonical models"""

    @staticmethod
    def metadata(data: Dict[str, Any]) -> Dict[str, Any]:
        """Token metadata, decoding JSON-string metadata when needed"""
        metadata = data.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata) if metadata else {}
            except ValueError:
                metadata = {}
        return _as_dict(metadata)

    @staticmethod
    def resolve_contract(data: Dict[str, Any]) -> Optional[str]:
        contract = _first_non_empty(
            _as_dict(data.get("contract")).get("address"),
            data.get("contractAddress"),
        )
        if not contract:
            contract, _ = _split_composite_id(data.get("id"))
        return contract.lower() if contract else None

    @staticmethod
    def resolve_token_id(data: Dict[str, Any]) -> Optional[str]:
        for candidate in (
            data.get("tokenId"),
            data.get("token_id"),
            _as_dict(data.get("id")).get("tokenId"),
        ):
            token_id = to_decimal_token_id(candidate)
            if token_id:
                return token_id
        _, token_id = _split_composite_id(data.get("id"))
        return to_decimal_token_id(token_id)

    @staticmethod
    def pick_image_url(data: Dict[str, Any]) -> Optional[str]:
        """Best image URL; first non-empty candidate wins"""
        media = data.get("media")
        first_media = _as_dict(media[0]) if isinstance(media, list) and media else {}
        image = data.get("image")
        image_obj = _as_dict(image)
        metadata = Normalizer.metadata(data)
        raw_metadata = _as_dict(_as_dict(data.get("raw")).get("metadata"))

        return _first_non_empty(
            first_media.get("gateway"),
            first_media.get("raw"),
            first_media.get("thumbnail"),
            data.get("image_url"),
            image if isinstance(image, str) else None,
            image_obj.get("cachedUrl"),
            image_obj.get("originalUrl"),
            image_obj.get("pngUrl"),
            image_obj.get("thumbnailUrl"),
            image_obj.get("gateway"),
            metadata.get("image"),
            raw_metadata.get("image"),
            _as_dict(data.get("tokenUri")).get("gateway"),
        )

    @staticmethod
    def pick_animation_url(data: Dict[str, Any]) -> Optional[str]:
        """Best animation URL, preferring the provider's cached copy"""
        animation = data.get("animation")
        animation_obj = _as_dict(animation)
        metadata = Normalizer.metadata(data)
        raw_metadata = _as_dict(_as_dict(data.get("raw")).get("metadata"))

        return _first_non_empty(
            animation_obj.get("cachedUrl"),
            animation_obj.get("originalUrl"),
            animation_obj.get("gateway"),
            animation if isinstance(animation, str) else None,
            data.get("animation_url"),
            metadata.get("animation_url"),
            raw_metadata.get("animation_url"),
        )

    @staticmethod
    def pick_collection_name(data: Dict[str, Any]) -> str:
        metadata = Normalizer.metadata(data)
        return _first_non_empty(
            _as_dict(data.get("contract")).get("name"),
            _as_dict(data.get("contractMetadata")).get("name"),
            _as_dict(data.get("collection")).get("name"),
            metadata.get("collection"),
        ) or UNKNOWN_COLLECTION

    @staticmethod
    def extract_floor_price(data: Dict[str, Any]) -> Tuple[Optional[FloorPrice], Optional[float]]:
        """
        Floor price without currency conversion

        Returns:
            (floor price as reported, USD amount when reported in USD)
        """
        floor = _as_dict(data.get("floorPrice"))
        collection_floor = _as_dict(_as_dict(data.get("collection")).get("floorPrice"))
        opensea_v3 = _as_dict(_as_dict(data.get("contract")).get("openSeaMetadata"))
        opensea_v2 = _as_dict(_as_dict(data.get("contractMetadata")).get("openSea"))

        for usd in (
            floor.get("valueUsd"),
            collection_floor.get("valueUsd"),
            data.get("floorPriceUsd"),
            opensea_v3.get("floorPriceUsd"),
            opensea_v2.get("floorPriceUsd"),
        ):
            amount = _to_float(usd)
            if amount is not None:
                return FloorPrice(amount=amount, currency="USD"), amount

        for native, currency in (
            (floor.get("value"), floor.get("currency")),
            (collection_floor.get("value"), collection_floor.get("currency")),
            (opensea_v3.get("floorPrice"), "ETH"),
            (opensea_v2.get("floorPrice"), "ETH"),
        ):
            amount = _to_float(native)
            if amount is not None:
                currency = str(currency or "ETH").upper()
                usd = amount if currency == "USD" else None
                return FloorPrice(amount=amount, currency=currency), usd

        return None, None

    @staticmethod
    def extract_spam(data: Dict[str, Any]) -> Optional[bool]:
        for candidate in (
            _as_dict(data.get("contract")).get("isSpam"),
            _as_dict(data.get("spamInfo")).get("isSpam"),
            data.get("isSpam"),
        ):
            flag = _to_bool(candidate)
            if flag is not None:
                return flag
        return None

    @staticmethod
    def normalize_nft(data: Dict[str, Any], chain: Chain) -> Optional[NftRecord]:
        """
        Normalize an NFT payload from the NFT provider

        Returns:
            NftRecord, or None when the payload lacks a contract or token id
        """
        if not isinstance(data, dict):
            return None

        contract = Normalizer.resolve_contract(data)
        token_id = Normalizer.resolve_token_id(data)
        if not contract or not token_id:
            logger.debug(f"Rejected NFT payload without contract/tokenId: keys={list(data.keys())}")
            return None

        chain = Chain(chain)
        contract_data = _as_dict(data.get("contract"))
        contract_metadata = _as_dict(data.get("contractMetadata"))
        metadata = Normalizer.metadata(data)
        floor_price, floor_price_usd = Normalizer.extract_floor_price(data)

        token_type = _first_non_empty(
            data.get("tokenType"),
            _as_dict(_as_dict(data.get("id")).get("tokenMetadata")).get("tokenType"),
            contract_data.get("tokenType"),
            contract_metadata.get("tokenType"),
        )
        collection_meta = {
            key: value
            for key, value in (
                ("symbol", contract_data.get("symbol") or contract_metadata.get("symbol")),
                ("tokenType", token_type),
                ("totalSupply", contract_data.get("totalSupply") or contract_metadata.get("totalSupply")),
                ("safelistStatus", _as_dict(contract_data.get("openSeaMetadata")).get("safelistRequestStatus")),
            )
            if value is not None
        }

        try:
            balance = int(str(data.get("balance", "1")))
        except ValueError:
            balance = 1

        acquired = _as_dict(data.get("acquiredAt"))
        acquired_at = parse_timestamp(acquired.get("blockTimestamp")) or parse_timestamp(
            _as_dict(data.get("mint")).get("timestamp")
        )
        last_activity_at = (
            parse_timestamp(data.get("lastActivityTimestamp"))
            or parse_timestamp(data.get("lastTransferTimestamp"))
            or parse_timestamp(acquired.get("blockTimestamp"))
            or parse_timestamp(data.get("timeLastUpdated"))
        )

        return NftRecord(
            id=f"{chain.value}:{contract}-{token_id}",
            chain=chain,
            contract=contract,
            token_id=token_id,
            title=_first_non_empty(data.get("name"), data.get("title"), metadata.get("name")) or f"#{token_id}",
            description=_first_non_empty(data.get("description"), metadata.get("description")),
            collection=Collection(
                id=f"{chain.value}:{contract}",
                name=Normalizer.pick_collection_name(data),
                network=chain,
                contract=contract,
                floor_price=floor_price,
                metadata=collection_meta,
            ),
            image_url=Normalizer.pick_image_url(data),
            animation_url=Normalizer.pick_animation_url(data),
            is_spam=Normalizer.extract_spam(data),
            floor_price_usd=floor_price_usd,
            token_type=token_type,
            balance=balance,
            acquired_at=acquired_at,
            last_activity_at=last_activity_at,
        )

    @staticmethod
    def normalize_nfts(items: List[Dict[str, Any]], chain: Chain) -> List[NftRecord]:
        records = []
        for item in items or []:
            record = Normalizer.normalize_nft(item, chain)
            if record is not None:
                records.append(record)
        return records

    @staticmethod
    def normalize_identity(user: Dict[str, Any]) -> Identity:
        """Normalize an identity provider user object"""
        verified = _as_dict(user.get("verified_addresses"))
        eth_addresses = verified.get("eth_addresses")
        if eth_addresses is None:
            eth_addresses = [
                v for v in (user.get("verifications") or [])
                if isinstance(v, str) and v.startswith("0x")
            ]
        return Identity(
            fid=int(user["fid"]),
            username=user.get("username") or "",
            display_name=user.get("display_name") or user.get("displayName") or user.get("username"),
            avatar_url=user.get("pfp_url") or _as_dict(user.get("pfp")).get("url"),
            custody_address=user.get("custody_address"),
            verified_addresses=list(eth_addresses or []),
        )

    @staticmethod
    def profile_from_identity(identity: Identity, holding_count: int = 1,
                              addresses: Optional[List[str]] = None) -> FriendProfile:
        return FriendProfile(
            fid=identity.fid,
            username=identity.username,
            display_name=identity.display_name or identity.username,
            avatar_url=identity.avatar_url,
            holding_count=holding_count,
            addresses=sorted(addresses or []),
        )
