"""Alchemy NFT API v3 client for EVM chains"""

from typing import Any, Dict, List, Optional, Set, Tuple
from loguru import logger

from .base import BaseAPIClient, CollectionProvider, NftProvider
from ..errors import GalleryError, InvalidAddress, Unsupported, from_http_status
from ..models import Chain, OwnerListing
from ..utils import require_address

KEY_PLACEHOLDER = "<api-key>"


class AlchemyClient(BaseAPIClient, NftProvider, CollectionProvider):
    """Alchemy API client"""

    name = "alchemy"

    CHAIN_MAP = {
        Chain.ETH: "eth-mainnet",
        Chain.BASE: "base-mainnet",
        Chain.POLYGON: "polygon-mainnet",
        Chain.ARBITRUM: "arb-mainnet",
        Chain.OPTIMISM: "opt-mainnet",
        Chain.ZORA: "zora-mainnet",
    }

    # Networks where getOwnersForContract is served
    OWNER_ENUMERABLE = {Chain.ETH, Chain.BASE, Chain.POLYGON, Chain.ARBITRUM, Chain.OPTIMISM}

    # Networks where the SPAM exclude filter is accepted
    SPAM_FILTER_CHAINS = {Chain.ETH, Chain.POLYGON}

    def __init__(self, api_keys: List[str], max_owner_pages: int = 50, **kwargs: Any):
        super().__init__(api_keys, "https://{network}.g.alchemy.com", **kwargs)
        self.max_owner_pages = max_owner_pages

    def _authorize(self, url: str, headers: Dict[str, str]) -> Tuple[str, Dict[str, str]]:
        return url.replace(KEY_PLACEHOLDER, self.get_api_key()), headers

    def _error_for_status(self, status: int, payload: Any) -> GalleryError:
        if status == 400:
            message = payload.get("error", {}) if isinstance(payload, dict) else payload
            if "address" in str(message).lower():
                return InvalidAddress("alchemy rejected the address")
        return from_http_status(status, f"{self.name} returned HTTP {status}")

    def _endpoint(self, chain: Chain, method: str) -> str:
        """NFT API v3 URL with the key left as a placeholder"""
        network = self.CHAIN_MAP.get(Chain(chain))
        if not network:
            raise Unsupported(f"Chain {chain} is not supported by alchemy")
        return f"https://{network}.g.alchemy.com/nft/v3/{KEY_PLACEHOLDER}/{method}"

    async def list_nfts_for_owner(
        self,
        address: str,
        chain: Chain,
        page_key: Optional[str] = None,
        page_size: int = 100,
        exclude_spam: bool = True,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Get one page of NFTs owned by a wallet"""
        owner = require_address(address)
        params: Dict[str, Any] = {
            "owner": owner,
            "withMetadata": "true",
            "pageSize": str(max(1, min(page_size, self.max_page_size))),
        }
        if page_key:
            params["pageKey"] = page_key
        if exclude_spam and Chain(chain) in self.SPAM_FILTER_CHAINS:
            params["excludeFilters[]"] = "SPAM"

        response = await self._request("GET", self._endpoint(chain, "getNFTsForOwner"), params=params) or {}
        owned = response.get("ownedNfts") or []
        next_key = response.get("pageKey") or None
        logger.debug(f"Alchemy returned {len(owned)} NFTs for {owner} on {Chain(chain).value}")
        return owned, next_key

    async def list_owners_for_collection(self, contract: str, chain: Chain) -> OwnerListing:
        """All owners of a contract, with distinct-token holding counts"""
        chain = Chain(chain)
        if chain not in self.OWNER_ENUMERABLE:
            raise Unsupported(f"Owner enumeration is not available on {chain.value}")
        contract_address = require_address(contract)

        owners: List[str] = []
        tokens: Dict[str, Set[str]] = {}
        has_balances = False
        page_key: Optional[str] = None

        for _ in range(self.max_owner_pages):
            params: Dict[str, Any] = {"contractAddress": contract_address, "withTokenBalances": "true"}
            if page_key:
                params["pageKey"] = page_key
            response = await self._request(
                "GET", self._endpoint(chain, "getOwnersForContract"), params=params
            ) or {}

            for owner in response.get("owners") or []:
                if isinstance(owner, str):
                    address, balances = owner.lower(), None
                elif isinstance(owner, dict) and owner.get("ownerAddress"):
                    address, balances = str(owner["ownerAddress"]).lower(), owner.get("tokenBalances")
                else:
                    continue
                if address not in tokens:
                    owners.append(address)
                    tokens[address] = set()
                if isinstance(balances, list):
                    has_balances = True
                    for balance in balances:
                        token_id = (balance or {}).get("tokenId")
                        if token_id is not None:
                            tokens[address].add(str(token_id))

            page_key = response.get("pageKey") or None
            if not page_key:
                break
        else:
            logger.warning(
                f"Owner listing for {contract_address} on {chain.value} truncated at {self.max_owner_pages} pages"
            )

        holdings = {address: max(1, len(ids)) for address, ids in tokens.items()} if has_balances else {}
        logger.info(f"Alchemy listed {len(owners)} owners for {contract_address} on {chain.value}")
        return OwnerListing(contract=contract_address, chain=chain, owners=owners, holdings=holdings)

    async def is_spam_contract(self, contract: str, chain: Chain) -> bool:
        contract_address = require_address(contract)
        response = await self._request(
            "GET",
            self._endpoint(chain, "isSpamContract"),
            params={"contractAddress": contract_address},
        ) or {}
        return bool(response.get("isSpamContract"))
