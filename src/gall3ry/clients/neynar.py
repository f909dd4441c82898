"""Neynar API client for Farcaster identities and follow graphs"""

from typing import Any, Dict, List, Optional, Tuple
from loguru import logger

from .base import BaseAPIClient, IdentityProvider
from ..errors import InvalidInput, NotFound
from ..models import Identity
from ..normalizer import Normalizer
from ..utils import parse_identity_query


class NeynarClient(BaseAPIClient, IdentityProvider):
    """Neynar API client"""

    name = "neynar"

    FOLLOWING_PAGE_SIZE = 100
    VERIFICATIONS_PAGE_SIZE = 100
    BULK_ADDRESS_BATCH = 350
    SEARCH_MAX_LIMIT = 10

    def __init__(
        self,
        api_keys: List[str],
        base_url: str = "https://api.neynar.com/v2/farcaster",
        hub_url: str = "https://hub-api.neynar.com/v1",
        max_following_pages: int = 50,
        max_verification_pages: int = 20,
        **kwargs: Any,
    ):
        super().__init__(api_keys, base_url, **kwargs)
        self.hub_url = hub_url.rstrip("/")
        self.max_following_pages = max_following_pages
        self.max_verification_pages = max_verification_pages

    def _authorize(self, url: str, headers: Dict[str, str]) -> Tuple[str, Dict[str, str]]:
        headers["x-api-key"] = self.get_api_key()
        return url, headers

    async def resolve_identity(self, username_or_fid: Any) -> Identity:
        """Resolve a username or FID to a profile with every verified address"""
        query = parse_identity_query(username_or_fid)

        if isinstance(query, int):
            response = await self._request("GET", f"{self.base_url}/user/bulk", params={"fids": str(query)})
            users = (response or {}).get("users") or []
            if not users:
                raise NotFound(f"No user with fid {query}")
            user = users[0]
        else:
            response = await self._request("GET", f"{self.base_url}/user/by_username", params={"username": query})
            user = (response or {}).get("user") or (response or {}).get("result", {}).get("user")
            if not user:
                raise NotFound(f"No user named {query!r}")

        identity = Normalizer.normalize_identity(user)

        # The profile payload may truncate verifications; the hub listing is paginated
        hub_addresses = await self._list_verified_addresses(identity.fid)
        merged = list(identity.verified_addresses)
        for address in hub_addresses:
            if address not in merged:
                merged.append(address)
        if len(merged) != len(identity.verified_addresses):
            identity = identity.model_copy(update={"verified_addresses": merged})

        logger.info(
            f"Resolved {username_or_fid!r} to fid {identity.fid} with {len(identity.addresses())} address(es)"
        )
        return identity

    async def _list_verified_addresses(self, fid: int) -> List[str]:
        """All Ethereum verifications of a FID, across hub pages"""
        addresses: List[str] = []
        page_token: Optional[str] = None

        for _ in range(self.max_verification_pages):
            params: Dict[str, Any] = {"fid": str(fid), "pageSize": str(self.VERIFICATIONS_PAGE_SIZE)}
            if page_token:
                params["pageToken"] = page_token
            response = await self._request("GET", f"{self.hub_url}/verificationsByFid", params=params) or {}

            for message in response.get("messages") or []:
                body = (message.get("data") or {}).get("verificationAddAddressBody") or {}
                address = body.get("address")
                protocol = body.get("protocol", "PROTOCOL_ETHEREUM")
                if address and protocol == "PROTOCOL_ETHEREUM" and str(address).startswith("0x"):
                    addresses.append(str(address).lower())

            page_token = response.get("nextPageToken") or None
            if not page_token:
                break
        else:
            logger.warning(f"Verification listing for fid {fid} truncated at {self.max_verification_pages} pages")

        return addresses

    async def list_following(self, fid: int) -> List[Identity]:
        """Full follow list of a user; verified addresses may be absent"""
        following: List[Identity] = []
        cursor: Optional[str] = None

        for page in range(self.max_following_pages):
            params: Dict[str, Any] = {"fid": str(fid), "limit": str(self.FOLLOWING_PAGE_SIZE)}
            if cursor:
                params["cursor"] = cursor
            response = await self._request("GET", f"{self.base_url}/following", params=params) or {}

            # v2 returns {users, next}; older payloads nest under result
            body = response.get("result") if "result" in response else response
            for entry in body.get("users") or []:
                user = entry.get("user") if isinstance(entry.get("user"), dict) else entry
                if user and user.get("fid") is not None:
                    following.append(Normalizer.normalize_identity(user))

            cursor = (body.get("next") or {}).get("cursor")
            if not cursor:
                break
        else:
            logger.warning(f"Following list for fid {fid} truncated at {self.max_following_pages} pages")

        logger.debug(f"Fetched {len(following)} followed users for fid {fid}")
        return following

    async def lookup_by_addresses(self, addresses: List[str]) -> Dict[str, List[Identity]]:
        """Identities that verified any of the given addresses"""
        result: Dict[str, List[Identity]] = {}
        unique = sorted({a.lower() for a in addresses if a})

        for start in range(0, len(unique), self.BULK_ADDRESS_BATCH):
            batch = unique[start:start + self.BULK_ADDRESS_BATCH]
            try:
                response = await self._request(
                    "GET",
                    f"{self.base_url}/user/bulk-by-address",
                    params={"addresses": ",".join(batch)},
                ) or {}
            except NotFound:
                # No identity holds any address in this batch
                continue
            for address, users in response.items():
                if not isinstance(users, list):
                    continue
                result[address.lower()] = [
                    Normalizer.normalize_identity(user) for user in users if isinstance(user, dict)
                ]

        return result

    async def search_users(self, query: str, limit: int = 5) -> List[Identity]:
        """
        Typeahead search over usernames and display names

        Search results carry whatever verifications the profile payload has;
        they are not completed from the hub.
        """
        text = (query or "").strip().lstrip("@")
        if not text:
            raise InvalidInput("Search query is required")
        limit = max(1, min(int(limit), self.SEARCH_MAX_LIMIT))

        response = await self._request(
            "GET", f"{self.base_url}/user/search", params={"q": text, "limit": str(limit)}
        ) or {}
        body = response.get("result") if isinstance(response.get("result"), dict) else response
        users = [
            Normalizer.normalize_identity(user)
            for user in body.get("users") or []
            if isinstance(user, dict) and user.get("fid") is not None
        ]
        logger.debug(f"Search {text!r} matched {len(users)} user(s)")
        return users[:limit]
