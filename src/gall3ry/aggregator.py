"""
Identity -> addresses -> (chain x address) NFT aggregation
"""

import asyncio
import base64
import binascii
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from loguru import logger
from pydantic import Field

from .clients.base import IdentityProvider, NftProvider
from .config import Config, config as default_config
from .errors import (
    GalleryError,
    InternalError,
    InvalidInput,
    NoAddresses,
    RequestTimeout,
)
from .filters import FilterOptions, SortOptions, filter_and_sort
from .models import (
    Chain,
    Diagnostics,
    FetchFailure,
    GalleryModel,
    Identity,
    NftPage,
    NftRecord,
)
from .normalizer import Normalizer
from .storage.cache import CacheLayer, identity_key, nfts_key, search_key, spam_key
from .utils import parse_chains, parse_identity_query, require_address

PAGE_TOKEN_VERSION = 1
DEFAULT_SEARCH_LIMIT = 5
MAX_SEARCH_LIMIT = 10


class NftQueryOptions(GalleryModel):
    """Caller options for one aggregation call"""
    chains: Optional[List[Chain]] = None
    wallets: Optional[List[str]] = None
    page_size: int = Field(default=100, ge=1, le=100)
    page_token: Optional[str] = None
    exclude_spam: bool = True
    budget: Optional[int] = Field(default=None, ge=1)
    filters: Optional[FilterOptions] = None
    sort: SortOptions = Field(default_factory=SortOptions)


@dataclass
class _Stream:
    """Sequential page walk of one (address, chain) pair"""
    address: str
    chain: Chain
    cursor: Optional[str] = None
    budget: int = 0
    records: List[NftRecord] = field(default_factory=list)
    pages: int = 0
    cache_hits: int = 0
    done: bool = False

    @property
    def key(self) -> str:
        return f"{self.chain.value}:{self.address}"


def merge_records(batches: Iterable[Iterable[NftRecord]]) -> List[NftRecord]:
    """
    Merge records sharing an id by unioning their owners

    The surviving record is the one whose smallest owner sorts first, so the
    result does not depend on input order. Output is ordered by id.
    """
    merged: Dict[str, NftRecord] = {}
    for batch in batches:
        for record in batch:
            existing = merged.get(record.id)
            if existing is None:
                merged[record.id] = record
                continue
            owners = sorted(set(existing.owners) | set(record.owners))
            base = existing if min(existing.owners, default="") <= min(record.owners, default="") else record
            merged[record.id] = base.model_copy(update={"owners": owners})
    return [merged[record_id] for record_id in sorted(merged)]


def encode_page_token(cursors: Dict[str, str]) -> Optional[str]:
    """Opaque continuation token holding per-stream page keys"""
    if not cursors:
        return None
    payload = json.dumps({"v": PAGE_TOKEN_VERSION, "s": cursors}, sort_keys=True, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_page_token(token: str) -> Dict[str, str]:
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (ValueError, binascii.Error, UnicodeError):
        raise InvalidInput("Malformed pageToken")
    if not isinstance(payload, dict) or payload.get("v") != PAGE_TOKEN_VERSION or not isinstance(payload.get("s"), dict):
        raise InvalidInput("Unsupported pageToken")
    return {str(k): str(v) for k, v in payload["s"].items() if v}


class Aggregator:
    """Resolves identities and aggregates their NFTs across wallets and chains"""

    def __init__(
        self,
        identity_provider: IdentityProvider,
        nft_provider: NftProvider,
        cache: CacheLayer,
        config_instance: Optional[Config] = None,
    ):
        self.config = config_instance or default_config
        self.identity_provider = identity_provider
        self.nft_provider = nft_provider
        self.cache = cache
        self.normalizer = Normalizer()

    async def resolve_identity(self, username_or_fid: Union[str, int]) -> Identity:
        """Resolve a username or FID through the cache"""
        query = parse_identity_query(username_or_fid)

        async def load() -> Dict[str, Any]:
            identity = await self.identity_provider.resolve_identity(query)
            return identity.to_json()

        data = await self.cache.get_or_compute(identity_key(query), self.config.identity_cache_ttl, load)
        return Identity.model_validate(data)

    async def search_users(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[Identity]:
        """Typeahead profile search, cached per (query, limit)"""
        text = (query or "").strip().lstrip("@")
        if not text:
            raise InvalidInput("Search query is required")
        if not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")

        async def load() -> List[Dict[str, Any]]:
            users = await self.identity_provider.search_users(text, limit)
            return [user.to_json() for user in users]

        data = await self.cache.get_or_compute(search_key(text, limit), self.config.identity_cache_ttl, load)
        return [Identity.model_validate(item) for item in data]

    async def _fetch_page(
        self,
        address: str,
        chain: Chain,
        page_key: Optional[str],
        options: NftQueryOptions,
    ) -> Tuple[List[NftRecord], Optional[str], bool]:
        """One normalised, owner-tagged page through the cache"""

        async def load() -> Dict[str, Any]:
            raw_items, next_key = await self.nft_provider.list_nfts_for_owner(
                address,
                chain,
                page_key=page_key,
                page_size=options.page_size,
                exclude_spam=options.exclude_spam,
            )
            records = self.normalizer.normalize_nfts(raw_items, chain)
            return {
                "items": [r.model_copy(update={"owners": [address]}).to_json() for r in records],
                "pageKey": next_key,
            }

        key = nfts_key(address, chain, options.page_size, options.exclude_spam, page_key)
        data, hit = await self.cache.fetch(key, self.config.nft_cache_ttl, load)
        records = [NftRecord.model_validate(item) for item in data.get("items", [])]
        return records, data.get("pageKey") or None, hit

    async def _run_stream(self, stream: _Stream, semaphore: asyncio.Semaphore, options: NftQueryOptions) -> None:
        async with semaphore:
            while True:
                records, next_key, hit = await self._fetch_page(stream.address, stream.chain, stream.cursor, options)
                stream.records.extend(records)
                stream.pages += 1
                stream.cache_hits += int(hit)
                stream.cursor = next_key
                if not next_key:
                    stream.done = True
                    return
                if len(stream.records) >= stream.budget:
                    return

    def _plan_streams(
        self,
        identity: Identity,
        options: NftQueryOptions,
    ) -> Tuple[List[str], List[_Stream]]:
        addresses = identity.address_values()
        if not addresses:
            raise NoAddresses(f"Identity {identity.fid} has no usable addresses")

        if options.wallets:
            wallets = [require_address(w) for w in options.wallets]
            unknown = sorted(set(wallets) - set(addresses))
            if unknown:
                raise InvalidInput(
                    "Wallet filter includes addresses not owned by this identity",
                    details={"wallets": unknown},
                )
            selected = [a for a in addresses if a in wallets]
        else:
            selected = addresses

        chains = options.chains or parse_chains(None, self.config.default_chains)
        streams = [_Stream(address=a, chain=Chain(c)) for c in chains for a in selected]

        if options.page_token:
            cursors = decode_page_token(options.page_token)
            streams = [s for s in streams if s.key in cursors]
            for stream in streams:
                stream.cursor = cursors[stream.key]

        budget = options.budget or self.config.request_item_budget
        per_stream = max(1, math.ceil(budget / max(1, len(streams))))
        for stream in streams:
            stream.budget = per_stream
        return addresses, streams

    async def get_nfts_for_identity(
        self,
        username_or_fid: Union[str, int],
        options: Optional[NftQueryOptions] = None,
        timeout: Optional[float] = None,
    ) -> NftPage:
        """
        Aggregate an identity's NFTs into one page

        A failing (address, chain) stream contributes nothing and is reported
        in diagnostics; the call fails only when every stream fails. Streams
        still running at the deadline keep the pages they already fetched.
        """
        options = options or NftQueryOptions()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout if timeout is not None else self.config.request_timeout)

        try:
            identity = await asyncio.wait_for(self.resolve_identity(username_or_fid), timeout=deadline - loop.time())
        except asyncio.TimeoutError:
            raise RequestTimeout("Identity resolution exceeded the request deadline")

        addresses, streams = self._plan_streams(identity, options)
        diagnostics = Diagnostics(streams=len(streams))
        if not streams:
            return NftPage(items=[], next_page_token=None, has_more=False, diagnostics=diagnostics)

        semaphores = {chain: asyncio.Semaphore(self.config.max_parallel) for chain in {s.chain for s in streams}}
        tasks = {
            asyncio.ensure_future(self._run_stream(stream, semaphores[stream.chain], options)): stream
            for stream in streams
        }
        try:
            _, pending = await asyncio.wait(tasks, timeout=max(0.0, deadline - loop.time()))
        finally:
            outstanding = [task for task in tasks if not task.done()]
            for task in outstanding:
                task.cancel()
            if outstanding:
                await asyncio.gather(*outstanding, return_exceptions=True)

        contributions: List[List[NftRecord]] = []
        cursors: Dict[str, str] = {}
        errors: List[GalleryError] = []

        for task, stream in tasks.items():
            diagnostics.cache_hits += stream.cache_hits
            if task in pending:
                diagnostics.timed_out = True
                if stream.pages == 0:
                    error: GalleryError = RequestTimeout("Request deadline exceeded")
                    errors.append(error)
                    diagnostics.failures.append(self._failure(stream, error))
                    continue
            else:
                exc = task.exception()
                if exc is not None:
                    if isinstance(exc, GalleryError):
                        error = exc
                    else:
                        logger.opt(exception=exc).error(f"Unexpected failure in stream {stream.key}")
                        error = InternalError("Unexpected failure while fetching NFTs")
                    errors.append(error)
                    diagnostics.failures.append(self._failure(stream, error))
                    continue

            contributions.append(stream.records)
            if not stream.done and stream.cursor:
                cursors[stream.key] = stream.cursor

        if not contributions:
            if all(isinstance(e, RequestTimeout) for e in errors):
                raise RequestTimeout("No wallet contributed before the request deadline")
            raise next(e for e in errors if not isinstance(e, RequestTimeout))

        diagnostics.partial = bool(diagnostics.failures) or diagnostics.timed_out

        merged = merge_records(contributions)
        if options.exclude_spam:
            merged = [r for r in merged if r.is_spam is not True]
        items = filter_and_sort(merged, options.filters, options.sort, addresses)

        next_token = encode_page_token(cursors)
        logger.info(
            f"Aggregated {len(items)} NFTs for fid {identity.fid} from {len(streams)} stream(s) "
            f"({len(diagnostics.failures)} failed, {diagnostics.cache_hits} cached page(s))"
        )
        return NftPage(
            items=items,
            next_page_token=next_token,
            has_more=next_token is not None,
            diagnostics=diagnostics,
        )

    @staticmethod
    def _failure(stream: _Stream, error: GalleryError) -> FetchFailure:
        return FetchFailure(address=stream.address, chain=stream.chain, error=error.kind, message=error.message)

    async def check_spam(self, contracts: List[str], chain: Chain) -> List[Dict[str, Any]]:
        """Spam classification for contracts, cached per contract"""
        results = []
        for contract in contracts:
            address = require_address(contract)

            async def load(address: str = address) -> bool:
                return await self.nft_provider.is_spam_contract(address, chain)

            is_spam = await self.cache.get_or_compute(spam_key(chain, address), self.config.nft_cache_ttl, load)
            results.append({"contract": address, "isSpam": bool(is_spam)})
        return results
