"""Filter and sort engine over an in-memory NFT working set"""

from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Iterable, List, Optional

from pydantic import model_validator

from .errors import InvalidInput
from .models import Chain, GalleryModel, NftRecord, SortKey


class FilterOptions(GalleryModel):
    """Viewer-selected predicates; None means no restriction"""
    chains: Optional[List[Chain]] = None
    wallets: Optional[List[str]] = None
    query: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    acquired_after: Optional[datetime] = None
    acquired_before: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_ranges(self) -> "FilterOptions":
        if self.acquired_after is not None and self.acquired_after.tzinfo is None:
            self.acquired_after = self.acquired_after.replace(tzinfo=timezone.utc)
        if self.acquired_before is not None and self.acquired_before.tzinfo is None:
            self.acquired_before = self.acquired_before.replace(tzinfo=timezone.utc)
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        if self.acquired_after and self.acquired_before and self.acquired_after > self.acquired_before:
            raise ValueError("acquired_after must not be later than acquired_before")
        if self.wallets is not None:
            self.wallets = [w.strip().lower() for w in self.wallets if w and w.strip()]
        return self


class SortOptions(GalleryModel):
    key: SortKey = SortKey.COLLECTION
    descending: Optional[bool] = None

    @property
    def is_descending(self) -> bool:
        """Value and recent default to descending, collection to ascending"""
        if self.descending is not None:
            return self.descending
        return self.key in (SortKey.VALUE, SortKey.RECENT)


def value_of(record: NftRecord) -> float:
    return record.floor_price_usd if record.floor_price_usd is not None else 0.0


def _matches_query(record: NftRecord, query: str) -> bool:
    needle = query.casefold()
    return any(
        needle in (text or "").casefold()
        for text in (record.title, record.collection.name, record.token_id)
    )


def apply_filters(
    records: Iterable[NftRecord],
    filters: Optional[FilterOptions],
    effective_addresses: Optional[Iterable[str]] = None,
) -> List[NftRecord]:
    """
    Apply chain, wallet, text, value and acquisition-date predicates in order

    Raises:
        InvalidInput when the wallet restriction names an address outside the
        effective address set
    """
    result = list(records)
    if filters is None:
        return result

    if filters.chains:
        allowed_chains = {Chain(c) for c in filters.chains}
        result = [r for r in result if r.chain in allowed_chains]

    if filters.wallets:
        wallets = set(filters.wallets)
        if effective_addresses is not None:
            unknown = wallets - {a.lower() for a in effective_addresses}
            if unknown:
                raise InvalidInput(
                    "Wallet filter includes addresses not owned by this identity",
                    details={"wallets": sorted(unknown)},
                )
        result = [r for r in result if wallets.intersection(r.owners)]

    if filters.query and filters.query.strip():
        query = filters.query.strip()
        result = [r for r in result if _matches_query(r, query)]

    # Records without a USD floor count as 0
    if filters.min_value is not None:
        result = [r for r in result if value_of(r) >= filters.min_value]
    if filters.max_value is not None:
        result = [r for r in result if value_of(r) <= filters.max_value]

    # Records without an acquisition date never match a date range
    if filters.acquired_after is not None:
        result = [r for r in result if r.acquired_at is not None and r.acquired_at >= filters.acquired_after]
    if filters.acquired_before is not None:
        result = [r for r in result if r.acquired_at is not None and r.acquired_at <= filters.acquired_before]

    return result


def _compare_token_ids(a: str, b: str) -> int:
    try:
        left, right = int(a), int(b)
    except ValueError:
        left, right = a, b
    return (left > right) - (left < right)


def _compare_collection(a: NftRecord, b: NftRecord) -> int:
    name_a, name_b = a.collection.name.casefold(), b.collection.name.casefold()
    if name_a != name_b:
        return -1 if name_a < name_b else 1
    return _compare_token_ids(a.token_id, b.token_id)


def sort_records(records: Iterable[NftRecord], sort: Optional[SortOptions] = None) -> List[NftRecord]:
    """
    Total order over records; ties always break by id ascending

    Sorting by id first and relying on sort stability (which Python keeps
    for reverse=True as well) gives the id tie-break in either direction.
    """
    sort = sort or SortOptions()
    descending = sort.is_descending
    ordered = sorted(records, key=lambda r: r.id)

    if sort.key == SortKey.VALUE:
        return sorted(ordered, key=value_of, reverse=descending)

    if sort.key == SortKey.COLLECTION:
        return sorted(ordered, key=cmp_to_key(_compare_collection), reverse=descending)

    dated = [r for r in ordered if r.last_activity_at is not None]
    undated = [r for r in ordered if r.last_activity_at is None]
    return sorted(dated, key=lambda r: r.last_activity_at, reverse=descending) + undated


def filter_and_sort(
    records: Iterable[NftRecord],
    filters: Optional[FilterOptions] = None,
    sort: Optional[SortOptions] = None,
    effective_addresses: Optional[Iterable[str]] = None,
) -> List[NftRecord]:
    return sort_records(apply_filters(records, filters, effective_addresses), sort)
