"""Tests for gall3ry.friends module."""

import pytest

from gall3ry.errors import NotFound, Unsupported, UpstreamUnavailable
from gall3ry.friends import NO_SOCIAL_ADDRESSES, intersect_follow_set
from gall3ry.models import Chain, Identity, OwnerListing

from .conftest import CONTRACT_B

VIEWER = 2


def follower(fid, username, verified=(), custody=None):
    return Identity(fid=fid, username=username, custody_address=custody, verified_addresses=list(verified))


def listing(owners, holdings=None):
    return OwnerListing(contract=CONTRACT_B, chain=Chain.ETH, owners=list(owners), holdings=holdings or {})


class TestIntersectFollowSet:
    """Follow set x owner set."""

    def test_case_insensitive(self):
        result = intersect_follow_set(
            [follower(1, "a", verified=["0xABC"])],
            listing(["0xabc"]),
        )
        assert [p.fid for p in result] == [1]

    def test_custody_address_counts(self):
        result = intersect_follow_set([follower(1, "a", custody="0x9")], listing(["0x9"]))
        assert result[0].addresses == ["0x9"]

    def test_duplicate_fids_merge_addresses(self):
        result = intersect_follow_set(
            [follower(1, "a", verified=["0x1"]), follower(1, "a", verified=["0x2"])],
            listing(["0x1", "0x2"], holdings={"0x1": 2, "0x2": 3}),
        )
        assert len(result) == 1
        assert result[0].holding_count == 5
        assert result[0].addresses == ["0x1", "0x2"]

    def test_holding_defaults_to_one(self):
        result = intersect_follow_set([follower(1, "a", verified=["0x1", "0x2"])], listing(["0x1", "0x2"]))
        assert result[0].holding_count == 1


class TestGetCollectionFriends:
    """Collection-friends resolution."""

    async def test_two_friends_sorted(self, resolver, identity_provider, nft_provider):
        identity_provider.following[VIEWER] = [
            follower(20, "zed", verified=["0x2", "0x4"]),
            follower(30, "amy", verified=["0x3"]),
            follower(40, "bob", verified=["0x5"]),
        ]
        nft_provider.owners[(Chain.ETH, CONTRACT_B)] = listing(["0x1", "0x2", "0x3"])

        result = await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)

        assert [p.username for p in result.friends] == ["amy", "zed"]
        assert result.total == 2
        assert result.diagnostics.code is None

    async def test_holding_count_orders_first(self, resolver, identity_provider, nft_provider):
        identity_provider.following[VIEWER] = [
            follower(20, "amy", verified=["0x1"]),
            follower(30, "zed", verified=["0x2"]),
        ]
        nft_provider.owners[(Chain.ETH, CONTRACT_B)] = listing(["0x1", "0x2"], holdings={"0x1": 1, "0x2": 4})

        result = await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)
        assert [(p.username, p.holding_count) for p in result.friends] == [("zed", 4), ("amy", 1)]

    async def test_zero_follows_is_empty(self, resolver, nft_provider):
        result = await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)
        assert result.friends == []
        assert result.total == 0
        assert nft_provider.owner_calls == 0

    async def test_no_social_addresses(self, resolver, identity_provider, nft_provider):
        identity_provider.following[VIEWER] = [follower(20, "a"), follower(30, "b")]

        result = await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)
        assert result.friends == []
        assert result.diagnostics.code == NO_SOCIAL_ADDRESSES
        assert nft_provider.owner_calls == 0

    async def test_limit_keeps_total(self, resolver, identity_provider, nft_provider):
        identity_provider.following[VIEWER] = [
            follower(i, f"user{i}", verified=[f"0x{i}"]) for i in range(1, 6)
        ]
        nft_provider.owners[(Chain.ETH, CONTRACT_B)] = listing([f"0x{i}" for i in range(1, 6)])

        result = await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER, limit=2)
        assert len(result.friends) == 2
        assert result.total == 5

    async def test_owner_failure_propagates(self, resolver, identity_provider):
        identity_provider.following[VIEWER] = [follower(20, "a", verified=["0x1"])]
        with pytest.raises(NotFound):
            await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)

    async def test_follow_failure_propagates(self, resolver, identity_provider):
        identity_provider.following_error = UpstreamUnavailable("neynar down")
        with pytest.raises(UpstreamUnavailable):
            await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)

    async def test_unsupported_chain_propagates(self, resolver, identity_provider, nft_provider):
        identity_provider.following[VIEWER] = [follower(20, "a", verified=["0x1"])]

        async def unsupported(contract, chain):
            raise Unsupported("no owner enumeration")

        nft_provider.list_owners_for_collection = unsupported
        with pytest.raises(Unsupported):
            await resolver.get_collection_friends(CONTRACT_B, Chain.ZORA, VIEWER)

    async def test_lookups_are_cached(self, resolver, identity_provider, nft_provider):
        identity_provider.following[VIEWER] = [follower(20, "a", verified=["0x1"])]
        nft_provider.owners[(Chain.ETH, CONTRACT_B)] = listing(["0x1"])

        await resolver.get_collection_friends(CONTRACT_B, Chain.ETH, VIEWER)
        await resolver.get_collection_friends(CONTRACT_B.upper().replace("0X", "0x"), Chain.ETH, VIEWER)

        assert identity_provider.following_calls == 1
        assert nft_provider.owner_calls == 1


class TestGetCollectionHolders:
    """Holder-profile enrichment."""

    async def test_profiles_for_holders_with_identity(self, resolver, identity_provider, nft_provider):
        nft_provider.owners[(Chain.ETH, CONTRACT_B)] = listing(["0x1", "0x2", "0x3"], holdings={"0x1": 2})
        identity_provider.by_address = {
            "0x1": [follower(11, "first", verified=["0x1"])],
            "0x3": [follower(33, "third", verified=["0x3"])],
        }

        result = await resolver.get_collection_holders(CONTRACT_B, Chain.ETH)

        assert result.owners == ["0x1", "0x2", "0x3"]
        assert [(p.username, p.holding_count) for p in result.profiles] == [("first", 2), ("third", 1)]
