"""Tests for gall3ry.clients module."""

from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import pytest
from loguru import logger

from gall3ry.clients import AlchemyClient, NeynarClient
from gall3ry.errors import (
    InvalidAddress,
    InvalidInput,
    NotFound,
    RateLimited,
    Unsupported,
    UpstreamRejected,
    UpstreamUnavailable,
)
from gall3ry.models import Chain

OWNER = "0x6b0bda3f2ffed5efc83fa8c024acff1dd45793f1"
CONTRACT = "0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d"


class ScriptedTransport:
    """Replays (status, payload) responses and records requests"""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    async def __call__(self, method, url, params, headers, json_data) -> Tuple[int, Any]:
        self.requests.append({"method": method, "url": url, "params": dict(params or {}), "headers": dict(headers)})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def alchemy(responses: List[Any], keys: Optional[List[str]] = None, sleep: Optional[SleepRecorder] = None):
    transport = ScriptedTransport(responses)
    client = AlchemyClient(keys or ["key-one"], transport=transport, sleep=sleep or SleepRecorder())
    return client, transport


def neynar(responses: List[Any]):
    transport = ScriptedTransport(responses)
    client = NeynarClient(["neynar-key"], transport=transport, sleep=SleepRecorder())
    return client, transport


# ============================================================================
# Retry policy
# ============================================================================


class TestRetryPolicy:
    """Adapter-level retries with exponential backoff."""

    async def test_rate_limited_retried_twice_then_surfaced(self):
        sleep = SleepRecorder()
        client, transport = alchemy([(429, {"error": "slow down"})], sleep=sleep)

        with pytest.raises(RateLimited):
            await client.list_nfts_for_owner(OWNER, Chain.ETH)

        assert len(transport.requests) == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_recovers_after_retry(self):
        client, transport = alchemy([(503, "unavailable"), (200, {"ownedNfts": [{"tokenId": "1"}]})])
        items, next_key = await client.list_nfts_for_owner(OWNER, Chain.ETH)
        assert items == [{"tokenId": "1"}]
        assert next_key is None
        assert len(transport.requests) == 2

    async def test_network_error_is_upstream_unavailable(self):
        client, transport = alchemy([aiohttp.ClientConnectionError("reset")])
        with pytest.raises(UpstreamUnavailable):
            await client.list_nfts_for_owner(OWNER, Chain.ETH)
        assert len(transport.requests) == 3

    async def test_invalid_input_not_retried(self):
        client, transport = alchemy([(400, {"error": "bad pageKey"})])
        with pytest.raises(InvalidInput):
            await client.list_nfts_for_owner(OWNER, Chain.ETH)
        assert len(transport.requests) == 1

    @pytest.mark.parametrize("status", [401, 403, 402])
    async def test_credential_failure_is_upstream_error(self, status):
        client, transport = alchemy([(status, {"error": "Must be authenticated!"})])
        with pytest.raises(UpstreamRejected) as excinfo:
            await client.list_nfts_for_owner(OWNER, Chain.ETH)

        assert excinfo.value.kind == "upstream-unavailable"
        assert excinfo.value.status_code == 502
        assert not isinstance(excinfo.value, InvalidInput)
        assert len(transport.requests) == 1

    async def test_neynar_unauthorized(self):
        client, transport = neynar([(401, {"message": "Invalid API key"})])
        with pytest.raises(UpstreamRejected):
            await client.resolve_identity("dwr.eth")
        assert len(transport.requests) == 1

    async def test_not_found_not_retried(self):
        client, transport = alchemy([(404, {})])
        with pytest.raises(NotFound):
            await client.is_spam_contract(CONTRACT, Chain.ETH)
        assert len(transport.requests) == 1

    async def test_5xx_not_retried_for_post(self):
        client, transport = alchemy([(502, "bad gateway")])
        with pytest.raises(UpstreamUnavailable):
            await client._request("POST", "https://eth-mainnet.g.alchemy.com/nft/v3/<api-key>/x")
        assert len(transport.requests) == 1

    async def test_key_rotated_on_rate_limit(self):
        client, transport = alchemy([(429, {}), (200, {"ownedNfts": []})], keys=["key-one", "key-two"])
        await client.list_nfts_for_owner(OWNER, Chain.ETH)
        assert "key-one" in transport.requests[0]["url"]
        assert "key-two" in transport.requests[1]["url"]

    async def test_raw_upstream_body_not_surfaced(self):
        client, _ = alchemy([(500, "stack trace with secrets")])
        with pytest.raises(UpstreamUnavailable) as excinfo:
            await client.list_nfts_for_owner(OWNER, Chain.ETH)
        assert "secrets" not in excinfo.value.message

    async def test_error_body_logged_without_secrets(self):
        messages: List[str] = []
        sink_id = logger.add(messages.append, level="DEBUG", format="{message}")
        try:
            client, _ = alchemy(
                [(400, {"error": "bad pageKey", "api_key": "sk-live-123", "auth": {"token": "t0k"}})],
                keys=["alchemy-secret-key"],
            )
            with pytest.raises(InvalidInput):
                await client.list_nfts_for_owner(OWNER, Chain.ETH)
        finally:
            logger.remove(sink_id)

        logged = "".join(messages)
        assert "bad pageKey" in logged
        assert "sk-live-123" not in logged
        assert "t0k" not in logged
        assert "alchemy-secret-key" not in logged


# ============================================================================
# Alchemy
# ============================================================================


class TestAlchemyClient:
    """Alchemy NFT API v3 requests."""

    async def test_get_nfts_for_owner_request(self):
        client, transport = alchemy([(200, {"ownedNfts": [], "pageKey": "next"})])
        items, next_key = await client.list_nfts_for_owner(OWNER.upper().replace("0X", "0x"), Chain.BASE, page_size=500)

        request = transport.requests[0]
        assert request["url"] == "https://base-mainnet.g.alchemy.com/nft/v3/key-one/getNFTsForOwner"
        assert request["params"]["owner"] == OWNER
        assert request["params"]["pageSize"] == "100"
        assert "excludeFilters[]" not in request["params"]
        assert next_key == "next"

    async def test_spam_filter_on_supported_chain(self):
        client, transport = alchemy([(200, {"ownedNfts": []})])
        await client.list_nfts_for_owner(OWNER, Chain.ETH, page_key="abc", exclude_spam=True)
        params = transport.requests[0]["params"]
        assert params["excludeFilters[]"] == "SPAM"
        assert params["pageKey"] == "abc"

    async def test_invalid_owner_rejected_locally(self):
        client, transport = alchemy([(200, {})])
        with pytest.raises(InvalidAddress):
            await client.list_nfts_for_owner("not-an-address", Chain.ETH)
        assert transport.requests == []

    async def test_upstream_address_error(self):
        client, _ = alchemy([(400, {"error": {"message": "owner address is invalid"}})])
        with pytest.raises(InvalidAddress):
            await client.list_nfts_for_owner(OWNER, Chain.ETH)

    async def test_owners_paginated_and_deduplicated(self):
        client, transport = alchemy([
            (200, {
                "owners": [
                    {"ownerAddress": "0xAAA", "tokenBalances": [{"tokenId": "1", "balance": "1"}]},
                    {"ownerAddress": "0xbbb", "tokenBalances": [{"tokenId": "2", "balance": "1"}]},
                ],
                "pageKey": "p2",
            }),
            (200, {
                "owners": [
                    {"ownerAddress": "0xaaa", "tokenBalances": [{"tokenId": "3", "balance": "4"}]},
                    "0xCCC",
                ],
            }),
        ])
        listing = await client.list_owners_for_collection(CONTRACT, Chain.ETH)

        assert listing.owners == ["0xaaa", "0xbbb", "0xccc"]
        assert listing.holdings == {"0xaaa": 2, "0xbbb": 1, "0xccc": 1}
        assert transport.requests[1]["params"]["pageKey"] == "p2"
        assert transport.requests[0]["params"]["withTokenBalances"] == "true"

    async def test_owners_without_balances(self):
        client, _ = alchemy([(200, {"owners": ["0xAAA", "0xaaa"]})])
        listing = await client.list_owners_for_collection(CONTRACT, Chain.BASE)
        assert listing.owners == ["0xaaa"]
        assert listing.holdings == {}
        assert listing.holding_count("0xaaa") is None

    async def test_owners_unsupported_chain(self):
        client, transport = alchemy([(200, {})])
        with pytest.raises(Unsupported):
            await client.list_owners_for_collection(CONTRACT, Chain.ZORA)
        assert transport.requests == []

    async def test_is_spam_contract(self):
        client, transport = alchemy([(200, {"isSpamContract": True})])
        assert await client.is_spam_contract(CONTRACT, Chain.ETH) is True
        assert transport.requests[0]["params"]["contractAddress"] == CONTRACT


# ============================================================================
# Neynar
# ============================================================================


class TestNeynarClient:
    """Neynar identity and follow-graph requests."""

    async def test_resolve_username_merges_hub_verifications(self, sample_neynar_user):
        client, transport = neynar([
            (200, {"user": sample_neynar_user}),
            (200, {
                "messages": [
                    {"data": {"verificationAddAddressBody": {"address": "0xFFF0000000000000000000000000000000000001"}}},
                    {"data": {"verificationAddAddressBody": {
                        "address": "0xd7029bdea1c17493893aafe29aad69ef892b8ff2"}}},
                    {"data": {"verificationAddAddressBody": {"address": "solkey", "protocol": "PROTOCOL_SOLANA"}}},
                ],
                "nextPageToken": "",
            }),
        ])
        identity = await client.resolve_identity("@DWR.eth")

        assert transport.requests[0]["params"] == {"username": "dwr.eth"}
        assert transport.requests[0]["headers"]["x-api-key"] == "neynar-key"
        assert transport.requests[1]["url"].endswith("/verificationsByFid")
        assert identity.verified_addresses == [
            "0xd7029bdea1c17493893aafe29aad69ef892b8ff2",
            "0xfff0000000000000000000000000000000000001",
        ]

    async def test_resolve_fid(self, sample_neynar_user):
        client, transport = neynar([(200, {"users": [sample_neynar_user]}), (200, {"messages": []})])
        identity = await client.resolve_identity("3")
        assert identity.fid == 3
        assert transport.requests[0]["url"].endswith("/user/bulk")
        assert transport.requests[0]["params"] == {"fids": "3"}

    async def test_unknown_user(self):
        client, _ = neynar([(404, {"message": "User not found"})])
        with pytest.raises(NotFound):
            await client.resolve_identity("nobody")

    async def test_invalid_username_rejected_locally(self):
        client, transport = neynar([(200, {})])
        with pytest.raises(InvalidInput):
            await client.resolve_identity("bad name!")
        assert transport.requests == []

    async def test_list_following_pages(self):
        client, transport = neynar([
            (200, {"users": [{"user": {"fid": 10, "username": "a"}}], "next": {"cursor": "c2"}}),
            (200, {"users": [{"user": {"fid": 11, "username": "b", "verified_addresses": {
                "eth_addresses": ["0xB0B"]}}}], "next": {"cursor": None}}),
        ])
        following = await client.list_following(2)

        assert [i.fid for i in following] == [10, 11]
        assert following[1].verified_addresses == ["0xb0b"]
        assert transport.requests[1]["params"]["cursor"] == "c2"

    async def test_lookup_by_addresses_batches(self):
        client, transport = neynar([(200, {"0xaaa": [{"fid": 5, "username": "holder"}]})])
        client.BULK_ADDRESS_BATCH = 2
        result = await client.lookup_by_addresses(["0xAAA", "0xbbb", "0xccc"])

        assert len(transport.requests) == 2
        assert transport.requests[0]["params"]["addresses"] == "0xaaa,0xbbb"
        assert [i.fid for i in result["0xaaa"]] == [5]

    async def test_search_users(self, sample_neynar_user):
        client, transport = neynar([(200, {"result": {"users": [sample_neynar_user, {"username": "nofid"}]}})])
        users = await client.search_users("@dwr", limit=50)

        request = transport.requests[0]
        assert request["url"] == "https://api.neynar.com/v2/farcaster/user/search"
        assert request["params"] == {"q": "dwr", "limit": "10"}
        assert [(u.fid, u.username) for u in users] == [(3, "dwr.eth")]
        assert users[0].verified_addresses == ["0xd7029bdea1c17493893aafe29aad69ef892b8ff2"]

    async def test_search_users_flat_payload(self):
        client, _ = neynar([(200, {"users": [{"fid": 8, "username": "eight"}]})])
        users = await client.search_users("eig", limit=3)
        assert [u.fid for u in users] == [8]

    async def test_search_requires_query(self):
        client, transport = neynar([(200, {})])
        with pytest.raises(InvalidInput):
            await client.search_users("  @ ")
        assert transport.requests == []
