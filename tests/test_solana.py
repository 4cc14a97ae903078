from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from creditpay.errors import ProviderUnavailableError
from creditpay.solana import USDC_MINT, SolanaAdapter, SolanaRPC, SolanaRPCError

OWNER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


def _token_account(pubkey: str, amount: int) -> dict[str, Any]:
    return {
        "pubkey": pubkey,
        "account": {
            "data": {
                "parsed": {
                    "info": {
                        "mint": USDC_MINT,
                        "owner": OWNER,
                        "tokenAmount": {"amount": str(amount), "decimals": 6},
                    },
                    "type": "account",
                },
                "program": "spl-token",
            },
        },
    }


class FakeSolanaNode:
    """getTokenAccountsByOwner answered per commitment level."""

    def __init__(self) -> None:
        self.balances: dict[str, list[int]] = {"confirmed": [], "finalized": []}
        self.error: dict[str, Any] | None = None
        self.payloads: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.payloads.append(payload)
        if self.error is not None:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": self.error})
        assert payload["method"] == "getTokenAccountsByOwner"
        commitment = payload["params"][2]["commitment"]
        accounts = [_token_account(f"acct{i}", amount) for i, amount in enumerate(self.balances[commitment])]
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": payload["id"],
                "result": {"context": {"slot": 1}, "value": accounts},
            },
        )

    def adapter(self) -> SolanaAdapter:
        return SolanaAdapter(SolanaRPC("https://rpc.test", transport=httpx.MockTransport(self.handler)))


@pytest.fixture
def node() -> FakeSolanaNode:
    return FakeSolanaNode()


class TestSolanaRPC:
    @pytest.mark.asyncio
    async def test_request_shape(self, node: FakeSolanaNode) -> None:
        node.balances["confirmed"] = [10, 15]
        rpc = SolanaRPC("https://rpc.test", transport=httpx.MockTransport(node.handler))

        total, pubkeys = await rpc.get_token_balance(OWNER, USDC_MINT, "confirmed")

        assert total == 25
        assert pubkeys == ["acct0", "acct1"]
        params = node.payloads[0]["params"]
        assert params[0] == OWNER
        assert params[1] == {"mint": USDC_MINT}
        assert params[2]["encoding"] == "jsonParsed"
        await rpc.close()

    @pytest.mark.asyncio
    async def test_error_object_raises(self, node: FakeSolanaNode) -> None:
        node.error = {"code": -32602, "message": "Invalid param: could not find account"}
        rpc = SolanaRPC("https://rpc.test", transport=httpx.MockTransport(node.handler))

        with pytest.raises(SolanaRPCError) as exc_info:
            await rpc.call("getTokenAccountsByOwner", [OWNER])

        assert exc_info.value.code == -32602


class TestSolanaAdapter:
    REQUIRED = 100_000_000

    @pytest.mark.asyncio
    async def test_no_token_accounts(self, node: FakeSolanaNode) -> None:
        status = await node.adapter().check_status(OWNER, self.REQUIRED)

        assert status.total_received == 0
        assert status.is_paid is False
        assert status.required_confirmations == 1

    @pytest.mark.asyncio
    async def test_confirmed_but_not_finalized(self, node: FakeSolanaNode) -> None:
        node.balances["confirmed"] = [100_000_000]

        status = await node.adapter().check_status(OWNER, self.REQUIRED)

        assert status.is_paid is True
        assert status.is_confirmed is False
        assert status.confirmations == 0

    @pytest.mark.asyncio
    async def test_finalized_is_confirmed(self, node: FakeSolanaNode) -> None:
        node.balances["confirmed"] = [60_000_000, 40_000_000]
        node.balances["finalized"] = [60_000_000, 40_000_000]

        status = await node.adapter().check_status(OWNER, self.REQUIRED)

        assert status.is_confirmed is True
        assert status.confirmations == 1
        assert status.confirmed_received == 100_000_000

    @pytest.mark.asyncio
    async def test_total_never_below_finalized(self, node: FakeSolanaNode) -> None:
        node.balances["confirmed"] = [50_000_000]
        node.balances["finalized"] = [100_000_000]

        status = await node.adapter().check_status(OWNER, self.REQUIRED)

        assert status.total_received == 100_000_000

    @pytest.mark.asyncio
    async def test_rpc_error_is_unavailable(self, node: FakeSolanaNode) -> None:
        node.error = {"code": 429, "message": "Too many requests"}

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await node.adapter().check_status(OWNER, self.REQUIRED)

        assert exc_info.value.provider == "solana-rpc"

    @pytest.mark.asyncio
    async def test_quote(self, node: FakeSolanaNode) -> None:
        quote = await node.adapter().quote(10, "pmt_x", OWNER)

        assert quote.smallest_unit_amount == 1_000_000
        assert quote.contracts == [USDC_MINT]
        assert quote.explorer_url == f"https://solscan.io/account/{OWNER}"
