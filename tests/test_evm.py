from __future__ import annotations

from typing import Any

import httpx
import pytest
from web3.exceptions import Web3Exception

from creditpay.errors import ProviderUnavailableError
from creditpay.evm import (
    ETHEREUM,
    POLYGON,
    TRANSFER_TOPIC,
    EvmAdapter,
    ExplorerTransferSource,
    RpcTransferSource,
)

ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
NATIVE_USDC, BRIDGED_USDC = POLYGON.usdc_contracts


def _transfer(tx_hash: str, value: int, block: int, to: str = ADDRESS) -> dict[str, Any]:
    return {
        "hash": tx_hash,
        "to": to.lower(),
        "value": str(value),
        "blockNumber": str(block),
        "timeStamp": "1700000000",
    }


class FakeExplorer:
    """Etherscan-style tokentx / eth_blockNumber served over httpx.MockTransport."""

    def __init__(self) -> None:
        self.block = 1_000
        self.by_contract: dict[str, Any] = {}
        self.error: dict[str, Any] | None = None
        self.requests: list[dict[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        self.requests.append(params)
        if params.get("action") == "eth_blockNumber":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 83, "result": hex(self.block)})
        if params.get("action") == "tokentx":
            if self.error is not None:
                return httpx.Response(200, json=self.error)
            result = self.by_contract.get(params["contractaddress"], [])
            if not result:
                return httpx.Response(200, json={"status": "0", "message": "No transactions found", "result": []})
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": result})
        raise AssertionError(f"unexpected request: {params}")

    def source(self) -> ExplorerTransferSource:
        return ExplorerTransferSource(
            chain_id=137,
            api_url="https://explorer.test/v2/api",
            api_key="test-key",
            transport=httpx.MockTransport(self.handler),
        )

    def block_requests(self) -> int:
        return sum(1 for p in self.requests if p.get("action") == "eth_blockNumber")


@pytest.fixture
def explorer() -> FakeExplorer:
    return FakeExplorer()


class TestNetworks:
    def test_polygon_parameters(self) -> None:
        assert POLYGON.chain_id == 137
        assert POLYGON.required_confirmations == 128
        assert len(POLYGON.usdc_contracts) == 2

    def test_ethereum_parameters(self) -> None:
        assert ETHEREUM.chain_id == 1
        assert ETHEREUM.required_confirmations == 12


class TestExplorerSource:
    @pytest.mark.asyncio
    async def test_query_carries_chain_and_key(self, explorer: FakeExplorer) -> None:
        source = explorer.source()
        assert await source.get_block_number() == 1_000
        assert explorer.requests[0]["chainid"] == "137"
        assert explorer.requests[0]["apikey"] == "test-key"
        await source.close()

    @pytest.mark.asyncio
    async def test_only_transfers_to_address(self, explorer: FakeExplorer) -> None:
        explorer.by_contract[NATIVE_USDC] = [
            _transfer("0xaa", 60_000_000, 900),
            _transfer("0xbb", 5_000_000, 900, to="0x000000000000000000000000000000000000dEaD"),
        ]
        transfers = await explorer.source().get_transfers(ADDRESS, POLYGON.usdc_contracts)

        assert [t.tx_hash for t in transfers] == ["0xaa"]
        assert transfers[0].contract == NATIVE_USDC
        assert transfers[0].timestamp == 1_700_000_000

    @pytest.mark.asyncio
    async def test_no_transactions_is_empty(self, explorer: FakeExplorer) -> None:
        assert await explorer.source().get_transfers(ADDRESS, POLYGON.usdc_contracts) == []

    @pytest.mark.asyncio
    async def test_rate_limit_is_an_error(self, explorer: FakeExplorer) -> None:
        explorer.error = {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
        with pytest.raises(ValueError):
            await explorer.source().get_transfers(ADDRESS, POLYGON.usdc_contracts)


class TestEvmAdapter:
    REQUIRED = 100_000_000

    @pytest.mark.asyncio
    async def test_quote_is_one_to_one(self, explorer: FakeExplorer) -> None:
        adapter = EvmAdapter(POLYGON, explorer.source())

        quote = await adapter.quote(1000, "pmt_x", ADDRESS)

        assert quote.token_symbol == "USDC"
        assert quote.smallest_unit_amount == 100_000_000
        assert quote.required_confirmations == 128
        assert quote.contracts == list(POLYGON.usdc_contracts)
        assert quote.explorer_url == f"https://polygonscan.com/address/{ADDRESS}"

    @pytest.mark.asyncio
    async def test_nothing_received_skips_block_lookup(self, explorer: FakeExplorer) -> None:
        status = await EvmAdapter(POLYGON, explorer.source()).check_status(ADDRESS, self.REQUIRED)

        assert status.total_received == 0
        assert status.is_paid is False
        assert explorer.block_requests() == 0

    @pytest.mark.asyncio
    async def test_sums_native_and_bridged_usdc(self, explorer: FakeExplorer) -> None:
        explorer.block = 1_000
        explorer.by_contract[NATIVE_USDC] = [_transfer("0xaa", 60_000_000, 800)]
        explorer.by_contract[BRIDGED_USDC] = [_transfer("0xbb", 40_000_000, 850)]

        status = await EvmAdapter(POLYGON, explorer.source()).check_status(ADDRESS, self.REQUIRED)

        assert status.total_received == 100_000_000
        assert status.is_paid is True
        # 1000 - 850 + 1
        assert status.confirmations == 151
        assert status.is_confirmed is True

    @pytest.mark.asyncio
    async def test_paid_but_not_deep_enough(self, explorer: FakeExplorer) -> None:
        explorer.block = 1_000
        explorer.by_contract[NATIVE_USDC] = [_transfer("0xaa", 100_000_000, 950)]

        status = await EvmAdapter(POLYGON, explorer.source()).check_status(ADDRESS, self.REQUIRED)

        assert status.confirmations == 51
        assert status.is_paid is True
        assert status.is_confirmed is False

    @pytest.mark.asyncio
    async def test_block_height_cached(self, explorer: FakeExplorer) -> None:
        explorer.by_contract[NATIVE_USDC] = [_transfer("0xaa", 1, 950)]
        adapter = EvmAdapter(POLYGON, explorer.source(), block_height_ttl_seconds=60)

        await adapter.observe(ADDRESS)
        await adapter.observe(ADDRESS)

        assert explorer.block_requests() == 1

    @pytest.mark.asyncio
    async def test_explorer_error_is_unavailable(self, explorer: FakeExplorer) -> None:
        explorer.error = {"status": "0", "message": "NOTOK", "result": "Invalid API Key"}

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await EvmAdapter(POLYGON, explorer.source()).check_status(ADDRESS, self.REQUIRED)

        assert exc_info.value.provider == "polygon-explorer"

    @pytest.mark.asyncio
    async def test_http_failure_is_unavailable(self) -> None:
        source = ExplorerTransferSource(
            chain_id=1,
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )
        with pytest.raises(ProviderUnavailableError):
            await EvmAdapter(ETHEREUM, source).check_status(ADDRESS, self.REQUIRED)


class _FakeEth:
    def __init__(self, head: int, logs: list[dict[str, Any]], error: Exception | None = None):
        self.head = head
        self.logs = logs
        self.error = error
        self.filters: list[dict[str, Any]] = []

    @property
    def block_number(self):
        async def _value() -> int:
            if self.error is not None:
                raise self.error
            return self.head

        return _value()

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        self.filters.append(filter_params)
        return self.logs


class _FakeWeb3:
    def __init__(self, eth: _FakeEth):
        self.eth = eth


class TestRpcSource:
    @pytest.mark.asyncio
    async def test_filters_transfer_logs_to_address(self) -> None:
        log = {
            "transactionHash": bytes.fromhex("cc" * 32),
            "data": (25_000_000).to_bytes(32, "big"),
            "blockNumber": 990,
            "address": ETHEREUM.usdc_contracts[0],
        }
        eth = _FakeEth(head=1_000, logs=[log])
        source = RpcTransferSource("http://rpc.test", lookback_blocks=500, w3=_FakeWeb3(eth))

        transfers = await source.get_transfers(ADDRESS, ETHEREUM.usdc_contracts)

        assert transfers[0].tx_hash == "0x" + "cc" * 32
        assert transfers[0].amount == 25_000_000
        assert transfers[0].block_number == 990
        params = eth.filters[0]
        assert params["fromBlock"] == 500
        assert params["toBlock"] == 1_000
        assert params["topics"][0] == TRANSFER_TOPIC
        assert params["topics"][2] == "0x" + "00" * 12 + ADDRESS.lower()[2:]

    @pytest.mark.asyncio
    async def test_node_failure_is_unavailable(self) -> None:
        eth = _FakeEth(head=0, logs=[], error=Web3Exception("connection refused"))
        adapter = EvmAdapter(ETHEREUM, RpcTransferSource("http://rpc.test", w3=_FakeWeb3(eth)))

        with pytest.raises(ProviderUnavailableError):
            await adapter.check_status(ADDRESS, 1_000_000)

    @pytest.mark.asyncio
    async def test_close_disconnects_own_provider(self, monkeypatch) -> None:
        source = RpcTransferSource("http://rpc.test")
        disconnected: list[bool] = []

        async def _disconnect() -> None:
            disconnected.append(True)

        monkeypatch.setattr(source.w3.provider, "disconnect", _disconnect)
        await source.close()

        assert disconnected == [True]

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_alone(self) -> None:
        source = RpcTransferSource("http://rpc.test", w3=_FakeWeb3(_FakeEth(head=0, logs=[])))
        await source.close()
