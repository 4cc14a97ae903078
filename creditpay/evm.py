"""
USDC payments on EVM chains (Polygon, Ethereum).

Incoming token transfers are read either from an Etherscan-family explorer
(tokentx) or from Transfer logs over JSON-RPC. Confirmation depth of a
transfer is current_block - tx_block + 1; the minimum over all qualifying
transfers decides.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol

import aiohttp
import httpx
import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from .adapters import ChainAdapter, ObservedFunds, TimedValue, TransferRecord, provider_call
from .errors import ProviderUnavailableError
from .pricing import USDC_DECIMALS, token_units_to_decimal, usd_to_token_units

logger = structlog.get_logger()

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

NO_TRANSACTIONS_MESSAGES = ("no transactions found", "no records found")


@dataclass(frozen=True)
class EvmNetwork:
    """Static per-chain parameters."""

    chain: str
    chain_id: int
    usdc_contracts: tuple[str, ...]
    required_confirmations: int
    est_confirmation_time: str
    est_fee: str
    explorer_base: str
    native_token: str = "ETH"


POLYGON = EvmNetwork(
    chain="polygon",
    chain_id=137,
    # Native USDC and the legacy PoS-bridged USDC.e; payments to either count
    usdc_contracts=(
        "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
    ),
    required_confirmations=128,
    est_confirmation_time="2-3 minutes",
    est_fee="~$0.01",
    explorer_base="https://polygonscan.com",
    native_token="MATIC",
)

ETHEREUM = EvmNetwork(
    chain="ethereum",
    chain_id=1,
    usdc_contracts=("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",),
    required_confirmations=12,
    est_confirmation_time="3-5 minutes",
    est_fee="$5-$50 (varies with network congestion)",
    explorer_base="https://etherscan.io",
)

NETWORKS: dict[str, EvmNetwork] = {POLYGON.chain: POLYGON, ETHEREUM.chain: ETHEREUM}


@dataclass
class RawTransfer:
    tx_hash: str
    amount: int
    block_number: int
    contract: str
    timestamp: Optional[int] = None


class TransferSource(Protocol):
    name: str

    async def get_block_number(self) -> int: ...

    async def get_transfers(self, address: str, contracts: tuple[str, ...]) -> list[RawTransfer]: ...

    async def close(self) -> None: ...


class ExplorerTransferSource:
    """Etherscan v2 API (one endpoint for all chains, selected by chainid)."""

    name = "explorer"

    def __init__(
        self,
        chain_id: int,
        api_url: str = "https://api.etherscan.io/v2/api",
        api_key: str = "",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chain_id = chain_id
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _query(self, **params: Any) -> Any:
        client = await self._get_client()
        response = await client.get(
            self.api_url,
            params={"chainid": self.chain_id, "apikey": self.api_key, **params},
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Invalid explorer response")
        return data

    async def get_block_number(self) -> int:
        data = await self._query(module="proxy", action="eth_blockNumber")
        result = data.get("result")
        if not isinstance(result, str) or not result.startswith("0x"):
            raise ValueError(f"Invalid block number: {result!r}")
        return int(result, 16)

    async def get_transfers(self, address: str, contracts: tuple[str, ...]) -> list[RawTransfer]:
        transfers: list[RawTransfer] = []
        for contract in contracts:
            data = await self._query(
                module="account",
                action="tokentx",
                contractaddress=contract,
                address=address,
                page=1,
                offset=100,
                sort="desc",
            )
            if str(data.get("status")) != "1":
                message = str(data.get("message", "")).lower()
                result = data.get("result")
                if message.startswith(NO_TRANSACTIONS_MESSAGES) or result == []:
                    continue
                # Rate limits and bad keys come back as status 0 too
                raise ValueError(f"explorer error: {data.get('message')} {result}")

            for tx in data.get("result") or []:
                if str(tx.get("to", "")).lower() != address.lower():
                    continue
                transfers.append(
                    RawTransfer(
                        tx_hash=tx["hash"],
                        amount=int(tx["value"]),
                        block_number=int(tx["blockNumber"]),
                        contract=contract,
                        timestamp=int(tx["timeStamp"]) if tx.get("timeStamp") else None,
                    )
                )
        return transfers


class RpcTransferSource:
    """Transfer logs over an EVM JSON-RPC node, scanning a bounded block window."""

    name = "rpc"

    def __init__(
        self,
        rpc_url: str,
        lookback_blocks: int = 50_000,
        timeout: float = 20.0,
        w3: Optional[Any] = None,
    ):
        self.lookback_blocks = lookback_blocks
        self._owns_provider = w3 is None
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)})
        )

    async def close(self) -> None:
        if self._owns_provider:
            await self.w3.provider.disconnect()

    async def _guarded(self, coro: Any) -> Any:
        try:
            return await coro
        except (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderUnavailableError("evm-rpc", str(e) or type(e).__name__) from e

    async def get_block_number(self) -> int:
        return int(await self._guarded(self.w3.eth.block_number))

    async def get_transfers(self, address: str, contracts: tuple[str, ...]) -> list[RawTransfer]:
        head = await self.get_block_number()
        to_topic = "0x" + "00" * 12 + address.lower().removeprefix("0x")
        logs = await self._guarded(
            self.w3.eth.get_logs(
                {
                    "fromBlock": max(0, head - self.lookback_blocks),
                    "toBlock": head,
                    "address": [Web3.to_checksum_address(c) for c in contracts],
                    "topics": [TRANSFER_TOPIC, None, to_topic],
                }
            )
        )

        transfers = []
        for log in logs:
            tx_hash = log["transactionHash"]
            tx_hash = tx_hash if isinstance(tx_hash, str) else "0x" + bytes(tx_hash).hex()
            transfers.append(
                RawTransfer(
                    tx_hash=tx_hash,
                    amount=int.from_bytes(bytes(log["data"]), "big"),
                    block_number=int(log["blockNumber"]),
                    contract=str(log["address"]),
                )
            )
        return transfers


class EvmAdapter(ChainAdapter):
    """USDC (6 decimals) on an EVM network."""

    token_symbol = "USDC"
    decimals = USDC_DECIMALS

    def __init__(
        self,
        network: EvmNetwork,
        source: TransferSource,
        required_confirmations: Optional[int] = None,
        block_height_ttl_seconds: float = 5.0,
    ):
        super().__init__(required_confirmations or network.required_confirmations)
        self.network = network
        self.source = source
        self.chain = network.chain
        self.est_confirmation_time = network.est_confirmation_time
        self.est_fee = network.est_fee
        self._block = TimedValue(block_height_ttl_seconds)

    def explorer_url(self, address: str) -> str:
        return f"{self.network.explorer_base}/address/{address}"

    def contracts(self) -> list[str]:
        return list(self.network.usdc_contracts)

    async def close(self) -> None:
        await self.source.close()

    async def convert_usd(self, usd: Decimal) -> tuple[Decimal, int, Optional[Decimal]]:
        # USDC is pegged 1:1
        units = usd_to_token_units(usd, self.decimals)
        return token_units_to_decimal(units, self.decimals), units, Decimal("1")

    async def current_block(self) -> int:
        cached = self._block.get()
        if cached is not None:
            return cached
        block = await self.source.get_block_number()
        self._block.set(block)
        return block

    async def observe(self, address: str) -> ObservedFunds:
        provider = f"{self.chain}-{self.source.name}"
        async with provider_call(provider):
            transfers = await self.source.get_transfers(address, self.network.usdc_contracts)
            if not transfers:
                return ObservedFunds(total_received=0, confirmed_received=0, confirmations=0)
            block = await self.current_block()

        records = []
        for t in transfers:
            depth = max(0, block - t.block_number + 1)
            records.append(
                TransferRecord(
                    tx_hash=t.tx_hash,
                    amount=t.amount,
                    confirmed=depth > 0,
                    confirmations=depth,
                    block_number=t.block_number,
                    timestamp=t.timestamp,
                    contract=t.contract,
                )
            )

        total = sum(r.amount for r in records)
        return ObservedFunds(
            total_received=total,
            confirmed_received=sum(r.amount for r in records if r.confirmed),
            confirmations=min(r.confirmations for r in records),
            transactions=records,
        )
