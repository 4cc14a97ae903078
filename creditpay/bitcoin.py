"""
Bitcoin payments via an Esplora-compatible indexer (mempool.space).

Balances come from /address/<addr> chain_stats (confirmed) and mempool_stats
(unconfirmed); confirmation depth from the address history and tip height.
"""

from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from .adapters import ChainAdapter, ObservedFunds, TimedValue, TransferRecord, provider_call
from .errors import ProviderUnavailableError
from .pricing import sats_to_btc, to_decimal, usd_to_sats

logger = structlog.get_logger()

PROVIDER = "esplora"


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class EsploraClient:
    """Async client for Esplora-compatible Bitcoin indexers."""

    def __init__(
        self,
        base_url: str = "https://mempool.space/api",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> httpx.Response:
        client = await self._get_client()
        response = await client.get(path)
        response.raise_for_status()
        return response

    async def get_tip_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        return int(response.text)

    async def get_address_info(self, address: str) -> dict[str, Any]:
        data = (await self._get(f"/address/{address}")).json()
        if not isinstance(data, dict):
            raise ValueError("Invalid response from indexer /address endpoint")
        return data

    async def get_address_txs(self, address: str) -> list[dict[str, Any]]:
        data = (await self._get(f"/address/{address}/txs")).json()
        if not isinstance(data, list):
            raise ValueError("Invalid response from indexer /address/txs endpoint")
        return [x for x in data if isinstance(x, dict)]

    async def get_price_usd(self) -> Decimal:
        data = (await self._get("/v1/prices")).json()
        if not isinstance(data, dict) or "USD" not in data:
            raise ValueError("Invalid response from indexer /v1/prices endpoint")
        return to_decimal(data["USD"])

    @staticmethod
    def net_stats(stats: Any) -> int:
        """funded_txo_sum - spent_txo_sum for a chain_stats/mempool_stats block."""
        if not isinstance(stats, dict):
            return 0
        return _int(stats.get("funded_txo_sum")) - _int(stats.get("spent_txo_sum"))

    @staticmethod
    def sum_outputs_to(tx: dict[str, Any], address: str) -> int:
        total = 0
        vout = tx.get("vout")
        if not isinstance(vout, list):
            return 0
        for entry in vout:
            if isinstance(entry, dict) and entry.get("scriptpubkey_address") == address:
                total += _int(entry.get("value"))
        return total


class BitcoinAdapter(ChainAdapter):
    """BTC to a derived P2PKH address."""

    chain = "bitcoin"
    token_symbol = "BTC"
    decimals = 8
    est_confirmation_time = "30-60 minutes"
    est_fee = "$1-$5"

    def __init__(
        self,
        client: EsploraClient,
        required_confirmations: int = 1,
        price_ttl_seconds: float = 60.0,
        explorer_base: str = "https://mempool.space",
    ):
        super().__init__(required_confirmations)
        self.client = client
        self.explorer_base = explorer_base.rstrip("/")
        self._price = TimedValue(price_ttl_seconds)

    def explorer_url(self, address: str) -> str:
        return f"{self.explorer_base}/address/{address}"

    async def close(self) -> None:
        await self.client.close()

    async def btc_price(self) -> Decimal:
        cached = self._price.get()
        if cached is not None:
            return cached
        try:
            async with provider_call(PROVIDER):
                price = await self.client.get_price_usd()
                if price <= 0:
                    raise ValueError(f"non-positive BTC price {price}")
        except ProviderUnavailableError:
            stale = self._price.last()
            if stale is None:
                raise
            logger.warning("btc_price_stale", price=str(stale))
            return stale
        self._price.set(price)
        logger.info("btc_price_fetched", price=str(price))
        return price

    async def convert_usd(self, usd: Decimal) -> tuple[Decimal, int, Optional[Decimal]]:
        price = await self.btc_price()
        sats = usd_to_sats(usd, price)
        return sats_to_btc(sats), sats, price

    async def observe(self, address: str) -> ObservedFunds:
        async with provider_call(PROVIDER):
            info = await self.client.get_address_info(address)
            confirmed = self.client.net_stats(info.get("chain_stats"))
            pending = self.client.net_stats(info.get("mempool_stats"))

            transactions: list[TransferRecord] = []
            confirmations = 0
            if confirmed > 0 or pending > 0:
                tip = await self.client.get_tip_height()
                txs = await self.client.get_address_txs(address)
                transactions = self._funding_records(txs, address, tip)
                depths = [t.confirmations for t in transactions if t.confirmed]
                if depths:
                    confirmations = min(depths)
                elif confirmed > 0:
                    # Funding tx is past the first page of history
                    confirmations = 1

        return ObservedFunds(
            total_received=confirmed + pending,
            confirmed_received=confirmed,
            confirmations=confirmations,
            transactions=transactions,
        )

    def _funding_records(self, txs: list[dict[str, Any]], address: str, tip: int) -> list[TransferRecord]:
        records = []
        for tx in txs:
            txid = tx.get("txid")
            received = self.client.sum_outputs_to(tx, address)
            if not isinstance(txid, str) or received <= 0:
                continue
            status = tx.get("status") if isinstance(tx.get("status"), dict) else {}
            is_confirmed = bool(status.get("confirmed"))
            height = status.get("block_height") if isinstance(status.get("block_height"), int) else None
            depth = max(1, tip - height + 1) if is_confirmed and height is not None else 0
            records.append(
                TransferRecord(
                    tx_hash=txid,
                    amount=received,
                    confirmed=is_confirmed,
                    confirmations=depth,
                    block_number=height,
                    timestamp=status.get("block_time") if isinstance(status.get("block_time"), int) else None,
                )
            )
        return records
