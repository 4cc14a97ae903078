"""
USDC (SPL) payments on Solana.

The deposit address is a wallet (owner) address; received funds are the sum of
the USDC token accounts it owns. Balance at "confirmed" commitment is the total
seen, balance at "finalized" commitment is the confirmed portion. Finalized
funds count as one confirmation.
"""

from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from .adapters import ChainAdapter, ObservedFunds, provider_call
from .errors import ProviderUnavailableError
from .pricing import USDC_DECIMALS, token_units_to_decimal, usd_to_token_units

logger = structlog.get_logger()

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

PROVIDER = "solana-rpc"


class SolanaRPCError(Exception):
    """Error object returned by a Solana JSON-RPC call."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


class SolanaRPC:
    """
    Async Solana JSON-RPC client.
    """

    def __init__(
        self,
        url: str = "https://api.mainnet-beta.solana.com",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make an RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        client = await self._get_client()
        response = await client.post(self.url, json=payload)
        response.raise_for_status()

        result = response.json()
        error = result.get("error")
        if error:
            raise SolanaRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        return result.get("result")

    async def get_token_accounts(self, owner: str, mint: str, commitment: str) -> list[dict[str, Any]]:
        """Token accounts of `owner` for `mint`, jsonParsed."""
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": commitment}],
        )
        return result["value"]

    async def get_token_balance(self, owner: str, mint: str, commitment: str) -> tuple[int, list[str]]:
        """Summed raw balance and the token account addresses."""
        total = 0
        pubkeys = []
        for entry in await self.get_token_accounts(owner, mint, commitment):
            info = entry["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
            pubkeys.append(entry["pubkey"])
        return total, pubkeys


class SolanaAdapter(ChainAdapter):
    """USDC to a derived Solana wallet."""

    chain = "solana"
    token_symbol = "USDC"
    decimals = USDC_DECIMALS
    est_confirmation_time = "under 1 minute"
    est_fee = "<$0.01"

    def __init__(self, rpc: SolanaRPC, mint: str = USDC_MINT, explorer_base: str = "https://solscan.io"):
        super().__init__(required_confirmations=1)
        self.rpc = rpc
        self.mint = mint
        self.explorer_base = explorer_base.rstrip("/")

    def explorer_url(self, address: str) -> str:
        return f"{self.explorer_base}/account/{address}"

    def contracts(self) -> list[str]:
        return [self.mint]

    async def close(self) -> None:
        await self.rpc.close()

    async def convert_usd(self, usd: Decimal) -> tuple[Decimal, int, Optional[Decimal]]:
        units = usd_to_token_units(usd, self.decimals)
        return token_units_to_decimal(units, self.decimals), units, Decimal("1")

    async def observe(self, address: str) -> ObservedFunds:
        try:
            async with provider_call(PROVIDER):
                total, pubkeys = await self.rpc.get_token_balance(address, self.mint, "confirmed")
                finalized, _ = await self.rpc.get_token_balance(address, self.mint, "finalized")
        except SolanaRPCError as e:
            logger.warning("provider_rpc_error", provider=PROVIDER, code=e.code, error=e.message)
            raise ProviderUnavailableError(PROVIDER, e.message) from e

        # Finalized can briefly exceed confirmed across two reads
        total = max(total, finalized)
        logger.debug("solana_token_accounts", address=address, accounts=len(pubkeys))
        return ObservedFunds(
            total_received=total,
            confirmed_received=finalized,
            confirmations=1 if finalized > 0 else 0,
        )
