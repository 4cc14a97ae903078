"""
Adapter registry: one ChainAdapter per enabled chain, built from Settings.
"""

from typing import Iterator

import structlog

from .adapters import ChainAdapter
from .bitcoin import BitcoinAdapter, EsploraClient
from .config import Settings
from .derivation import CHAIN_FAMILIES
from .errors import ConfigurationError, InvalidChainError
from .evm import NETWORKS, EvmAdapter, ExplorerTransferSource, RpcTransferSource, TransferSource
from .solana import SolanaAdapter, SolanaRPC

logger = structlog.get_logger()


class AdapterRegistry:
    """Lookup of chain name -> adapter."""

    def __init__(self, adapters: dict[str, ChainAdapter]):
        self._adapters = dict(adapters)

    def get(self, chain: str) -> ChainAdapter:
        adapter = self._adapters.get(chain)
        if adapter is None:
            raise InvalidChainError(chain, self.chains())
        return adapter

    def chains(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, chain: object) -> bool:
        return chain in self._adapters

    def __iter__(self) -> Iterator[ChainAdapter]:
        return iter(self._adapters.values())

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def _evm_source(chain: str, settings: Settings) -> TransferSource:
    network = NETWORKS[chain]
    if settings.evm_transfer_source == "rpc":
        rpc_url = settings.polygon_rpc_url if chain == "polygon" else settings.ethereum_rpc_url
        return RpcTransferSource(
            rpc_url,
            lookback_blocks=settings.evm_log_lookback_blocks,
            timeout=settings.provider_timeout_seconds,
        )
    if settings.evm_transfer_source == "explorer":
        return ExplorerTransferSource(
            chain_id=network.chain_id,
            api_url=settings.etherscan_api_url,
            api_key=settings.etherscan_api_key,
            timeout=settings.provider_timeout_seconds,
        )
    raise ConfigurationError(f"Unknown EVM_TRANSFER_SOURCE: {settings.evm_transfer_source}")


def build_adapter(chain: str, settings: Settings) -> ChainAdapter:
    if chain not in CHAIN_FAMILIES:
        raise InvalidChainError(chain, sorted(CHAIN_FAMILIES))

    if chain == "bitcoin":
        return BitcoinAdapter(
            EsploraClient(settings.bitcoin_api_url, timeout=settings.provider_timeout_seconds),
            required_confirmations=settings.bitcoin_required_confirmations,
            price_ttl_seconds=settings.price_ttl_seconds,
        )
    if chain in NETWORKS:
        required = (
            settings.polygon_required_confirmations
            if chain == "polygon"
            else settings.ethereum_required_confirmations
        )
        return EvmAdapter(
            NETWORKS[chain],
            _evm_source(chain, settings),
            required_confirmations=required,
            block_height_ttl_seconds=settings.block_height_ttl_seconds,
        )
    return SolanaAdapter(SolanaRPC(settings.solana_rpc_url, timeout=settings.provider_timeout_seconds))


def build_adapters(settings: Settings) -> AdapterRegistry:
    """Adapters for every chain in ENABLED_CHAINS."""
    adapters = {chain: build_adapter(chain, settings) for chain in settings.enabled_chains}
    logger.info(
        "adapters_configured",
        chains=sorted(adapters),
        evm_source=settings.evm_transfer_source,
    )
    return AdapterRegistry(adapters)
