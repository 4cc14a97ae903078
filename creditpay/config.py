"""
Configuration for CreditPay.
"""

import json
from functools import lru_cache
from typing import Annotated, Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service configuration settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # API Server
    host: str = Field(default="127.0.0.1", description="API host", alias="HOST")
    # Railway-style platforms inject PORT
    port: int = Field(default=8000, description="API port", validation_alias="PORT")
    debug: bool = Field(default=False, description="Enable debug mode")
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="CORS allowed origins",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./creditpay.db",
        description="SQLAlchemy database URL (sqlite or postgresql)",
        alias="DATABASE_URL",
    )

    # Key derivation
    # SECURITY: the master secret is the only input (besides the payment token)
    # needed to recompute EVM and Solana deposit keys. Keep it out of logs.
    payment_master_secret: Optional[str] = Field(
        default=None,
        description="HMAC master secret for EVM/Solana deposit derivation (>= 16 bytes)",
        alias="PAYMENT_MASTER_SECRET",
    )
    bitcoin_xpub: Optional[str] = Field(
        default=None,
        description="Account-level extended public key for Bitcoin deposit addresses",
        alias="BITCOIN_XPUB",
    )
    address_cache: str = Field(
        default="memory",
        description="Derived address cache backend: memory or database",
        alias="ADDRESS_CACHE",
    )

    enabled_chains: Annotated[list[str], NoDecode] = Field(
        default=["bitcoin", "polygon", "ethereum", "solana"],
        description="Chains offered for payment (comma-separated or JSON list)",
        alias="ENABLED_CHAINS",
    )

    # Bitcoin (Esplora-compatible indexer)
    bitcoin_api_url: str = Field(
        default="https://mempool.space/api",
        description="Esplora-compatible API base URL",
        alias="BITCOIN_API_URL",
    )
    bitcoin_required_confirmations: int = Field(
        default=1,
        description="Confirmations required before a BTC payment counts as confirmed",
        alias="BITCOIN_REQUIRED_CONFIRMATIONS",
    )

    # EVM
    etherscan_api_url: str = Field(
        default="https://api.etherscan.io/v2/api",
        description="Etherscan-family explorer API (v2, chainid parameter)",
        alias="ETHERSCAN_API_URL",
    )
    etherscan_api_key: str = Field(default="", description="Explorer API key", alias="ETHERSCAN_API_KEY")
    evm_transfer_source: str = Field(
        default="explorer",
        description="Where EVM token transfers are read from: explorer or rpc",
        alias="EVM_TRANSFER_SOURCE",
    )
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", alias="POLYGON_RPC_URL")
    ethereum_rpc_url: str = Field(default="https://eth.llamarpc.com", alias="ETHEREUM_RPC_URL")
    evm_log_lookback_blocks: int = Field(
        default=50_000,
        description="How far back Transfer logs are scanned in rpc mode",
        alias="EVM_LOG_LOOKBACK_BLOCKS",
    )
    polygon_required_confirmations: int = Field(default=128, alias="POLYGON_REQUIRED_CONFIRMATIONS")
    ethereum_required_confirmations: int = Field(default=12, alias="ETHEREUM_REQUIRED_CONFIRMATIONS")

    # Solana
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC URL",
        alias="SOLANA_RPC_URL",
    )

    # Provider behaviour
    provider_timeout_seconds: float = Field(default=20.0, alias="PROVIDER_TIMEOUT_SECONDS")
    block_height_ttl_seconds: float = Field(
        default=5.0,
        description="How long a fetched block height is reused between status checks",
        alias="BLOCK_HEIGHT_TTL_SECONDS",
    )
    price_ttl_seconds: float = Field(default=60.0, alias="PRICE_TTL_SECONDS")

    # Service-to-service auth for usage reporting
    service_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected in X-Service-Secret (usage endpoints disabled if unset)",
        alias="SERVICE_SECRET",
    )

    @field_validator("enabled_chains", mode="before")
    @classmethod
    def _split_chains(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                return json.loads(text)
            return [part.strip().lower() for part in text.split(",") if part.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
