"""
Deterministic deposit-address derivation.

Each chain family maps (secret material, identifier) to an address with a pure
function; nothing per-address is persisted:

- Bitcoin: index = sha256(identifier)[:4] mod (2^31 - 1), then xpub/0/index
  via public derivation, encoded as P2PKH. Only the account xpub is needed.
- EVM: HMAC-SHA256(master_secret, identifier) is the secp256k1 private key;
  address = keccak256(uncompressed_pubkey[1:])[-20:] with EIP-55 checksum.
- Solana: HMAC-SHA256(master_secret, "solana:" + identifier) seeds an ed25519
  keypair; the address is the base58 public key.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from coincurve import PrivateKey
from solders.keypair import Keypair
from web3 import Web3

from .address import ExtendedPublicKey, encode_p2pkh_address, to_checksum_address
from .cache import AddressCache
from .errors import ConfigurationError, InvalidChainError, ValidationError

logger = structlog.get_logger()

MIN_SECRET_BYTES = 16

# Largest index kept below the hardened range (2^31 - 1)
MAX_BITCOIN_INDEX = 2147483647

# External (receive) branch of the account xpub
BITCOIN_RECEIVE_BRANCH = 0


class ChainFamily(str, Enum):
    BITCOIN = "bitcoin"
    EVM = "evm"
    SOLANA = "solana"


CHAIN_FAMILIES: dict[str, ChainFamily] = {
    "bitcoin": ChainFamily.BITCOIN,
    "polygon": ChainFamily.EVM,
    "ethereum": ChainFamily.EVM,
    "solana": ChainFamily.SOLANA,
}


def family_for_chain(chain: str) -> ChainFamily:
    try:
        return CHAIN_FAMILIES[chain]
    except KeyError:
        raise InvalidChainError(chain, sorted(CHAIN_FAMILIES)) from None


def bitcoin_index(identifier: str) -> int:
    """31-bit child index for an identifier. Collisions are possible in principle."""
    digest = hashlib.sha256(identifier.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % MAX_BITCOIN_INDEX


@dataclass(frozen=True)
class CustomerAddress:
    chain: str
    address: str
    index: Optional[int] = None


class KeyDerivationEngine:
    """
    Derives deposit addresses per chain family.

    The optional cache is a shortcut keyed by payment token; derive() never
    reads it.
    """

    def __init__(
        self,
        master_secret: Optional[str] = None,
        bitcoin_xpub: Optional[str] = None,
        cache: Optional[AddressCache] = None,
    ):
        self._secret: Optional[bytes] = None
        if master_secret is not None:
            secret = master_secret.encode("utf-8")
            if len(secret) < MIN_SECRET_BYTES:
                raise ConfigurationError(
                    f"PAYMENT_MASTER_SECRET must be at least {MIN_SECRET_BYTES} bytes"
                )
            self._secret = secret

        self._xpub: Optional[ExtendedPublicKey] = None
        if bitcoin_xpub:
            try:
                self._xpub = ExtendedPublicKey.from_base58(bitcoin_xpub)
            except ValueError as e:
                raise ConfigurationError(f"Invalid BITCOIN_XPUB: {e}") from e

        self.cache = cache

    @property
    def supports_bitcoin(self) -> bool:
        return self._xpub is not None

    @property
    def supports_secret_derivation(self) -> bool:
        return self._secret is not None

    def _require_secret(self) -> bytes:
        if self._secret is None:
            raise ConfigurationError("PAYMENT_MASTER_SECRET is not configured")
        return self._secret

    def _require_xpub(self) -> ExtendedPublicKey:
        if self._xpub is None:
            raise ConfigurationError("BITCOIN_XPUB is not configured")
        return self._xpub

    # Bitcoin

    def derive_bitcoin(self, identifier: str) -> tuple[str, int]:
        """Returns (p2pkh_address, child_index)."""
        xpub = self._require_xpub()
        index = bitcoin_index(identifier)
        try:
            child = xpub.derive_path(BITCOIN_RECEIVE_BRANCH, index)
        except ValueError as e:
            raise ConfigurationError(f"Bitcoin derivation failed: {e}") from e
        return encode_p2pkh_address(child.public_key, testnet=xpub.testnet), index

    # EVM

    def derive_evm_private_key(self, identifier: str) -> bytes:
        return hmac.new(self._require_secret(), identifier.encode("utf-8"), hashlib.sha256).digest()

    def derive_evm(self, identifier: str) -> str:
        private_key = PrivateKey(self.derive_evm_private_key(identifier))
        uncompressed = private_key.public_key.format(compressed=False)
        digest = bytes(Web3.keccak(uncompressed[1:]))
        return to_checksum_address(digest[-20:].hex())

    # Solana

    def derive_solana_seed(self, identifier: str) -> bytes:
        return hmac.new(
            self._require_secret(), f"solana:{identifier}".encode("utf-8"), hashlib.sha256
        ).digest()

    def derive_solana(self, identifier: str) -> str:
        return str(Keypair.from_seed(self.derive_solana_seed(identifier)).pubkey())

    # Dispatch

    def derive(self, identifier: str, family: ChainFamily) -> str:
        """Pure derivation: same inputs, same address, no cache involved."""
        if not identifier:
            raise ValidationError("identifier must be non-empty")
        if family is ChainFamily.BITCOIN:
            return self.derive_bitcoin(identifier)[0]
        if family is ChainFamily.EVM:
            return self.derive_evm(identifier)
        if family is ChainFamily.SOLANA:
            return self.derive_solana(identifier)
        raise ConfigurationError(f"Unsupported chain family: {family}")

    def address_for_payment(self, payment_token: str, chain: str) -> str:
        """Deposit address for a payment token, served from cache when present."""
        family = family_for_chain(chain)
        if self.cache is not None:
            cached = self.cache.get(payment_token, chain)
            if cached is not None:
                return cached

        address = self.derive(payment_token, family)
        if self.cache is not None:
            self.cache.set(payment_token, chain, address)

        logger.debug(
            "deposit_address_derived",
            chain=chain,
            address=address,
            token_prefix=payment_token[:12],
        )
        return address

    def address_for_customer(self, identifier: str, chain: str) -> CustomerAddress:
        """Stable address for a customer identifier (email, agent id)."""
        family = family_for_chain(chain)
        if family is ChainFamily.BITCOIN:
            address, index = self.derive_bitcoin(identifier)
            return CustomerAddress(chain=chain, address=address, index=index)
        return CustomerAddress(chain=chain, address=self.derive(identifier, family))
