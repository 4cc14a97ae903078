"""
Address encoding utilities.

Supports:
- Base58Check encode/decode (P2PKH addresses, BIP32 extended keys)
- BIP32 public child derivation (CKDpub) from an xpub/tpub
- EIP-55 mixed-case checksum for EVM addresses
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from coincurve import PublicKey
from web3 import Web3

# Base58 charset
BASE58_CHARSET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

# BIP32 serialization version bytes (public)
XPUB_VERSION = bytes.fromhex("0488b21e")
TPUB_VERSION = bytes.fromhex("043587cf")

# P2PKH version bytes
P2PKH_MAINNET = 0x00
P2PKH_TESTNET = 0x6F

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

HARDENED_OFFSET = 0x80000000


def sha256d(data: bytes) -> bytes:
    """Double SHA256 hash."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    r = hashlib.new("ripemd160")
    r.update(hashlib.sha256(data).digest())
    return r.digest()


def base58_encode(data: bytes) -> str:
    """Encode bytes as base58, preserving leading zero bytes as '1'."""
    num = int.from_bytes(data, "big")
    out = ""
    while num:
        num, rem = divmod(num, 58)
        out = BASE58_CHARSET[rem] + out
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + out


def base58_decode(s: str) -> Optional[bytes]:
    """Decode a base58 string. Returns None on invalid characters."""
    num = 0
    for c in s:
        if c not in BASE58_CHARSET:
            return None
        num = num * 58 + BASE58_CHARSET.index(c)
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    pad = len(s) - len(s.lstrip("1"))
    return b"\x00" * pad + body


def base58check_encode(payload: bytes) -> str:
    """Append a 4-byte sha256d checksum and base58-encode."""
    return base58_encode(payload + sha256d(payload)[:4])


def base58check_decode(s: str) -> Optional[bytes]:
    """
    Decode a base58check string.

    Returns payload (with version, without checksum) or None if invalid.
    """
    raw = base58_decode(s)
    if raw is None or len(raw) < 5:
        return None
    data, checksum = raw[:-4], raw[-4:]
    if sha256d(data)[:4] != checksum:
        return None
    return data


def encode_p2pkh_address(pubkey: bytes, testnet: bool = False) -> str:
    """Legacy pay-to-pubkey-hash address for a serialized public key."""
    version = P2PKH_TESTNET if testnet else P2PKH_MAINNET
    return base58check_encode(bytes([version]) + hash160(pubkey))


def decode_p2pkh_address(addr: str) -> Optional[tuple[bytes, bool]]:
    """
    Decode a P2PKH address.

    Returns (pubkey_hash, is_testnet) or None if invalid.
    """
    payload = base58check_decode(addr)
    if payload is None or len(payload) != 21:
        return None
    if payload[0] not in (P2PKH_MAINNET, P2PKH_TESTNET):
        return None
    return payload[1:], payload[0] == P2PKH_TESTNET


@dataclass(frozen=True)
class ExtendedPublicKey:
    """BIP32 extended public key (xpub/tpub)."""

    public_key: bytes  # 33-byte compressed point
    chain_code: bytes
    depth: int = 0
    child_number: int = 0
    testnet: bool = False

    @classmethod
    def from_base58(cls, xpub: str) -> "ExtendedPublicKey":
        """
        Parse a serialized extended public key.

        Raises:
            ValueError: if the string is not a valid xpub/tpub
        """
        data = base58check_decode(xpub.strip())
        if data is None or len(data) != 78:
            raise ValueError("Invalid extended public key encoding")

        version = data[0:4]
        if version not in (XPUB_VERSION, TPUB_VERSION):
            raise ValueError("Unsupported extended key version (expected xpub or tpub)")

        key = data[45:78]
        if key[0] not in (0x02, 0x03):
            raise ValueError("Extended key does not hold a compressed public key")
        # Validates the point is on the curve
        PublicKey(key)

        return cls(
            public_key=key,
            chain_code=data[13:45],
            depth=data[4],
            child_number=int.from_bytes(data[9:13], "big"),
            testnet=version == TPUB_VERSION,
        )

    def derive_child(self, index: int) -> "ExtendedPublicKey":
        """CKDpub: non-hardened public child derivation."""
        if index < 0 or index >= HARDENED_OFFSET:
            raise ValueError("Public derivation requires a non-hardened index")

        digest = hmac.new(
            self.chain_code,
            self.public_key + index.to_bytes(4, "big"),
            hashlib.sha512,
        ).digest()
        tweak, chain_code = digest[:32], digest[32:]
        if int.from_bytes(tweak, "big") >= SECP256K1_N:
            raise ValueError(f"Invalid child at index {index}")

        child = PublicKey(self.public_key).add(tweak)
        return ExtendedPublicKey(
            public_key=child.format(compressed=True),
            chain_code=chain_code,
            depth=self.depth + 1,
            child_number=index,
            testnet=self.testnet,
        )

    def derive_path(self, *indices: int) -> "ExtendedPublicKey":
        node = self
        for index in indices:
            node = node.derive_child(index)
        return node


def to_checksum_address(addr_hex: str) -> str:
    """
    EIP-55 mixed-case checksum encoding.

    Each hex letter is upper-cased iff the matching nibble of
    keccak256(lowercase_hex) is >= 8.
    """
    lower = addr_hex.lower().removeprefix("0x")
    if len(lower) != 40:
        raise ValueError("EVM address must be 20 bytes")
    hash_hex = Web3.keccak(text=lower).hex().removeprefix("0x")

    out = "0x"
    for i, ch in enumerate(lower):
        out += ch.upper() if int(hash_hex[i], 16) >= 8 else ch
    return out
