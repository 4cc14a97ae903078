"""
Tests for address encoding and BIP32 public derivation.
"""

import pytest

from creditpay.address import (
    SECP256K1_N,
    ExtendedPublicKey,
    base58_decode,
    base58_encode,
    base58check_decode,
    base58check_encode,
    decode_p2pkh_address,
    encode_p2pkh_address,
    hash160,
    sha256d,
    to_checksum_address,
)

# secp256k1 generator point, compressed (private key 1)
G_COMPRESSED = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")


class TestHashing:
    """Tests for hash helpers."""

    def test_sha256d_empty(self) -> None:
        expected = bytes.fromhex("5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456")
        assert sha256d(b"") == expected

    def test_hash160_of_generator(self) -> None:
        assert hash160(G_COMPRESSED).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"


class TestBase58:
    """Tests for base58 and base58check."""

    def test_leading_zero_bytes_become_ones(self) -> None:
        assert base58_encode(b"\x00\x00\x01") == "112"
        assert base58_decode("112") == b"\x00\x00\x01"

    def test_invalid_character_rejected(self) -> None:
        # 0, O, I and l are not in the alphabet
        assert base58_decode("0OIl") is None

    def test_check_roundtrip(self) -> None:
        payload = b"\x00" + bytes(range(20))
        assert base58check_decode(base58check_encode(payload)) == payload

    def test_check_rejects_bad_checksum(self) -> None:
        encoded = base58check_encode(b"\x00" + b"\x11" * 20)
        tampered = encoded[:-1] + ("2" if encoded[-1] != "2" else "3")
        assert base58check_decode(tampered) is None


class TestP2PKH:
    """Tests for legacy address encoding."""

    def test_mainnet_address_of_generator(self) -> None:
        assert encode_p2pkh_address(G_COMPRESSED) == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

    def test_testnet_address_of_generator(self) -> None:
        assert encode_p2pkh_address(G_COMPRESSED, testnet=True) == "mrCDrCybB6J1vRfbwM5hemdJz73FwDBC8r"

    def test_decode(self) -> None:
        result = decode_p2pkh_address("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        assert result is not None
        pubkey_hash, is_testnet = result
        assert pubkey_hash.hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"
        assert is_testnet is False

    def test_decode_invalid(self) -> None:
        assert decode_p2pkh_address("not-an-address") is None


class TestExtendedPublicKey:
    """BIP32 test vector 1."""

    XPUB_M_0H = (
        "xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw"
    )
    XPUB_M_0H_1 = (
        "xpub6ASuArnXKPbfEwhqN6e3mwBcDTgzisQN1wXN9BJcM47sSikHjJf3UFHKkNAWbWMiGj7Wf5uMash7SyYq527Hqck2AxYysAA7xmALppuCkwQ"
    )

    def test_parse(self) -> None:
        key = ExtendedPublicKey.from_base58(self.XPUB_M_0H)
        assert key.depth == 1
        assert key.child_number == 0x80000000
        assert key.testnet is False
        assert len(key.public_key) == 33
        assert len(key.chain_code) == 32

    def test_public_child_derivation_matches_vector(self) -> None:
        parent = ExtendedPublicKey.from_base58(self.XPUB_M_0H)
        expected = ExtendedPublicKey.from_base58(self.XPUB_M_0H_1)

        child = parent.derive_child(1)

        assert child.public_key == expected.public_key
        assert child.chain_code == expected.chain_code
        assert child.depth == 2
        assert child.child_number == 1

    def test_curve_order(self) -> None:
        assert SECP256K1_N.bit_length() == 256
        assert SECP256K1_N == int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

    def test_consecutive_children_derive(self) -> None:
        parent = ExtendedPublicKey.from_base58(self.XPUB_M_0H)
        children = {parent.derive_child(i).public_key for i in range(20)}
        assert len(children) == 20

    def test_hardened_index_rejected(self) -> None:
        parent = ExtendedPublicKey.from_base58(self.XPUB_M_0H)
        with pytest.raises(ValueError):
            parent.derive_child(0x80000000)

    def test_invalid_encoding_rejected(self) -> None:
        with pytest.raises(ValueError):
            ExtendedPublicKey.from_base58("xpub-not-really")

    def test_private_key_version_rejected(self) -> None:
        # Same payload re-encoded with the xprv version bytes
        data = base58check_decode(self.XPUB_M_0H)
        assert data is not None
        xprv_like = base58check_encode(bytes.fromhex("0488ade4") + data[4:])
        with pytest.raises(ValueError):
            ExtendedPublicKey.from_base58(xprv_like)


class TestChecksumAddress:
    """EIP-55 vectors."""

    @pytest.mark.parametrize(
        "address",
        [
            "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed",
            "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359",
            "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB",
            "0xD1220A0cf47c7B9Be7A2E6BA89F429762e7b9aDb",
        ],
    )
    def test_eip55(self, address: str) -> None:
        assert to_checksum_address(address.lower()) == address

    def test_wrong_length_rejected(self) -> None:
        with pytest.raises(ValueError):
            to_checksum_address("0x1234")
