"""
Unit tests for hashing and account address encoding.

Tests cover:
1. Hashing functions
2. CRC16-XModem checksum
3. Address encoding, decoding and tamper detection
"""

import secrets

import pytest

from galerie.crypto import (
    bytes_to_hex,
    crc16_xmodem,
    decode_address,
    encode_address,
    is_valid_address,
    random_address,
    sha256,
)


class TestHashing:
    """Tests for hash helpers."""

    def test_sha256_known_vector(self):
        """SHA-256 of the empty string."""
        assert bytes_to_hex(sha256(b"")) == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_crc16_check_value(self):
        """CRC16-XModem check value for '123456789'."""
        assert crc16_xmodem(b"123456789") == 0x31C3


class TestAddresses:
    """Tests for account address encoding."""

    def test_address_shape(self):
        """Encoded addresses start with G and are 56 characters."""
        address = random_address()
        assert address.startswith("G")
        assert len(address) == 56

    def test_decode_recovers_public_key(self):
        """Decoding returns the encoded key."""
        public_key = secrets.token_bytes(32)
        assert decode_address(encode_address(public_key)) == public_key

    def test_checksum_detects_tampering(self):
        """Changing one character invalidates the address."""
        address = random_address()
        replacement = "A" if address[10] != "A" else "B"
        tampered = address[:10] + replacement + address[11:]
        assert not is_valid_address(tampered)

    def test_rejects_malformed(self):
        """Wrong length, bad alphabet and non-strings are invalid."""
        assert not is_valid_address("GABC")
        assert not is_valid_address("g" * 56)
        assert not is_valid_address(None)

    def test_wrong_key_length(self):
        """Only 32-byte keys can be encoded."""
        with pytest.raises(ValueError):
            encode_address(b"\x00" * 31)
