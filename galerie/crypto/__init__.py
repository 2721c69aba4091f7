"""
Cryptographic helpers for Galerie.

This module provides:
- Hashing (SHA-256) for content addressing of transaction plans
- Ledger account address encoding (StrKey)

Design Notes:
-------------
Galerie never touches key material: signing is delegated to an injected
capability. What remains here is the public half of the ledger's
address scheme, needed to validate account identifiers before any
network call.

StrKey layout (account ids):
    base32( version_byte || ed25519_public_key(32) || crc16_xmodem(2, LE) )

The version byte for account ids is 6 << 3, which makes every encoded
address start with "G" and be exactly 56 characters long.
"""

import base64
import binascii
import hashlib
import secrets
from typing import Optional


# =============================================================================
# Constants
# =============================================================================

ACCOUNT_ID_VERSION = 6 << 3
PUBLIC_KEY_SIZE = 32
ENCODED_ADDRESS_LENGTH = 56


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """
    Compute SHA-256 hash.
    
    Used for: transaction plan ids, content addressing.
    """
    return hashlib.sha256(data).digest()


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string (without 0x prefix)."""
    return data.hex()


# =============================================================================
# Checksum
# =============================================================================


def crc16_xmodem(data: bytes) -> int:
    """CRC16-XModem (poly 0x1021, init 0) as used by StrKey."""
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


# =============================================================================
# Addresses
# =============================================================================


def encode_address(public_key: bytes) -> str:
    """
    Encode a raw ed25519 public key as a ledger account address.
    
    Args:
        public_key: 32-byte public key
        
    Returns:
        56-character address starting with "G"
    """
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(f"public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}")
    payload = bytes([ACCOUNT_ID_VERSION]) + public_key
    checksum = crc16_xmodem(payload).to_bytes(2, byteorder="little")
    return base64.b32encode(payload + checksum).decode("ascii")


def decode_address(address: str) -> Optional[bytes]:
    """
    Decode an account address back to its raw public key.
    
    Returns:
        32-byte public key, or None if the address is malformed
    """
    if not isinstance(address, str) or len(address) != ENCODED_ADDRESS_LENGTH:
        return None
    try:
        raw = base64.b32decode(address, casefold=False)
    except (binascii.Error, ValueError):
        return None

    if len(raw) != 1 + PUBLIC_KEY_SIZE + 2:
        return None
    payload, checksum = raw[:-2], raw[-2:]
    if payload[0] != ACCOUNT_ID_VERSION:
        return None
    if crc16_xmodem(payload).to_bytes(2, byteorder="little") != checksum:
        return None
    return payload[1:]


def is_valid_address(address: str) -> bool:
    """Check whether a string is a well-formed account address."""
    return decode_address(address) is not None


def random_address() -> str:
    """Generate a random (keyless) account address. Used by demos and tests."""
    return encode_address(secrets.token_bytes(PUBLIC_KEY_SIZE))


__all__ = [
    "sha256",
    "bytes_to_hex",
    "crc16_xmodem",
    "encode_address",
    "decode_address",
    "is_valid_address",
    "random_address",
]
