"""Keccak-256 hashing and Ethereum address helpers.

The ledger identifies auth methods and PKP wallets with Ethereum
conventions: keccak-256 (the pre-standard Keccak padding, NOT
hashlib.sha3_256), 20-byte addresses, and EIP-55 mixed-case checksums.
"""

import re

from Crypto.Hash import keccak

_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


def keccak256(data: bytes) -> bytes:
    """Return the 32-byte keccak-256 digest of data."""
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def is_address(value: str) -> bool:
    """True if value is a 20-byte hex address (checksum not enforced)."""
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def to_checksum_address(value: str) -> str:
    """Normalize an address to its EIP-55 checksummed form.

    Raises:
        ValueError: If value is not a 20-byte hex address.
    """
    if not is_address(value):
        raise ValueError(f"not a 20-byte hex address: {value!r}")
    lower = value.lower().removeprefix("0x")
    digest = keccak256(lower.encode("ascii")).hex()
    return "0x" + "".join(
        c.upper() if c.isalpha() and int(digest[i], 16) >= 8 else c
        for i, c in enumerate(lower)
    )


def public_key_to_address(public_key: bytes) -> str:
    """Derive the checksummed address controlled by an uncompressed secp256k1 key.

    Accepts the 65-byte SEC1 form (0x04 || X || Y) or the bare 64-byte X || Y.

    Raises:
        ValueError: For compressed or malformed keys.
    """
    if len(public_key) == 65 and public_key[0] == 0x04:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError(
            f"expected uncompressed secp256k1 public key, got {len(public_key)} bytes"
        )
    return to_checksum_address(keccak256(public_key)[-20:].hex())


def hex_to_bytes(value: str) -> bytes:
    """Decode 0x-prefixed (or bare) hex."""
    return bytes.fromhex(value.removeprefix("0x"))
