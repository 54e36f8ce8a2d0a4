"""
secp256k1 key helpers for Nostr Wallet Connect (NWC).

Uses coincurve (libsecp256k1) for key derivation and ECDH. Nostr only ever
transmits x-only public keys, so the peer point is lifted from its 32-byte
x-coordinate before the scalar multiplication.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Union

from coincurve import PrivateKey, PublicKey

from .errors import InvalidKeyLength, InvalidPrivateKey, InvalidPublicKey

KeyLike = Union[bytes, str]

KEY_SIZE = 32


@dataclass(frozen=True)
class KeyPair:
    """A private scalar and its x-only public key."""
    private_key: bytes
    public_key: bytes

    @property
    def private_key_hex(self) -> str:
        return self.private_key.hex()

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key_hex!r})"


def to_key_bytes(key: KeyLike, name: str = "key") -> bytes:
    """
    Normalize a 32-byte key given as raw bytes or hex.

    Raises:
        InvalidKeyLength: If the key is not exactly 32 bytes.
    """
    if isinstance(key, str):
        if len(key) != KEY_SIZE * 2:
            raise InvalidKeyLength(f"{name} must be {KEY_SIZE * 2} hex characters, got {len(key)}")
        try:
            key = bytes.fromhex(key)
        except ValueError as e:
            raise InvalidKeyLength(f"{name} is not valid hex") from e

    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidKeyLength(f"{name} must be {KEY_SIZE} bytes")
    return bytes(key)


def load_private_key(private_key: KeyLike) -> PrivateKey:
    secret = to_key_bytes(private_key, "private key")
    try:
        return PrivateKey(secret)
    except ValueError as e:
        raise InvalidPrivateKey("private key is not a valid secp256k1 scalar") from e


def generate_private_key() -> bytes:
    """Generate a random 32-byte private key from the OS CSPRNG."""
    while True:
        candidate = secrets.token_bytes(KEY_SIZE)
        try:
            PrivateKey(candidate)
        except ValueError:
            # zero or >= curve order, astronomically rare
            continue
        return candidate


def generate_keypair() -> KeyPair:
    private_key = generate_private_key()
    return KeyPair(private_key=private_key, public_key=get_public_key(private_key))


def get_public_key(private_key: KeyLike) -> bytes:
    """
    Derive the x-only (BIP-340) public key from a private key.

    Args:
        private_key: 32-byte private key, raw or hex.

    Returns:
        32-byte x-coordinate of the public point.
    """
    sk = load_private_key(private_key)
    # coincurve gives compressed pubkey (33 bytes). Drop the parity byte.
    return sk.public_key.format(compressed=True)[1:]


def get_public_key_hex(private_key: KeyLike) -> str:
    return get_public_key(private_key).hex()


def lift_x(public_key: KeyLike) -> PublicKey:
    """
    Resolve an x-only public key to a curve point.

    The even-y point is tried first and the odd-y point only if that fails.
    The ECDH x-coordinate is identical for either parity, so both ends of a
    conversation agree regardless of which candidate is picked.

    Raises:
        InvalidKeyLength: If the key is not 32 bytes.
        InvalidPublicKey: If neither parity decompresses.
    """
    x_only = to_key_bytes(public_key, "public key")
    for prefix in (b"\x02", b"\x03"):
        try:
            return PublicKey(prefix + x_only)
        except ValueError:
            continue
    raise InvalidPublicKey(f"public key {x_only.hex()[:8]}... is not on secp256k1")


def compute_shared_secret(private_key: KeyLike, public_key: KeyLike) -> bytes:
    """
    Compute the ECDH shared x-coordinate.

    Used directly as the NIP-04 AES key and as HKDF input for NIP-44.

    Args:
        private_key: Our 32-byte private key.
        public_key: Their 32-byte x-only public key.

    Returns:
        32-byte x-coordinate of private_key * public_point.
    """
    sk = load_private_key(private_key)
    point = lift_x(public_key)

    shared_point = point.multiply(sk.secret)
    # Take just the x-coordinate (skip the 02/03 prefix byte)
    return shared_point.format(compressed=True)[1:]
