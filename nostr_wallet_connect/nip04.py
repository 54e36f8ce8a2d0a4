"""
NIP-04 encryption for Nostr Wallet Connect (NWC).

AES-256-CBC keyed by the raw ECDH x-coordinate, PKCS#7 padded, with a random
16-byte IV. Wire format: "<base64 ciphertext>?iv=<base64 iv>".
Uses PyCryptodome for AES.
"""

from __future__ import annotations

import binascii
import os
from base64 import b64decode, b64encode

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad

from .crypto import KeyLike, compute_shared_secret
from .errors import DecryptionFailed, FormatMismatch

IV_SEPARATOR = "?iv="
IV_SIZE = 16


def encrypt_with_key(shared_secret: bytes, plaintext: str) -> str:
    iv = os.urandom(IV_SIZE)
    cipher = AES.new(shared_secret, AES.MODE_CBC, iv)
    padded = pad(plaintext.encode("utf-8"), AES.block_size)
    ciphertext = cipher.encrypt(padded)

    ct_b64 = b64encode(ciphertext).decode("ascii")
    iv_b64 = b64encode(iv).decode("ascii")

    return f"{ct_b64}{IV_SEPARATOR}{iv_b64}"


def decrypt_with_key(shared_secret: bytes, payload: str) -> str:
    parts = payload.split(IV_SEPARATOR)
    if len(parts) != 2:
        raise FormatMismatch("Invalid NIP-04 ciphertext format (expected '...?iv=...')")

    try:
        ciphertext = b64decode(parts[0], validate=True)
        iv = b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatMismatch(f"Invalid NIP-04 base64: {e}") from e

    if len(iv) != IV_SIZE:
        raise FormatMismatch(f"NIP-04 IV must be {IV_SIZE} bytes, got {len(iv)}")
    if not ciphertext or len(ciphertext) % AES.block_size:
        raise FormatMismatch("NIP-04 ciphertext is not a whole number of AES blocks")

    cipher = AES.new(shared_secret, AES.MODE_CBC, iv)
    try:
        plaintext = unpad(cipher.decrypt(ciphertext), AES.block_size)
        return plaintext.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionFailed("NIP-04 decryption failed (bad key or corrupt payload)") from e


def nip04_encrypt(private_key: KeyLike, public_key: KeyLike, plaintext: str) -> str:
    """
    Encrypt a message using NIP-04.

    Args:
        private_key: Our 32-byte private key (raw or hex).
        public_key: Their 32-byte x-only public key (raw or hex).
        plaintext: Message to encrypt.

    Returns:
        NIP-04 formatted ciphertext: "<base64_ciphertext>?iv=<base64_iv>"
    """
    return encrypt_with_key(compute_shared_secret(private_key, public_key), plaintext)


def nip04_decrypt(private_key: KeyLike, public_key: KeyLike, payload: str) -> str:
    """
    Decrypt a NIP-04 encrypted message.

    Raises:
        FormatMismatch: If the payload is not "<b64>?iv=<b64>".
        DecryptionFailed: If padding or UTF-8 decoding fails.
    """
    return decrypt_with_key(compute_shared_secret(private_key, public_key), payload)
