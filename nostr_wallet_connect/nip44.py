"""
NIP-44 encryption ("conversation" cipher).

Pipeline per message:

1. conversation_key = HKDF-Extract(salt="nip44-v2", ikm=ECDH x-coordinate)
2. 76 bytes = HKDF-Expand(conversation_key, info=salt) split into
   chacha_key[32] | chacha_nonce[12] | hmac_key[32]
3. plaintext is prefixed with its u16 big-endian length and zero padded
4. ChaCha20 (RFC 7539, counter 0) over the padded plaintext
5. mac = HMAC-SHA256(hmac_key, salt || ciphertext)

Payload: base64(version[1] || salt[32] || ciphertext || mac[32]).

HKDF is done with hmac/hashlib directly because NIP-44 needs the Extract and
Expand steps separately. ChaCha20 comes from PyCryptodome.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import os
from base64 import b64decode, b64encode
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from Crypto.Cipher import ChaCha20

from .crypto import KeyLike, compute_shared_secret, to_key_bytes
from .errors import (
    AuthenticationFailed,
    FormatMismatch,
    InvalidPadding,
    InvalidPlaintextLength,
    UnsupportedVersion,
)

SALT_PREFIX = b"nip44-v2"
SUPPORTED_VERSIONS = (1, 2)
DEFAULT_VERSION = 2

MIN_PLAINTEXT_SIZE = 1
MAX_PLAINTEXT_SIZE = 65535

SALT_SIZE = 32
MAC_SIZE = 32
MESSAGE_KEYS_SIZE = 76

# version + salt + (2 + padded bytes) + mac; 65535 pads to 65536
MIN_PAYLOAD_SIZE = 1 + SALT_SIZE + 2 + 32 + MAC_SIZE
MAX_PAYLOAD_SIZE = 1 + SALT_SIZE + 2 + 65536 + MAC_SIZE


@dataclass(frozen=True)
class MessageKeys:
    """Single-use keys derived from the conversation key and a message salt."""
    encryption_key: bytes   # 32 bytes, ChaCha20 key
    nonce: bytes            # 12 bytes, ChaCha20 nonce
    auth_key: bytes         # 32 bytes, HMAC-SHA256 key


def hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """RFC 5869 HKDF-Extract with SHA-256."""
    return hmac.new(salt, ikm, hashlib.sha256).digest()


def hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    """RFC 5869 HKDF-Expand with SHA-256."""
    if length > 255 * hashlib.sha256().digest_size:
        raise ValueError("HKDF-Expand length too large")

    okm = b""
    block = b""
    counter = 1
    while len(okm) < length:
        block = hmac.new(prk, block + info + bytes([counter]), hashlib.sha256).digest()
        okm += block
        counter += 1
    return okm[:length]


def get_conversation_key(private_key: KeyLike, public_key: KeyLike) -> bytes:
    """
    Derive the 32-byte conversation key for a (local key, peer key) pair.

    The result is symmetric (A's key with B's pubkey equals B's key with A's
    pubkey).
    """
    shared_x = compute_shared_secret(
        to_key_bytes(private_key, "private key"),
        to_key_bytes(public_key, "public key"),
    )
    return hkdf_extract(SALT_PREFIX, shared_x)


class ConversationKeyCache:
    """
    Conversation keys derived during one session.

    Owned by a single connection and cleared when it ends, so derived keys
    never outlive the secret they came from.
    """

    def __init__(self):
        self._keys: Dict[Tuple[bytes, bytes], bytes] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def get(self, private_key: KeyLike, public_key: KeyLike) -> bytes:
        pair = (to_key_bytes(private_key, "private key"), to_key_bytes(public_key, "public key"))
        key = self._keys.get(pair)
        if key is None:
            key = self._keys[pair] = get_conversation_key(*pair)
        return key

    def clear(self) -> None:
        self._keys.clear()


def get_message_keys(conversation_key: bytes, salt: bytes) -> MessageKeys:
    if len(conversation_key) != 32:
        raise FormatMismatch("conversation key must be 32 bytes")
    if len(salt) != SALT_SIZE:
        raise FormatMismatch(f"salt must be {SALT_SIZE} bytes")

    keys = hkdf_expand(conversation_key, salt, MESSAGE_KEYS_SIZE)
    return MessageKeys(
        encryption_key=keys[0:32],
        nonce=keys[32:44],
        auth_key=keys[44:76],
    )


def calc_padded_len(unpadded_len: int) -> int:
    """
    Padded size for a plaintext of `unpadded_len` bytes.

    Sizes up to 32 round to 32. Above that, the chunk is 32 bytes while the
    next power of two is at most 256, and an eighth of that power beyond.
    """
    if unpadded_len < MIN_PLAINTEXT_SIZE or unpadded_len > MAX_PLAINTEXT_SIZE:
        raise InvalidPlaintextLength(
            f"plaintext must be {MIN_PLAINTEXT_SIZE}..{MAX_PLAINTEXT_SIZE} bytes, got {unpadded_len}"
        )
    if unpadded_len <= 32:
        return 32

    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def pad(plaintext: str) -> bytes:
    data = plaintext.encode("utf-8")
    length = len(data)
    padded_len = calc_padded_len(length)
    return length.to_bytes(2, "big") + data + bytes(padded_len - length)


def unpad(padded: bytes) -> str:
    if len(padded) < 2:
        raise InvalidPadding("padded plaintext is too short")

    length = int.from_bytes(padded[0:2], "big")
    if length < MIN_PLAINTEXT_SIZE or length > len(padded) - 2:
        raise InvalidPadding(f"declared plaintext length {length} is out of range")
    if len(padded) != 2 + calc_padded_len(length):
        raise InvalidPadding("padding length does not match declared plaintext length")

    try:
        return padded[2:2 + length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidPadding("plaintext is not valid UTF-8") from e


def _chacha20(keys: MessageKeys, data: bytes) -> bytes:
    cipher = ChaCha20.new(key=keys.encryption_key, nonce=keys.nonce)
    return cipher.encrypt(data)


def _hmac_aad(auth_key: bytes, message: bytes, aad: bytes) -> bytes:
    return hmac.new(auth_key, aad + message, hashlib.sha256).digest()


def encrypt(
    plaintext: str,
    conversation_key: bytes,
    salt: Optional[bytes] = None,
    version: int = DEFAULT_VERSION,
) -> str:
    """
    Encrypt a message with a conversation key.

    Args:
        plaintext: Message text (1..65535 UTF-8 bytes).
        conversation_key: Result of get_conversation_key().
        salt: 32-byte message salt; random when omitted. Only pass one in
            tests, a salt must never be reused.
        version: Version byte written to the payload (1 or 2).

    Returns:
        Base64 payload.
    """
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(f"cannot encrypt NIP-44 version {version}")
    if salt is None:
        salt = os.urandom(SALT_SIZE)

    keys = get_message_keys(conversation_key, salt)
    ciphertext = _chacha20(keys, pad(plaintext))
    mac = _hmac_aad(keys.auth_key, ciphertext, salt)

    return b64encode(bytes([version]) + salt + ciphertext + mac).decode("ascii")


def decode_payload(payload: str) -> Tuple[int, bytes, bytes, bytes]:
    """
    Split a payload into (version, salt, ciphertext, mac).

    Raises:
        UnsupportedVersion: For the '#' marker or an unknown version byte.
        FormatMismatch: If the payload is not base64 or has an impossible size.
    """
    if not payload:
        raise FormatMismatch("empty NIP-44 payload")
    if payload[0] == "#":
        raise UnsupportedVersion("NIP-44 payload uses an unknown non-base64 encoding")

    try:
        data = b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatMismatch(f"NIP-44 payload is not base64: {e}") from e

    if not data:
        raise FormatMismatch("empty NIP-44 payload")
    version = data[0]
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(f"NIP-44 version {version} not supported")
    if len(data) < MIN_PAYLOAD_SIZE or len(data) > MAX_PAYLOAD_SIZE:
        raise FormatMismatch(f"invalid NIP-44 payload size {len(data)}")

    salt = data[1:1 + SALT_SIZE]
    ciphertext = data[1 + SALT_SIZE:-MAC_SIZE]
    mac = data[-MAC_SIZE:]
    return version, salt, ciphertext, mac


def decrypt(payload: str, conversation_key: bytes) -> str:
    """
    Decrypt a base64 NIP-44 payload.

    The MAC is checked before anything is decrypted.

    Raises:
        AuthenticationFailed: If the MAC does not match.
        InvalidPadding: If the decrypted data is not correctly padded.
    """
    _version, salt, ciphertext, mac = decode_payload(payload)
    keys = get_message_keys(conversation_key, salt)

    expected_mac = _hmac_aad(keys.auth_key, ciphertext, salt)
    if not hmac.compare_digest(mac, expected_mac):
        raise AuthenticationFailed("NIP-44 MAC mismatch")

    return unpad(_chacha20(keys, ciphertext))


def nip44_encrypt(
    private_key: KeyLike,
    public_key: KeyLike,
    plaintext: str,
    version: int = DEFAULT_VERSION,
    keys: Optional[ConversationKeyCache] = None,
) -> str:
    """Encrypt `plaintext` from private_key's owner to public_key's owner."""
    return encrypt(plaintext, _lookup(keys, private_key, public_key), version=version)


def nip44_decrypt(
    private_key: KeyLike,
    public_key: KeyLike,
    payload: str,
    keys: Optional[ConversationKeyCache] = None,
) -> str:
    """Decrypt a payload that public_key's owner sent to private_key's owner."""
    return decrypt(payload, _lookup(keys, private_key, public_key))


def _lookup(keys: Optional[ConversationKeyCache], private_key: KeyLike, public_key: KeyLike) -> bytes:
    if keys is None:
        return get_conversation_key(private_key, public_key)
    return keys.get(private_key, public_key)
