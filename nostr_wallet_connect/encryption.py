"""
Per-connection encryption policy.

A wallet advertises the schemes it understands in the "encryption" tag of
its info event (kind 13194), e.g. "nip44_v2 nip04". The policy turns that into
one of two ciphers:

- LegacyCipher: NIP-04
- ConversationCipher(version): NIP-44, version byte 1 or 2

Each NwcWallet owns its own EncryptionPolicy, so connections to wallets with
different capabilities never affect each other.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from . import nip04, nip44
from .crypto import KeyLike
from .nip44 import ConversationKeyCache

TAG_NIP44_V2 = "nip44_v2"
TAG_NIP44 = "nip44"
TAG_NIP04 = "nip04"


class Direction(enum.Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


@dataclass(frozen=True)
class LegacyCipher:
    """NIP-04 AES-256-CBC."""

    @property
    def tag(self) -> str:
        return TAG_NIP04

    def encrypt(self, plaintext: str, private_key: KeyLike, public_key: KeyLike, keys: Optional[ConversationKeyCache] = None) -> str:
        return nip04.nip04_encrypt(private_key, public_key, plaintext)

    def decrypt(self, payload: str, private_key: KeyLike, public_key: KeyLike, keys: Optional[ConversationKeyCache] = None) -> str:
        return nip04.nip04_decrypt(private_key, public_key, payload)


@dataclass(frozen=True)
class ConversationCipher:
    """NIP-44 with the given payload version byte."""
    version: int = nip44.DEFAULT_VERSION

    @property
    def tag(self) -> str:
        return TAG_NIP44_V2 if self.version == 2 else TAG_NIP44

    def encrypt(self, plaintext: str, private_key: KeyLike, public_key: KeyLike, keys: Optional[ConversationKeyCache] = None) -> str:
        return nip44.nip44_encrypt(private_key, public_key, plaintext, version=self.version, keys=keys)

    def decrypt(self, payload: str, private_key: KeyLike, public_key: KeyLike, keys: Optional[ConversationKeyCache] = None) -> str:
        return nip44.nip44_decrypt(private_key, public_key, payload, keys=keys)


Cipher = Union[LegacyCipher, ConversationCipher]


def cipher_for_tag(tag: str) -> Optional[Cipher]:
    """Map a single encryption tag to its cipher, or None if unknown."""
    if tag == TAG_NIP44_V2:
        return ConversationCipher(2)
    if tag == TAG_NIP44:
        return ConversationCipher(1)
    if tag == TAG_NIP04:
        return LegacyCipher()
    return None


def _split_tags(tags: Union[str, Iterable[str], None]) -> set:
    if tags is None:
        return set()
    if isinstance(tags, str):
        return set(tags.split())
    return {t for tag in tags for t in str(tag).split()}


class EncryptionPolicy:
    """
    Which cipher a connection uses for its traffic.

    Args:
        preferred_version: NIP-44 version to use, or None if the wallet did
            not say (treated as v2).
        force_legacy_only: Use NIP-04 for everything.
        declared: True once the wallet's capabilities are known. While
            undeclared, one logged fallback to NIP-04 is allowed on inbound
            messages that are not NIP-44 formatted.
    """

    def __init__(
        self,
        preferred_version: Optional[int] = None,
        force_legacy_only: bool = False,
        declared: bool = False,
    ):
        if preferred_version is not None and preferred_version not in nip44.SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported NIP-44 version: {preferred_version}")
        self.preferred_version = preferred_version
        self.force_legacy_only = force_legacy_only
        self.declared = declared

    @classmethod
    def from_capabilities(cls, tags: Union[str, Iterable[str], None]) -> "EncryptionPolicy":
        policy = cls()
        policy.update(tags)
        return policy

    def update(self, tags: Union[str, Iterable[str], None]) -> None:
        """
        Apply a wallet's advertised encryption tags.

        Precedence: nip44_v2 > nip44 > nip04. An empty or unknown list leaves
        the policy undeclared (v2 with fallback).
        """
        advertised = _split_tags(tags)
        if TAG_NIP44_V2 in advertised:
            self.preferred_version, self.force_legacy_only, self.declared = 2, False, True
        elif TAG_NIP44 in advertised:
            self.preferred_version, self.force_legacy_only, self.declared = 1, False, True
        elif TAG_NIP04 in advertised:
            self.preferred_version, self.force_legacy_only, self.declared = None, True, True
        else:
            self.preferred_version, self.force_legacy_only, self.declared = None, False, False

    @property
    def allows_fallback(self) -> bool:
        return not self.declared

    def select_cipher(self, direction: Direction = Direction.OUTGOING) -> Cipher:
        # Both directions use the advertised cipher; INCOMING may additionally
        # fall back once while allows_fallback is true (see EventCodec).
        if self.force_legacy_only:
            return LegacyCipher()
        return ConversationCipher(self.preferred_version or nip44.DEFAULT_VERSION)

    def encryption_tag_for_outgoing(self) -> str:
        return self.select_cipher(Direction.OUTGOING).tag

    def __repr__(self) -> str:
        return (
            f"EncryptionPolicy(preferred_version={self.preferred_version!r}, "
            f"force_legacy_only={self.force_legacy_only!r}, declared={self.declared!r})"
        )
