"""
Nostr events (NIP-01): canonical serialization, ids and BIP-340 signatures.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from coincurve import PublicKeyXOnly

from .crypto import KeyLike, get_public_key, load_private_key
from .errors import InvalidKeyLength, ProtocolError


@dataclass
class NostrEvent:
    """A Nostr event as sent to / received from relays."""
    kind: int
    content: str
    tags: List[List[str]] = field(default_factory=list)
    pubkey: str = ""
    created_at: int = 0
    id: str = ""
    sig: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NostrEvent":
        """
        Build an event from its wire mapping.

        Raises:
            ProtocolError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ProtocolError("Event must be a JSON object")
        try:
            tags = data["tags"]
            if not isinstance(tags, list) or not all(isinstance(t, list) for t in tags):
                raise ProtocolError("Event tags must be a list of lists")
            event = cls(
                id=str(data["id"]),
                pubkey=str(data["pubkey"]),
                created_at=int(data["created_at"]),
                kind=int(data["kind"]),
                tags=[[str(v) for v in tag] for tag in tags],
                content=str(data["content"]),
                sig=str(data["sig"]),
            )
        except KeyError as e:
            raise ProtocolError(f"Event is missing field {e.args[0]!r}") from e
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed event: {e}") from e
        return event

    def get_tag(self, name: str) -> Optional[str]:
        """Return the value of the first tag called `name`, if any."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None


def serialize_event(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: List[List[str]],
    content: str,
) -> str:
    """Serialize a Nostr event for hashing (NIP-01)."""
    return json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: List[List[str]],
    content: str,
) -> str:
    serialized = serialize_event(pubkey, created_at, kind, tags, content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event_id(event_id: Union[str, bytes], private_key: KeyLike) -> str:
    """
    BIP-340 sign a 32-byte event id.

    Fresh auxiliary randomness is drawn for every signature.

    Returns:
        64-byte signature, hex encoded.
    """
    message = bytes.fromhex(event_id) if isinstance(event_id, str) else event_id
    if len(message) != 32:
        raise InvalidKeyLength("event id must be 32 bytes")

    sk = load_private_key(private_key)
    sig = sk.sign_schnorr(message, secrets.token_bytes(32))
    return sig.hex()


def verify_signature(
    event_id: Union[str, bytes],
    signature: Union[str, bytes],
    public_key: Union[str, bytes],
) -> bool:
    """
    Verify a BIP-340 signature over an event id.

    Malformed input yields False rather than an exception.
    """
    try:
        message = bytes.fromhex(event_id) if isinstance(event_id, str) else event_id
        sig = bytes.fromhex(signature) if isinstance(signature, str) else signature
        pub = bytes.fromhex(public_key) if isinstance(public_key, str) else public_key
        if len(message) != 32 or len(sig) != 64 or len(pub) != 32:
            return False
        return bool(PublicKeyXOnly(pub).verify(sig, message))
    except (ValueError, TypeError):
        return False


def sign_event(event: NostrEvent, private_key: KeyLike) -> NostrEvent:
    """Fill in pubkey, created_at (if unset), id and sig of an event in place."""
    event.pubkey = get_public_key(private_key).hex()
    if not event.created_at:
        event.created_at = int(time.time())
    event.id = compute_event_id(
        event.pubkey, event.created_at, event.kind, event.tags, event.content
    )
    event.sig = sign_event_id(event.id, private_key)
    return event


def verify_event(event: NostrEvent) -> bool:
    """Check that an event's id matches its content and its sig matches its id."""
    try:
        expected_id = compute_event_id(
            event.pubkey, event.created_at, event.kind, event.tags, event.content
        )
    except (TypeError, ValueError):
        return False
    if expected_id != event.id.lower():
        return False
    return verify_signature(event.id, event.sig, event.pubkey)
