"""
Wire framing for NWC: request/response events and relay messages.

Outbound relay frames:  ["EVENT", event], ["REQ", sub_id, filter...], ["CLOSE", sub_id]
Inbound relay frames:   ["EVENT", sub_id, event], ["EOSE", sub_id],
                        ["OK", event_id, accepted, message], ["NOTICE", message],
                        ["CLOSED", sub_id, message]
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .crypto import KeyLike
from .encryption import (
    Cipher,
    Direction,
    EncryptionPolicy,
    LegacyCipher,
    cipher_for_tag,
)
from .errors import FormatMismatch, ProtocolError, UnsupportedVersion
from .event import NostrEvent, sign_event
from .nip44 import ConversationKeyCache
from .protocol import (
    INFO_KIND,
    REQUEST_KIND,
    RESPONSE_KIND,
    NwcRequest,
    NwcResponse,
    WalletInfo,
)


@dataclass
class RelayMessage:
    """A parsed inbound relay frame."""
    type: str
    subscription_id: Optional[str] = None
    event: Optional[NostrEvent] = None
    event_id: Optional[str] = None
    accepted: Optional[bool] = None
    message: str = ""


def subscribe_message(subscription_id: str, *filters: Dict[str, Any]) -> str:
    """["REQ", sub_id, filter...]. Filters are passed through unchanged."""
    return json.dumps(["REQ", subscription_id, *filters], separators=(",", ":"))


def close_message(subscription_id: str) -> str:
    return json.dumps(["CLOSE", subscription_id], separators=(",", ":"))


def event_message(event: NostrEvent) -> str:
    return json.dumps(["EVENT", event.to_dict()], separators=(",", ":"), ensure_ascii=False)


def response_filter(wallet_pubkey: str, client_pubkey: str, **extra: Any) -> Dict[str, Any]:
    """Filter for NWC responses addressed to us by the wallet."""
    flt: Dict[str, Any] = {
        "kinds": [RESPONSE_KIND],
        "authors": [wallet_pubkey],
        "#p": [client_pubkey],
    }
    flt.update(extra)
    return flt


def info_filter(wallet_pubkey: str) -> Dict[str, Any]:
    return {"kinds": [INFO_KIND], "authors": [wallet_pubkey], "limit": 1}


def parse_relay_message(text: str) -> RelayMessage:
    """
    Parse one inbound relay frame.

    Raises:
        ProtocolError: If the frame is not a known relay message.
    """
    try:
        msg = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Relay message is not JSON: {e}") from e

    if not isinstance(msg, list) or not msg or not isinstance(msg[0], str):
        raise ProtocolError("Relay message must be a JSON array starting with a type")

    kind = msg[0]
    if kind == "EVENT":
        if len(msg) < 3:
            raise ProtocolError("EVENT message needs a subscription id and an event")
        return RelayMessage(type=kind, subscription_id=str(msg[1]), event=NostrEvent.from_dict(msg[2]))
    if kind == "EOSE":
        if len(msg) < 2:
            raise ProtocolError("EOSE message needs a subscription id")
        return RelayMessage(type=kind, subscription_id=str(msg[1]))
    if kind == "OK":
        if len(msg) < 3:
            raise ProtocolError("OK message needs an event id and a status")
        info = str(msg[3]) if len(msg) > 3 and msg[3] is not None else ""
        return RelayMessage(type=kind, event_id=str(msg[1]), accepted=bool(msg[2]), message=info)
    if kind == "CLOSED":
        if len(msg) < 2:
            raise ProtocolError("CLOSED message needs a subscription id")
        info = str(msg[2]) if len(msg) > 2 and msg[2] is not None else ""
        return RelayMessage(type=kind, subscription_id=str(msg[1]), message=info)
    if kind == "NOTICE":
        return RelayMessage(type=kind, message=str(msg[1]) if len(msg) > 1 else "")
    raise ProtocolError(f"Unknown relay message type: {kind}")


def request_id_of(event: NostrEvent) -> Optional[str]:
    """The request event id a response refers to (first "e" tag)."""
    return event.get_tag("e")


class EventCodec:
    """
    Builds NWC request events and decodes NWC response events.

    Args:
        policy: The owning connection's EncryptionPolicy. It is read on every
            call, so updating it (e.g. after fetching wallet info) takes
            effect immediately.

    NIP-44 conversation keys are cached per codec in `conversation_keys`;
    the owner clears them when its session ends.
    """

    def __init__(self, policy: Optional[EncryptionPolicy] = None):
        self.policy = policy if policy is not None else EncryptionPolicy()
        self.conversation_keys = ConversationKeyCache()

    def build_request(
        self,
        request: NwcRequest,
        wallet_pubkey: str,
        connection_secret: KeyLike,
        created_at: Optional[int] = None,
    ) -> NostrEvent:
        """
        Encrypt and sign a kind 23194 request event.

        The connection secret is the client's identity towards this wallet:
        it signs the event and encrypts the content.
        """
        cipher = self.policy.select_cipher(Direction.OUTGOING)
        content = cipher.encrypt(request.to_json(), connection_secret, wallet_pubkey, keys=self.conversation_keys)

        event = NostrEvent(
            kind=REQUEST_KIND,
            content=content,
            tags=[["p", wallet_pubkey], ["encryption", cipher.tag]],
            created_at=created_at or int(time.time()),
        )
        return sign_event(event, connection_secret)

    def _incoming_cipher(self, event: NostrEvent) -> Tuple[Cipher, bool]:
        declared = event.get_tag("encryption")
        if declared:
            for tag in declared.split():
                cipher = cipher_for_tag(tag)
                if cipher is not None:
                    return cipher, False
        return self.policy.select_cipher(Direction.INCOMING), self.policy.allows_fallback

    def decrypt_content(self, event: NostrEvent, client_private_key: KeyLike) -> str:
        """
        Decrypt an event sent by the wallet to us.

        The cipher comes from the event's own "encryption" tag if it has one,
        otherwise from the policy. If the policy is still undeclared and the
        content is not in NIP-44 format, NIP-04 is tried once and the
        downgrade is logged. Authentication failures are never retried.
        """
        cipher, allow_fallback = self._incoming_cipher(event)
        try:
            return cipher.decrypt(event.content, client_private_key, event.pubkey, keys=self.conversation_keys)
        except (FormatMismatch, UnsupportedVersion) as e:
            if not allow_fallback or isinstance(cipher, LegacyCipher):
                raise
            logger.warning(
                "Event {} is not {} ({}), falling back to nip04",
                event.id[:8], cipher.tag, e,
            )
            return LegacyCipher().decrypt(event.content, client_private_key, event.pubkey)

    def parse_response(self, event: NostrEvent, client_private_key: KeyLike) -> NwcResponse:
        """
        Decrypt and parse a kind 23195 response event.

        Raises:
            ProtocolError: Wrong kind or malformed content.
            NwcCryptoError: Decryption failed (never converted to a response).
        """
        if event.kind != RESPONSE_KIND:
            raise ProtocolError(f"Expected kind {RESPONSE_KIND} response, got kind {event.kind}")
        return NwcResponse.from_json(self.decrypt_content(event, client_private_key))

    @staticmethod
    def parse_wallet_info(event: NostrEvent) -> WalletInfo:
        """Parse a kind 13194 wallet info event (plaintext content)."""
        if event.kind != INFO_KIND:
            raise ProtocolError(f"Expected kind {INFO_KIND} info event, got kind {event.kind}")

        def tag_list(name: str) -> List[str]:
            value = event.get_tag(name)
            return value.split() if value else []

        encryption = tag_list("encryption")
        return WalletInfo(
            methods=event.content.split(),
            encryption=encryption,
            notifications=tag_list("notifications"),
        )
