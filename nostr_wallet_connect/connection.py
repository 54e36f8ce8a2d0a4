"""
NWC connection URI parsing.

Format:
    nostr+walletconnect://<wallet_pubkey>?relay=<relay_url>&secret=<secret_key>[&lnurlp=<url>]

The secret is the client's per-wallet private key: it signs requests and is
half of the encryption key agreement.
"""

from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

from .crypto import get_public_key_hex
from .errors import InvalidConnectionString, NwcCryptoError

SCHEME = "nostr+walletconnect"
HEX_KEY_LENGTH = 64


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Parsed NWC connection URI."""
    wallet_pubkey: str
    relay_url: str
    secret: str
    client_pubkey: str  # derived from secret
    lnurlp: Optional[str] = None

    def __repr__(self) -> str:
        # never show the secret
        return (
            f"ConnectionDescriptor(wallet_pubkey={self.wallet_pubkey!r}, "
            f"relay_url={self.relay_url!r}, client_pubkey={self.client_pubkey!r}, "
            f"lnurlp={self.lnurlp!r})"
        )


def _is_hex_key(value: str) -> bool:
    return len(value) == HEX_KEY_LENGTH and all(c in string.hexdigits for c in value)


def parse_connection_uri(uri: str) -> ConnectionDescriptor:
    """
    Parse an NWC (Nostr Wallet Connect) URI.

    Args:
        uri: The NWC connection string.

    Returns:
        ConnectionDescriptor with wallet_pubkey, relay_url, secret, client_pubkey, lnurlp.

    Raises:
        InvalidConnectionString: On any missing or malformed part.
    """
    if not uri:
        raise InvalidConnectionString("Connection string cannot be empty")

    uri = uri.strip()
    parsed = urlparse(uri)

    if parsed.scheme != SCHEME:
        raise InvalidConnectionString(f"Invalid NWC URL scheme: {parsed.scheme} (expected {SCHEME})")

    # urlparse lowercases .hostname, netloc keeps the original case
    wallet_pubkey = (parsed.netloc or parsed.path.lstrip("/")).lower()
    if not wallet_pubkey:
        raise InvalidConnectionString("NWC URL missing wallet pubkey")
    if len(wallet_pubkey) != HEX_KEY_LENGTH:
        raise InvalidConnectionString(f"Invalid wallet pubkey length: {len(wallet_pubkey)}")
    if not _is_hex_key(wallet_pubkey):
        raise InvalidConnectionString("Wallet pubkey is not hex")

    params = parse_qs(parsed.query)
    relay_url = params.get("relay", [None])[0]
    secret = params.get("secret", [None])[0]
    lnurlp = params.get("lnurlp", [None])[0]

    if not relay_url:
        raise InvalidConnectionString("NWC URL missing relay parameter")
    if not secret:
        raise InvalidConnectionString("NWC URL missing secret parameter")
    if len(secret) != HEX_KEY_LENGTH:
        raise InvalidConnectionString(f"Invalid secret length: {len(secret)}")
    if not _is_hex_key(secret):
        raise InvalidConnectionString("Secret is not hex")

    try:
        client_pubkey = get_public_key_hex(secret)
    except NwcCryptoError as e:
        raise InvalidConnectionString(f"Invalid secret: {e}") from e

    return ConnectionDescriptor(
        wallet_pubkey=wallet_pubkey,
        relay_url=relay_url,
        secret=secret.lower(),
        client_pubkey=client_pubkey,
        lnurlp=lnurlp or None,
    )


def build_connection_uri(
    wallet_pubkey: str,
    relay_url: str,
    secret: str,
    lnurlp: Optional[str] = None,
) -> str:
    """Inverse of parse_connection_uri, used to hand out or store connections."""
    params = {"relay": relay_url, "secret": secret}
    if lnurlp:
        params["lnurlp"] = lnurlp
    return f"{SCHEME}://{wallet_pubkey}?{urlencode(params)}"
