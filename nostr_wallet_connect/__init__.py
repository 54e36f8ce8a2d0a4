"""
⚡ nostr-wallet-connect: NIP-47 wallet client and crypto engine.

Talk to any Lightning wallet that speaks Nostr Wallet Connect: NIP-44 and
NIP-04 encryption, event signing, response matching, BOLT11 decoding and
preimage verification.

Usage:
    from nostr_wallet_connect import create_wallet

    wallet = create_wallet("nostr+walletconnect://...")

    async with wallet:
        invoice = await wallet.make_invoice(21, description="coffee")
        balance = await wallet.get_balance()
"""

from .bolt11 import DecodedInvoice, decode_invoice, decode_or_raise
from .codec import EventCodec, RelayMessage, parse_relay_message
from .config import WalletOptions
from .connection import ConnectionDescriptor, build_connection_uri, parse_connection_uri
from .crypto import (
    KeyPair,
    compute_shared_secret,
    generate_keypair,
    generate_private_key,
    get_public_key,
    get_public_key_hex,
)
from .encryption import (
    ConversationCipher,
    Direction,
    EncryptionPolicy,
    LegacyCipher,
    cipher_for_tag,
)
from .errors import (
    AuthenticationFailed,
    ConnectionLost,
    DecryptionFailed,
    FormatMismatch,
    InvalidConnectionString,
    InvalidInvoice,
    InvalidKeyLength,
    InvalidPadding,
    InvalidPlaintextLength,
    InvalidPrivateKey,
    InvalidPublicKey,
    NotConnected,
    NwcCryptoError,
    NwcException,
    PreimageMismatch,
    ProtocolError,
    RelayRejected,
    RequestTimeout,
    UnsupportedVersion,
    WalletError,
)
from .event import NostrEvent, compute_event_id, sign_event, verify_event, verify_signature
from .nip04 import nip04_decrypt, nip04_encrypt
from .nip44 import ConversationKeyCache, calc_padded_len, get_conversation_key, nip44_decrypt, nip44_encrypt
from .nwc import InvoiceResult, LookupResult, NwcWallet, PaymentResult, create_wallet
from .preimage import verify_payment, verify_preimage
from .protocol import Methods, NwcRequest, NwcResponse, WalletInfo
from .stats import WalletStats
from .tracker import Freshness, RequestTracker, ResponseMeta, classify_freshness
from .transport import Transport, WebsocketTransport

__version__ = "0.1.0"

__all__ = [
    # Main API
    "create_wallet",
    "NwcWallet",
    "WalletOptions",
    "InvoiceResult",
    "PaymentResult",
    "LookupResult",
    # Connection
    "parse_connection_uri",
    "build_connection_uri",
    "ConnectionDescriptor",
    # Keys and events
    "KeyPair",
    "generate_keypair",
    "generate_private_key",
    "get_public_key",
    "get_public_key_hex",
    "compute_shared_secret",
    "NostrEvent",
    "compute_event_id",
    "sign_event",
    "verify_event",
    "verify_signature",
    # Encryption
    "nip44_encrypt",
    "nip44_decrypt",
    "get_conversation_key",
    "ConversationKeyCache",
    "calc_padded_len",
    "nip04_encrypt",
    "nip04_decrypt",
    "ConversationCipher",
    "LegacyCipher",
    "EncryptionPolicy",
    "Direction",
    "cipher_for_tag",
    # Protocol
    "EventCodec",
    "RelayMessage",
    "parse_relay_message",
    "Methods",
    "NwcRequest",
    "NwcResponse",
    "WalletInfo",
    "RequestTracker",
    "ResponseMeta",
    "Freshness",
    "classify_freshness",
    "Transport",
    "WebsocketTransport",
    # Invoices
    "decode_invoice",
    "decode_or_raise",
    "DecodedInvoice",
    "verify_preimage",
    "verify_payment",
    # Stats
    "WalletStats",
    # Errors
    "NwcException",
    "NwcCryptoError",
    "InvalidKeyLength",
    "InvalidPrivateKey",
    "InvalidPublicKey",
    "UnsupportedVersion",
    "AuthenticationFailed",
    "InvalidPadding",
    "InvalidPlaintextLength",
    "FormatMismatch",
    "DecryptionFailed",
    "ProtocolError",
    "RelayRejected",
    "InvalidInvoice",
    "InvalidConnectionString",
    "NotConnected",
    "ConnectionLost",
    "RequestTimeout",
    "WalletError",
    "PreimageMismatch",
]
