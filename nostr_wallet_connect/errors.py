"""
Exception types raised by nostr-wallet-connect.

Everything derives from NwcException so callers can catch the whole family.
Input validation errors also derive from ValueError, and RequestTimeout from
the builtin TimeoutError, so existing handlers keep working.
"""

from __future__ import annotations

from typing import Optional


class NwcException(Exception):
    """Base class for all nostr-wallet-connect errors."""


class NwcCryptoError(NwcException):
    """A key, cipher or signature operation failed."""


class InvalidKeyLength(NwcCryptoError, ValueError):
    """A key was not 32 bytes (64 hex characters)."""


class InvalidPrivateKey(NwcCryptoError, ValueError):
    """A 32-byte private key is not a valid secp256k1 scalar."""


class InvalidPublicKey(NwcCryptoError, ValueError):
    """An x-only public key is not on the curve."""


class UnsupportedVersion(NwcCryptoError):
    """A NIP-44 payload carries a version byte we do not decode."""


class AuthenticationFailed(NwcCryptoError):
    """The NIP-44 MAC did not match. Never retried, never downgraded."""


class InvalidPadding(NwcCryptoError):
    """Decrypted NIP-44 data does not follow the padding layout."""


class InvalidPlaintextLength(NwcCryptoError, ValueError):
    """Plaintext must be 1..65535 bytes for NIP-44."""


class FormatMismatch(NwcCryptoError):
    """A payload is not in the wire format of the selected cipher."""


class DecryptionFailed(NwcCryptoError):
    """NIP-04 decryption produced bad padding or non UTF-8 text."""


class ProtocolError(NwcException):
    """An event or relay frame has an unexpected kind or shape."""


class InvalidInvoice(NwcException, ValueError):
    """A BOLT11 invoice could not be decoded."""


class InvalidConnectionString(NwcException, ValueError):
    """A nostr+walletconnect:// URI could not be parsed."""


class NotConnected(NwcException):
    """A request was made before connect() or after disconnect()."""


class ConnectionLost(NwcException):
    """The relay connection dropped while a request was pending."""


class RequestTimeout(NwcException, TimeoutError):
    """The wallet did not answer a request before its deadline."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"NWC request {request_id[:8]} timed out after {timeout}s")
        self.request_id = request_id
        self.timeout = timeout


class WalletError(NwcException):
    """The wallet answered with an NWC error object."""

    def __init__(self, code: str, message: str, method: Optional[str] = None):
        super().__init__(f"NWC error: {message} (code: {code})")
        self.code = code
        self.message = message
        self.method = method


class PreimageMismatch(NwcException):
    """A pay_invoice preimage does not hash to the invoice payment hash."""

    def __init__(self, invoice: str, preimage: str):
        super().__init__("Preimage returned by wallet does not match the invoice payment hash")
        self.invoice = invoice
        self.preimage = preimage


class RelayRejected(ProtocolError):
    """The relay answered a published request event with OK false."""

    def __init__(self, event_id: str, reason: str):
        super().__init__(f"Relay rejected event {event_id[:8]}: {reason or 'no reason given'}")
        self.event_id = event_id
        self.reason = reason
