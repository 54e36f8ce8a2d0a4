"""
Connection options for NwcWallet.
"""

from __future__ import annotations

from dataclasses import dataclass

from .tracker import DEFAULT_FRESH_THRESHOLD, DEFAULT_TIMEOUT

ERROR_PREFIX = "nostr-wallet-connect:"


@dataclass
class WalletOptions:
    """
    Tunables for one wallet connection.

    Attributes:
        request_timeout: Seconds to wait for a response to a request.
        fresh_threshold: Responses created within this many seconds of the
            request count as fresh; later ones as delayed.
        info_timeout: Seconds to wait for the wallet info event on connect.
        detect_encryption: Fetch the wallet info event on connect and adopt
            its advertised encryption.
        verify_payments: Check pay_invoice preimages against the invoice.
        verify_invoice_checksum: Verify the bech32 checksum when decoding
            invoices for payment verification.
        max_recent: Size of the recent requests list kept in stats.
    """
    request_timeout: float = DEFAULT_TIMEOUT
    fresh_threshold: float = DEFAULT_FRESH_THRESHOLD
    info_timeout: float = 5.0
    detect_encryption: bool = True
    verify_payments: bool = True
    verify_invoice_checksum: bool = True
    max_recent: int = 100

    def validate(self) -> "WalletOptions":
        """
        Raises:
            ValueError: If a timeout or limit is out of range.
        """
        if self.request_timeout <= 0:
            raise ValueError(f"{ERROR_PREFIX} request_timeout must be positive")
        if self.fresh_threshold < 0:
            raise ValueError(f"{ERROR_PREFIX} fresh_threshold cannot be negative")
        if self.info_timeout <= 0:
            raise ValueError(f"{ERROR_PREFIX} info_timeout must be positive")
        if self.max_recent < 0:
            raise ValueError(f"{ERROR_PREFIX} max_recent cannot be negative")
        return self
