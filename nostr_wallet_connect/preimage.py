"""
Proof-of-payment checks.

A Lightning payment is settled by revealing the preimage whose SHA-256 is the
invoice's payment hash. These helpers never raise, so callers can check a
wallet's claim unconditionally.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from .bolt11 import decode_invoice


def verify_preimage(preimage: Optional[str], payment_hash: Optional[str]) -> bool:
    """
    Verify that a preimage matches a payment hash.
    payment_hash = SHA256(preimage)

    Args:
        preimage: Hex-encoded preimage.
        payment_hash: Hex-encoded payment hash (any case).

    Returns:
        True if SHA256(preimage) == payment_hash.
    """
    if not preimage or not payment_hash:
        return False
    try:
        computed = hashlib.sha256(bytes.fromhex(preimage)).digest()
        expected = bytes.fromhex(payment_hash)
    except (TypeError, ValueError):
        return False
    # Constant-time comparison
    return hmac.compare_digest(computed, expected)


def verify_payment(invoice: str, preimage: Optional[str], verify_checksum: bool = True) -> bool:
    """
    Check a preimage against the payment hash of a BOLT11 invoice.

    Returns False for an undecodable invoice or malformed preimage.
    """
    decoded = decode_invoice(invoice, verify_checksum=verify_checksum)
    if not decoded.is_valid:
        return False
    return verify_preimage(preimage, decoded.payment_hash)
