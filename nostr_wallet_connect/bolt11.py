"""
BOLT11 Lightning invoice decoding.

Only the fields NWC clients need are extracted: network, amount, payment
hash, description (or its hash), timestamp, expiry and payee key. The
signature is skipped, not verified.

Layout of the bech32 data part (5-bit words):

    timestamp (7 words) | tagged fields ... | signature (104 words) | checksum (6 words)

Each tagged field is: tag (1 word) | data length (2 words) | data.

decode_invoice() never raises: invoices come from user input, so a broken
string yields an invalid DecodedInvoice instead (is_valid is False).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from .errors import InvalidInvoice

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

# Longest prefix first so "lnbcrt" is not read as mainnet "lnbc".
NETWORK_PREFIXES = (
    ("lnbcrt", "regtest"),
    ("lntbs", "signet"),
    ("lnbc", "mainnet"),
    ("lntb", "testnet"),
)

TIMESTAMP_WORDS = 7
SIGNATURE_WORDS = 104
CHECKSUM_WORDS = 6
DEFAULT_EXPIRY = 3600

TAG_PAYMENT_HASH = 1
TAG_EXPIRY = 6
TAG_DESCRIPTION = 13
TAG_PAYEE = 19
TAG_DESCRIPTION_HASH = 23

SATS_PER_BTC = 100_000_000


@dataclass(frozen=True)
class DecodedInvoice:
    """Fields extracted from a BOLT11 invoice."""
    network: Optional[str] = None
    amount_sats: Optional[int] = None
    payment_hash: str = ""
    description: Optional[str] = None
    description_hash: Optional[str] = None
    timestamp: int = 0
    expiry: int = DEFAULT_EXPIRY
    payee_pubkey: Optional[str] = None

    @classmethod
    def invalid(cls) -> "DecodedInvoice":
        return cls(expiry=0)

    @property
    def is_valid(self) -> bool:
        return bool(self.payment_hash)

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.expiry

    def is_expired(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = time.time()
        return now > self.expires_at


def bech32_polymod(values: Sequence[int]) -> int:
    generator = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_verify_checksum(hrp: str, data: Sequence[int]) -> bool:
    return bech32_polymod(bech32_hrp_expand(hrp) + list(data)) == 1


def convert_bits(data: Sequence[int], from_bits: int, to_bits: int, pad: bool) -> Optional[List[int]]:
    """
    Regroup a sequence of from_bits-wide values into to_bits-wide values.

    With pad=False (strict), leftover bits must be fewer than from_bits and
    all zero, otherwise None is returned.
    """
    acc = 0
    bits = 0
    result: List[int] = []
    max_value = (1 << to_bits) - 1
    for value in data:
        if value < 0 or value >> from_bits:
            return None
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            result.append((acc >> bits) & max_value)

    if pad:
        if bits:
            result.append((acc << (to_bits - bits)) & max_value)
    elif bits >= from_bits or ((acc << (to_bits - bits)) & max_value):
        return None
    return result


def words_to_int(words: Sequence[int]) -> int:
    """Big-endian integer from 5-bit words."""
    value = 0
    for word in words:
        value = (value << 5) | word
    return value


def _network_and_prefix(invoice: str) -> Tuple[str, str]:
    for prefix, network in NETWORK_PREFIXES:
        if invoice.startswith(prefix):
            return prefix, network
    raise InvalidInvoice(f"Invalid BOLT11 prefix: {invoice[:6]!r}")


def parse_amount(amount_part: str) -> Optional[int]:
    """
    Convert the HRP amount suffix to satoshis.

    m = milli, u = micro, n = nano, p = pico bitcoin. Sub-satoshi amounts are
    truncated. No multiplier means whole bitcoin.
    """
    if not amount_part or not amount_part.isascii():
        return None

    multiplier = amount_part[-1]
    if multiplier.isdigit():
        if not amount_part.isdigit():
            return None
        return int(amount_part) * SATS_PER_BTC

    number = amount_part[:-1]
    if not number.isdigit():
        return None
    base = int(number)

    if multiplier == "m":
        return base * 100_000
    if multiplier == "u":
        return base * 100
    if multiplier == "n":
        return base // 10
    if multiplier == "p":
        return base // 10_000
    return None


def decode_or_raise(invoice: str, verify_checksum: bool = True) -> DecodedInvoice:
    """
    Decode a BOLT11 invoice.

    Raises:
        InvalidInvoice: With the reason the invoice could not be decoded.
    """
    if not invoice or not isinstance(invoice, str):
        raise InvalidInvoice("Invoice cannot be empty")

    invoice = invoice.strip().lower()
    if invoice.startswith("lightning:"):
        invoice = invoice[len("lightning:"):]

    prefix, network = _network_and_prefix(invoice)

    separator = invoice.rfind("1")
    if separator < len(prefix):
        raise InvalidInvoice("Invalid BOLT11 format: no separator found")

    hrp = invoice[:separator]
    data_part = invoice[separator + 1:]
    if any(not 33 <= ord(char) <= 126 for char in hrp):
        raise InvalidInvoice("Invalid character in BOLT11 human-readable part")

    words: List[int] = []
    for position, char in enumerate(data_part):
        index = CHARSET.find(char)
        if index == -1:
            raise InvalidInvoice(f"Invalid bech32 character {char!r} at position {position}")
        words.append(index)

    if len(words) < CHECKSUM_WORDS:
        raise InvalidInvoice("Data too short for bech32 checksum")
    if verify_checksum and not bech32_verify_checksum(hrp, words):
        raise InvalidInvoice("Invalid bech32 checksum")
    words = words[:-CHECKSUM_WORDS]

    if len(words) < TIMESTAMP_WORDS + SIGNATURE_WORDS:
        raise InvalidInvoice("Invoice data too short for timestamp and signature")

    timestamp = words_to_int(words[:TIMESTAMP_WORDS])
    signature_start = len(words) - SIGNATURE_WORDS

    payment_hash = ""
    description = None
    description_hash = None
    expiry = DEFAULT_EXPIRY
    payee_pubkey = None

    pos = TIMESTAMP_WORDS
    while pos + 3 <= signature_start:
        tag = words[pos]
        data_length = (words[pos + 1] << 5) + words[pos + 2]
        pos += 3

        if pos + data_length > signature_start:
            raise InvalidInvoice(f"Tagged field {tag} overruns the signature")

        field_words = words[pos:pos + data_length]
        pos += data_length

        if tag == TAG_EXPIRY:
            expiry = words_to_int(field_words)
            continue

        field_bytes = convert_bits(field_words, 5, 8, False)
        if field_bytes is None:
            logger.debug("BOLT11 field {} has invalid padding, skipping", tag)
            continue
        data = bytes(field_bytes)

        if tag == TAG_PAYMENT_HASH:
            if len(data) == 32:
                payment_hash = data.hex()
            else:
                logger.debug("BOLT11 payment hash has length {}, expected 32", len(data))
        elif tag == TAG_DESCRIPTION:
            description = data.decode("utf-8", errors="replace")
        elif tag == TAG_DESCRIPTION_HASH:
            if len(data) == 32:
                description_hash = data.hex()
        elif tag == TAG_PAYEE:
            if len(data) == 33:
                payee_pubkey = data.hex()
        # other tags (routing hints, features, secrets, ...) are skipped

    return DecodedInvoice(
        network=network,
        amount_sats=parse_amount(hrp[len(prefix):]),
        payment_hash=payment_hash,
        description=description,
        description_hash=description_hash,
        timestamp=timestamp,
        expiry=expiry,
        payee_pubkey=payee_pubkey,
    )


def decode_invoice(invoice: str, verify_checksum: bool = True) -> DecodedInvoice:
    """
    Decode a BOLT11 invoice without raising.

    Returns:
        The decoded invoice, or DecodedInvoice.invalid() if it cannot be parsed.
    """
    try:
        return decode_or_raise(invoice, verify_checksum=verify_checksum)
    except InvalidInvoice as e:
        logger.debug("Failed to decode BOLT11 invoice: {}", e)
        return DecodedInvoice.invalid()
