"""
NIP-47 (Nostr Wallet Connect) message model.

Request content:  {"method": "...", "params": {...}}
Response content: {"result_type": "...", "result": {...}, "error": {"code", "message"}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ProtocolError, WalletError
from .preimage import verify_payment

REQUEST_KIND = 23194
RESPONSE_KIND = 23195
INFO_KIND = 13194


class Methods:
    PAY_INVOICE = "pay_invoice"
    MAKE_INVOICE = "make_invoice"
    GET_BALANCE = "get_balance"
    GET_INFO = "get_info"
    LIST_TRANSACTIONS = "list_transactions"
    LOOKUP_INVOICE = "lookup_invoice"
    MULTI_PAY_INVOICE = "multi_pay_invoice"
    MULTI_PAY_KEYSEND = "multi_pay_keysend"
    SIGN_MESSAGE = "sign_message"


class ErrorCodes:
    RATE_LIMITED = "RATE_LIMITED"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    RESTRICTED = "RESTRICTED"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL = "INTERNAL"
    OTHER = "OTHER"


@dataclass
class NwcError:
    code: str
    message: str


@dataclass
class NwcRequest:
    """A NIP-47 method call."""
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({"method": self.method, "params": self.params}, separators=(",", ":"))


@dataclass
class NwcResponse:
    """A decrypted NIP-47 response."""
    result_type: str = ""
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[NwcError] = None

    @classmethod
    def from_json(cls, text: str) -> "NwcResponse":
        """
        Parse decrypted response content.

        Raises:
            ProtocolError: If the content is not a JSON object of the NIP-47 shape.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Response content is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("Response content must be a JSON object")

        error = None
        raw_error = data.get("error")
        if raw_error:
            if not isinstance(raw_error, dict):
                raise ProtocolError("Response error must be an object")
            error = NwcError(
                code=str(raw_error.get("code", ErrorCodes.OTHER)),
                message=str(raw_error.get("message", "")),
            )

        result = data.get("result") or {}
        if not isinstance(result, dict):
            raise ProtocolError("Response result must be an object")

        return cls(result_type=str(data.get("result_type", "")), result=result, error=error)

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{self.error.code}: {self.error.message}"

    def raise_for_error(self) -> None:
        """Raise WalletError if the wallet answered with an error."""
        if self.error is not None:
            raise WalletError(self.error.code, self.error.message, self.result_type or None)

    @property
    def preimage(self) -> Optional[str]:
        if self.has_error:
            return None
        value = self.result.get("preimage")
        return str(value) if value else None

    def verify_payment_preimage(self, invoice: str) -> bool:
        """
        For a pay_invoice response, check the preimage against the invoice
        that was paid. False for errors or other response types.
        """
        if self.has_error or self.result_type != Methods.PAY_INVOICE or not invoice:
            return False
        preimage = self.preimage
        if not preimage:
            return False
        return verify_payment(invoice, preimage)


@dataclass
class WalletInfo:
    """Capabilities published by a wallet service in its kind 13194 event."""
    methods: List[str] = field(default_factory=list)
    encryption: List[str] = field(default_factory=list)
    notifications: List[str] = field(default_factory=list)

    def supports(self, method: str) -> bool:
        return method in self.methods


def pay_invoice_request(invoice: str, amount: Optional[int] = None) -> NwcRequest:
    params: Dict[str, Any] = {"invoice": invoice}
    if amount is not None:
        params["amount"] = amount
    return NwcRequest(Methods.PAY_INVOICE, params)


def make_invoice_request(
    amount: int,
    description: Optional[str] = None,
    description_hash: Optional[str] = None,
    expiry: Optional[int] = None,
) -> NwcRequest:
    """amount is in millisats, as NIP-47 specifies."""
    params: Dict[str, Any] = {"amount": amount, "description": description or ""}
    if description_hash:
        params["description_hash"] = description_hash
    if expiry is not None:
        params["expiry"] = expiry
    return NwcRequest(Methods.MAKE_INVOICE, params)


def lookup_invoice_request(
    payment_hash: Optional[str] = None,
    invoice: Optional[str] = None,
) -> NwcRequest:
    if not payment_hash and not invoice:
        raise ValueError("lookup_invoice needs a payment_hash or an invoice")
    params: Dict[str, Any] = {}
    if payment_hash:
        params["payment_hash"] = payment_hash
    if invoice:
        params["invoice"] = invoice
    return NwcRequest(Methods.LOOKUP_INVOICE, params)


def list_transactions_request(
    from_time: Optional[int] = None,
    until: Optional[int] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    unpaid: bool = False,
    type: Optional[str] = None,
) -> NwcRequest:
    params: Dict[str, Any] = {}
    if from_time is not None:
        params["from"] = from_time
    if until is not None:
        params["until"] = until
    if limit is not None:
        params["limit"] = limit
    if offset is not None:
        params["offset"] = offset
    if unpaid:
        params["unpaid"] = True
    if type:
        params["type"] = type
    return NwcRequest(Methods.LIST_TRANSACTIONS, params)


def get_balance_request() -> NwcRequest:
    return NwcRequest(Methods.GET_BALANCE)


def get_info_request() -> NwcRequest:
    return NwcRequest(Methods.GET_INFO)
