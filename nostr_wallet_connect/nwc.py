"""
NWC (Nostr Wallet Connect) client.

Implements NIP-47 to talk to Lightning wallets via a Nostr relay.

NWC Flow:
1. Parse the connection URI to get: relay URL, wallet pubkey, secret key
2. Connect to the relay and subscribe to kind 23195 responses addressed to us
3. Optionally read the wallet's kind 13194 info event to pick the cipher
4. Send encrypted, signed requests (kind 23194)
5. Match each response to its request by the request id in its "e" tag

Requests are independent: any number may be in flight, each with its own
deadline. Nothing is retried.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .codec import (
    EventCodec,
    RelayMessage,
    close_message,
    event_message,
    info_filter,
    parse_relay_message,
    request_id_of,
    response_filter,
    subscribe_message,
)
from .config import ERROR_PREFIX, WalletOptions
from .connection import ConnectionDescriptor, parse_connection_uri
from .encryption import EncryptionPolicy
from .errors import (
    InvalidConnectionString,
    NotConnected,
    NwcException,
    PreimageMismatch,
    ProtocolError,
    RelayRejected,
    RequestTimeout,
    WalletError,
)
from .event import NostrEvent, verify_event
from .preimage import verify_payment
from .protocol import (
    INFO_KIND,
    RESPONSE_KIND,
    NwcRequest,
    NwcResponse,
    WalletInfo,
    get_balance_request,
    get_info_request,
    list_transactions_request,
    lookup_invoice_request,
    make_invoice_request,
    pay_invoice_request,
)
from .stats import WalletStats
from .tracker import Freshness, PendingRequest, RequestTracker, ResponseMeta
from .transport import Transport, WebsocketTransport

ResponseCallback = Callable[[NwcResponse, ResponseMeta], None]
UnmatchedCallback = Callable[[NwcResponse, NostrEvent], None]


@dataclass
class InvoiceResult:
    """Result from make_invoice."""
    invoice: str
    payment_hash: str
    amount: Optional[int] = None  # millisats
    expires_at: Optional[int] = None


@dataclass
class PaymentResult:
    """Result from pay_invoice."""
    preimage: str
    fees_paid: Optional[int] = None  # millisats
    verified: bool = False


@dataclass
class LookupResult:
    """Result from lookup_invoice."""
    paid: bool
    preimage: Optional[str] = None
    settled_at: Optional[int] = None
    payment_hash: Optional[str] = None


class NwcWallet:
    """
    NWC wallet client.

    Connects to a Nostr relay and sends NIP-47 requests to a wallet service.

    Args:
        connection_uri: NWC connection string (nostr+walletconnect://...).
        transport: Relay transport, a WebsocketTransport by default.
        options: Timeouts and verification switches.
        on_response: Called with every matched response and its ResponseMeta.
        on_unmatched_response: Called with responses that match no pending
            request (late, duplicate or replayed).
        on_disconnected: Called once when the connection ends.
        on_error: Called with a message for frames or events that could not
            be processed.
    """

    def __init__(
        self,
        connection_uri: str,
        transport: Optional[Transport] = None,
        options: Optional[WalletOptions] = None,
        on_response: Optional[ResponseCallback] = None,
        on_unmatched_response: Optional[UnmatchedCallback] = None,
        on_disconnected: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.connection: ConnectionDescriptor = parse_connection_uri(connection_uri)
        self.options = (options or WalletOptions()).validate()
        self.transport: Transport = transport if transport is not None else WebsocketTransport()

        self.policy = EncryptionPolicy()
        self.codec = EventCodec(self.policy)
        self.stats = WalletStats(max_recent=self.options.max_recent)
        self.tracker = RequestTracker(
            timeout=self.options.request_timeout,
            fresh_threshold=self.options.fresh_threshold,
            on_timeout=self._on_request_timeout,
        )
        self.info: Optional[WalletInfo] = None

        self.on_response = on_response
        self.on_unmatched_response = on_unmatched_response
        self.on_disconnected = on_disconnected
        self.on_error = on_error

        self._connected = False
        self._subscription_id: Optional[str] = None
        self._reader: Optional[asyncio.Task] = None
        self._info_waiters: Dict[str, "asyncio.Future[Optional[WalletInfo]]"] = {}

    def __repr__(self) -> str:
        return f"NwcWallet(wallet={self.connection.wallet_pubkey[:8]}, relay={self.connection.relay_url!r})"

    @property
    def connected(self) -> bool:
        return self._connected

    async def __aenter__(self) -> "NwcWallet":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # ── Connection lifecycle ──

    async def connect(self) -> None:
        """
        Open the relay connection and subscribe to responses.

        With detect_encryption on, the wallet info event is read and its
        encryption tags are applied before connect() returns.
        """
        if self._connected:
            return

        await self.transport.connect(self.connection.relay_url)
        self._connected = True
        logger.info(
            "Connected to NWC relay {} for wallet {}",
            self.connection.relay_url, self.connection.wallet_pubkey[:8],
        )

        self._subscription_id = secrets.token_hex(16)
        await self.transport.send(
            subscribe_message(
                self._subscription_id,
                response_filter(self.connection.wallet_pubkey, self.connection.client_pubkey),
            )
        )
        self._reader = asyncio.create_task(self._read_loop())

        if self.options.detect_encryption:
            await self.fetch_info()

    async def fetch_info(self, timeout: Optional[float] = None) -> Optional[WalletInfo]:
        """
        Read the wallet's kind 13194 info event and adopt its encryption.

        Returns:
            WalletInfo, or None if the wallet has not published one. The
            encryption policy is left unchanged in that case.
        """
        self._require_connected()
        if timeout is None:
            timeout = self.options.info_timeout
        sub_id = secrets.token_hex(16)
        waiter: "asyncio.Future[Optional[WalletInfo]]" = asyncio.get_running_loop().create_future()
        self._info_waiters[sub_id] = waiter

        try:
            await self.transport.send(subscribe_message(sub_id, info_filter(self.connection.wallet_pubkey)))
            info = await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            logger.info("No info event from wallet {} within {}s", self.connection.wallet_pubkey[:8], timeout)
            info = None
        finally:
            self._info_waiters.pop(sub_id, None)
            if self._connected:
                with contextlib.suppress(NotConnected):
                    await self.transport.send(close_message(sub_id))

        if info is None:
            return None

        self.info = info
        self.policy.update(info.encryption)
        logger.info(
            "Wallet {} advertises encryption {}, using {}",
            self.connection.wallet_pubkey[:8], info.encryption or "(none)", self.policy.encryption_tag_for_outgoing(),
        )
        return info

    async def disconnect(self) -> None:
        """
        Close the response subscription and the transport.

        Every pending request fails with ConnectionLost.
        """
        if not self._connected:
            return
        self._connected = False

        if self._subscription_id is not None:
            with contextlib.suppress(NotConnected):
                await self.transport.send(close_message(self._subscription_id))
            self._subscription_id = None

        self._end_session("Disconnected")

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        await self.transport.close()
        logger.info("Disconnected from NWC relay {}", self.connection.relay_url)
        if self.on_disconnected is not None:
            self.on_disconnected()

    async def close(self) -> None:
        """Same as disconnect(), under the transport-style name."""
        await self.disconnect()

    def _end_session(self, reason: str) -> None:
        self.tracker.fail_all(reason)
        self.codec.conversation_keys.clear()
        for waiter in self._info_waiters.values():
            if not waiter.done():
                waiter.set_result(None)

    async def _connection_dropped(self) -> None:
        self._connected = False
        self._subscription_id = None
        self._reader = None
        logger.warning("Connection to NWC relay {} closed", self.connection.relay_url)
        self._end_session("Relay connection closed")
        await self.transport.close()
        if self.on_disconnected is not None:
            self.on_disconnected()

    def _require_connected(self) -> None:
        if not self._connected:
            raise NotConnected("NWC wallet is not connected, call connect() first")

    # ── Inbound ──

    async def _read_loop(self) -> None:
        try:
            async for text in self.transport.messages():
                try:
                    self.handle_message(text)
                except Exception as e:
                    # errors from user callbacks must not stop the reader
                    logger.error("Error handling relay message: {}", e)
                    self._report_error(f"Error handling relay message: {e}")
        except Exception as e:
            logger.error("NWC relay reader failed: {}", e)
            self._report_error(f"Relay reader failed: {e}")
        finally:
            if self._connected:
                await self._connection_dropped()

    def handle_message(self, text: str) -> None:
        """Process one relay frame."""
        try:
            msg = parse_relay_message(text)
        except ProtocolError as e:
            logger.warning("Ignoring relay frame: {}", e)
            self._report_error(str(e))
            return

        if msg.type == "EVENT":
            self._on_event(msg)
        elif msg.type == "OK":
            self._on_ok(msg)
        elif msg.type == "EOSE":
            # an info subscription that ends without an event has no info
            waiter = self._info_waiters.get(msg.subscription_id or "")
            if waiter is not None and not waiter.done():
                waiter.set_result(None)
        elif msg.type == "CLOSED":
            logger.warning("Subscription {} closed by relay: {}", msg.subscription_id, msg.message)
            waiter = self._info_waiters.get(msg.subscription_id or "")
            if waiter is not None and not waiter.done():
                waiter.set_result(None)
            if msg.subscription_id == self._subscription_id:
                self._report_error(f"Response subscription closed by relay: {msg.message}")
        elif msg.type == "NOTICE":
            logger.info("Notice from relay {}: {}", self.connection.relay_url, msg.message)

    def _on_ok(self, msg: RelayMessage) -> None:
        if msg.accepted or not msg.event_id:
            return
        if self.tracker.fail(msg.event_id, RelayRejected(msg.event_id, msg.message)):
            logger.warning("Relay rejected request {}: {}", msg.event_id[:8], msg.message)

    def _on_event(self, msg: RelayMessage) -> None:
        event = msg.event
        if event is None:
            return
        if not verify_event(event):  # do not trust relays
            logger.warning("Dropping event {} with an invalid id or signature", event.id[:8])
            self._report_error(f"Invalid event signature: {event.id[:8]}")
            return
        if event.pubkey != self.connection.wallet_pubkey:
            logger.warning("Dropping event {} from unexpected author {}", event.id[:8], event.pubkey[:8])
            return

        if event.kind == INFO_KIND:
            waiter = self._info_waiters.get(msg.subscription_id or "")
            if waiter is not None and not waiter.done():
                waiter.set_result(EventCodec.parse_wallet_info(event))
            return

        if event.kind != RESPONSE_KIND:
            logger.debug("Ignoring event {} of kind {}", event.id[:8], event.kind)
            return

        self._on_response_event(event)

    def _on_response_event(self, event: NostrEvent) -> None:
        request_id = request_id_of(event)
        try:
            response = self.codec.parse_response(event, self.connection.secret)
        except NwcException as e:
            logger.warning("Could not decode response {}: {}", event.id[:8], e)
            self._report_error(f"Could not decode response {event.id[:8]}: {e}")
            if request_id:
                self.tracker.fail(request_id, e)
            return

        meta = self.tracker.resolve(request_id, response, event.created_at) if request_id else None
        if meta is None:
            self.stats.record_unmatched()
            logger.warning(
                "Response {} ({}) matches no pending request",
                event.id[:8], response.result_type or "unknown",
            )
            if self.on_unmatched_response is not None:
                self.on_unmatched_response(response, event)
            return

        self.stats.record_response(meta.request_id, meta.method, meta.freshness, wallet_error=response.has_error)
        if meta.freshness is Freshness.CACHED:
            logger.debug("Response to {} predates the request by {}s", meta.request_id[:8], -meta.delta)
        if self.on_response is not None:
            self.on_response(response, meta)

    def _on_request_timeout(self, entry: PendingRequest) -> None:
        self.stats.record_failure(entry.request_id, entry.method, timeout=True)

    def _report_error(self, message: str) -> None:
        if self.on_error is not None:
            self.on_error(message)

    # ── Requests ──

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> NwcResponse:
        """
        Send a NIP-47 request and wait for its response.

        Args:
            method: NWC method name (e.g., "make_invoice", "lookup_invoice").
            params: Method parameters.
            timeout: Seconds to wait, defaults to options.request_timeout.

        Returns:
            The response, which may carry a wallet error (see raise_for_error).

        Raises:
            NotConnected, RequestTimeout, ConnectionLost, RelayRejected,
            NwcCryptoError (response could not be decrypted).
        """
        return await self.send_request(NwcRequest(method, params or {}), timeout)

    async def send_request(self, request: NwcRequest, timeout: Optional[float] = None) -> NwcResponse:
        self._require_connected()
        event = self.codec.build_request(request, self.connection.wallet_pubkey, self.connection.secret)
        entry = self.tracker.register(event.id, event.created_at, request.method, timeout)
        self.stats.record_sent(request.method)
        logger.debug("Sending NWC {} request {}", request.method, event.id[:8])

        try:
            await self.transport.send(event_message(event))
        except NwcException:
            self.tracker.discard(event.id)
            self.stats.record_failure(event.id, request.method)
            raise

        try:
            tracked = await self.tracker.wait(entry)
        except NwcException as e:
            if not isinstance(e, RequestTimeout):  # timeouts are recorded by the tracker hook
                self.stats.record_failure(event.id, request.method)
            raise
        return tracked.response

    async def pay_invoice(
        self,
        invoice: str,
        amount: Optional[int] = None,
        verify: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> PaymentResult:
        """
        Pay a Lightning invoice via NWC.

        Args:
            invoice: Bolt11 invoice string.
            amount: Millisats, for invoices without an amount.
            verify: Check the returned preimage against the invoice payment
                hash, defaults to options.verify_payments.

        Returns:
            PaymentResult with preimage and fees_paid.

        Raises:
            WalletError: The wallet could not pay.
            PreimageMismatch: The preimage does not prove payment.
        """
        response = await self.send_request(pay_invoice_request(invoice, amount), timeout)
        response.raise_for_error()

        preimage = response.preimage
        if not preimage:
            raise ProtocolError("NWC pay_invoice returned no preimage")

        if verify is None:
            verify = self.options.verify_payments
        if verify:
            if not verify_payment(invoice, preimage, verify_checksum=self.options.verify_invoice_checksum):
                logger.warning("Wallet {} returned a preimage that does not match the invoice", self.connection.wallet_pubkey[:8])
                raise PreimageMismatch(invoice, preimage)

        return PaymentResult(
            preimage=preimage,
            fees_paid=response.result.get("fees_paid"),
            verified=bool(verify),
        )

    async def make_invoice(
        self,
        amount_sats: int,
        description: str = "",
        expiry: Optional[int] = None,
        description_hash: Optional[str] = None,
    ) -> InvoiceResult:
        """
        Create a Lightning invoice via NWC.

        Args:
            amount_sats: Amount in satoshis.
            description: Invoice description.
            expiry: Expiry time in seconds.
            description_hash: Hex SHA-256 of a long description.

        Returns:
            InvoiceResult with invoice and payment_hash.
        """
        if amount_sats <= 0:
            raise ValueError("amount_sats must be positive")
        # NWC uses millisats
        response = await self.send_request(
            make_invoice_request(amount_sats * 1000, description, description_hash, expiry)
        )
        response.raise_for_error()

        invoice = response.result.get("invoice", "")
        if not invoice:
            raise ProtocolError("NWC make_invoice returned no invoice")

        return InvoiceResult(
            invoice=invoice,
            payment_hash=response.result.get("payment_hash", ""),
            amount=response.result.get("amount"),
            expires_at=response.result.get("expires_at"),
        )

    async def get_balance(self) -> int:
        """Wallet balance in millisats."""
        response = await self.send_request(get_balance_request())
        response.raise_for_error()
        return int(response.result.get("balance", 0))

    async def get_info(self) -> Dict[str, Any]:
        """The wallet's get_info result (alias, network, methods, ...)."""
        response = await self.send_request(get_info_request())
        response.raise_for_error()
        return response.result

    async def lookup_invoice(
        self,
        payment_hash: Optional[str] = None,
        invoice: Optional[str] = None,
    ) -> LookupResult:
        """
        Look up an invoice by payment hash or bolt11 string.

        Returns:
            LookupResult with paid status, preimage, and settled_at.
        """
        response = await self.send_request(lookup_invoice_request(payment_hash, invoice))
        response.raise_for_error()

        result = response.result
        paid = result.get("settled_at") is not None or bool(result.get("preimage"))
        return LookupResult(
            paid=paid,
            preimage=result.get("preimage") or None,
            settled_at=result.get("settled_at"),
            payment_hash=result.get("payment_hash") or payment_hash,
        )

    async def list_transactions(
        self,
        from_time: Optional[int] = None,
        until: Optional[int] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        unpaid: bool = False,
        type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        response = await self.send_request(
            list_transactions_request(from_time, until, limit, offset, unpaid, type)
        )
        response.raise_for_error()
        transactions = response.result.get("transactions", [])
        if not isinstance(transactions, list):
            raise ProtocolError("list_transactions result has no transaction list")
        return transactions

    async def wait_for_payment(
        self,
        payment_hash: str,
        timeout: float = 300.0,
        poll_interval: float = 2.0,
    ) -> LookupResult:
        """
        Wait for an invoice to be paid by polling lookup_invoice.

        Wallet errors and timeouts of single lookups are logged and polling
        continues. Returns an unpaid LookupResult when the deadline passes.
        """
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            try:
                result = await self.lookup_invoice(payment_hash=payment_hash)
                if result.paid:
                    return result
            except (WalletError, RequestTimeout) as e:
                logger.debug("lookup_invoice for {} failed while polling: {}", payment_hash[:8], e)

            await asyncio.sleep(poll_interval)

        return LookupResult(paid=False, payment_hash=payment_hash)


def create_wallet(
    connection_uri: Optional[str] = None,
    transport: Optional[Transport] = None,
    request_timeout: float = 30.0,
    fresh_threshold: float = 2.0,
    info_timeout: float = 5.0,
    detect_encryption: bool = True,
    verify_payments: bool = True,
    verify_invoice_checksum: bool = True,
    max_recent: int = 100,
    on_response: Optional[ResponseCallback] = None,
    on_unmatched_response: Optional[UnmatchedCallback] = None,
    on_disconnected: Optional[Callable[[], None]] = None,
    on_error: Optional[Callable[[str], None]] = None,
) -> NwcWallet:
    """
    Create a wallet client from a connection string and keyword options.

    Args:
        connection_uri: NWC connection string (nostr+walletconnect://...).
        transport: Pre-created transport (must have connect, send, close and messages).
        request_timeout: Seconds to wait for each response (default 30).
        fresh_threshold: Freshness threshold in seconds (default 2).
        info_timeout: Seconds to wait for the wallet info event (default 5).
        detect_encryption: Read the wallet info event on connect (default True).
        verify_payments: Verify pay_invoice preimages (default True).
        verify_invoice_checksum: Verify bech32 checksums when verifying (default True).
        max_recent: Recent requests kept in stats (default 100).

    Returns:
        NwcWallet instance, not yet connected.
    """
    if not connection_uri:
        raise ValueError(f"{ERROR_PREFIX} connection_uri is required")

    if transport is not None:
        for name in ("connect", "send", "close", "messages"):
            if not hasattr(transport, name):
                raise ValueError(f"{ERROR_PREFIX} transport must have a {name}() method")

    options = WalletOptions(
        request_timeout=request_timeout,
        fresh_threshold=fresh_threshold,
        info_timeout=info_timeout,
        detect_encryption=detect_encryption,
        verify_payments=verify_payments,
        verify_invoice_checksum=verify_invoice_checksum,
        max_recent=max_recent,
    )

    try:
        return NwcWallet(
            connection_uri,
            transport=transport,
            options=options,
            on_response=on_response,
            on_unmatched_response=on_unmatched_response,
            on_disconnected=on_disconnected,
            on_error=on_error,
        )
    except InvalidConnectionString as e:
        raise InvalidConnectionString(f"{ERROR_PREFIX} {e}") from e
