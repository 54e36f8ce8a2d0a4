"""Tests for the NWC wallet client, against an in-memory relay and wallet service."""

import asyncio
import hashlib
import json
from unittest.mock import MagicMock

import pytest

from invoices import invoice_for
from nostr_wallet_connect import create_wallet
from nostr_wallet_connect.config import WalletOptions
from nostr_wallet_connect.connection import build_connection_uri
from nostr_wallet_connect.crypto import generate_keypair
from nostr_wallet_connect.encryption import LegacyCipher, cipher_for_tag
from nostr_wallet_connect.errors import (
    ConnectionLost,
    InvalidConnectionString,
    NotConnected,
    PreimageMismatch,
    RelayRejected,
    RequestTimeout,
    WalletError,
)
from nostr_wallet_connect.event import NostrEvent, sign_event
from nostr_wallet_connect.nwc import NwcWallet
from nostr_wallet_connect.tracker import Freshness

WALLET = generate_keypair()
CLIENT = generate_keypair()
RELAY = "wss://relay.example.com"
URI = build_connection_uri(WALLET.public_key_hex, RELAY, CLIENT.private_key_hex)

PREIMAGE = "42" * 32
PAYMENT_HASH = hashlib.sha256(bytes.fromhex(PREIMAGE)).hexdigest()


class FakeTransport:
    """Relay stand-in: records sent frames, feeds queued frames to the reader."""

    def __init__(self):
        self.sent = []
        self.queue = asyncio.Queue()
        self.url = None
        self.closed = False
        self.on_send = None

    async def connect(self, url):
        self.url = url

    async def send(self, text):
        if self.closed:
            raise NotConnected("closed")
        frame = json.loads(text)
        self.sent.append(frame)
        if self.on_send is not None:
            self.on_send(frame)

    async def close(self):
        self.closed = True
        self.queue.put_nowait(None)

    async def messages(self):
        while True:
            text = await self.queue.get()
            if text is None:
                return
            yield text

    def push(self, frame):
        self.queue.put_nowait(json.dumps(frame))

    def drop(self):
        self.queue.put_nowait(None)

    def frames(self, kind):
        return [f for f in self.sent if f[0] == kind]


class BrokenTransport(FakeTransport):
    """Fails with a socket error instead of ending cleanly."""

    async def messages(self):
        async for text in super().messages():
            yield text
        raise OSError("socket reset")


def default_handler(request):
    method = request["method"]
    if method == "get_balance":
        return {"result_type": method, "result": {"balance": 21000}}
    if method == "pay_invoice":
        return {"result_type": method, "result": {"preimage": PREIMAGE, "fees_paid": 1000}}
    if method == "make_invoice":
        return {
            "result_type": method,
            "result": {"invoice": "lnbc210n1fake", "payment_hash": PAYMENT_HASH, "amount": request["params"]["amount"]},
        }
    if method == "lookup_invoice":
        return {"result_type": method, "result": {"payment_hash": PAYMENT_HASH, "settled_at": 1700000100, "preimage": PREIMAGE}}
    if method == "list_transactions":
        return {"result_type": method, "result": {"transactions": [{"type": "incoming", "amount": 1000}]}}
    if method == "get_info":
        return {"result_type": method, "result": {"alias": "fake", "methods": ["get_balance"]}}
    return {"result_type": method, "error": {"code": "NOT_IMPLEMENTED", "message": method}}


class FakeWalletService:
    """Answers NWC requests sent through a FakeTransport."""

    def __init__(
        self,
        transport,
        encryption="nip44_v2 nip04",
        handler=default_handler,
        reply_cipher=None,
        delay=0,
        hold=False,
    ):
        self.transport = transport
        self.encryption = encryption
        self.handler = handler
        self.reply_cipher = reply_cipher
        self.delay = delay
        self.hold = hold
        self.requests = []
        self.held = []
        transport.on_send = self

    def __call__(self, frame):
        if frame[0] == "REQ" and 13194 in frame[2].get("kinds", []):
            if self.encryption is not None:
                info = NostrEvent(
                    kind=13194,
                    content="pay_invoice get_balance make_invoice lookup_invoice",
                    tags=[["encryption", self.encryption]] if self.encryption else [],
                )
                self.transport.push(["EVENT", frame[1], sign_event(info, WALLET.private_key).to_dict()])
            self.transport.push(["EOSE", frame[1]])
        elif frame[0] == "EVENT" and frame[1]["kind"] == 23194:
            request_event = NostrEvent.from_dict(frame[1])
            cipher = cipher_for_tag(request_event.get_tag("encryption") or "nip04")
            request = json.loads(cipher.decrypt(request_event.content, WALLET.private_key, request_event.pubkey))
            self.requests.append(request)
            content = self.handler(request)
            if content is None:
                return
            response = self.response_for(request_event, content, self.reply_cipher or cipher)
            if self.hold:
                self.held.append(response)
            else:
                self.transport.push(["EVENT", "sub", response.to_dict()])

    def response_for(self, request_event, content, cipher):
        event = NostrEvent(
            kind=23195,
            content=cipher.encrypt(json.dumps(content), WALLET.private_key, request_event.pubkey),
            tags=[["p", request_event.pubkey], ["e", request_event.id]],
            created_at=request_event.created_at + self.delay,
        )
        return sign_event(event, WALLET.private_key)

    def release(self, reverse=False):
        held, self.held = self.held, []
        for event in reversed(held) if reverse else held:
            self.transport.push(["EVENT", "sub", event.to_dict()])


async def until(predicate, timeout=2.0):
    for _ in range(int(timeout / 0.005)):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not met in time")


async def connected(service_kwargs=None, **wallet_kwargs):
    transport = FakeTransport()
    service = FakeWalletService(transport, **(service_kwargs or {}))
    options = wallet_kwargs.pop("options", WalletOptions(info_timeout=0.5, request_timeout=2.0))
    wallet = NwcWallet(URI, transport=transport, options=options, **wallet_kwargs)
    await wallet.connect()
    return wallet, transport, service


class TestConnect:
    @pytest.mark.asyncio
    async def test_subscribes_and_reads_info(self):
        wallet, transport, _ = await connected()
        assert transport.url == RELAY
        req = transport.frames("REQ")[0]
        assert req[2] == {
            "kinds": [23195],
            "authors": [WALLET.public_key_hex],
            "#p": [CLIENT.public_key_hex],
        }
        assert wallet.info.encryption == ["nip44_v2", "nip04"]
        assert wallet.policy.declared
        assert wallet.policy.preferred_version == 2
        # the info subscription is closed again
        assert ["CLOSE", transport.frames("REQ")[1][1]] in transport.sent
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_missing_info_leaves_policy_undeclared(self):
        wallet, _, _ = await connected({"encryption": None})
        assert wallet.info is None
        assert not wallet.policy.declared
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self):
        wallet, transport, _ = await connected(options=WalletOptions(detect_encryption=False))
        assert len(transport.frames("REQ")) == 1
        assert wallet.info is None
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_request_before_connect(self):
        wallet = NwcWallet(URI, transport=FakeTransport())
        with pytest.raises(NotConnected):
            await wallet.get_balance()

    @pytest.mark.asyncio
    async def test_transport_error_ends_session(self, caplog_loguru):
        errors = []
        disconnected = MagicMock()
        transport = BrokenTransport()
        service = FakeWalletService(transport, handler=lambda request: None)
        wallet = NwcWallet(
            URI,
            transport=transport,
            options=WalletOptions(info_timeout=0.5),
            on_error=errors.append,
            on_disconnected=disconnected,
        )
        await wallet.connect()
        reader = wallet._reader
        task = asyncio.create_task(wallet.get_balance())
        await until(lambda: len(service.requests) == 1)

        transport.drop()
        with pytest.raises(ConnectionLost):
            await task
        await reader

        assert reader.exception() is None
        assert any("socket reset" in e for e in errors)
        assert any("socket reset" in m for m in caplog_loguru)
        assert disconnected.call_count == 1
        assert not wallet.connected

    @pytest.mark.asyncio
    async def test_conversation_keys_dropped_with_session(self):
        wallet, _, _ = await connected()
        assert await wallet.get_balance() == 21000
        assert len(wallet.codec.conversation_keys) == 1

        await wallet.disconnect()
        assert len(wallet.codec.conversation_keys) == 0

    @pytest.mark.asyncio
    async def test_context_manager(self):
        transport = FakeTransport()
        FakeWalletService(transport)
        async with NwcWallet(URI, transport=transport, options=WalletOptions(info_timeout=0.5)) as wallet:
            assert wallet.connected
            assert await wallet.get_balance() == 21000
        assert not wallet.connected
        assert transport.closed


class TestRequests:
    @pytest.mark.asyncio
    async def test_get_balance(self):
        wallet, transport, service = await connected()
        assert await wallet.get_balance() == 21000

        request_event = transport.frames("EVENT")[0][1]
        assert request_event["kind"] == 23194
        assert ["encryption", "nip44_v2"] in request_event["tags"]
        assert service.requests == [{"method": "get_balance", "params": {}}]

        stats = wallet.stats.to_dict()
        assert stats["totalSent"] == 1
        assert stats["totalResolved"] == 1
        assert stats["freshness"]["fresh"] == 1
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_nip04_wallet(self):
        wallet, transport, service = await connected({"encryption": "nip04"})
        assert await wallet.get_balance() == 21000
        assert ["encryption", "nip04"] in transport.frames("EVENT")[0][1]["tags"]
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_nip04_reply_to_undeclared_policy(self, caplog_loguru):
        wallet, _, _ = await connected({"encryption": None, "reply_cipher": LegacyCipher()})
        assert await wallet.get_balance() == 21000
        assert any("falling back to nip04" in m for m in caplog_loguru)
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_make_invoice_uses_millisats(self):
        wallet, _, service = await connected()
        result = await wallet.make_invoice(21, description="coffee", expiry=600)
        assert service.requests[0]["params"] == {"amount": 21000, "description": "coffee", "expiry": 600}
        assert result.invoice == "lnbc210n1fake"
        assert result.payment_hash == PAYMENT_HASH
        assert result.amount == 21000
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_make_invoice_rejects_zero(self):
        wallet, _, _ = await connected()
        with pytest.raises(ValueError):
            await wallet.make_invoice(0)
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_lookup_invoice(self):
        wallet, _, _ = await connected()
        result = await wallet.lookup_invoice(payment_hash=PAYMENT_HASH)
        assert result.paid
        assert result.preimage == PREIMAGE
        assert result.settled_at == 1700000100
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_list_transactions(self):
        wallet, _, service = await connected()
        txs = await wallet.list_transactions(limit=5)
        assert txs == [{"type": "incoming", "amount": 1000}]
        assert service.requests[0]["params"] == {"limit": 5}
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_get_info(self):
        wallet, _, _ = await connected()
        assert (await wallet.get_info())["alias"] == "fake"
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_request_returns_error_response(self):
        wallet, _, _ = await connected()
        response = await wallet.request("sign_message", {"message": "hi"})
        assert response.has_error
        assert response.error.code == "NOT_IMPLEMENTED"
        with pytest.raises(WalletError):
            response.raise_for_error()
        assert wallet.stats.to_dict()["totalWalletErrors"] == 1
        await wallet.disconnect()


class TestPayInvoice:
    @pytest.mark.asyncio
    async def test_verified_payment(self):
        wallet, _, _ = await connected()
        result = await wallet.pay_invoice(invoice_for(PAYMENT_HASH))
        assert result.preimage == PREIMAGE
        assert result.fees_paid == 1000
        assert result.verified
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_preimage_mismatch(self):
        wallet, _, _ = await connected()
        with pytest.raises(PreimageMismatch):
            await wallet.pay_invoice(invoice_for("00" * 32))
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_verification_can_be_skipped(self):
        wallet, _, _ = await connected()
        result = await wallet.pay_invoice(invoice_for("00" * 32), verify=False)
        assert not result.verified
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_payment_failed(self):
        def broke(request):
            return {"result_type": "pay_invoice", "error": {"code": "INSUFFICIENT_BALANCE", "message": "broke"}}

        wallet, _, _ = await connected({"handler": broke})
        with pytest.raises(WalletError) as exc_info:
            await wallet.pay_invoice(invoice_for(PAYMENT_HASH))
        assert exc_info.value.code == "INSUFFICIENT_BALANCE"
        await wallet.disconnect()


class TestMatching:
    @pytest.mark.asyncio
    async def test_out_of_order_responses(self):
        wallet, _, service = await connected({"hold": True})
        balance = asyncio.create_task(wallet.get_balance())
        info = asyncio.create_task(wallet.get_info())
        await until(lambda: len(service.held) == 2)

        service.release(reverse=True)
        assert await balance == 21000
        assert (await info)["alias"] == "fake"
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_timeout(self):
        wallet, _, _ = await connected(
            {"handler": lambda request: None},
            options=WalletOptions(request_timeout=0.05, info_timeout=0.5),
        )
        with pytest.raises(RequestTimeout):
            await wallet.get_balance()
        assert wallet.stats.to_dict()["totalTimeouts"] == 1
        assert len(wallet.tracker) == 0
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_per_call_timeout(self):
        wallet, _, _ = await connected({"handler": lambda request: None})
        with pytest.raises(RequestTimeout):
            await wallet.request("get_balance", timeout=0.05)
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_late_response_is_unmatched(self):
        unmatched = MagicMock()
        wallet, transport, service = await connected(
            {"hold": True},
            options=WalletOptions(request_timeout=0.05, info_timeout=0.5),
            on_unmatched_response=unmatched,
        )
        with pytest.raises(RequestTimeout):
            await wallet.get_balance()

        service.release()
        await until(lambda: unmatched.called)
        response, event = unmatched.call_args[0]
        assert response.result == {"balance": 21000}
        assert event.pubkey == WALLET.public_key_hex
        assert wallet.stats.to_dict()["unmatchedResponses"] == 1
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_freshness_reported(self):
        seen = []
        wallet, _, _ = await connected({"delay": -30}, on_response=lambda response, meta: seen.append(meta))
        await wallet.get_balance()
        assert seen[0].freshness == Freshness.CACHED
        assert seen[0].method == "get_balance"
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_forged_response_is_dropped(self):
        errors = []
        wallet, transport, service = await connected({"hold": True}, on_error=errors.append)
        task = asyncio.create_task(wallet.get_balance())
        await until(lambda: len(service.held) == 1)

        genuine = service.held[0]
        forged = NostrEvent(
            kind=23195,
            content=genuine.content,
            tags=genuine.tags,
            created_at=genuine.created_at,
            pubkey=genuine.pubkey,
            id=genuine.id,
            sig="00" * 64,
        )
        transport.push(["EVENT", "sub", forged.to_dict()])
        await until(lambda: errors)
        assert not task.done()

        service.release()
        assert await task == 21000
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_event_from_other_author_is_dropped(self):
        wallet, transport, service = await connected({"hold": True})
        task = asyncio.create_task(wallet.get_balance())
        await until(lambda: len(service.held) == 1)

        impostor = generate_keypair()
        genuine = service.held[0]
        event = NostrEvent(
            kind=23195,
            content=LegacyCipher().encrypt('{"result_type":"get_balance","result":{"balance":1}}', impostor.private_key, CLIENT.public_key),
            tags=genuine.tags,
        )
        transport.push(["EVENT", "sub", sign_event(event, impostor.private_key).to_dict()])
        await asyncio.sleep(0.02)
        assert not task.done()

        service.release()
        assert await task == 21000
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_relay_rejection(self):
        wallet, transport, service = await connected({"handler": lambda request: None})
        task = asyncio.create_task(wallet.get_balance())
        await until(lambda: len(service.requests) == 1)

        request_id = transport.frames("EVENT")[0][1]["id"]
        transport.push(["OK", request_id, False, "blocked: not allowed"])
        with pytest.raises(RelayRejected) as exc_info:
            await task
        assert exc_info.value.reason == "blocked: not allowed"
        assert wallet.stats.to_dict()["totalFailed"] == 1
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_garbage_frames_reported(self):
        errors = []
        wallet, transport, _ = await connected(on_error=errors.append)
        transport.queue.put_nowait("not json")
        await until(lambda: errors)
        assert await wallet.get_balance() == 21000
        await wallet.disconnect()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_close_disconnects(self):
        wallet, transport, _ = await connected()
        await wallet.close()
        assert not wallet.connected
        assert transport.closed

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending(self):
        disconnected = MagicMock()
        wallet, transport, service = await connected({"handler": lambda request: None}, on_disconnected=disconnected)
        tasks = [asyncio.create_task(wallet.get_balance()) for _ in range(3)]
        await until(lambda: len(service.requests) == 3)

        await wallet.disconnect()
        for task in tasks:
            with pytest.raises(ConnectionLost):
                await task

        assert ["CLOSE", transport.frames("REQ")[0][1]] in transport.sent
        assert transport.closed
        assert disconnected.call_count == 1
        assert wallet.stats.to_dict()["totalFailed"] == 3

        await wallet.disconnect()
        assert disconnected.call_count == 1

    @pytest.mark.asyncio
    async def test_relay_drop_fails_pending(self):
        disconnected = MagicMock()
        wallet, transport, service = await connected({"handler": lambda request: None}, on_disconnected=disconnected)
        task = asyncio.create_task(wallet.get_balance())
        await until(lambda: len(service.requests) == 1)

        transport.drop()
        with pytest.raises(ConnectionLost):
            await task
        await until(lambda: disconnected.called)
        assert not wallet.connected
        assert disconnected.call_count == 1

        with pytest.raises(NotConnected):
            await wallet.get_balance()


class TestWaitForPayment:
    @pytest.mark.asyncio
    async def test_polls_until_paid(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return {"result_type": "lookup_invoice", "result": {"payment_hash": PAYMENT_HASH}}
            return default_handler(request)

        wallet, _, _ = await connected({"handler": handler})
        result = await wallet.wait_for_payment(PAYMENT_HASH, timeout=2.0, poll_interval=0.01)
        assert result.paid
        assert len(calls) == 3
        await wallet.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up(self):
        wallet, _, _ = await connected(
            {"handler": lambda request: {"result_type": "lookup_invoice", "result": {}}}
        )
        result = await wallet.wait_for_payment(PAYMENT_HASH, timeout=0.05, poll_interval=0.01)
        assert not result.paid
        await wallet.disconnect()


class TestCreateWallet:
    def test_creates_wallet(self):
        wallet = create_wallet(URI, transport=FakeTransport(), request_timeout=10)
        assert isinstance(wallet, NwcWallet)
        assert wallet.options.request_timeout == 10
        assert wallet.tracker.timeout == 10
        assert wallet.connection.client_pubkey == CLIENT.public_key_hex

    def test_requires_uri(self):
        with pytest.raises(ValueError, match="connection_uri is required"):
            create_wallet()

    def test_rejects_bad_transport(self):
        with pytest.raises(ValueError, match="transport"):
            create_wallet(URI, transport=object())

    def test_rejects_bad_timeout(self):
        with pytest.raises(ValueError, match="request_timeout"):
            create_wallet(URI, request_timeout=0)

    def test_bad_uri(self):
        with pytest.raises(InvalidConnectionString, match="nostr-wallet-connect:"):
            create_wallet("https://example.com")

    def test_repr_hides_secret(self):
        wallet = create_wallet(URI, transport=FakeTransport())
        assert CLIENT.private_key_hex not in repr(wallet)
