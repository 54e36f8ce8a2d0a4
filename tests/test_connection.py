"""Tests for connection URI parsing."""

import pytest

from nostr_wallet_connect.connection import build_connection_uri, parse_connection_uri
from nostr_wallet_connect.crypto import generate_keypair
from nostr_wallet_connect.errors import InvalidConnectionString

WALLET = generate_keypair()
CLIENT = generate_keypair()
RELAY = "wss://relay.example.com"


def uri(**overrides):
    params = {"pubkey": WALLET.public_key_hex, "relay": RELAY, "secret": CLIENT.private_key_hex}
    params.update(overrides)
    query = "&".join(f"{k}={v}" for k, v in params.items() if k != "pubkey" and v is not None)
    return f"nostr+walletconnect://{params['pubkey']}?{query}"


class TestParseConnectionUri:
    def test_valid(self):
        conn = parse_connection_uri(uri())
        assert conn.wallet_pubkey == WALLET.public_key_hex
        assert conn.relay_url == RELAY
        assert conn.secret == CLIENT.private_key_hex
        assert conn.client_pubkey == CLIENT.public_key_hex
        assert conn.lnurlp is None

    def test_url_encoded_relay(self):
        conn = parse_connection_uri(uri(relay="wss%3A%2F%2Frelay.example.com%2Fnwc"))
        assert conn.relay_url == "wss://relay.example.com/nwc"

    def test_lnurlp(self):
        conn = parse_connection_uri(uri(lnurlp="alice@example.com"))
        assert conn.lnurlp == "alice@example.com"

    def test_uppercase_keys_normalized(self):
        conn = parse_connection_uri(uri(pubkey=WALLET.public_key_hex.upper(), secret=CLIENT.private_key_hex.upper()))
        assert conn.wallet_pubkey == WALLET.public_key_hex
        assert conn.secret == CLIENT.private_key_hex

    def test_surrounding_whitespace(self):
        assert parse_connection_uri("  " + uri() + "\n").relay_url == RELAY

    def test_repr_hides_secret(self):
        conn = parse_connection_uri(uri())
        assert CLIENT.private_key_hex not in repr(conn)

    @pytest.mark.parametrize(
        "bad",
        [
            "",
            "https://example.com",
            f"nostr+walletconnect://?relay={RELAY}",
        ],
    )
    def test_malformed(self, bad):
        with pytest.raises(InvalidConnectionString):
            parse_connection_uri(bad)

    def test_wrong_scheme(self):
        with pytest.raises(InvalidConnectionString, match="scheme"):
            parse_connection_uri(uri().replace("nostr+walletconnect", "nostrwalletconnect"))

    def test_short_pubkey(self):
        with pytest.raises(InvalidConnectionString, match="pubkey"):
            parse_connection_uri(uri(pubkey="abcd"))

    def test_non_hex_pubkey(self):
        with pytest.raises(InvalidConnectionString):
            parse_connection_uri(uri(pubkey="zz" * 32))

    def test_missing_relay(self):
        with pytest.raises(InvalidConnectionString, match="relay"):
            parse_connection_uri(uri(relay=None))

    def test_missing_secret(self):
        with pytest.raises(InvalidConnectionString, match="secret"):
            parse_connection_uri(uri(secret=None))

    def test_short_secret(self):
        with pytest.raises(InvalidConnectionString, match="secret"):
            parse_connection_uri(uri(secret="ab" * 16))

    def test_zero_secret(self):
        with pytest.raises(InvalidConnectionString, match="secret"):
            parse_connection_uri(uri(secret="00" * 32))

    def test_is_value_error(self):
        with pytest.raises(ValueError):
            parse_connection_uri("nope")


class TestBuildConnectionUri:
    def test_round_trip(self):
        built = build_connection_uri(WALLET.public_key_hex, RELAY, CLIENT.private_key_hex, lnurlp="a@b.c")
        conn = parse_connection_uri(built)
        assert conn.wallet_pubkey == WALLET.public_key_hex
        assert conn.relay_url == RELAY
        assert conn.secret == CLIENT.private_key_hex
        assert conn.lnurlp == "a@b.c"
