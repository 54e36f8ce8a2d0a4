"""
⚡ nostr-wallet-connect demo

Connects to a wallet, prints its capabilities and balance, creates a small
invoice and waits a minute for it to be paid.

Run:
    pip install -e .
    NWC_URL="nostr+walletconnect://..." python examples/wallet_demo.py
"""

import asyncio
import json
import os
import sys

from loguru import logger

from nostr_wallet_connect import NwcException, create_wallet


def on_response(response, meta):
    logger.info("{} answered in {}s ({})", meta.method, meta.delta, meta.freshness.value)


async def main(url: str) -> None:
    wallet = create_wallet(url, request_timeout=15, on_response=on_response)

    async with wallet:
        if wallet.info is not None:
            print(f"Methods:    {' '.join(wallet.info.methods)}")
            print(f"Encryption: {wallet.policy.encryption_tag_for_outgoing()}")

        balance = await wallet.get_balance()
        print(f"Balance:    {balance // 1000} sats")

        invoice = await wallet.make_invoice(21, description="nostr-wallet-connect demo", expiry=120)
        print(f"Invoice:    {invoice.invoice}")

        result = await wallet.wait_for_payment(invoice.payment_hash, timeout=60)
        print("Paid!" if result.paid else "Not paid within a minute")

        print(json.dumps(wallet.stats.to_dict(), indent=2))


if __name__ == "__main__":
    nwc_url = os.environ.get("NWC_URL")
    if not nwc_url:
        print("Set NWC_URL to a nostr+walletconnect:// connection string")
        sys.exit(1)

    try:
        asyncio.run(main(nwc_url))
    except NwcException as e:
        logger.error("Demo failed: {}", e)
        sys.exit(1)
