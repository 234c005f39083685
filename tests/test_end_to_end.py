"""
End-to-end flow through the API: buy a package, get paid, spend hints.
"""

import json
from datetime import UTC, datetime
from urllib.parse import urlsplit

from wispr.config import settings
from wispr.services.webhook_reconciler import SIGNATURE_HEADER, compute_signature

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
TEXT = "Таны инээмсэглэл үргэлж гэрэлтдэг."


async def test_purchase_payment_and_redemption(async_client, auth_headers, seed, gateway):
    headers = auth_headers("acct-1")
    await seed.account("acct-1", daily_hints_used=4, last_daily_reset_at=NOW)
    await seed.compliment("comp-1", "acct-1")

    # Buy the 5-hint package
    created = await async_client.post(
        "/v1/payments/invoices",
        json={"name": "5 Hint", "amount": 6900, "num_hints": 5},
        headers=headers,
    )
    assert created.status_code == 200
    invoice_id = created.json()["invoice_id"]
    callback_url = gateway.requests[0].callback_url
    assert callback_url.endswith(f"?localId={invoice_id}")

    # Gateway calls back the URL it was given, identifying the invoice by localId
    parts = urlsplit(callback_url)
    callback_path = f"{parts.path}?{parts.query}"
    raw = json.dumps({"payment_status": "PAID"}).encode()
    webhook_headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_signature(raw, settings.qpay_webhook_secret),
    }
    paid = await async_client.post(callback_path, content=raw, headers=webhook_headers)
    assert paid.status_code == 200

    status = await async_client.get(f"/v1/payments/invoices/{invoice_id}", headers=headers)
    assert status.json()["status"] == "PAID"

    balance = (await async_client.get("/v1/hints/balance", headers=headers)).json()
    assert balance["daily_hints_available"] == 1
    assert balance["bonus_hints"] == 5
    assert balance["total_available"] == 6

    # Last daily hint is spent before any bonus hint
    sources = []
    for _ in range(3):
        redeemed = await async_client.post(
            "/v1/hints/redeem",
            json={"compliment_id": "comp-1", "text": TEXT},
            headers=headers,
        )
        assert redeemed.status_code == 200
        sources.append(redeemed.json()["source"])

    assert sources == ["daily", "bonus", "bonus"]
    assert redeemed.json()["hints"] == ["Hint #1", "Hint #2", "Hint #3"]

    balance = (await async_client.get("/v1/hints/balance", headers=headers)).json()
    assert balance["daily_hints_available"] == 0
    assert balance["bonus_hints"] == 3

    # Re-delivery of the same confirmation credits nothing
    again = await async_client.post(callback_path, content=raw, headers=webhook_headers)
    assert again.status_code == 404

    balance = (await async_client.get("/v1/hints/balance", headers=headers)).json()
    assert balance["bonus_hints"] == 3
