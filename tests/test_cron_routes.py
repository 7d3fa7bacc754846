# tests/test_cron_routes.py

import hashlib
import hmac
import json

from sqlalchemy import select

from conftest import make_fleet, make_rate, make_user
from hostbill import cron_routes
from hostbill.models import CostPayment, PaymentType

API = "/api"
CRON_AUTH = {"Authorization": "Bearer test-cron-secret"}


async def test_cron_rejects_missing_or_wrong_secret(client):
    assert (await client.get(f"{API}/cron/deduct-daily-cost")).status_code == 401
    wrong = await client.post(f"{API}/cron/deduct-daily-cost", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Unauthorized"


async def test_cron_without_rate_is_404(client):
    resp = await client.post(f"{API}/cron/deduct-daily-cost", headers=CRON_AUTH)

    assert resp.status_code == 404
    assert resp.json()["detail"] == "No electricity rate found"


async def test_cron_charges_once_per_day(db, client):
    customer = await make_user(db)
    await make_fleet(db, customer, count=2)
    await make_rate(db, "0.08")
    await db.commit()

    first = await client.post(f"{API}/cron/deduct-daily-cost", headers=CRON_AUTH)
    second = await client.get(f"{API}/cron/deduct-daily-cost", headers=CRON_AUTH)

    assert first.status_code == 200
    report = first.json()
    assert report["totalUsersCharged"] == 1
    assert report["totalCharged"] == 12.48
    assert second.json()["results"][0]["skipped"] is True

    q = await db.execute(select(CostPayment.amount).where(CostPayment.type == PaymentType.ELECTRICITY_CHARGES))
    assert [float(a) for a in q.scalars().all()] == [-12.48]


async def test_webhook_signature_is_checked_when_secret_set(client, monkeypatch):
    monkeypatch.setattr(cron_routes.settings, "CONFIRMO_WEBHOOK_SECRET", "whsec")
    body = json.dumps({"id": "cf_404", "status": "paid"}).encode()

    unsigned = await client.post(f"{API}/webhooks/confirmo", content=body)
    assert unsigned.status_code == 401

    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    signed = await client.post(f"{API}/webhooks/confirmo", content=body, headers={"X-Confirmo-Signature": signature})
    # signature accepted, the payment itself is unknown
    assert signed.status_code == 404


async def test_webhook_rejects_malformed_bodies(client):
    assert (await client.post(f"{API}/webhooks/confirmo", content=b"{not json")).status_code == 400
    assert (await client.post(f"{API}/webhooks/confirmo", content=b"[1, 2]")).status_code == 400

    resp = await client.post(f"{API}/webhooks/confirmo", json={"id": 5, "status": "paid"})
    assert resp.status_code == 400
    assert "id must be a string" in resp.json()["detail"]
