# tests/test_crypto_payments.py

import json
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from conftest import make_admin, make_user
from hostbill.errors import ValidationFailed
from hostbill.models import CryptoPaymentStatus, InvoiceStatus
from hostbill.payment_gateway import ConfirmoClient, PaymentGatewayError
from hostbill.services import crypto_payments, invoices, ledger
from hostbill.utils import utcnow

DUE = datetime(2024, 4, 30)


class _FakeGateway:
    def __init__(self, expires_in=timedelta(hours=1)):
        self.created = []
        self.cancelled = []
        self.expires_in = expires_in

    async def create_invoice(self, **kwargs):
        self.created.append(kwargs)
        expires = (utcnow() + self.expires_in).isoformat() + "Z"
        return {"id": f"cf_{len(self.created)}", "url": f"https://pay.example/{len(self.created)}", "expiresAt": expires}

    async def cancel_invoice(self, gateway_invoice_id):
        self.cancelled.append(gateway_invoice_id)
        return {"id": gateway_invoice_id, "status": "cancelled"}


async def _issued_invoice(db, enable=True):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await invoices.create(db, admin, customer.id, 4, Decimal("25"), DUE, status=InvoiceStatus.ISSUED)
    if enable:
        await crypto_payments.update_payment_settings(db, admin, crypto_enabled=True)
    return admin, customer, inv


async def test_link_requires_gateway_switched_on(db):
    admin, _, inv = await _issued_invoice(db, enable=False)
    with pytest.raises(ValidationFailed):
        await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=_FakeGateway())


async def test_live_link_is_reused(db):
    admin, _, inv = await _issued_invoice(db)
    gateway = _FakeGateway()

    first = await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=gateway)
    second = await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=gateway)

    assert first["data"]["paymentUrl"] == "https://pay.example/1"
    assert second["message"] == "Payment link already exists"
    assert len(gateway.created) == 1
    assert gateway.created[0]["amount"] == Decimal("100.00")


async def test_expired_link_is_replaced(db):
    admin, _, inv = await _issued_invoice(db)
    gateway = _FakeGateway(expires_in=timedelta(hours=-1))

    await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=gateway)
    again = await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=gateway)

    assert again["data"]["gatewayInvoiceId"] == "cf_2"


async def test_confirmed_webhook_marks_invoice_paid_once(db):
    admin, customer, inv = await _issued_invoice(db)
    await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=_FakeGateway())
    payload = {"id": "cf_1", "status": "confirmed", "paid_amount": "0.0015", "paid_currency": "BTC", "tx_hash": "ab" * 20}

    payment = await crypto_payments.handle_webhook(db, payload)
    await crypto_payments.handle_webhook(db, payload)

    assert payment.status == CryptoPaymentStatus.CONFIRMED
    assert payment.paid_currency == "BTC"
    assert inv.status == InvoiceStatus.PAID
    assert await ledger.balance_of(db, customer.id) == Decimal("100.00")


async def test_unknown_status_maps_to_pending_and_bad_payloads_fail(db):
    admin, _, inv = await _issued_invoice(db)
    await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=_FakeGateway())

    payment = await crypto_payments.handle_webhook(db, {"id": "cf_1", "status": "weird"})
    assert payment.status == CryptoPaymentStatus.PENDING
    assert inv.status == InvoiceStatus.ISSUED

    with pytest.raises(ValidationFailed):
        await crypto_payments.handle_webhook(db, {"id": 12, "status": "paid"})
    with pytest.raises(ValidationFailed):
        await crypto_payments.handle_webhook(db, {"id": "cf_1"})


async def test_cancelling_invoice_cancels_pending_link(db, sent_mail, monkeypatch):
    admin, _, inv = await _issued_invoice(db)
    gateway = _FakeGateway()
    await crypto_payments.create_payment_for_invoice(db, inv.id, admin.id, client=gateway)
    monkeypatch.setattr(crypto_payments, "ConfirmoClient", lambda: gateway)

    result = await invoices.cancel(db, admin, inv.id)

    assert result["cryptoPaymentCancelled"] is True
    assert gateway.cancelled == ["cf_1"]
    payment = await crypto_payments.payment_for_invoice(db, inv.id)
    assert payment.status == CryptoPaymentStatus.CANCELLED


async def test_confirmo_client_posts_invoice_with_bearer_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "cf_9", "url": "https://pay.example/9"})

    client = ConfirmoClient(api_key="key-1", base_url="https://gw.example/api/v3", transport=httpx.MockTransport(handler))
    data = await client.create_invoice(
        invoice_id="i-1",
        invoice_number="INV-20240401-ABCDE",
        amount=Decimal("100"),
        total_miners=4,
        unit_price=Decimal("25"),
        customer_email="c@example.com",
        notify_email=None,
    )

    assert data["id"] == "cf_9"
    assert seen["auth"] == "Bearer key-1"
    assert seen["path"] == "/api/v3/invoices"
    assert seen["body"]["invoice"] == {"amount": "100.00", "currencyFrom": "USD"}
    assert seen["body"]["reference"] == "INV-20240401-ABCDE"


async def test_confirmo_errors_carry_status_and_message():
    transport = httpx.MockTransport(lambda r: httpx.Response(422, json={"message": "amount too low"}))
    client = ConfirmoClient(api_key="key-1", transport=transport)

    with pytest.raises(PaymentGatewayError) as exc:
        await client.get_invoice("cf_1")
    assert exc.value.status_code == 422
    assert "amount too low" in exc.value.message
