# tests/test_invoices.py

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_admin, make_user
from hostbill.errors import DeliveryError, NotFoundError, ValidationFailed
from hostbill.models import (
    AuditAction,
    AuditLog,
    Invoice,
    InvoiceNotification,
    InvoiceStatus,
    NotificationStatus,
)
from hostbill.services import invoices, ledger

DUE = datetime(2024, 4, 30)


async def _draft(db, admin, customer, miners=10, price="45.50"):
    return await invoices.create(db, admin, customer.id, miners, Decimal(price), DUE)


async def _actions(db, invoice_id):
    q = await db.execute(
        select(AuditLog.action).where(AuditLog.entity_id == invoice_id).order_by(AuditLog.created_at.asc())
    )
    return list(q.scalars().all())


async def test_create_computes_total_and_number(db):
    admin = await make_admin(db)
    customer = await make_user(db)

    inv = await _draft(db, admin, customer)

    assert inv.status == InvoiceStatus.DRAFT
    assert inv.total_amount == Decimal("455.00")
    assert inv.invoice_number.startswith("INV-")
    assert len(inv.invoice_number.rsplit("-", 1)[-1]) == 5
    assert await _actions(db, inv.id) == [AuditAction.INVOICE_CREATED]


async def test_create_validates_input(db):
    admin = await make_admin(db)
    customer = await make_user(db)

    with pytest.raises(ValidationFailed):
        await invoices.create(db, admin, customer.id, 0, Decimal("10"), DUE)
    with pytest.raises(ValidationFailed):
        await invoices.create(db, admin, customer.id, 1, Decimal("0"), DUE)
    with pytest.raises(ValidationFailed):
        await invoices.create(db, admin, None, 1, Decimal("10"), DUE)
    with pytest.raises(NotFoundError):
        await invoices.create(db, admin, "missing", 1, Decimal("10"), DUE)


async def test_only_drafts_are_editable_and_total_follows(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)

    await invoices.update_draft(db, admin, inv.id, total_miners=4)
    assert inv.total_amount == Decimal("182.00")

    inv.status = InvoiceStatus.ISSUED
    with pytest.raises(ValidationFailed):
        await invoices.update_draft(db, admin, inv.id, total_miners=5)


async def test_issue_sends_mail_then_moves_to_issued(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)

    await invoices.issue(db, admin, inv.id)

    assert inv.status == InvoiceStatus.ISSUED
    assert inv.issued_date is not None
    assert [m["to"] for m in sent_mail] == [customer.email]
    assert inv.invoice_number in sent_mail[0]["subject"] + sent_mail[0]["html"]
    q = await db.execute(select(InvoiceNotification.status).where(InvoiceNotification.invoice_id == inv.id))
    assert q.scalars().all() == [NotificationStatus.SENT]


async def test_issue_keeps_draft_when_mail_fails(db, monkeypatch):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)

    async def broken(*args, **kwargs):
        raise DeliveryError("Failed to send email: connection refused")

    monkeypatch.setattr("hostbill.services.invoices.send_email", broken)

    with pytest.raises(DeliveryError) as exc:
        await invoices.issue(db, admin, inv.id)
    assert "Invoice was not issued" in exc.value.message
    assert isinstance(exc.value.__cause__, DeliveryError)
    assert inv.status == InvoiceStatus.DRAFT


async def test_issue_requires_draft(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)
    await invoices.issue(db, admin, inv.id)

    with pytest.raises(ValidationFailed):
        await invoices.issue(db, admin, inv.id)


async def test_partial_then_full_payment(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer, miners=2, price="50")
    await invoices.issue(db, admin, inv.id)

    first = await invoices.record_payment(db, admin, inv.id, Decimal("60"), datetime(2024, 4, 10))
    assert first["isPaid"] is False
    assert first["remainingBalance"] == 40.0
    assert inv.status == InvoiceStatus.ISSUED

    second = await invoices.record_payment(db, admin, inv.id, Decimal("40"), datetime(2024, 4, 12))
    assert second["isPaid"] is True
    assert inv.status == InvoiceStatus.PAID
    assert inv.paid_date == datetime(2024, 4, 12)
    assert await ledger.balance_of(db, customer.id) == Decimal("100.00")


async def test_mark_as_paid_without_amount(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)
    await invoices.issue(db, admin, inv.id)

    result = await invoices.record_payment(db, admin, inv.id, None, datetime(2024, 4, 1), mark_as_paid=True)

    assert result["payment"] is None
    assert inv.status == InvoiceStatus.PAID


async def test_payment_on_paid_invoice_is_rejected(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer, miners=1, price="10")
    await invoices.issue(db, admin, inv.id)
    await invoices.record_payment(db, admin, inv.id, Decimal("10"), datetime(2024, 4, 1))

    with pytest.raises(ValidationFailed):
        await invoices.record_payment(db, admin, inv.id, Decimal("1"), datetime(2024, 4, 2))


async def test_cancel_only_issued_and_notifies_customer(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)

    with pytest.raises(ValidationFailed):
        await invoices.cancel(db, admin, inv.id)

    await invoices.issue(db, admin, inv.id)
    result = await invoices.cancel(db, admin, inv.id)

    assert result["invoice"]["status"] == "CANCELLED"
    assert result["emailSent"] is True
    assert result["cryptoPaymentCancelled"] is False
    assert len(sent_mail) == 2


async def test_delete_only_draft_or_cancelled(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)
    await invoices.issue(db, admin, inv.id)

    with pytest.raises(ValidationFailed):
        await invoices.delete(db, admin, inv.id)

    await invoices.cancel(db, admin, inv.id)
    await invoices.delete(db, admin, inv.id)
    with pytest.raises(NotFoundError):
        await invoices.load_invoice(db, inv.id)


async def test_client_never_sees_drafts_or_foreign_invoices(db):
    admin = await make_admin(db)
    alice = await make_user(db, email="alice@example.com", name="Alice")
    bob = await make_user(db, email="bob@example.com", name="Bob")
    draft = await _draft(db, admin, alice)
    issued = await invoices.create(db, admin, alice.id, 1, Decimal("10"), DUE, status=InvoiceStatus.ISSUED)

    listing = await invoices.list_invoices(db, alice)
    assert [i["id"] for i in listing["invoices"]] == [issued.id]

    with pytest.raises(NotFoundError):
        await invoices.get_invoice(db, draft.id, viewer=alice)
    with pytest.raises(NotFoundError):
        await invoices.get_invoice(db, issued.id, viewer=bob)

    admin_view = await invoices.list_invoices(db, admin, customer_id=alice.id)
    assert admin_view["pagination"]["total"] == 2


async def test_mark_overdue_moves_past_due_issued_invoices(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    late = await invoices.create(db, admin, customer.id, 1, Decimal("10"), datetime(2024, 3, 1), status=InvoiceStatus.ISSUED)
    await invoices.create(db, admin, customer.id, 1, Decimal("10"), datetime(2024, 5, 1), status=InvoiceStatus.ISSUED)
    await invoices.create(db, admin, customer.id, 1, Decimal("10"), datetime(2024, 3, 1))

    count = await invoices.mark_overdue(db, today=date(2024, 4, 1))

    assert count == 1
    status = (await db.execute(select(Invoice.status).where(Invoice.id == late.id))).scalar()
    assert status == InvoiceStatus.OVERDUE


async def test_invoiced_amount_excludes_drafts(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    await _draft(db, admin, customer, miners=1, price="999")
    inv = await invoices.create(db, admin, customer.id, 2, Decimal("25"), DUE, status=InvoiceStatus.ISSUED)
    await invoices.record_payment(db, admin, inv.id, Decimal("20"), datetime(2024, 4, 1))

    summary = await invoices.invoiced_amount(db, customer.id)

    assert summary["totalInvoiced"] == 50.0
    assert summary["totalPaid"] == 20.0
    assert summary["outstanding"] == 30.0


async def test_resend_only_for_issued_or_overdue(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _draft(db, admin, customer)

    with pytest.raises(ValidationFailed):
        await invoices.send_invoice_email(db, admin, inv.id)

    await invoices.issue(db, admin, inv.id)
    result = await invoices.send_invoice_email(db, admin, inv.id)

    assert result["sentTo"] == customer.email
    assert len(sent_mail) == 2
    assert AuditAction.INVOICE_SENT_TO_CUSTOMER in await _actions(db, inv.id)
