# tests/test_email_runs.py

from datetime import datetime
from decimal import Decimal

import pytest

from conftest import make_admin, make_user
from hostbill.errors import DeliveryError, NotFoundError, ValidationFailed
from hostbill.models import EmailRunStatus, InvoiceStatus, PaymentType
from hostbill.services import email_runs, invoices, ledger

DUE = datetime(2024, 4, 30)


async def _invoice(db, admin, customer, status=InvoiceStatus.DRAFT):
    return await invoices.create(db, admin, customer.id, 2, Decimal("30"), DUE, status=status)


async def test_bulk_send_continues_past_failures(db, monkeypatch):
    admin = await make_admin(db)
    good = await make_user(db, email="good@example.com", name="Good")
    bad = await make_user(db, email="bad@example.com", name="Bad")
    inv_good = await _invoice(db, admin, good)
    inv_bad = await _invoice(db, admin, bad)
    outbox = []

    async def flaky(to, subject, html, cc=None):
        if to == "bad@example.com":
            raise DeliveryError("Failed to send email: mailbox unavailable")
        outbox.append(to)

    monkeypatch.setattr("hostbill.services.invoices.send_email", flaky)

    result = await email_runs.bulk_send(db, admin, [inv_good.id, inv_bad.id])

    assert result["results"] == {"sent": 1, "failed": 1}
    assert outbox == ["good@example.com"]
    assert inv_good.status == InvoiceStatus.ISSUED
    assert inv_bad.status == InvoiceStatus.DRAFT

    run = await email_runs.get_run(db, result["runId"])
    assert run["status"] == EmailRunStatus.COMPLETED.value
    assert run["successCount"] == 1
    assert run["failureCount"] == 1
    failed = [r for r in run["results"] if not r["success"]]
    assert failed[0]["customerEmail"] == "bad@example.com"
    assert "mailbox unavailable" in failed[0]["errorMessage"]


async def test_bulk_send_skips_cancelled_and_requires_ids(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _invoice(db, admin, customer, status=InvoiceStatus.ISSUED)
    await invoices.cancel(db, admin, inv.id)

    with pytest.raises(ValidationFailed):
        await email_runs.bulk_send(db, admin, [])
    with pytest.raises(NotFoundError):
        await email_runs.bulk_send(db, admin, [inv.id])


async def test_resend_updates_result_and_run_counters(db, monkeypatch):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await _invoice(db, admin, customer)
    attempts = []

    async def fail_once(to, subject, html, cc=None):
        attempts.append(to)
        if len(attempts) == 1:
            raise DeliveryError("Failed to send email: timeout")

    monkeypatch.setattr("hostbill.services.invoices.send_email", fail_once)

    run_id = (await email_runs.bulk_send(db, admin, [inv.id]))["runId"]
    [result] = (await email_runs.get_run(db, run_id))["results"]
    assert result["success"] is False

    resent = await email_runs.resend(db, admin, run_id, [result["id"]])

    assert resent["summary"] == {"total": 1, "successful": 1, "failed": 0}
    run = await email_runs.get_run(db, run_id)
    assert run["successCount"] == 1
    assert run["failureCount"] == 0
    assert run["results"][0]["success"] is True


async def test_statement_mail_records_a_single_result_run(db, sent_mail):
    admin = await make_admin(db)
    customer = await make_user(db)
    await ledger.add_entry(db, customer.id, 100, PaymentType.PAYMENT)
    await ledger.add_entry(db, customer.id, -12.48, PaymentType.ELECTRICITY_CHARGES)

    result = await email_runs.send_statement(db, admin, customer.id)

    assert result["success"] is True
    assert result["closingBalance"] == 87.52
    assert [m["to"] for m in sent_mail] == [customer.email]
    runs = await email_runs.list_runs(db)
    assert runs["runs"][0]["type"] == "STATEMENT"
