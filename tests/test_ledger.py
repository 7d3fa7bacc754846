# tests/test_ledger.py

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_admin, make_user
from hostbill.errors import NotFoundError, ValidationFailed
from hostbill.models import AuditAction, AuditLog, PaymentType
from hostbill.services import ledger


async def test_running_balance_follows_each_entry(db):
    user = await make_user(db)
    first = await ledger.add_entry(db, user.id, "-12.50", PaymentType.ELECTRICITY_CHARGES, consumption="78")
    second = await ledger.add_entry(db, user.id, "100", PaymentType.PAYMENT)

    assert first.balance == Decimal("-12.50")
    assert second.balance == Decimal("87.50")
    assert await ledger.balance_of(db, user.id) == Decimal("87.50")


async def test_zero_amount_is_rejected(db):
    user = await make_user(db)
    with pytest.raises(ValidationFailed):
        await ledger.add_entry(db, user.id, 0, PaymentType.ADJUSTMENT)


async def test_admin_payment_for_unknown_customer_is_404(db):
    admin = await make_admin(db)
    with pytest.raises(NotFoundError):
        await ledger.add_admin_payment(db, admin, "missing", 50, PaymentType.PAYMENT)


async def test_statement_opening_balance_and_totals(db):
    user = await make_user(db)
    await ledger.add_entry(db, user.id, 40, PaymentType.PAYMENT, created_at=datetime(2024, 1, 5))
    await ledger.add_entry(db, user.id, -10, PaymentType.ELECTRICITY_CHARGES, created_at=datetime(2024, 2, 1))
    await ledger.add_entry(db, user.id, 25, PaymentType.PAYMENT, created_at=datetime(2024, 2, 10))

    stmt = await ledger.statement(db, user.id, start=datetime(2024, 2, 1), end=datetime(2024, 2, 28))

    assert stmt["openingBalance"] == 40.0
    assert stmt["totalCharges"] == -10.0
    assert stmt["totalPayments"] == 25.0
    assert stmt["closingBalance"] == 55.0
    assert [e["runningBalance"] for e in stmt["entries"]] == [30.0, 55.0]


async def test_delete_entry_recomputes_later_balances_and_audits(db):
    admin = await make_admin(db)
    user = await make_user(db)
    a = await ledger.add_entry(db, user.id, 100, PaymentType.PAYMENT, created_at=datetime(2024, 1, 1))
    b = await ledger.add_entry(db, user.id, -30, PaymentType.ELECTRICITY_CHARGES, created_at=datetime(2024, 1, 2))
    c = await ledger.add_entry(db, user.id, -20, PaymentType.ELECTRICITY_CHARGES, created_at=datetime(2024, 1, 3))

    await ledger.delete_entry(db, admin, b.id)

    assert a.balance == Decimal("100.00")
    assert c.balance == Decimal("80.00")
    logs = (await db.execute(select(AuditLog).where(AuditLog.entity_id == b.id))).scalars().all()
    assert [log.action for log in logs] == [AuditAction.PAYMENT_REMOVED]


async def test_customer_balances_split_positive_and_negative(db):
    rich = await make_user(db, email="rich@example.com", name="Rich")
    poor = await make_user(db, email="poor@example.com", name="Poor")
    await ledger.add_entry(db, rich.id, 200, PaymentType.PAYMENT)
    await ledger.add_entry(db, poor.id, -75.5, PaymentType.ELECTRICITY_CHARGES)

    report = await ledger.customer_balances(db)

    assert report["totalPositiveBalance"] == 200.0
    assert report["totalNegativeBalance"] == -75.5
    assert report["positiveCustomerCount"] == 1
    assert report["negativeCustomerCount"] == 1
    assert {c["name"] for c in report["customers"]} == {"Rich", "Poor"}


async def test_hosting_revenue_counts_only_electricity_charges(db):
    user = await make_user(db)
    await ledger.add_entry(db, user.id, -18.72, PaymentType.ELECTRICITY_CHARGES, consumption=78)
    await ledger.add_entry(db, user.id, -6.24, PaymentType.ELECTRICITY_CHARGES, consumption=26)
    await ledger.add_entry(db, user.id, 500, PaymentType.PAYMENT)

    revenue = await ledger.hosting_revenue(db)

    assert revenue["revenue"] == 24.96
    assert revenue["consumptionKwh"] == 104.0
    assert revenue["entries"] == 2


async def test_list_entries_filters_by_type(db):
    user = await make_user(db)
    await ledger.add_entry(db, user.id, -5, PaymentType.ELECTRICITY_CHARGES)
    await ledger.add_entry(db, user.id, 50, PaymentType.PAYMENT)

    page = await ledger.list_entries(db, user_id=user.id, type=PaymentType.PAYMENT)

    assert page["pagination"]["total"] == 1
    assert page["payments"][0]["amount"] == 50.0
