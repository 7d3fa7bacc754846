# tests/test_recurring.py

from datetime import date, datetime
from decimal import Decimal

import pytest

from conftest import make_admin, make_fleet, make_user
from hostbill.errors import ConflictError, NotFoundError, ValidationFailed
from hostbill.models import InvoiceStatus
from hostbill.services import pricing, recurring


def test_due_date_is_clamped_to_month_end():
    assert recurring.due_date_for(2024, 2, 31) == datetime(2024, 2, 29)
    assert recurring.due_date_for(2023, 4, 31) == datetime(2023, 4, 30)
    assert recurring.due_date_for(2024, 1, 15) == datetime(2024, 1, 15)


def test_period_invoice_number_uses_customer_prefix():
    assert recurring.period_invoice_number("abcdef123", 2024, 3) == "INV-202403-ABCDEF"


async def test_one_active_template_per_customer(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    await recurring.create_template(db, admin, customer.id, 5, Decimal("40"), datetime(2024, 1, 1))

    with pytest.raises(ConflictError):
        await recurring.create_template(db, admin, customer.id, 10, Decimal("40"), datetime(2024, 1, 1))


async def test_day_of_month_is_validated(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    with pytest.raises(ValidationFailed):
        await recurring.create_template(db, admin, customer.id, 32)


async def test_generate_uses_pricing_config_over_template_price(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    await make_fleet(db, customer, count=3)
    await recurring.create_template(db, admin, customer.id, 20, Decimal("40"), datetime(2024, 1, 1))
    await pricing.create_config(db, admin, customer.id, Decimal("55"), datetime(2024, 2, 1))

    inv = await recurring.generate(db, customer.id, 3, 2024, acting_user_id=admin.id)

    assert inv.status == InvoiceStatus.ISSUED
    assert inv.total_miners == 3
    assert inv.unit_price == Decimal("55.00")
    assert inv.total_amount == Decimal("165.00")
    assert inv.due_date == datetime(2024, 3, 20)
    assert inv.invoice_number == recurring.period_invoice_number(customer.id, 2024, 3)


async def test_generate_falls_back_to_template_price(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    await make_fleet(db, customer, count=2)
    await recurring.create_template(db, admin, customer.id, 1, Decimal("40"), datetime(2024, 1, 1))

    inv = await recurring.generate(db, customer.id, 1, 2024)

    assert inv.total_amount == Decimal("80.00")


async def test_generate_refuses_duplicates_and_missing_inputs(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    await recurring.create_template(db, admin, customer.id, 1, None, datetime(2024, 1, 1))

    with pytest.raises(ValidationFailed):
        await recurring.generate(db, customer.id, 13, 2024)
    with pytest.raises(ValidationFailed):
        # no price anywhere
        await recurring.generate(db, customer.id, 1, 2024)

    await pricing.create_config(db, admin, customer.id, Decimal("30"), datetime(2024, 1, 1))
    with pytest.raises(ValidationFailed):
        # no miners
        await recurring.generate(db, customer.id, 1, 2024)

    await make_fleet(db, customer, count=1)
    await recurring.generate(db, customer.id, 1, 2024)
    with pytest.raises(ConflictError):
        await recurring.generate(db, customer.id, 1, 2024)


async def test_generate_without_template_is_404(db):
    customer = await make_user(db)
    with pytest.raises(NotFoundError):
        await recurring.generate(db, customer.id, 1, 2024)


async def test_run_due_templates_generates_once_per_month(db):
    admin = await make_admin(db)
    early = await make_user(db, email="early@example.com", name="Early")
    late = await make_user(db, email="late@example.com", name="Late")
    await make_fleet(db, early, count=1)
    await make_fleet(db, late, count=1)
    await recurring.create_template(db, admin, early.id, 5, Decimal("10"), datetime(2024, 1, 1))
    await recurring.create_template(db, admin, late.id, 25, Decimal("10"), datetime(2024, 1, 1))

    first = await recurring.run_due_templates(db, today=date(2024, 3, 10))
    second = await recurring.run_due_templates(db, today=date(2024, 3, 11))

    assert first["generated"] == [recurring.period_invoice_number(early.id, 2024, 3)]
    assert second == {"generated": [], "skipped": []}


async def test_template_is_due_on_its_start_day(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    await make_fleet(db, customer, count=1)
    await recurring.create_template(db, admin, customer.id, 5, Decimal("10"), datetime(2024, 3, 10, 9, 30))

    report = await recurring.run_due_templates(db, today=date(2024, 3, 10))

    assert report["generated"] == [recurring.period_invoice_number(customer.id, 2024, 3)]


async def test_pause_and_resume_template(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    t = await recurring.create_template(db, admin, customer.id, 5, Decimal("10"), datetime(2024, 1, 1))

    await recurring.update_template(db, admin, t.id, is_active=False)
    assert await recurring.list_templates(db, active=True) == []

    await recurring.update_template(db, admin, t.id, is_active=True)
    assert [x["id"] for x in await recurring.list_templates(db, user_id=customer.id)] == [t.id]


async def test_new_pricing_config_closes_the_open_one(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    old = await pricing.create_config(db, admin, customer.id, Decimal("40"), datetime(2024, 1, 1))
    await pricing.create_config(db, admin, customer.id, Decimal("45"), datetime(2024, 6, 1))

    assert old.effective_to == datetime(2024, 6, 1)
    assert await pricing.effective_price(db, customer.id, datetime(2024, 5, 31)) == Decimal("40.00")
    assert await pricing.effective_price(db, customer.id, datetime(2024, 6, 1)) == Decimal("45.00")
