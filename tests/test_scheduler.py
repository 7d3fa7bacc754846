# tests/test_scheduler.py

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import make_admin, make_fleet, make_rate, make_user
from hostbill import scheduler
from hostbill.models import CostPayment, Invoice, InvoiceStatus
from hostbill.services import invoices


def test_parse_hhmm():
    assert scheduler.parse_hhmm("00:05") == (0, 5)
    assert scheduler.parse_hhmm(" 23:59 ") == (23, 59)
    assert scheduler.parse_hhmm("7") == (7, 0)
    for bad in ("24:00", "12:60", "noon", ""):
        with pytest.raises(ValueError):
            scheduler.parse_hhmm(bad)


async def test_setup_registers_three_cron_jobs():
    sched = scheduler.setup_scheduler()

    jobs = {job.id: str(job.trigger) for job in sched.get_jobs()}

    assert set(jobs) == {"cost_accrual", "invoice_overdue", "recurring_invoices"}
    assert "hour='0', minute='5'" in jobs["cost_accrual"]


async def test_accrual_job_charges_and_is_safe_to_rerun(db):
    customer = await make_user(db)
    await make_fleet(db, customer, count=1, power="2.500")
    await make_rate(db, "0.10")
    await db.commit()

    await scheduler.run_cost_accrual_job()
    await scheduler.run_cost_accrual_job()

    count = (await db.execute(select(func.count(CostPayment.id)))).scalar()
    assert count == 1


async def test_accrual_job_without_rate_does_not_raise(db):
    await scheduler.run_cost_accrual_job()

    count = (await db.execute(select(func.count(CostPayment.id)))).scalar()
    assert count == 0


async def test_overdue_job_moves_past_due_invoices(db):
    admin = await make_admin(db)
    customer = await make_user(db)
    inv = await invoices.create(
        db, admin, customer.id, 1, Decimal("10"), datetime(2024, 1, 31), status=InvoiceStatus.ISSUED
    )
    await db.commit()

    await scheduler.mark_overdue_job()

    status = (await db.execute(select(Invoice.status).where(Invoice.id == inv.id))).scalar()
    assert status == InvoiceStatus.OVERDUE
