# 📂 backend/hostbill/services/recurring.py — monthly invoice templates
# -----------------------------------------------------------------------------
# Purpose:
#   • CRUD over RecurringInvoice templates (one active template per customer).
#   • generate(): the month's invoice of a customer from its template.
#   • run_due_templates(): scheduler entry point, generates every invoice whose
#     day of month has arrived and that was not generated this month yet.
#
# Pricing of a generated invoice:
#   CustomerPricingConfig effective on the 1st of the month → template price →
#   refused (400). Quantity = the customer's non-deleted miners (must be > 0).
# Invoice number: INV-YYYYMM-<first 6 chars of the customer id, upper-case>,
# so a period can be generated only once per customer (409 otherwise).
# -----------------------------------------------------------------------------

from __future__ import annotations

import calendar
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import ConflictError, NotFoundError, ServiceError, ValidationFailed
from ..models import (
    AuditAction,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Miner,
    RecurringInvoice,
    User,
)
from ..utils import d2, dec, get_logger, iso, money, naive_utc, utcnow
from . import audit, pricing

log = get_logger("recurring")

ENTITY = "RecurringInvoice"


def serialize(t: RecurringInvoice) -> Dict[str, Any]:
    data = {
        "id": t.id,
        "userId": t.user_id,
        "dayOfMonth": t.day_of_month,
        "unitPrice": money(t.unit_price) if t.unit_price is not None else None,
        "startDate": iso(t.start_date),
        "endDate": iso(t.end_date),
        "isActive": t.is_active,
        "lastGeneratedDate": iso(t.last_generated_date),
        "createdAt": iso(t.created_at),
        "updatedAt": iso(t.updated_at),
    }
    if "user" in t.__dict__ and t.user is not None:
        data["customer"] = {"id": t.user.id, "name": t.user.name, "email": t.user.email}
    return data


def period_invoice_number(customer_id: str, year: int, month: int) -> str:
    return f"INV-{year:04d}{month:02d}-{customer_id[:6].upper()}"


def due_date_for(year: int, month: int, day_of_month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day_of_month, last_day))


def _check_day(day_of_month: int) -> None:
    if day_of_month is None or not 1 <= day_of_month <= 31:
        raise ValidationFailed("Day of month must be between 1 and 31")


async def _get(db: AsyncSession, template_id: str) -> RecurringInvoice:
    q = await db.execute(
        select(RecurringInvoice).options(selectinload(RecurringInvoice.user)).where(RecurringInvoice.id == template_id)
    )
    t = q.scalar_one_or_none()
    if t is None:
        raise NotFoundError("Recurring invoice not found")
    return t


async def _active_template(db: AsyncSession, user_id: str) -> Optional[RecurringInvoice]:
    q = await db.execute(
        select(RecurringInvoice)
        .where(RecurringInvoice.user_id == user_id, RecurringInvoice.is_active.is_(True))
        .order_by(RecurringInvoice.created_at.desc())
        .limit(1)
    )
    return q.scalar_one_or_none()


# -----------------------------------------------------------------------------
# CRUD
# -----------------------------------------------------------------------------
async def list_templates(db: AsyncSession, user_id: Optional[str] = None, active: Optional[bool] = None) -> List[Dict[str, Any]]:
    stmt = select(RecurringInvoice).options(selectinload(RecurringInvoice.user))
    if user_id:
        stmt = stmt.where(RecurringInvoice.user_id == user_id)
    if active is not None:
        stmt = stmt.where(RecurringInvoice.is_active.is_(active))
    q = await db.execute(stmt.order_by(RecurringInvoice.created_at.desc()))
    return [serialize(t) for t in q.scalars().all()]


async def get_template(db: AsyncSession, template_id: str) -> Dict[str, Any]:
    return serialize(await _get(db, template_id))


async def create_template(
    db: AsyncSession,
    admin: User,
    user_id: str,
    day_of_month: int,
    unit_price: Any = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    request: Optional[Request] = None,
) -> RecurringInvoice:
    _check_day(day_of_month)
    if unit_price is not None and dec(unit_price) <= 0:
        raise ValidationFailed("Unit price must be greater than 0")
    customer = await db.get(User, user_id)
    if customer is None or customer.is_deleted:
        raise NotFoundError("Customer not found")
    if await _active_template(db, user_id) is not None:
        raise ConflictError("Customer already has an active recurring invoice")

    t = RecurringInvoice(
        user_id=user_id,
        user=customer,
        day_of_month=day_of_month,
        unit_price=d2(unit_price) if unit_price is not None else None,
        start_date=naive_utc(start_date) or utcnow(),
        end_date=naive_utc(end_date),
        is_active=True,
        created_by=admin.id,
    )
    db.add(t)
    await db.flush()
    await audit.record(
        db, AuditAction.RECURRING_INVOICE_CREATED, ENTITY, t.id, admin.id,
        f"Recurring invoice created for {customer.name} (day {day_of_month})",
        changes={"dayOfMonth": day_of_month, "unitPrice": str(t.unit_price) if t.unit_price is not None else None},
        request=request,
    )
    return t


async def update_template(
    db: AsyncSession,
    admin: User,
    template_id: str,
    day_of_month: Optional[int] = None,
    unit_price: Any = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    is_active: Optional[bool] = None,
    request: Optional[Request] = None,
) -> RecurringInvoice:
    t = await _get(db, template_id)
    changes: Dict[str, Any] = {}

    if day_of_month is not None and day_of_month != t.day_of_month:
        _check_day(day_of_month)
        changes["dayOfMonth"] = {"from": t.day_of_month, "to": day_of_month}
        t.day_of_month = day_of_month
    if unit_price is not None:
        if dec(unit_price) <= 0:
            raise ValidationFailed("Unit price must be greater than 0")
        changes["unitPrice"] = {"from": str(t.unit_price) if t.unit_price is not None else None, "to": str(d2(unit_price))}
        t.unit_price = d2(unit_price)
    if start_date is not None:
        changes["startDate"] = {"from": iso(t.start_date), "to": iso(naive_utc(start_date))}
        t.start_date = naive_utc(start_date)
    if end_date is not None:
        changes["endDate"] = {"from": iso(t.end_date), "to": iso(naive_utc(end_date))}
        t.end_date = naive_utc(end_date)

    action = AuditAction.RECURRING_INVOICE_UPDATED
    if is_active is not None and is_active != t.is_active:
        if is_active and await _active_template(db, t.user_id) is not None:
            raise ConflictError("Customer already has an active recurring invoice")
        changes["isActive"] = {"from": t.is_active, "to": is_active}
        t.is_active = is_active
        if len(changes) == 1:
            action = AuditAction.RECURRING_INVOICE_RESUMED if is_active else AuditAction.RECURRING_INVOICE_PAUSED

    if not changes:
        return t
    t.updated_by = admin.id
    t.updated_at = utcnow()
    await db.flush()
    await audit.record(
        db, action, ENTITY, t.id, admin.id,
        f"Recurring invoice {action.value.rsplit('_', 1)[-1].lower()}",
        changes=changes, request=request,
    )
    return t


async def delete_template(db: AsyncSession, admin: User, template_id: str, request: Optional[Request] = None) -> None:
    t = await _get(db, template_id)
    await audit.record(
        db, AuditAction.RECURRING_INVOICE_DELETED, ENTITY, t.id, admin.id,
        "Recurring invoice deleted",
        changes={"userId": t.user_id, "dayOfMonth": t.day_of_month},
        request=request,
    )
    await db.delete(t)
    await db.flush()


# -----------------------------------------------------------------------------
# Generation
# -----------------------------------------------------------------------------
async def generate(
    db: AsyncSession,
    customer_id: str,
    month: int,
    year: int,
    acting_user_id: Optional[str] = None,
    request: Optional[Request] = None,
) -> Invoice:
    if not 1 <= month <= 12:
        raise ValidationFailed("Month must be between 1 and 12")
    if year < 2000:
        raise ValidationFailed("Invalid year")

    template = await _active_template(db, customer_id)
    if template is None:
        raise NotFoundError("No active recurring invoice found for this customer")
    customer = await db.get(User, customer_id)
    if customer is None or customer.is_deleted:
        raise NotFoundError("Customer not found")

    period_start = datetime(year, month, 1)
    unit_price = await pricing.effective_price(db, customer_id, period_start)
    if unit_price is None and template.unit_price is not None:
        unit_price = d2(template.unit_price)
    if unit_price is None:
        raise ValidationFailed("No unit price configured for this customer")

    q = await db.execute(
        select(func.count(Miner.id)).where(Miner.user_id == customer_id, Miner.is_deleted.is_(False))
    )
    miner_count = int(q.scalar() or 0)
    if miner_count <= 0:
        raise ValidationFailed("Customer has no miners to invoice")

    number = period_invoice_number(customer_id, year, month)
    exists = await db.execute(select(Invoice.id).where(Invoice.invoice_number == number))
    if exists.first() is not None:
        raise ConflictError(f"Invoice {number} already exists for this period")

    now = utcnow()
    author = acting_user_id or template.created_by
    inv = Invoice(
        invoice_number=number,
        user_id=customer_id,
        user=customer,
        invoice_type=InvoiceType.ELECTRICITY_CHARGES,
        total_miners=miner_count,
        unit_price=unit_price,
        total_amount=d2(dec(miner_count) * unit_price),
        status=InvoiceStatus.ISSUED,
        invoice_generated_date=now,
        issued_date=now,
        due_date=due_date_for(year, month, template.day_of_month),
        created_by=author,
    )
    db.add(inv)
    template.last_generated_date = now
    await db.flush()

    await audit.record(
        db, AuditAction.INVOICE_CREATED, "Invoice", inv.id, author,
        f"Recurring invoice {number} generated for {customer.name}",
        changes={
            "invoiceNumber": number,
            "totalAmount": str(inv.total_amount),
            "status": inv.status.value,
            "recurringInvoiceId": template.id,
            "period": f"{year:04d}-{month:02d}",
        },
        request=request,
    )
    log.info("[Recurring] %s generated (%d miners x %s)", number, miner_count, unit_price)
    return inv


async def run_due_templates(db: AsyncSession, today: Optional[date] = None) -> Dict[str, Any]:
    """Generates this month's invoice for every template that is due today or earlier this month."""
    today = today or utcnow().date()
    month_start = datetime(today.year, today.month, 1)

    q = await db.execute(select(RecurringInvoice).where(RecurringInvoice.is_active.is_(True)))
    generated: List[str] = []
    skipped: List[Dict[str, Any]] = []
    for t in q.scalars().all():
        if t.start_date.date() > today or (t.end_date is not None and t.end_date.date() < today):
            continue
        if today < due_date_for(today.year, today.month, t.day_of_month).date():
            continue
        if t.last_generated_date is not None and t.last_generated_date >= month_start:
            continue
        try:
            inv = await generate(db, t.user_id, today.month, today.year)
            generated.append(inv.invoice_number)
        except ServiceError as e:
            log.warning("[Recurring] template %s skipped: %s", t.id, e.message)
            skipped.append({"recurringInvoiceId": t.id, "userId": t.user_id, "reason": e.message})

    return {"generated": generated, "skipped": skipped}
