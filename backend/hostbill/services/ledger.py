# 📂 backend/hostbill/services/ledger.py — customer ledger (cost payments)
# =============================================================================
# Rules:
#   1. The ledger is append-only: every monetary movement of a customer is one
#      CostPayment row with a signed amount.
#        - electricity charges  → negative amount, consumption in kWh
#        - payments             → positive amount
#        - adjustments          → either sign
#   2. `balance` on a row is the customer's balance after that row
#      (previous sum + amount, 2 dp). The live balance is always the sum of
#      amounts, so a stale stored balance never leaks into decisions.
#   3. Only an admin correction (delete_entry) removes a row; the stored running
#      balances of the customer are then recomputed.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, ValidationFailed
from ..models import AuditAction, CostPayment, DailyAccrualLog, PaymentType, User, UserRole
from ..utils import d2, d3, dec, iso, money, page_window, pagination
from . import audit


# =============================================================================
# Writes
# =============================================================================
async def balance_of(db: AsyncSession, user_id: str) -> Decimal:
    q = await db.execute(select(func.coalesce(func.sum(CostPayment.amount), 0)).where(CostPayment.user_id == user_id))
    return d2(q.scalar())


async def add_entry(
    db: AsyncSession,
    user_id: str,
    amount: Any,
    type: PaymentType,
    consumption: Any = 0,
    narration: Optional[str] = None,
    invoice_id: Optional[str] = None,
    created_by: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> CostPayment:
    """
    Appends one ledger row and stores the running balance after it.
    Raises ValidationFailed for a zero amount.
    """
    amount = d2(amount)
    if amount == 0:
        raise ValidationFailed("Amount must be non-zero")

    previous = await balance_of(db, user_id)
    row = CostPayment(
        user_id=user_id,
        amount=amount,
        consumption=d3(consumption),
        balance=d2(previous + amount),
        type=type,
        narration=narration,
        invoice_id=invoice_id,
        created_by=created_by,
    )
    if created_at is not None:
        row.created_at = created_at
    db.add(row)
    await db.flush()
    return row


async def add_admin_payment(
    db: AsyncSession,
    admin: User,
    user_id: str,
    amount: Any,
    type: PaymentType,
    narration: Optional[str] = None,
) -> CostPayment:
    """Manual payment / adjustment entered by an admin."""
    if dec(amount) == 0:
        raise ValidationFailed("Amount must be a non-zero number")
    customer = await db.get(User, user_id)
    if not customer or customer.is_deleted:
        raise NotFoundError("Customer not found")
    return await add_entry(db, user_id, amount, type, narration=narration, created_by=admin.id)


async def _recompute_running_balances(db: AsyncSession, user_id: str) -> None:
    q = await db.execute(
        select(CostPayment)
        .where(CostPayment.user_id == user_id)
        .order_by(CostPayment.created_at.asc(), CostPayment.id.asc())
    )
    running = Decimal("0")
    for row in q.scalars().all():
        running = d2(running + dec(row.amount))
        row.balance = running
    await db.flush()


async def delete_entry(db: AsyncSession, admin: User, entry_id: str) -> None:
    row = await db.get(CostPayment, entry_id)
    if not row:
        raise NotFoundError("Payment not found")
    user_id = row.user_id
    await audit.record(
        db,
        AuditAction.PAYMENT_REMOVED,
        "CostPayment",
        row.id,
        admin.id,
        f"Ledger entry of {d2(row.amount)} removed for user {user_id}",
        changes={
            "amount": str(d2(row.amount)),
            "type": row.type.value,
            "invoiceId": row.invoice_id,
            "narration": row.narration,
        },
    )
    await db.execute(
        update(DailyAccrualLog).where(DailyAccrualLog.cost_payment_id == row.id).values(cost_payment_id=None)
    )
    await db.delete(row)
    await db.flush()
    await _recompute_running_balances(db, user_id)


# =============================================================================
# Reads
# =============================================================================
def serialize(row: CostPayment) -> Dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "amount": money(row.amount),
        "consumption": float(d3(row.consumption)),
        "balance": money(row.balance),
        "type": row.type.value,
        "narration": row.narration,
        "invoiceId": row.invoice_id,
        "createdAt": iso(row.created_at),
    }


async def list_entries(
    db: AsyncSession,
    user_id: Optional[str] = None,
    type: Optional[PaymentType] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    conds = []
    if user_id:
        conds.append(CostPayment.user_id == user_id)
    if type is not None:
        conds.append(CostPayment.type == type)
    offset, limit_ = page_window(page, limit)
    total = (await db.execute(select(func.count()).select_from(CostPayment).where(*conds))).scalar() or 0
    q = await db.execute(
        select(CostPayment)
        .where(*conds)
        .order_by(CostPayment.created_at.desc(), CostPayment.id.desc())
        .offset(offset)
        .limit(limit_)
    )
    return {
        "payments": [serialize(r) for r in q.scalars().all()],
        "pagination": pagination(page, limit, int(total)),
    }


async def statement(
    db: AsyncSession,
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Wallet statement: entries in created_at order with a running balance.
    The opening balance is the sum of everything before `start`.
    """
    opening = Decimal("0")
    if start is not None:
        q = await db.execute(
            select(func.coalesce(func.sum(CostPayment.amount), 0)).where(
                CostPayment.user_id == user_id, CostPayment.created_at < start
            )
        )
        opening = d2(q.scalar())

    conds = [CostPayment.user_id == user_id]
    if start is not None:
        conds.append(CostPayment.created_at >= start)
    if end is not None:
        conds.append(CostPayment.created_at <= end)
    q = await db.execute(
        select(CostPayment).where(*conds).order_by(CostPayment.created_at.asc(), CostPayment.id.asc())
    )

    running = opening
    charges = Decimal("0")
    payments = Decimal("0")
    entries: List[Dict[str, Any]] = []
    for row in q.scalars().all():
        amount = d2(row.amount)
        running = d2(running + amount)
        if amount < 0:
            charges += amount
        else:
            payments += amount
        item = serialize(row)
        item["runningBalance"] = money(running)
        entries.append(item)

    return {
        "userId": user_id,
        "openingBalance": money(opening),
        "closingBalance": money(running),
        "totalCharges": money(charges),
        "totalPayments": money(payments),
        "entries": entries,
    }


async def customer_balances(db: AsyncSession) -> Dict[str, Any]:
    """Per-customer balances with positive/negative aggregates."""
    q = await db.execute(
        select(
            User.id,
            User.name,
            User.email,
            func.coalesce(func.sum(CostPayment.amount), 0).label("balance"),
        )
        .join(CostPayment, CostPayment.user_id == User.id)
        .where(User.is_deleted.is_(False), User.role == UserRole.CLIENT)
        .group_by(User.id, User.name, User.email)
        .order_by(User.name.asc())
    )
    customers = []
    total_pos = Decimal("0")
    total_neg = Decimal("0")
    pos_count = 0
    neg_count = 0
    for uid, name, email, balance in q.all():
        balance = d2(balance)
        if balance > 0:
            total_pos += balance
            pos_count += 1
        elif balance < 0:
            total_neg += balance
            neg_count += 1
        customers.append({"userId": uid, "name": name, "email": email, "balance": money(balance)})

    return {
        "totalPositiveBalance": money(total_pos),
        "totalNegativeBalance": money(total_neg),
        "positiveCustomerCount": pos_count,
        "negativeCustomerCount": neg_count,
        "customers": customers,
    }


async def hosting_revenue(db: AsyncSession, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    """Electricity charges billed in a window (reported as a positive figure)."""
    conds = [CostPayment.type == PaymentType.ELECTRICITY_CHARGES]
    if start is not None:
        conds.append(CostPayment.created_at >= start)
    if end is not None:
        conds.append(CostPayment.created_at <= end)
    q = await db.execute(
        select(
            func.coalesce(func.sum(CostPayment.amount), 0),
            func.coalesce(func.sum(CostPayment.consumption), 0),
            func.count(CostPayment.id),
        ).where(*conds)
    )
    amount, consumption, count = q.one()
    return {
        "revenue": money(-d2(amount)),
        "consumptionKwh": float(d3(consumption)),
        "entries": int(count or 0),
    }


async def invoice_payments_total(db: AsyncSession, invoice_id: str) -> Decimal:
    q = await db.execute(
        select(func.coalesce(func.sum(CostPayment.amount), 0)).where(
            CostPayment.invoice_id == invoice_id, CostPayment.type == PaymentType.PAYMENT
        )
    )
    return d2(q.scalar())


async def totals_by_type(db: AsyncSession, user_id: str) -> Dict[str, float]:
    q = await db.execute(
        select(
            func.coalesce(func.sum(case((CostPayment.amount < 0, CostPayment.amount), else_=0)), 0),
            func.coalesce(func.sum(case((CostPayment.amount > 0, CostPayment.amount), else_=0)), 0),
        ).where(CostPayment.user_id == user_id)
    )
    charges, payments = q.one()
    return {"totalCharges": money(charges), "totalPayments": money(payments)}
