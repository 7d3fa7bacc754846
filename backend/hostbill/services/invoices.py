# 📂 backend/hostbill/services/invoices.py — invoice lifecycle and payment reconciliation
# =============================================================================
# Lifecycle:
#     DRAFT ──issue()──▶ ISSUED ──record_payment()──▶ PAID
#       │                  │  └──mark_overdue()──▶ OVERDUE ──record_payment()──▶ PAID
#       │                  └──cancel()──▶ CANCELLED
#       └──delete()  (DRAFT and CANCELLED only)
#
# Rules:
#   • totalAmount = totalMiners × unitPrice (2 dp); only DRAFTs are editable.
#   • issue() sends the mail first; the status moves to ISSUED only when the
#     mail went out, otherwise the invoice stays DRAFT and the caller gets 500.
#   • Payments are ledger entries (type PAYMENT) linked by invoice_id. The
#     invoice is PAID when markAsPaid is set or nothing remains to pay.
#   • Every mutation leaves an AuditLog row (entity "Invoice").
#   • Clients see only their own, non-DRAFT invoices.
# =============================================================================

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..emailer import build_cc_list, cancellation_email, invoice_email, send_email
from ..errors import DeliveryError, NotFoundError, ValidationFailed
from ..models import (
    AuditAction,
    CostPayment,
    Hardware,
    Invoice,
    InvoiceNotification,
    InvoiceStatus,
    InvoiceType,
    NotificationStatus,
    NotificationType,
    PaymentType,
    User,
)
from ..utils import d2, dec, get_logger, iso, money, naive_utc, page_window, pagination, random_code, utcnow
from . import audit, crypto_payments, ledger

log = get_logger("invoices")

ENTITY = "Invoice"
NUMBER_ATTEMPTS = 10


# =============================================================================
# Helpers
# =============================================================================
def new_invoice_number(now: Optional[datetime] = None) -> str:
    """INV-YYYYMMDD-XXXXX (5 random upper-case alphanumerics)."""
    now = now or utcnow()
    return f"INV-{now:%Y%m%d}-{random_code(5)}"


async def _number_taken(db: AsyncSession, number: str) -> bool:
    q = await db.execute(select(Invoice.id).where(Invoice.invoice_number == number))
    return q.first() is not None


async def _unique_number(db: AsyncSession) -> str:
    for _ in range(NUMBER_ATTEMPTS):
        number = new_invoice_number()
        if not await _number_taken(db, number):
            return number
    raise ValidationFailed("Could not allocate a unique invoice number, retry")


def serialize(inv: Invoice, with_customer: bool = True) -> Dict[str, Any]:
    data = {
        "id": inv.id,
        "invoiceNumber": inv.invoice_number,
        "userId": inv.user_id,
        "invoiceType": inv.invoice_type.value,
        "hardwareId": inv.hardware_id,
        "totalMiners": inv.total_miners,
        "unitPrice": money(inv.unit_price),
        "totalAmount": money(inv.total_amount),
        "status": inv.status.value,
        "invoiceGeneratedDate": iso(inv.invoice_generated_date),
        "issuedDate": iso(inv.issued_date),
        "dueDate": iso(inv.due_date),
        "paidDate": iso(inv.paid_date),
        "createdBy": inv.created_by,
        "updatedBy": inv.updated_by,
        "createdAt": iso(inv.created_at),
        "updatedAt": iso(inv.updated_at),
    }
    if with_customer:
        user = inv.user
        data["customer"] = {"id": user.id, "name": user.name, "email": user.email} if user else None
    return data


async def load_invoice(db: AsyncSession, invoice_id: str) -> Invoice:
    q = await db.execute(select(Invoice).options(selectinload(Invoice.user)).where(Invoice.id == invoice_id))
    inv = q.scalar_one_or_none()
    if inv is None:
        raise NotFoundError("Invoice not found")
    return inv


async def notify(
    db: AsyncSession,
    invoice_id: str,
    kind: NotificationType,
    sent_to: str,
    status: NotificationStatus,
    reason: Optional[str] = None,
) -> None:
    db.add(InvoiceNotification(
        invoice_id=invoice_id,
        notification_type=kind,
        sent_to=sent_to or "-",
        status=status,
        failure_reason=reason,
    ))
    await db.flush()


async def send_invoice_mail(db: AsyncSession, inv: Invoice, issued_date: Optional[datetime] = None) -> Tuple[str, List[str]]:
    """
    Sends the invoice mail to the customer (CC: group manager + billing).
    Returns (to, cc). Raises DeliveryError when the mail cannot be sent.
    """
    customer = inv.user
    if not customer or not customer.email:
        raise ValidationFailed("Customer email is required to send the invoice")
    cc = await build_cc_list(db, customer.pool_subaccount_name)
    payment_url = await crypto_payments.active_payment_url(db, inv.id)
    subject, html = invoice_email(
        customer_name=customer.name,
        invoice_number=inv.invoice_number,
        total_miners=inv.total_miners,
        unit_price=inv.unit_price,
        total_amount=inv.total_amount,
        issued_date=issued_date or inv.issued_date,
        due_date=inv.due_date,
        payment_url=payment_url,
    )
    await send_email(customer.email, subject, html, cc=cc)
    return customer.email, cc


# =============================================================================
# Create / read
# =============================================================================
async def create(
    db: AsyncSession,
    admin: User,
    customer_id: Optional[str],
    total_miners: Optional[int],
    unit_price: Any,
    due_date: Optional[datetime],
    invoice_type: InvoiceType = InvoiceType.ELECTRICITY_CHARGES,
    hardware_id: Optional[str] = None,
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    request: Optional[Request] = None,
) -> Invoice:
    if not customer_id or total_miners is None or unit_price is None or due_date is None:
        raise ValidationFailed("Missing required fields: customerId, totalMiners, unitPrice, dueDate")
    if total_miners <= 0:
        raise ValidationFailed("Total miners must be greater than 0")
    if dec(unit_price) <= 0:
        raise ValidationFailed("Unit price must be greater than 0")
    if status not in (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED):
        raise ValidationFailed("New invoices must be DRAFT or ISSUED")

    customer = await db.get(User, customer_id)
    if customer is None or customer.is_deleted:
        raise NotFoundError("Customer not found")
    if hardware_id and await db.get(Hardware, hardware_id) is None:
        raise NotFoundError("Hardware not found")

    now = utcnow()
    inv = Invoice(
        invoice_number=await _unique_number(db),
        user_id=customer.id,
        user=customer,
        invoice_type=invoice_type,
        hardware_id=hardware_id,
        total_miners=total_miners,
        unit_price=d2(unit_price),
        total_amount=d2(dec(total_miners) * dec(unit_price)),
        status=status,
        invoice_generated_date=now,
        issued_date=now if status == InvoiceStatus.ISSUED else None,
        due_date=naive_utc(due_date),
        created_by=admin.id,
    )
    db.add(inv)
    await db.flush()

    await audit.record(
        db,
        AuditAction.INVOICE_CREATED,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} created for {customer.name}",
        changes={
            "invoiceNumber": inv.invoice_number,
            "totalAmount": str(inv.total_amount),
            "status": inv.status.value,
        },
        request=request,
    )
    log.info("[Invoices] %s created (%s miners x %s)", inv.invoice_number, total_miners, inv.unit_price)
    return inv


async def list_invoices(
    db: AsyncSession,
    viewer: User,
    customer_id: Optional[str] = None,
    status: Optional[InvoiceStatus] = None,
    invoice_type: Optional[InvoiceType] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    conds = []
    if viewer.is_admin:
        if customer_id:
            conds.append(Invoice.user_id == customer_id)
    else:
        conds.append(Invoice.user_id == viewer.id)
        conds.append(Invoice.status != InvoiceStatus.DRAFT)
    if status is not None:
        conds.append(Invoice.status == status)
    if invoice_type is not None:
        conds.append(Invoice.invoice_type == invoice_type)

    offset, limit_ = page_window(page, limit)
    total = (await db.execute(select(func.count()).select_from(Invoice).where(*conds))).scalar() or 0
    q = await db.execute(
        select(Invoice)
        .options(selectinload(Invoice.user))
        .where(*conds)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .offset(offset)
        .limit(limit_)
    )
    return {
        "invoices": [serialize(i) for i in q.scalars().all()],
        "pagination": pagination(page, limit, int(total)),
    }


async def get_invoice(db: AsyncSession, invoice_id: str, viewer: Optional[User] = None) -> Dict[str, Any]:
    inv = await load_invoice(db, invoice_id)
    if viewer is not None and not viewer.is_admin:
        if inv.user_id != viewer.id or inv.status == InvoiceStatus.DRAFT:
            raise NotFoundError("Invoice not found")

    q = await db.execute(
        select(CostPayment)
        .where(CostPayment.invoice_id == inv.id, CostPayment.type == PaymentType.PAYMENT)
        .order_by(CostPayment.created_at.asc())
    )
    payments = q.scalars().all()
    total_paid = d2(sum((dec(p.amount) for p in payments), Decimal("0")))
    crypto = await crypto_payments.payment_for_invoice(db, inv.id)

    data = serialize(inv)
    data["payments"] = [ledger.serialize(p) for p in payments]
    data["totalPaid"] = money(total_paid)
    data["remainingBalance"] = money(d2(inv.total_amount) - total_paid)
    data["cryptoPayment"] = crypto_payments.serialize(crypto) if crypto else None
    return data


# =============================================================================
# Edits
# =============================================================================
async def update_draft(
    db: AsyncSession,
    admin: User,
    invoice_id: str,
    total_miners: Optional[int] = None,
    unit_price: Any = None,
    due_date: Optional[datetime] = None,
    request: Optional[Request] = None,
) -> Invoice:
    """PATCH: quantities / price / due date of a DRAFT; the total is recomputed."""
    inv = await load_invoice(db, invoice_id)
    if inv.status != InvoiceStatus.DRAFT:
        raise ValidationFailed(f"Only DRAFT invoices can be edited (status is {inv.status.value})")

    changes: Dict[str, Dict[str, Any]] = {}
    if total_miners is not None:
        if total_miners <= 0:
            raise ValidationFailed("Total miners must be greater than 0")
        if total_miners != inv.total_miners:
            changes["totalMiners"] = {"from": inv.total_miners, "to": total_miners}
            inv.total_miners = total_miners
    if unit_price is not None:
        if dec(unit_price) <= 0:
            raise ValidationFailed("Unit price must be greater than 0")
        if d2(unit_price) != d2(inv.unit_price):
            changes["unitPrice"] = {"from": str(d2(inv.unit_price)), "to": str(d2(unit_price))}
            inv.unit_price = d2(unit_price)
    if due_date is not None:
        due_date = naive_utc(due_date)
        if due_date != inv.due_date:
            changes["dueDate"] = {"from": iso(inv.due_date), "to": iso(due_date)}
            inv.due_date = due_date

    new_total = d2(dec(inv.total_miners) * dec(inv.unit_price))
    if new_total != d2(inv.total_amount):
        changes["totalAmount"] = {"from": str(d2(inv.total_amount)), "to": str(new_total)}
        inv.total_amount = new_total

    if not changes:
        return inv

    inv.updated_by = admin.id
    inv.updated_at = utcnow()
    await db.flush()
    await audit.record(
        db,
        AuditAction.INVOICE_UPDATED,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} updated",
        changes=changes,
        request=request,
    )
    return inv


async def update_status(
    db: AsyncSession,
    admin: User,
    invoice_id: str,
    status: Optional[InvoiceStatus] = None,
    issued_date: Optional[datetime] = None,
    due_date: Optional[datetime] = None,
    paid_date: Optional[datetime] = None,
    request: Optional[Request] = None,
) -> Invoice:
    """PUT: status and dates. ISSUED stamps issuedDate, PAID stamps paidDate."""
    inv = await load_invoice(db, invoice_id)
    now = utcnow()
    changes: Dict[str, Dict[str, Any]] = {}

    if status is not None and status != inv.status:
        changes["status"] = {"from": inv.status.value, "to": status.value}
        inv.status = status
        if status == InvoiceStatus.ISSUED and issued_date is None and inv.issued_date is None:
            issued_date = now
        if status == InvoiceStatus.PAID and paid_date is None:
            paid_date = now

    for field, value in (("issued_date", issued_date), ("due_date", due_date), ("paid_date", paid_date)):
        value = naive_utc(value)
        if value is not None and value != getattr(inv, field):
            key = "".join(w.capitalize() if i else w for i, w in enumerate(field.split("_")))
            changes[key] = {"from": iso(getattr(inv, field)), "to": iso(value)}
            setattr(inv, field, value)

    if not changes:
        return inv

    inv.updated_by = admin.id
    inv.updated_at = now
    await db.flush()
    await audit.record(
        db,
        AuditAction.INVOICE_UPDATED,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} updated",
        changes=changes,
        request=request,
    )
    return inv


# =============================================================================
# Issue / send / cancel / delete
# =============================================================================
async def issue(db: AsyncSession, admin: User, invoice_id: str, request: Optional[Request] = None) -> Invoice:
    inv = await load_invoice(db, invoice_id)
    if inv.status != InvoiceStatus.DRAFT:
        raise ValidationFailed(f"Cannot issue invoice - status is {inv.status.value}, must be DRAFT")
    if not inv.user or not inv.user.email:
        raise ValidationFailed("Customer email is required to issue invoice")

    issued_at = utcnow()
    try:
        sent_to, cc = await send_invoice_mail(db, inv, issued_date=issued_at)
    except DeliveryError as e:
        log.error("[Invoices] issue of %s aborted, mail failed: %s", inv.invoice_number, e.message)
        raise DeliveryError(f"Failed to send invoice email. Invoice was not issued. {e.message}") from e

    inv.status = InvoiceStatus.ISSUED
    inv.issued_date = issued_at
    inv.updated_by = admin.id
    inv.updated_at = issued_at
    await db.flush()

    await notify(db, inv.id, NotificationType.INVOICE_ISSUED, sent_to, NotificationStatus.SENT)
    await audit.record(
        db,
        AuditAction.INVOICE_ISSUED,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} issued and sent to {sent_to}",
        changes={
            "status": {"from": InvoiceStatus.DRAFT.value, "to": InvoiceStatus.ISSUED.value},
            "sentTo": sent_to,
            "ccEmails": cc,
        },
        request=request,
    )
    return inv


async def send_invoice_email(db: AsyncSession, admin: User, invoice_id: str, request: Optional[Request] = None) -> Dict[str, Any]:
    """Re-sends an ISSUED / OVERDUE invoice."""
    inv = await load_invoice(db, invoice_id)
    if inv.status not in (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE):
        raise ValidationFailed("Only ISSUED or OVERDUE invoices can be sent to the customer")

    sent_to, cc = await send_invoice_mail(db, inv)
    kind = NotificationType.OVERDUE_REMINDER if inv.status == InvoiceStatus.OVERDUE else NotificationType.INVOICE_ISSUED
    await notify(db, inv.id, kind, sent_to, NotificationStatus.SENT)
    await audit.record(
        db,
        AuditAction.INVOICE_SENT_TO_CUSTOMER,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} sent to {sent_to}",
        changes={"sentTo": sent_to, "ccEmails": cc},
        request=request,
    )
    return {"success": True, "sentTo": sent_to, "ccEmails": cc}


async def cancel(db: AsyncSession, admin: User, invoice_id: str, request: Optional[Request] = None) -> Dict[str, Any]:
    inv = await load_invoice(db, invoice_id)
    if inv.status != InvoiceStatus.ISSUED:
        raise ValidationFailed("Only ISSUED invoices can be cancelled. DRAFT invoices should be deleted.")

    inv.status = InvoiceStatus.CANCELLED
    inv.updated_by = admin.id
    inv.updated_at = utcnow()
    await db.flush()
    await audit.record(
        db,
        AuditAction.INVOICE_CANCELLED,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} cancelled",
        changes={"status": {"from": InvoiceStatus.ISSUED.value, "to": InvoiceStatus.CANCELLED.value}},
        request=request,
    )

    crypto_cancelled = await crypto_payments.cancel_for_invoice(db, inv.id)

    # customer notice is best-effort: the cancellation stands either way
    email_sent = False
    customer = inv.user
    if customer and customer.email:
        subject, html = cancellation_email(customer.name, inv.invoice_number, inv.total_amount, inv.due_date)
        try:
            cc = await build_cc_list(db, customer.pool_subaccount_name)
            await send_email(customer.email, subject, html, cc=cc)
            email_sent = True
            await notify(db, inv.id, NotificationType.INVOICE_CANCELLED, customer.email, NotificationStatus.SENT)
        except DeliveryError as e:
            log.warning("[Invoices] cancellation mail for %s failed: %s", inv.invoice_number, e.message)
            await notify(
                db, inv.id, NotificationType.INVOICE_CANCELLED, customer.email, NotificationStatus.FAILED, e.message
            )

    return {"invoice": serialize(inv), "emailSent": email_sent, "cryptoPaymentCancelled": crypto_cancelled}


async def delete(db: AsyncSession, admin: User, invoice_id: str, request: Optional[Request] = None) -> None:
    inv = await load_invoice(db, invoice_id)
    if inv.status not in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
        raise ValidationFailed("Only DRAFT or CANCELLED invoices can be deleted")

    await audit.record(
        db,
        AuditAction.INVOICE_DELETED,
        ENTITY,
        inv.id,
        admin.id,
        f"Invoice {inv.invoice_number} deleted",
        changes={
            "invoiceNumber": inv.invoice_number,
            "status": inv.status.value,
            "totalAmount": str(d2(inv.total_amount)),
        },
        request=request,
    )
    # linked ledger rows keep their history without the invoice link
    await db.execute(update(CostPayment).where(CostPayment.invoice_id == inv.id).values(invoice_id=None))
    await db.delete(inv)
    await db.flush()


# =============================================================================
# Payments
# =============================================================================
async def record_payment(
    db: AsyncSession,
    admin: User,
    invoice_id: str,
    amount_paid: Any,
    payment_date: Optional[datetime],
    notes: Optional[str] = None,
    mark_as_paid: bool = False,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    amount = d2(amount_paid) if amount_paid is not None else Decimal("0.00")
    if amount < 0 or (amount == 0 and not mark_as_paid):
        raise ValidationFailed("Amount paid must be greater than 0")
    if payment_date is None:
        raise ValidationFailed("Payment date is required")

    inv = await load_invoice(db, invoice_id)
    if inv.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
        raise ValidationFailed("Cannot record payment for paid/cancelled invoices")

    payment_date = naive_utc(payment_date)
    entry: Optional[CostPayment] = None
    if amount > 0:
        entry = await ledger.add_entry(
            db,
            user_id=inv.user_id,
            amount=amount,
            type=PaymentType.PAYMENT,
            narration=notes or f"Payment for invoice {inv.invoice_number}",
            invoice_id=inv.id,
            created_by=admin.id,
        )

    total_paid = await ledger.invoice_payments_total(db, inv.id)
    remaining = d2(inv.total_amount) - total_paid
    previous = inv.status
    if mark_as_paid or remaining <= 0:
        inv.status = InvoiceStatus.PAID
        inv.paid_date = payment_date
    inv.updated_by = admin.id
    inv.updated_at = utcnow()
    await db.flush()

    is_paid = abs(remaining) < Decimal("0.01")
    changes: Dict[str, Any] = {
        "amountPaid": str(amount),
        "paymentDate": iso(payment_date),
        "costPaymentId": entry.id if entry else None,
        "isPaid": is_paid,
        "remainingBalance": str(remaining),
    }
    if inv.status != previous:
        changes["status"] = {"from": previous.value, "to": inv.status.value}
    await audit.record(
        db,
        AuditAction.PAYMENT_ADDED,
        ENTITY,
        inv.id,
        admin.id,
        f"Payment of {amount} recorded for invoice {inv.invoice_number}",
        changes=changes,
        request=request,
    )
    return {
        "invoice": serialize(inv),
        "payment": ledger.serialize(entry) if entry else None,
        "totalPaid": money(total_paid),
        "remainingBalance": money(remaining),
        "isPaid": inv.status == InvoiceStatus.PAID,
    }


# =============================================================================
# Jobs / reports
# =============================================================================
async def mark_overdue(db: AsyncSession, today: Optional[date] = None) -> int:
    """ISSUED invoices whose due date is before today become OVERDUE."""
    today = today or utcnow().date()
    cutoff = datetime.combine(today, time.min)
    result = await db.execute(
        update(Invoice)
        .where(Invoice.status == InvoiceStatus.ISSUED, Invoice.due_date < cutoff)
        .values(status=InvoiceStatus.OVERDUE, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        log.info("[Invoices] %d invoices marked OVERDUE", count)
    return count


async def audit_trail(db: AsyncSession, invoice_id: str) -> List[Dict[str, Any]]:
    return await audit.list_for_entity(db, ENTITY, invoice_id)


async def invoiced_amount(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    """Invoiced vs paid for a customer (DRAFT and CANCELLED invoices excluded)."""
    billable = (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE, InvoiceStatus.PAID)
    q = await db.execute(
        select(Invoice.status, func.count(Invoice.id), func.coalesce(func.sum(Invoice.total_amount), 0))
        .where(Invoice.user_id == user_id, Invoice.status.in_(billable))
        .group_by(Invoice.status)
    )
    by_status: Dict[str, Dict[str, Any]] = {}
    invoiced = Decimal("0")
    for status, count, amount in q.all():
        by_status[status.value] = {"count": int(count), "amount": money(amount)}
        invoiced += dec(amount)

    q = await db.execute(
        select(func.coalesce(func.sum(CostPayment.amount), 0))
        .join(Invoice, Invoice.id == CostPayment.invoice_id)
        .where(
            CostPayment.user_id == user_id,
            CostPayment.type == PaymentType.PAYMENT,
            Invoice.status.in_(billable),
        )
    )
    paid = d2(q.scalar())
    return {
        "userId": user_id,
        "totalInvoiced": money(invoiced),
        "totalPaid": money(paid),
        "outstanding": money(d2(invoiced) - paid),
        "byStatus": by_status,
    }


async def status_summary(db: AsyncSession) -> Dict[str, Any]:
    """Counts / amounts per status over all invoices, plus the open (ISSUED + OVERDUE) total."""
    q = await db.execute(
        select(Invoice.status, func.count(Invoice.id), func.coalesce(func.sum(Invoice.total_amount), 0))
        .group_by(Invoice.status)
    )
    by_status = {s.value: {"count": 0, "amount": 0.0} for s in InvoiceStatus}
    open_amount = Decimal("0")
    for status, count, amount in q.all():
        by_status[status.value] = {"count": int(count), "amount": money(amount)}
        if status in (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE):
            open_amount += dec(amount)
    return {"byStatus": by_status, "openAmount": money(open_amount)}
