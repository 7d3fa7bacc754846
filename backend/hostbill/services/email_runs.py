# 📂 backend/hostbill/services/email_runs.py — bulk invoice mail runs
# -----------------------------------------------------------------------------
# One EmailSendRun per bulk operation, one EmailSendResult per invoice.
# A failed delivery never stops the run: it is recorded (result + FAILED
# notification) and the loop moves on. The run ends COMPLETED with its
# success / failure counters.
#
# Also here: account statement mail of a customer (a STATEMENT run with a
# single result).
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..emailer import send_email, statement_email
from ..errors import NotFoundError, ServiceError, ValidationFailed
from ..models import (
    AuditAction,
    EmailRunStatus,
    EmailRunType,
    EmailSendResult,
    EmailSendRun,
    Invoice,
    InvoiceStatus,
    NotificationStatus,
    NotificationType,
    User,
)
from ..utils import get_logger, iso, page_window, pagination, utcnow
from . import audit, invoices, ledger

log = get_logger("email_runs")


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------
def serialize_run(run: EmailSendRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "type": run.run_type.value,
        "status": run.status.value,
        "totalInvoices": run.total_count,
        "successCount": run.success_count,
        "failureCount": run.failure_count,
        "startedBy": run.started_by,
        "startedAt": iso(run.started_at),
        "completedAt": iso(run.completed_at),
    }


def serialize_result(r: EmailSendResult) -> Dict[str, Any]:
    return {
        "id": r.id,
        "runId": r.run_id,
        "invoiceId": r.invoice_id,
        "customerId": r.customer_id,
        "customerName": r.customer_name,
        "customerEmail": r.customer_email,
        "success": r.success,
        "errorMessage": r.error_message,
        "sentAt": iso(r.sent_at),
    }


# -----------------------------------------------------------------------------
# Delivery of one invoice inside a run
# -----------------------------------------------------------------------------
async def _deliver(db: AsyncSession, admin: User, inv: Invoice, request: Optional[Request]) -> Tuple[bool, Optional[str]]:
    """Sends one invoice; returns (ok, error). Never raises for delivery problems."""
    now = utcnow()
    issued_now = inv.status == InvoiceStatus.DRAFT
    customer_email = inv.user.email if inv.user else None
    try:
        sent_to, cc = await invoices.send_invoice_mail(db, inv, issued_date=now if issued_now else None)
    except ServiceError as e:
        log.warning("[EmailRuns] %s not sent: %s", inv.invoice_number, e.message)
        await invoices.notify(
            db, inv.id, NotificationType.INVOICE_ISSUED, customer_email or "-", NotificationStatus.FAILED, e.message
        )
        await audit.record(
            db, AuditAction.EMAIL_FAILED, "Invoice", inv.id, admin.id,
            f"Invoice {inv.invoice_number} e-mail failed",
            changes={"error": e.message, "to": customer_email}, request=request,
        )
        return False, e.message

    changes: Dict[str, Any] = {"sentTo": sent_to, "ccEmails": cc}
    if issued_now:
        inv.status = InvoiceStatus.ISSUED
        inv.issued_date = now
        inv.updated_by = admin.id
        changes["status"] = {"from": InvoiceStatus.DRAFT.value, "to": InvoiceStatus.ISSUED.value}
    await invoices.notify(db, inv.id, NotificationType.INVOICE_ISSUED, sent_to, NotificationStatus.SENT)
    await audit.record(
        db, AuditAction.INVOICE_SENT_TO_CUSTOMER, "Invoice", inv.id, admin.id,
        f"Invoice {inv.invoice_number} sent to {sent_to}",
        changes=changes, request=request,
    )
    return True, None


# -----------------------------------------------------------------------------
# Bulk send
# -----------------------------------------------------------------------------
async def bulk_send(
    db: AsyncSession,
    admin: User,
    invoice_ids: List[str],
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    if not invoice_ids:
        raise ValidationFailed("Invoice IDs array is required")

    q = await db.execute(
        select(Invoice)
        .options(selectinload(Invoice.user))
        .where(Invoice.id.in_(invoice_ids), Invoice.status != InvoiceStatus.CANCELLED)
        .order_by(Invoice.created_at.asc())
    )
    items = q.scalars().all()
    if not items:
        raise NotFoundError("No valid invoices found to send")

    run = EmailSendRun(
        run_type=EmailRunType.INVOICE,
        status=EmailRunStatus.IN_PROGRESS,
        total_count=len(items),
        started_by=admin.id,
        started_at=utcnow(),
    )
    db.add(run)
    await db.flush()
    log.info("[EmailRuns] run %s started for %d invoices", run.id, len(items))

    sent = 0
    failed = 0
    for inv in items:
        ok, error = await _deliver(db, admin, inv, request)
        db.add(EmailSendResult(
            run_id=run.id,
            invoice_id=inv.id,
            customer_id=inv.user_id,
            customer_name=inv.user.name if inv.user else None,
            customer_email=inv.user.email if inv.user else None,
            success=ok,
            error_message=error,
            sent_at=utcnow() if ok else None,
        ))
        if ok:
            sent += 1
        else:
            failed += 1

    run.success_count = sent
    run.failure_count = failed
    run.status = EmailRunStatus.COMPLETED
    run.completed_at = utcnow()
    await db.flush()
    log.info("[EmailRuns] run %s completed: sent=%d failed=%d", run.id, sent, failed)

    return {
        "success": True,
        "message": f"Sent {sent} invoice(s), {failed} failed",
        "results": {"sent": sent, "failed": failed},
        "runId": run.id,
    }


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------
async def list_runs(db: AsyncSession, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    offset, limit_ = page_window(page, limit)
    total = (await db.execute(select(func.count()).select_from(EmailSendRun))).scalar() or 0
    q = await db.execute(
        select(EmailSendRun).order_by(EmailSendRun.started_at.desc()).offset(offset).limit(limit_)
    )
    return {
        "runs": [serialize_run(r) for r in q.scalars().all()],
        "pagination": pagination(page, limit, int(total)),
    }


async def _get_run(db: AsyncSession, run_id: str) -> EmailSendRun:
    run = await db.get(EmailSendRun, run_id)
    if run is None:
        raise NotFoundError("Email run not found")
    return run


async def get_run(db: AsyncSession, run_id: str) -> Dict[str, Any]:
    run = await _get_run(db, run_id)
    q = await db.execute(
        select(EmailSendResult).where(EmailSendResult.run_id == run.id).order_by(EmailSendResult.created_at.asc())
    )
    data = serialize_run(run)
    data["results"] = [serialize_result(r) for r in q.scalars().all()]
    return data


async def resend(
    db: AsyncSession,
    admin: User,
    run_id: str,
    result_ids: List[str],
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    if not result_ids:
        raise ValidationFailed("Result IDs array is required")
    run = await _get_run(db, run_id)

    q = await db.execute(
        select(EmailSendResult).where(EmailSendResult.run_id == run.id, EmailSendResult.id.in_(result_ids))
    )
    results = q.scalars().all()
    if not results:
        raise NotFoundError("No results found to resend")

    resent: List[str] = []
    failures: List[Dict[str, Any]] = []
    for result in results:
        inv = None
        if result.invoice_id:
            try:
                inv = await invoices.load_invoice(db, result.invoice_id)
            except NotFoundError:
                inv = None
        if inv is None:
            ok, error = False, "Invoice no longer exists"
        elif inv.status == InvoiceStatus.CANCELLED:
            ok, error = False, "Invoice is cancelled"
        else:
            ok, error = await _deliver(db, admin, inv, request)

        result.success = ok
        result.error_message = error
        result.sent_at = utcnow() if ok else None
        if ok:
            resent.append(result.invoice_id)
        else:
            failures.append({"id": result.invoice_id, "error": error})
    await db.flush()

    counts = await db.execute(
        select(EmailSendResult.success, func.count()).where(EmailSendResult.run_id == run.id).group_by(EmailSendResult.success)
    )
    by_flag = {bool(flag): int(n) for flag, n in counts.all()}
    run.success_count = by_flag.get(True, 0)
    run.failure_count = by_flag.get(False, 0)
    await audit.record(
        db, AuditAction.EMAIL_RETRY, "EmailSendRun", run.id, admin.id,
        f"Resent {len(resent)} e-mail(s), {len(failures)} failed",
        changes={"resultIds": result_ids, "resent": resent, "failed": failures},
        request=request,
    )
    await db.flush()

    return {
        "success": True,
        "message": f"Resent {len(resent)} invoice(s), {len(failures)} failed",
        "resendResults": {"resent": resent, "failed": failures},
        "summary": {"total": len(results), "successful": len(resent), "failed": len(failures)},
    }


# -----------------------------------------------------------------------------
# Account statement
# -----------------------------------------------------------------------------
async def send_statement(
    db: AsyncSession,
    admin: User,
    customer_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    customer = await db.get(User, customer_id)
    if customer is None or customer.is_deleted:
        raise NotFoundError("Customer not found")
    if not customer.email:
        raise ValidationFailed("Customer email not available")

    stmt = await ledger.statement(db, customer.id, start, end)
    subject, html = statement_email(customer.name, stmt)

    run = EmailSendRun(
        run_type=EmailRunType.STATEMENT,
        status=EmailRunStatus.IN_PROGRESS,
        total_count=1,
        started_by=admin.id,
        started_at=utcnow(),
    )
    db.add(run)
    await db.flush()

    error = None
    try:
        await send_email(customer.email, subject, html)
    except ServiceError as e:
        error = e.message
        log.warning("[EmailRuns] statement for %s not sent: %s", customer.email, error)

    db.add(EmailSendResult(
        run_id=run.id,
        customer_id=customer.id,
        customer_name=customer.name,
        customer_email=customer.email,
        success=error is None,
        error_message=error,
        sent_at=utcnow() if error is None else None,
    ))
    run.success_count = 1 if error is None else 0
    run.failure_count = 0 if error is None else 1
    run.status = EmailRunStatus.COMPLETED
    run.completed_at = utcnow()
    await db.flush()
    return {"success": error is None, "runId": run.id, "error": error, "closingBalance": stmt["closingBalance"]}
