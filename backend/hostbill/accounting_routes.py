# 📂 backend/hostbill/accounting_routes.py — invoices, recurring billing, e-mail runs, audit
# -----------------------------------------------------------------------------
# Invoices:
#   • GET    /invoices                      - admins: all (customerId filter); clients: own, no drafts
#   • POST   /invoices                      - create (DRAFT or ISSUED)
#   • GET    /invoices/{id}                 - detail with payments and remaining balance
#   • PATCH  /invoices/{id}                 - edit a DRAFT (miners / unit price / due date)
#   • PUT    /invoices/{id}                 - status and dates
#   • DELETE /invoices/{id}                 - DRAFT / CANCELLED only
#   • POST   /invoices/{id}/issue           - mail first, ISSUED only when the mail went out
#   • POST   /invoices/{id}/cancel
#   • POST   /invoices/{id}/record-payment
#   • POST   /invoices/{id}/send-email
#   • GET    /invoices/{id}/audit-log
#   • POST   /invoices/{id}/crypto-payment  - payment link (owner or admin)
#   • GET    /invoices/{id}/crypto-payment  - status pulled from the gateway
#   • POST   /invoices/bulk-send-email
# E-mail runs:   GET /email-runs, GET /email-runs/{id}, POST /email-runs/{id}/resend,
#                POST /statements/send-email
# Recurring:     /recurring-invoices CRUD + POST /recurring-invoices/generate
# Pricing:       /pricing-configs CRUD + POST /pricing-configs/{id}/archive
# Audit:         GET /audit-logs
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_session
from .errors import NotFoundError
from .models import AuditAction, InvoiceStatus, InvoiceType, User
from .schemas import (
    BulkSendRequest,
    GenerateInvoiceRequest,
    InvoiceCreateRequest,
    InvoicePatchRequest,
    InvoiceStatusRequest,
    PricingCreateRequest,
    PricingUpdateRequest,
    RecordPaymentRequest,
    RecurringCreateRequest,
    RecurringUpdateRequest,
    ResendRequest,
    StatementEmailRequest,
)
from .security import get_current_user, require_admin
from .services import audit, crypto_payments, email_runs, invoices, pricing, recurring
from .utils import naive_utc

router = APIRouter()


# ------------------------------------------------------------
# Invoices
# ------------------------------------------------------------
@router.get("/invoices")
async def invoices_list(
    customer_id: Optional[str] = Query(None, alias="customerId"),
    status: Optional[InvoiceStatus] = Query(None),
    invoice_type: Optional[InvoiceType] = Query(None, alias="invoiceType"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await invoices.list_invoices(
        db, user, customer_id=customer_id, status=status, invoice_type=invoice_type, page=page, limit=limit
    )


@router.post("/invoices", status_code=201)
async def invoices_create(
    payload: InvoiceCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    inv = await invoices.create(
        db,
        admin,
        customer_id=payload.customer_id,
        total_miners=payload.total_miners,
        unit_price=payload.unit_price,
        due_date=payload.due_date,
        invoice_type=payload.invoice_type,
        hardware_id=payload.hardware_id,
        status=payload.status,
        request=request,
    )
    return {"invoice": invoices.serialize(inv)}


@router.post("/invoices/bulk-send-email")
async def invoices_bulk_send(
    payload: BulkSendRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await email_runs.bulk_send(db, admin, payload.invoice_ids, request)


@router.get("/invoices/{invoice_id}")
async def invoices_get(
    invoice_id: str,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return {"invoice": await invoices.get_invoice(db, invoice_id, viewer=user)}


@router.patch("/invoices/{invoice_id}")
async def invoices_patch(
    invoice_id: str,
    payload: InvoicePatchRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    inv = await invoices.update_draft(
        db, admin, invoice_id,
        total_miners=payload.total_miners, unit_price=payload.unit_price, due_date=payload.due_date,
        request=request,
    )
    return {"invoice": invoices.serialize(inv)}


@router.put("/invoices/{invoice_id}")
async def invoices_put(
    invoice_id: str,
    payload: InvoiceStatusRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    inv = await invoices.update_status(
        db, admin, invoice_id,
        status=payload.status,
        issued_date=payload.issued_date,
        due_date=payload.due_date,
        paid_date=payload.paid_date,
        request=request,
    )
    return {"invoice": invoices.serialize(inv)}


@router.delete("/invoices/{invoice_id}")
async def invoices_delete(
    invoice_id: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await invoices.delete(db, admin, invoice_id, request)
    return {"success": True}


@router.post("/invoices/{invoice_id}/issue")
async def invoices_issue(
    invoice_id: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    inv = await invoices.issue(db, admin, invoice_id, request)
    return {"success": True, "invoice": invoices.serialize(inv)}


@router.post("/invoices/{invoice_id}/cancel")
async def invoices_cancel(
    invoice_id: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await invoices.cancel(db, admin, invoice_id, request)


@router.post("/invoices/{invoice_id}/record-payment")
async def invoices_record_payment(
    invoice_id: str,
    payload: RecordPaymentRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await invoices.record_payment(
        db, admin, invoice_id,
        amount_paid=payload.amount_paid,
        payment_date=payload.payment_date,
        notes=payload.notes,
        mark_as_paid=payload.mark_as_paid,
        request=request,
    )


@router.post("/invoices/{invoice_id}/send-email")
async def invoices_send_email(
    invoice_id: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await invoices.send_invoice_email(db, admin, invoice_id, request)


@router.get("/invoices/{invoice_id}/audit-log")
async def invoices_audit_log(
    invoice_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"logs": await invoices.audit_trail(db, invoice_id)}


async def _visible_invoice(db: AsyncSession, invoice_id: str, user: User) -> None:
    """Clients may only act on their own, non-draft invoices."""
    inv = await invoices.load_invoice(db, invoice_id)
    if not user.is_admin and (inv.user_id != user.id or inv.status == InvoiceStatus.DRAFT):
        raise NotFoundError("Invoice not found")


@router.post("/invoices/{invoice_id}/crypto-payment")
async def invoices_crypto_payment_create(
    invoice_id: str,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await _visible_invoice(db, invoice_id, user)
    return await crypto_payments.create_payment_for_invoice(db, invoice_id, created_by=user.id)


@router.get("/invoices/{invoice_id}/crypto-payment")
async def invoices_crypto_payment_status(
    invoice_id: str,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await _visible_invoice(db, invoice_id, user)
    return {"success": True, "data": await crypto_payments.refresh_status(db, invoice_id)}


# ------------------------------------------------------------
# E-mail runs / statements
# ------------------------------------------------------------
@router.get("/email-runs")
async def email_runs_list(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await email_runs.list_runs(db, page=page, limit=limit)


@router.get("/email-runs/{run_id}")
async def email_runs_get(
    run_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"run": await email_runs.get_run(db, run_id)}


@router.post("/email-runs/{run_id}/resend")
async def email_runs_resend(
    run_id: str,
    payload: ResendRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await email_runs.resend(db, admin, run_id, payload.result_ids, request)


@router.post("/statements/send-email")
async def statements_send_email(
    payload: StatementEmailRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await email_runs.send_statement(
        db, admin, payload.customer_id, naive_utc(payload.start_date), naive_utc(payload.end_date)
    )


# ------------------------------------------------------------
# Recurring invoices
# ------------------------------------------------------------
@router.get("/recurring-invoices")
async def recurring_list(
    user_id: Optional[str] = Query(None, alias="userId"),
    active: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"recurringInvoices": await recurring.list_templates(db, user_id=user_id, active=active)}


@router.post("/recurring-invoices", status_code=201)
async def recurring_create(
    payload: RecurringCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    t = await recurring.create_template(
        db, admin, payload.user_id, payload.day_of_month,
        unit_price=payload.unit_price, start_date=payload.start_date, end_date=payload.end_date,
        request=request,
    )
    return {"recurringInvoice": recurring.serialize(t)}


@router.post("/recurring-invoices/generate", status_code=201)
async def recurring_generate(
    payload: GenerateInvoiceRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    inv = await recurring.generate(db, payload.customer_id, payload.month, payload.year, admin.id, request)
    return {"success": True, "invoice": invoices.serialize(inv)}


@router.get("/recurring-invoices/{template_id}")
async def recurring_get(
    template_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"recurringInvoice": await recurring.get_template(db, template_id)}


@router.put("/recurring-invoices/{template_id}")
async def recurring_update(
    template_id: str,
    payload: RecurringUpdateRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    t = await recurring.update_template(
        db, admin, template_id,
        day_of_month=payload.day_of_month,
        unit_price=payload.unit_price,
        start_date=payload.start_date,
        end_date=payload.end_date,
        is_active=payload.is_active,
        request=request,
    )
    return {"recurringInvoice": recurring.serialize(t)}


@router.delete("/recurring-invoices/{template_id}")
async def recurring_delete(
    template_id: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await recurring.delete_template(db, admin, template_id, request)
    return {"success": True}


# ------------------------------------------------------------
# Pricing configs
# ------------------------------------------------------------
@router.get("/pricing-configs")
async def pricing_list(
    user_id: Optional[str] = Query(None, alias="userId"),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"configs": await pricing.list_configs(db, user_id)}


@router.post("/pricing-configs", status_code=201)
async def pricing_create(
    payload: PricingCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    cfg = await pricing.create_config(
        db, admin, payload.user_id, payload.default_unit_price, payload.effective_from, payload.effective_to, request
    )
    return {"config": pricing.serialize(cfg)}


@router.put("/pricing-configs/{config_id}")
async def pricing_update(
    config_id: str,
    payload: PricingUpdateRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    cfg = await pricing.update_config(
        db, admin, config_id, payload.default_unit_price, payload.effective_to, request
    )
    return {"config": pricing.serialize(cfg)}


@router.post("/pricing-configs/{config_id}/archive")
async def pricing_archive(
    config_id: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    cfg = await pricing.archive_config(db, admin, config_id, request)
    return {"config": pricing.serialize(cfg)}


# ------------------------------------------------------------
# Audit log
# ------------------------------------------------------------
@router.get("/audit-logs")
async def audit_logs(
    action: Optional[AuditAction] = Query(None),
    entity_type: Optional[str] = Query(None, alias="entityType"),
    user_id: Optional[str] = Query(None, alias="userId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await audit.list_logs(db, action=action, entity_type=entity_type, user_id=user_id, page=page, limit=limit)
