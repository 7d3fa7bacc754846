# 📂 backend/hostbill/services/crypto_payments.py — crypto payment links for invoices
# -----------------------------------------------------------------------------
# Flow:
#   1. Admin asks for a payment link → create_payment_for_invoice():
#        - invoice must exist and not be PAID,
#        - an unexpired PENDING link is reused,
#        - the gateway must be switched on in PaymentSettings,
#        - the gateway invoice is stored as CryptoPayment, audit INVOICE_UPDATED.
#   2. The gateway calls our webhook → handle_webhook():
#        - status is mapped (lower-case name → CryptoPaymentStatus,
#          unknown → PENDING), paid amount / currency / tx hash stored,
#        - "confirmed" on an unpaid invoice marks it PAID, writes a PAYMENT
#          ledger entry for the invoice total and audits INVOICE_PAID.
#   3. Cancelling the invoice cancels a PENDING link (best-effort).
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from decimal import InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..config import get_settings
from ..errors import NotFoundError, ValidationFailed
from ..models import (
    AuditAction,
    CryptoPayment,
    CryptoPaymentStatus,
    Invoice,
    InvoiceStatus,
    PaymentSettings,
    PaymentType,
    User,
)
from ..payment_gateway import ConfirmoClient, PaymentGatewayError
from ..utils import d2, dec, get_logger, iso, money, naive_utc, utcnow
from . import audit, ledger

settings = get_settings()
log = get_logger("crypto")

STATUS_MAP: Dict[str, CryptoPaymentStatus] = {
    "pending": CryptoPaymentStatus.PENDING,
    "processing": CryptoPaymentStatus.PROCESSING,
    "confirmed": CryptoPaymentStatus.CONFIRMED,
    "completed": CryptoPaymentStatus.COMPLETED,
    "expired": CryptoPaymentStatus.EXPIRED,
    "cancelled": CryptoPaymentStatus.CANCELLED,
    "failed": CryptoPaymentStatus.FAILED,
}


def map_status(gateway_status: str) -> CryptoPaymentStatus:
    return STATUS_MAP.get((gateway_status or "").lower(), CryptoPaymentStatus.PENDING)


# -----------------------------------------------------------------------------
# Payment settings (single row, id=1)
# -----------------------------------------------------------------------------
async def get_payment_settings(db: AsyncSession) -> PaymentSettings:
    row = await db.get(PaymentSettings, 1)
    if row is None:
        row = PaymentSettings(id=1, crypto_enabled=False, settlement_currency=settings.CONFIRMO_SETTLEMENT_CURRENCY)
        db.add(row)
        await db.flush()
    return row


def serialize_settings(row: PaymentSettings) -> Dict[str, Any]:
    return {
        "cryptoEnabled": row.crypto_enabled,
        "settlementCurrency": row.settlement_currency,
        "bankName": row.bank_name,
        "accountName": row.account_name,
        "accountNumber": row.account_number,
        "iban": row.iban,
        "swift": row.swift,
        "notes": row.notes,
        "updatedAt": iso(row.updated_at),
    }


async def update_payment_settings(db: AsyncSession, admin: User, **fields: Any) -> PaymentSettings:
    row = await get_payment_settings(db)
    for name, value in fields.items():
        if value is not None:
            setattr(row, name, value)
    row.updated_by = admin.id
    await db.flush()
    return row


# -----------------------------------------------------------------------------
# Serialization / lookups
# -----------------------------------------------------------------------------
def serialize(p: CryptoPayment) -> Dict[str, Any]:
    return {
        "id": p.id,
        "invoiceId": p.invoice_id,
        "gatewayInvoiceId": p.gateway_invoice_id,
        "paymentUrl": p.payment_url,
        "amount": money(p.amount),
        "currency": p.currency,
        "settlementCurrency": p.settlement_currency,
        "status": p.status.value,
        "customerEmail": p.customer_email,
        "reference": p.reference,
        "paidAmount": float(p.paid_amount) if p.paid_amount is not None else None,
        "paidCurrency": p.paid_currency,
        "transactionHash": p.transaction_hash,
        "expiresAt": iso(p.expires_at),
        "confirmedAt": iso(p.confirmed_at),
        "createdAt": iso(p.created_at),
    }


async def payment_for_invoice(db: AsyncSession, invoice_id: str) -> Optional[CryptoPayment]:
    q = await db.execute(select(CryptoPayment).where(CryptoPayment.invoice_id == invoice_id))
    return q.scalar_one_or_none()


def _is_live(p: Optional[CryptoPayment], now: datetime) -> bool:
    return (
        p is not None
        and p.status == CryptoPaymentStatus.PENDING
        and p.expires_at is not None
        and p.expires_at > now
    )


async def active_payment_url(db: AsyncSession, invoice_id: str) -> Optional[str]:
    """Payment link to put into invoice mail, when a live one exists."""
    p = await payment_for_invoice(db, invoice_id)
    return p.payment_url if _is_live(p, utcnow()) else None


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        log.warning("[Crypto] unparseable expiresAt=%r", value)
        return None
    return naive_utc(dt)


# -----------------------------------------------------------------------------
# Create
# -----------------------------------------------------------------------------
async def create_payment_for_invoice(
    db: AsyncSession,
    invoice_id: str,
    created_by: str,
    client: Optional[ConfirmoClient] = None,
) -> Dict[str, Any]:
    q = await db.execute(select(Invoice).options(selectinload(Invoice.user)).where(Invoice.id == invoice_id))
    invoice = q.scalar_one_or_none()
    if invoice is None:
        raise NotFoundError("Invoice not found")
    if invoice.status == InvoiceStatus.PAID:
        raise ValidationFailed("Invoice already paid")
    if invoice.status == InvoiceStatus.CANCELLED:
        raise ValidationFailed("Cannot create a payment link for a cancelled invoice")

    existing = await payment_for_invoice(db, invoice.id)
    if _is_live(existing, utcnow()):
        return {"success": True, "data": serialize(existing), "message": "Payment link already exists"}

    pay_settings = await get_payment_settings(db)
    if not pay_settings.crypto_enabled:
        raise ValidationFailed("Crypto payment is not enabled. Please contact administrator.")

    notify_email = settings.ADMIN_NOTIFY_EMAIL or settings.SMTP_USER
    client = client or ConfirmoClient()
    gateway = await client.create_invoice(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        amount=invoice.total_amount,
        total_miners=invoice.total_miners,
        unit_price=invoice.unit_price,
        customer_email=invoice.user.email,
        notify_email=notify_email,
        settlement_currency=pay_settings.settlement_currency,
    )
    if not gateway.get("id") or not gateway.get("url"):
        raise PaymentGatewayError("Confirmo Error: response without invoice id or url")

    if existing is not None:
        # expired / failed link is replaced in place (one link per invoice)
        await db.delete(existing)
        await db.flush()

    payment = CryptoPayment(
        invoice_id=invoice.id,
        gateway_invoice_id=str(gateway["id"]),
        payment_url=gateway["url"],
        amount=d2(invoice.total_amount),
        currency="USD",
        settlement_currency=pay_settings.settlement_currency,
        status=CryptoPaymentStatus.PENDING,
        customer_email=invoice.user.email,
        notify_email=notify_email,
        reference=invoice.invoice_number,
        expires_at=_parse_expiry(gateway.get("expiresAt")),
    )
    db.add(payment)
    await db.flush()

    await audit.record(
        db,
        AuditAction.INVOICE_UPDATED,
        "CryptoPayment",
        payment.id,
        created_by,
        f"Crypto payment link created for invoice {invoice.invoice_number}",
        changes={
            "paymentUrl": payment.payment_url,
            "amount": str(d2(invoice.total_amount)),
            "miners": invoice.total_miners,
            "unitPrice": str(d2(invoice.unit_price)),
            "customer": invoice.user.email,
        },
    )
    log.info("[Crypto] payment link %s created for %s", payment.gateway_invoice_id, invoice.invoice_number)
    return {"success": True, "data": serialize(payment), "message": "Payment link created successfully"}


# -----------------------------------------------------------------------------
# Webhook
# -----------------------------------------------------------------------------
def _number_or_none(value: Any):
    if value is None or isinstance(value, bool):
        return None
    try:
        return dec(value)
    except (InvalidOperation, ValueError):
        return None


async def handle_webhook(db: AsyncSession, payload: Dict[str, Any]) -> CryptoPayment:
    gateway_id = payload.get("id")
    status = payload.get("status")
    if not isinstance(gateway_id, str) or not gateway_id:
        raise ValidationFailed("Invalid webhook data: id must be a string")
    if not isinstance(status, str):
        raise ValidationFailed("Invalid webhook data: status must be a string")

    q = await db.execute(select(CryptoPayment).where(CryptoPayment.gateway_invoice_id == gateway_id))
    payment = q.scalar_one_or_none()
    if payment is None:
        raise NotFoundError(f"Payment not found for Confirmo invoice: {gateway_id}")

    paid_amount = _number_or_none(payload.get("paid_amount"))
    paid_currency = payload.get("paid_currency") if isinstance(payload.get("paid_currency"), str) else None
    tx_hash = payload.get("tx_hash") if isinstance(payload.get("tx_hash"), str) else None
    confirmed = status.lower() == "confirmed"

    payment.status = map_status(status)
    if paid_amount is not None:
        payment.paid_amount = paid_amount
    if paid_currency:
        payment.paid_currency = paid_currency
    if tx_hash:
        payment.transaction_hash = tx_hash
    if confirmed:
        payment.confirmed_at = utcnow()
    await db.flush()

    log.info("[Crypto] webhook %s status=%s", gateway_id, status)

    if not confirmed:
        return payment

    invoice = await db.get(Invoice, payment.invoice_id)
    if invoice is None or invoice.status == InvoiceStatus.PAID:
        return payment

    previous = invoice.status
    invoice.status = InvoiceStatus.PAID
    invoice.paid_date = utcnow()

    settled = _number_or_none(payload.get("settled_amount"))
    tx_note = f" (Tx: {tx_hash[:16]}...)" if tx_hash else ""
    await ledger.add_entry(
        db,
        user_id=invoice.user_id,
        amount=payment.amount,
        type=PaymentType.PAYMENT,
        narration=(
            f"Crypto payment - {paid_currency or 'Crypto'} - {invoice.total_miners} miners "
            f"@ ${d2(invoice.unit_price)}/miner{tx_note}"
        ),
        invoice_id=invoice.id,
    )
    await audit.record(
        db,
        AuditAction.INVOICE_PAID,
        "Invoice",
        invoice.id,
        invoice.user_id,
        f"Invoice {invoice.invoice_number} paid via crypto",
        changes={
            "status": {"from": previous.value, "to": InvoiceStatus.PAID.value},
            "paidAmount": float(paid_amount) if paid_amount is not None else None,
            "currency": paid_currency,
            "txHash": tx_hash,
            "settledAmount": float(settled) if settled is not None else None,
            "settledCurrency": payload.get("settled_currency") if isinstance(payload.get("settled_currency"), str) else None,
            "invoiceDetails": {
                "miners": invoice.total_miners,
                "unitPrice": str(d2(invoice.unit_price)),
                "totalAmount": str(d2(payment.amount)),
            },
        },
    )
    log.info("[Crypto] invoice %s marked PAID", invoice.invoice_number)
    return payment


# -----------------------------------------------------------------------------
# Status refresh / cancellation
# -----------------------------------------------------------------------------
async def refresh_status(db: AsyncSession, invoice_id: str, client: Optional[ConfirmoClient] = None) -> Dict[str, Any]:
    """Pulls the gateway status of the invoice's link (same path as the webhook)."""
    payment = await payment_for_invoice(db, invoice_id)
    if payment is None:
        raise NotFoundError("No crypto payment for this invoice")
    client = client or ConfirmoClient()
    data = await client.get_invoice(payment.gateway_invoice_id)
    data.setdefault("id", payment.gateway_invoice_id)
    payment = await handle_webhook(db, data)
    return serialize(payment)


async def cancel_for_invoice(db: AsyncSession, invoice_id: str, client: Optional[ConfirmoClient] = None) -> bool:
    """
    Cancels a PENDING link at the gateway and locally.
    Gateway errors are logged and reported as False; the invoice cancellation
    itself never depends on the gateway.
    """
    payment = await payment_for_invoice(db, invoice_id)
    if payment is None or payment.status != CryptoPaymentStatus.PENDING:
        return False
    try:
        client = client or ConfirmoClient()
        await client.cancel_invoice(payment.gateway_invoice_id)
    except PaymentGatewayError as e:
        log.warning("[Crypto] cancel of %s failed: %s", payment.gateway_invoice_id, e.message)
        return False
    payment.status = CryptoPaymentStatus.CANCELLED
    await db.flush()
    return True

