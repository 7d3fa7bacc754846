# 📂 backend/hostbill/cron_routes.py — cron trigger and payment gateway webhook
# -----------------------------------------------------------------------------
# Endpoints:
#   • GET|POST /cron/deduct-daily-cost - `Authorization: Bearer <CRON_SECRET>`;
#     runs the daily electricity accrual (idempotent per day) and returns the report.
#   • POST /webhooks/confirmo         - payment status updates from Confirmo.
#     When CONFIRMO_WEBHOOK_SECRET is set the `X-Confirmo-Signature` header
#     (hex HMAC-SHA256 of the raw body) must match.
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import get_session
from .payment_gateway import verify_signature
from .security import require_cron_secret
from .services import accrual, crypto_payments
from .utils import get_logger

settings = get_settings()
router = APIRouter()
log = get_logger("cron")


@router.api_route("/cron/deduct-daily-cost", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def deduct_daily_cost(db: AsyncSession = Depends(get_session)):
    report = await accrual.run_daily_cost_accrual(db)
    await accrual.notify_accrual_report(report)
    return report


@router.post("/webhooks/confirmo")
async def confirmo_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    x_confirmo_signature: Optional[str] = Header(None),
):
    body = await request.body()
    secret = settings.CONFIRMO_WEBHOOK_SECRET
    if secret and not verify_signature(body, x_confirmo_signature, secret):
        log.warning("[Webhook] Confirmo signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook data")

    payment = await crypto_payments.handle_webhook(db, payload)
    log.info("[Webhook] Confirmo %s -> %s", payment.gateway_invoice_id, payment.status.value)
    return {"success": True}
