# 📂 backend/hostbill/user_routes.py — customer-facing endpoints
# -----------------------------------------------------------------------------
# Every route works on the signed-in user (cookie `token`). Admins may read
# another customer's data through admin_routes / accounting_routes instead.
#
#   • GET  /user/profile            PUT /user/profile
#   • POST /user/change-password
#   • GET  /user/balance            - ledger balance + totals by type
#   • GET  /user/statement          - running-balance statement (startDate/endDate)
#   • GET  /user/ledger             - ledger entries, paginated
#   • GET  /user/invoices           GET /user/invoices/{id}   (no drafts)
#   • GET  /user/invoiced-amount
#   • GET  /user/miners             GET /user/daily-costs
#   • GET  /user/activity
#   • POST /user/upload-image       - multipart `file`, max 10 MB
#   • GET  /user/pool/{endpoint}    - mining pool dashboard data (cached)
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_session
from .image_host import upload_profile_image
from .models import InvoiceStatus, PaymentType, User
from .pool_client import PoolClient
from .schemas import ChangePasswordRequest, ProfileUpdateRequest
from .security import get_current_user
from .services import fleet, invoices, ledger
from .services import users as users_svc
from .utils import money, naive_utc, utcnow

router = APIRouter()


# ------------------------------------------------------------
# Profile
# ------------------------------------------------------------
@router.get("/user/profile")
async def profile(user: User = Depends(get_current_user)):
    return {"user": users_svc.serialize(user)}


@router.put("/user/profile")
async def update_profile(
    payload: ProfileUpdateRequest,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    updated = await users_svc.update_user(db, user.id, **payload.model_dump(exclude_none=True))
    return {"user": users_svc.serialize(updated)}


@router.post("/user/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    await users_svc.change_password(db, user, payload.current_password, payload.new_password, request)
    return {"success": True, "message": "Password updated"}


@router.get("/user/activity")
async def activity(
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return {"activity": await users_svc.recent_activity(db, user.id)}


@router.post("/user/upload-image")
async def upload_image(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    content = await file.read()
    url = await upload_profile_image(user.id, content, file.content_type or "", file.filename or "avatar")
    user.image_url = url
    user.updated_at = utcnow()
    return {"success": True, "imageUrl": url}


# ------------------------------------------------------------
# Money
# ------------------------------------------------------------
@router.get("/user/balance")
async def balance(
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return {
        "userId": user.id,
        "balance": money(await ledger.balance_of(db, user.id)),
        "totals": await ledger.totals_by_type(db, user.id),
    }


@router.get("/user/statement")
async def statement(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await ledger.statement(db, user.id, naive_utc(start_date), naive_utc(end_date))


@router.get("/user/ledger")
async def ledger_entries(
    type: Optional[PaymentType] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await ledger.list_entries(db, user_id=user.id, type=type, page=page, limit=limit)


@router.get("/user/invoices")
async def my_invoices(
    status: Optional[InvoiceStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await invoices.list_invoices(db, user, status=status, page=page, limit=limit)


@router.get("/user/invoices/{invoice_id}")
async def my_invoice(
    invoice_id: str,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return {"invoice": await invoices.get_invoice(db, invoice_id, viewer=user)}


@router.get("/user/invoiced-amount")
async def invoiced_amount(
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await invoices.invoiced_amount(db, user.id)


# ------------------------------------------------------------
# Miners
# ------------------------------------------------------------
@router.get("/user/miners")
async def my_miners(
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return {
        "miners": await fleet.list_miners(db, user_id=user.id, sort_by="name", order="asc"),
        "summary": await fleet.miner_summary(db, user_id=user.id),
    }


@router.get("/user/daily-costs")
async def daily_costs(
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await fleet.daily_costs(db, user.id)


# ------------------------------------------------------------
# Mining pool
# ------------------------------------------------------------
@router.get("/user/pool/{endpoint}")
async def pool_data(
    endpoint: str,
    request: Request,
    currency: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
):
    """
    Pool dashboard data for the user's sub-account. Extra query parameters
    (start_date, end_date, tick_size, page_number, ...) are forwarded as is.
    """
    if not user.pool_subaccount_name:
        raise HTTPException(status_code=400, detail="No mining pool sub-account is linked to this account")
    params = {k: v for k, v in request.query_params.items() if k != "currency"}
    client = PoolClient(user.pool_subaccount_name)
    return {"success": True, "data": await client.proxy(endpoint, currency, params)}
