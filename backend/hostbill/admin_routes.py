# 📂 backend/hostbill/admin_routes.py — operator endpoints (ADMIN / SUPER_ADMIN)
# -----------------------------------------------------------------------------
# What is covered:
#   • Users            - list / check e-mail / create / get / update / soft delete
#   • Hardware         - catalogue CRUD, procurement (stock intake) and its history
#   • Spaces           - CRUD with utilisation stats
#   • Miners           - list (filters + sort), CRUD, bulk delete / edit, rate history
#   • Electricity      - global rate list / create
#   • Ledger           - add payment, list, delete, customer balances,
#                        hosting revenue, customer statement
#   • Dashboard        - one summary for the home screen
#   • Groups           - relationship-manager groups and their sub-accounts
#   • Payment settings - crypto gateway switch and bank details
#
# Security:
#   • Every route depends on require_admin (403 for CLIENTs).
#   • Business errors come from the services as ServiceError subclasses and
#     are mapped onto JSON responses in main.py.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_session
from .models import MinerStatus, PaymentType, User, UserRole
from .schemas import (
    ElectricityRateRequest,
    GroupCreateRequest,
    GroupUpdateRequest,
    HardwareCreateRequest,
    HardwareUpdateRequest,
    MinerBulkEditRequest,
    MinerCreateRequest,
    MinerIdsRequest,
    MinerUpdateRequest,
    PaymentCreateRequest,
    PaymentSettingsRequest,
    ProcureRequest,
    SpaceCreateRequest,
    SpaceUpdateRequest,
    SubaccountsRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from .security import require_admin
from .services import crypto_payments, fleet, groups, invoices, ledger
from .services import users as users_svc
from .utils import iso, money, naive_utc, utcnow

router = APIRouter()


# ------------------------------------------------------------
# Users
# ------------------------------------------------------------
@router.get("/admin/users")
async def admin_users_list(
    role: Optional[UserRole] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await users_svc.list_users(db, role=role, search=search, page=page, limit=limit)


@router.get("/admin/users/check-email")
async def admin_users_check_email(
    email: str = Query(...),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"email": email, "available": await users_svc.email_available(db, email)}


@router.post("/admin/users", status_code=201)
async def admin_users_create(
    payload: UserCreateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    data = payload.model_dump(exclude_none=True)
    return await users_svc.create_user(
        db,
        email=data.pop("email"),
        name=data.pop("name"),
        role=data.pop("role"),
        creator=admin,
        **data,
    )


@router.get("/admin/users/{user_id}")
async def admin_users_get(
    user_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    user = await users_svc.get_user(db, user_id)
    return {
        "user": users_svc.serialize(user),
        "balance": money(await ledger.balance_of(db, user.id)),
        "miners": await fleet.miner_summary(db, user_id=user.id),
        "activity": await users_svc.recent_activity(db, user.id, limit=10),
    }


@router.put("/admin/users/{user_id}")
async def admin_users_update(
    user_id: str,
    payload: UserUpdateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    user = await users_svc.update_user(db, user_id, actor=admin, **payload.model_dump(exclude_none=True))
    return {"user": users_svc.serialize(user)}


@router.delete("/admin/users/{user_id}")
async def admin_users_delete(
    user_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await users_svc.delete_user(db, admin, user_id)
    return {"success": True}


@router.get("/admin/users/{user_id}/statement")
async def admin_user_statement(
    user_id: str,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await users_svc.get_user(db, user_id)
    return await ledger.statement(db, user_id, naive_utc(start_date), naive_utc(end_date))


@router.get("/admin/users/{user_id}/daily-costs")
async def admin_user_daily_costs(
    user_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await users_svc.get_user(db, user_id)
    return await fleet.daily_costs(db, user_id)


# ------------------------------------------------------------
# Hardware
# ------------------------------------------------------------
@router.get("/admin/hardware")
async def admin_hardware_list(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"hardware": await fleet.list_hardware(db)}


@router.post("/admin/hardware", status_code=201)
async def admin_hardware_create(
    payload: HardwareCreateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    h = await fleet.create_hardware(db, payload.model, payload.power_usage, payload.hash_rate, payload.quantity)
    return {"hardware": fleet.serialize_hardware(h)}


@router.get("/admin/hardware/procurements")
async def admin_hardware_procurements(
    hardware_id: Optional[str] = Query(None, alias="hardwareId"),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"procurements": await fleet.list_procurements(db, hardware_id)}


@router.put("/admin/hardware/{hardware_id}")
async def admin_hardware_update(
    hardware_id: str,
    payload: HardwareUpdateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    h = await fleet.update_hardware(db, hardware_id, **payload.model_dump(exclude_none=True))
    return {"hardware": fleet.serialize_hardware(h)}


@router.delete("/admin/hardware/{hardware_id}")
async def admin_hardware_delete(
    hardware_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await fleet.delete_hardware(db, hardware_id)
    return {"success": True}


@router.post("/admin/hardware/{hardware_id}/procure", status_code=201)
async def admin_hardware_procure(
    hardware_id: str,
    payload: ProcureRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    row = await fleet.procure(db, admin, hardware_id, payload.quantity, payload.price_per_unit, payload.note)
    return {"success": True, "procurementId": row.id}


# ------------------------------------------------------------
# Spaces
# ------------------------------------------------------------
@router.get("/admin/spaces")
async def admin_spaces_list(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"spaces": await fleet.list_spaces(db)}


@router.post("/admin/spaces", status_code=201)
async def admin_spaces_create(
    payload: SpaceCreateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    s = await fleet.create_space(
        db, payload.name, payload.location, payload.capacity, payload.power_capacity, payload.status
    )
    return {"space": fleet.serialize_space(s)}


@router.get("/admin/spaces/{space_id}")
async def admin_spaces_get(
    space_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"space": await fleet.get_space(db, space_id)}


@router.put("/admin/spaces/{space_id}")
async def admin_spaces_update(
    space_id: str,
    payload: SpaceUpdateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await fleet.update_space(db, space_id, **payload.model_dump(exclude_none=True))
    return {"space": await fleet.get_space(db, space_id)}


@router.delete("/admin/spaces/{space_id}")
async def admin_spaces_delete(
    space_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await fleet.delete_space(db, space_id)
    return {"success": True}


# ------------------------------------------------------------
# Miners
# ------------------------------------------------------------
@router.get("/admin/miners")
async def admin_miners_list(
    status: Optional[MinerStatus] = Query(None),
    space_id: Optional[str] = Query(None, alias="spaceId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {
        "miners": await fleet.list_miners(
            db, status=status, space_id=space_id, user_id=user_id, sort_by=sort_by, order=order
        )
    }


@router.post("/admin/miners", status_code=201)
async def admin_miners_create(
    payload: MinerCreateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    m = await fleet.create_miner(
        db,
        admin,
        name=payload.name,
        hardware_id=payload.hardware_id,
        user_id=payload.user_id,
        space_id=payload.space_id,
        rate_per_kwh=payload.rate_per_kwh,
        status=payload.status,
    )
    return {"miner": fleet.serialize_miner(m)}


@router.post("/admin/miners/bulk-delete")
async def admin_miners_bulk_delete(
    payload: MinerIdsRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    count = await fleet.bulk_delete(db, payload.miner_ids)
    return {"success": True, "deletedCount": count}


@router.post("/admin/miners/bulk-edit")
async def admin_miners_bulk_edit(
    payload: MinerBulkEditRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    u = payload.updates
    count = await fleet.bulk_update(
        db, admin, payload.miner_ids, status=u.status, space_id=u.space_id, rate_per_kwh=u.rate_per_kwh
    )
    return {"success": True, "updatedCount": count}


@router.get("/admin/miners/{miner_id}")
async def admin_miners_get(
    miner_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"miner": await fleet.get_miner(db, miner_id)}


@router.get("/admin/miners/{miner_id}/rate-history")
async def admin_miners_rate_history(
    miner_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"history": await fleet.rate_history(db, miner_id)}


@router.put("/admin/miners/{miner_id}")
async def admin_miners_update(
    miner_id: str,
    payload: MinerUpdateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    m = await fleet.update_miner(
        db,
        admin,
        miner_id,
        name=payload.name,
        hardware_id=payload.hardware_id,
        user_id=payload.user_id,
        space_id=payload.space_id,
        status=payload.status,
        rate_per_kwh=payload.rate_per_kwh,
    )
    return {"miner": fleet.serialize_miner(m)}


@router.delete("/admin/miners/{miner_id}")
async def admin_miners_delete(
    miner_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await fleet.delete_miner(db, miner_id)
    return {"success": True}


# ------------------------------------------------------------
# Electricity rates
# ------------------------------------------------------------
@router.get("/admin/electricity-rates")
async def admin_rates_list(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"rates": await fleet.list_rates(db)}


@router.post("/admin/electricity-rates", status_code=201)
async def admin_rates_create(
    payload: ElectricityRateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    row = await fleet.create_rate(db, payload.rate_per_kwh, payload.valid_from)
    return {"rate": {"id": row.id, "ratePerKwh": float(row.rate_per_kwh), "validFrom": iso(row.valid_from)}}


# ------------------------------------------------------------
# Ledger
# ------------------------------------------------------------
@router.post("/admin/ledger", status_code=201)
async def admin_ledger_add(
    payload: PaymentCreateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    row = await ledger.add_admin_payment(db, admin, payload.user_id, payload.amount, payload.type, payload.narration)
    return {"success": True, "payment": ledger.serialize(row)}


@router.get("/admin/ledger")
async def admin_ledger_list(
    user_id: Optional[str] = Query(None, alias="userId"),
    type: Optional[PaymentType] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await ledger.list_entries(db, user_id=user_id, type=type, page=page, limit=limit)


@router.delete("/admin/ledger/{entry_id}")
async def admin_ledger_delete(
    entry_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await ledger.delete_entry(db, admin, entry_id)
    return {"success": True}


@router.get("/admin/customer-balances")
async def admin_customer_balances(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await ledger.customer_balances(db)


@router.get("/admin/hosting-revenue")
async def admin_hosting_revenue(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await ledger.hosting_revenue(db, naive_utc(start_date), naive_utc(end_date))


# ------------------------------------------------------------
# Dashboard
# ------------------------------------------------------------
@router.get("/admin/dashboard")
async def admin_dashboard(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    now = utcnow()
    month_start = datetime(now.year, now.month, 1)
    balances = await ledger.customer_balances(db)
    customers = await users_svc.list_users(db, role=UserRole.CLIENT, page=1, limit=1)
    return {
        "customers": customers["pagination"]["total"],
        "miners": await fleet.miner_summary(db),
        "hardware": await fleet.list_hardware(db),
        "spaces": await fleet.list_spaces(db),
        "balances": {k: v for k, v in balances.items() if k != "customers"},
        "revenueThisMonth": await ledger.hosting_revenue(db, month_start, now),
        "invoices": await invoices.status_summary(db),
    }


# ------------------------------------------------------------
# Groups
# ------------------------------------------------------------
@router.get("/admin/groups")
async def admin_groups_list(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"groups": await groups.list_groups(db)}


@router.post("/admin/groups", status_code=201)
async def admin_groups_create(
    payload: GroupCreateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    g = await groups.create_group(
        db, admin, payload.name, payload.relationship_manager, payload.email, payload.description
    )
    return {"group": groups.serialize(g, [])}


@router.get("/admin/groups/{group_id}")
async def admin_groups_get(
    group_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"group": await groups.get_group(db, group_id)}


@router.put("/admin/groups/{group_id}")
async def admin_groups_update(
    group_id: str,
    payload: GroupUpdateRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await groups.update_group(db, group_id, **payload.model_dump(exclude_none=True))
    return {"group": await groups.get_group(db, group_id)}


@router.delete("/admin/groups/{group_id}")
async def admin_groups_delete(
    group_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await groups.delete_group(db, group_id)
    return {"success": True}


@router.post("/admin/groups/{group_id}/subaccounts")
async def admin_groups_add_subaccounts(
    group_id: str,
    payload: SubaccountsRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return await groups.add_subaccounts(db, admin, group_id, payload.subaccount_names)


@router.delete("/admin/groups/{group_id}/subaccounts/{subaccount_name}")
async def admin_groups_remove_subaccount(
    group_id: str,
    subaccount_name: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await groups.remove_subaccount(db, group_id, subaccount_name)
    return {"success": True}


# ------------------------------------------------------------
# Payment settings
# ------------------------------------------------------------
@router.get("/admin/payment-settings")
async def admin_payment_settings_get(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"settings": crypto_payments.serialize_settings(await crypto_payments.get_payment_settings(db))}


@router.put("/admin/payment-settings")
async def admin_payment_settings_update(
    payload: PaymentSettingsRequest,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    row = await crypto_payments.update_payment_settings(db, admin, **payload.model_dump(exclude_none=True))
    return {"settings": crypto_payments.serialize_settings(row)}
