# 📂 backend/hostbill/services/accrual.py — daily electricity cost accrual
# -----------------------------------------------------------------------------
# Purpose:
#   • Once per day charge every customer for the electricity drawn by their
#     hosted miners:  cost = Σ power_kw × rate × 24h  (2 dp, per customer).
#
# Business rules:
#   • The global rate is the latest ElectricityRate with valid_from <= now;
#     without one the run is refused (NotFoundError → 404).
#   • Per miner the rate is, in order: latest MinerRateHistory row with
#     effective_from <= now, the miner's own rate_per_kwh (> 0), the global
#     rate.
#   • Deleted miners, miners on deleted hardware and deleted users are ignored.
#     INACTIVE miners draw nothing.
#   • A positive cost becomes one ledger entry: amount = -cost,
#     consumption = Σ power_kw × 24 (kWh), type ELECTRICITY_CHARGES.
#   • Idempotent by day: a DailyAccrualLog row (user_id + accrual_date, unique)
#     is written with the charge. A second run for the same date reports the
#     customer as skipped and writes nothing.
#   • Each customer is committed on its own; a failure is logged, rolled back
#     and the run continues with the next customer.
# -----------------------------------------------------------------------------

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..emailer import accrual_report_email, send_email
from ..errors import DeliveryError, NotFoundError
from ..models import (
    DailyAccrualLog,
    ElectricityRate,
    Hardware,
    Miner,
    MinerRateHistory,
    MinerStatus,
    PaymentType,
    User,
)
from ..utils import d2, d3, dec, get_logger, iso, money, utcnow
from . import ledger

settings = get_settings()
log = get_logger("accrual")

HOURS_PER_DAY = Decimal("24")


# -----------------------------------------------------------------------------
# Rates
# -----------------------------------------------------------------------------
async def latest_global_rate(db: AsyncSession, now: Optional[datetime] = None) -> Optional[ElectricityRate]:
    now = now or utcnow()
    q = await db.execute(
        select(ElectricityRate)
        .where(ElectricityRate.valid_from <= now)
        .order_by(ElectricityRate.valid_from.desc())
        .limit(1)
    )
    return q.scalar_one_or_none()


async def effective_miner_rates(db: AsyncSession, miner_ids: List[str], now: datetime) -> Dict[str, Decimal]:
    """Latest MinerRateHistory rate per miner (effective_from <= now)."""
    if not miner_ids:
        return {}
    q = await db.execute(
        select(MinerRateHistory.miner_id, MinerRateHistory.rate_per_kwh)
        .where(MinerRateHistory.miner_id.in_(miner_ids), MinerRateHistory.effective_from <= now)
        .order_by(MinerRateHistory.effective_from.desc())
    )
    rates: Dict[str, Decimal] = {}
    for miner_id, rate in q.all():
        rates.setdefault(miner_id, dec(rate))
    return rates


def miner_rate(miner_id: str, own_rate: Any, history: Dict[str, Decimal], global_rate: Decimal) -> Decimal:
    if miner_id in history and history[miner_id] > 0:
        return history[miner_id]
    if own_rate is not None and dec(own_rate) > 0:
        return dec(own_rate)
    return global_rate


def daily_cost(power_kw: Any, rate: Any) -> Decimal:
    """Unrounded cost of one miner for 24h."""
    return dec(power_kw) * dec(rate) * HOURS_PER_DAY


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------
async def _load_billable_miners(db: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
    """
    {user_id: [{id, status, power_kw, rate_per_kwh}, ...]} as plain dicts,
    so the per-customer commits/rollbacks never touch expired ORM state.
    """
    q = await db.execute(
        select(Miner.id, Miner.user_id, Miner.status, Miner.rate_per_kwh, Hardware.power_usage)
        .join(Hardware, Hardware.id == Miner.hardware_id)
        .join(User, User.id == Miner.user_id)
        .where(
            Miner.is_deleted.is_(False),
            Hardware.is_deleted.is_(False),
            User.is_deleted.is_(False),
        )
        .order_by(Miner.user_id, Miner.id)
    )
    per_user: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for miner_id, user_id, status, own_rate, power in q.all():
        per_user[user_id].append(
            {"id": miner_id, "status": status, "rate_per_kwh": own_rate, "power_kw": dec(power)}
        )
    return per_user


async def _already_accrued(db: AsyncSession, user_id: str, accrual_date: date) -> Optional[DailyAccrualLog]:
    q = await db.execute(
        select(DailyAccrualLog).where(
            DailyAccrualLog.user_id == user_id, DailyAccrualLog.accrual_date == accrual_date
        )
    )
    return q.scalar_one_or_none()


# -----------------------------------------------------------------------------
# Main job
# -----------------------------------------------------------------------------
async def run_daily_cost_accrual(
    db: AsyncSession,
    accrual_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Charges every customer for one day of electricity.
    Returns a report: {success, ratePerKwh, rateValidFrom, accrualDate,
    totalUsersProcessed, totalCharged, results:[...]}.
    """
    now = now or utcnow()
    accrual_date = accrual_date or now.date()

    rate_row = await latest_global_rate(db, now)
    if rate_row is None:
        raise NotFoundError("No electricity rate found")
    global_rate = dec(rate_row.rate_per_kwh)
    rate_valid_from = rate_row.valid_from

    log.info("[Accrual] started for date=%s global_rate=%s", accrual_date, global_rate)

    per_user = await _load_billable_miners(db)
    all_ids = [m["id"] for miners in per_user.values() for m in miners]
    history = await effective_miner_rates(db, all_ids, now)

    results: List[Dict[str, Any]] = []
    charged = 0
    total_charged = Decimal("0")

    for user_id in sorted(per_user):
        active = [m for m in per_user[user_id] if m["status"] != MinerStatus.INACTIVE]
        power_kw = d3(sum((m["power_kw"] for m in active), Decimal("0")))
        cost = d2(sum(
            (daily_cost(m["power_kw"], miner_rate(m["id"], m["rate_per_kwh"], history, global_rate)) for m in active),
            Decimal("0"),
        ))
        item: Dict[str, Any] = {
            "userId": user_id,
            "minerCount": len(active),
            "totalConsumption": float(power_kw),
            "totalDailyCost": money(cost),
            "costPaymentId": None,
            "skipped": False,
        }

        try:
            existing = await _already_accrued(db, user_id, accrual_date)
            if existing is not None:
                item["skipped"] = True
                item["costPaymentId"] = existing.cost_payment_id
                results.append(item)
                continue

            payment_id = None
            if cost > 0:
                entry = await ledger.add_entry(
                    db,
                    user_id=user_id,
                    amount=-cost,
                    type=PaymentType.ELECTRICITY_CHARGES,
                    consumption=power_kw * HOURS_PER_DAY,
                    narration=f"Electricity charges for {accrual_date.isoformat()} ({len(active)} miners)",
                )
                payment_id = entry.id

            db.add(DailyAccrualLog(
                user_id=user_id,
                accrual_date=accrual_date,
                miner_count=len(active),
                consumption=power_kw,
                cost=cost,
                rate_per_kwh=global_rate,
                cost_payment_id=payment_id,
            ))
            await db.commit()
        except IntegrityError:
            # a concurrent run charged this customer first
            await db.rollback()
            item["skipped"] = True
            results.append(item)
            continue
        except Exception as e:
            await db.rollback()
            log.error("[Accrual] failed for user=%s: %s", user_id, e)
            item["error"] = str(e)
            results.append(item)
            continue

        item["costPaymentId"] = payment_id
        if payment_id is not None:
            charged += 1
            total_charged += cost
        results.append(item)

    log.info(
        "[Accrual] done date=%s users=%d charged=%d total=%s",
        accrual_date, len(results), charged, d2(total_charged),
    )
    return {
        "success": True,
        "ratePerKwh": float(global_rate),
        "rateValidFrom": iso(rate_valid_from),
        "accrualDate": accrual_date.isoformat(),
        "totalUsersProcessed": len(results),
        "totalUsersCharged": charged,
        "totalCharged": money(total_charged),
        "results": results,
    }


async def notify_accrual_report(report: Dict[str, Any]) -> None:
    """Best-effort run report to ADMIN_NOTIFY_EMAIL."""
    if not settings.ADMIN_NOTIFY_EMAIL:
        return
    subject, html = accrual_report_email(report.get("totalUsersCharged", 0), report.get("accrualDate", ""))
    try:
        await send_email(settings.ADMIN_NOTIFY_EMAIL, subject, html)
    except DeliveryError as e:
        log.warning("[Accrual] run report not delivered: %s", e)
