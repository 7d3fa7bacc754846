# 📂 backend/hostbill/services/fleet.py — hardware, hosting spaces, miners, electricity rates
# -----------------------------------------------------------------------------
# Purpose:
#   • Hardware catalogue: models with power draw and stock (quantity). Stock
#     grows through procurement and shrinks by one for every miner deployed.
#   • Spaces: hosting locations with slot / power capacity and utilisation.
#   • Miners: one hardware unit of a customer in a space. Every rate change is
#     appended to MinerRateHistory (the accrual reads the latest row).
#   • Electricity rates: global USD/kWh valid from a timestamp.
#   • daily_costs(): today's expected charge per miner of a customer, with the
#     same rate precedence the accrual uses.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..models import (
    ElectricityRate,
    Hardware,
    HardwareProcurement,
    Miner,
    MinerRateHistory,
    MinerStatus,
    Space,
    SpaceStatus,
    User,
)
from ..utils import d2, d3, dec, get_logger, iso, money, naive_utc, utcnow
from . import accrual

log = get_logger("fleet")


# =============================================================================
# Hardware
# =============================================================================
def serialize_hardware(h: Hardware) -> Dict[str, Any]:
    return {
        "id": h.id,
        "model": h.model,
        "powerUsage": float(d3(h.power_usage)),
        "hashRate": float(h.hash_rate),
        "quantity": h.quantity,
        "createdAt": iso(h.created_at),
        "updatedAt": iso(h.updated_at),
    }


async def _hardware(db: AsyncSession, hardware_id: str) -> Hardware:
    h = await db.get(Hardware, hardware_id)
    if h is None or h.is_deleted:
        raise NotFoundError("Hardware not found")
    return h


async def _model_taken(db: AsyncSession, model: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(Hardware.id).where(func.lower(Hardware.model) == model.strip().lower())
    if exclude_id:
        stmt = stmt.where(Hardware.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


async def list_hardware(db: AsyncSession) -> List[Dict[str, Any]]:
    q = await db.execute(select(Hardware).where(Hardware.is_deleted.is_(False)).order_by(Hardware.model.asc()))
    return [serialize_hardware(h) for h in q.scalars().all()]


async def create_hardware(db: AsyncSession, model: str, power_usage: Any, hash_rate: Any, quantity: int = 0) -> Hardware:
    if not model or not model.strip():
        raise ValidationFailed("Model is required")
    if dec(power_usage) <= 0:
        raise ValidationFailed("Power usage must be greater than 0")
    if dec(hash_rate) < 0 or quantity < 0:
        raise ValidationFailed("Hash rate and quantity cannot be negative")
    if await _model_taken(db, model):
        raise ConflictError("Hardware model already exists")

    h = Hardware(model=model.strip(), power_usage=d3(power_usage), hash_rate=d2(hash_rate), quantity=quantity)
    db.add(h)
    await db.flush()
    return h


async def update_hardware(
    db: AsyncSession,
    hardware_id: str,
    model: Optional[str] = None,
    power_usage: Any = None,
    hash_rate: Any = None,
    quantity: Optional[int] = None,
) -> Hardware:
    h = await _hardware(db, hardware_id)
    if model is not None:
        if not model.strip():
            raise ValidationFailed("Model is required")
        if await _model_taken(db, model, exclude_id=h.id):
            raise ConflictError("Hardware model already exists")
        h.model = model.strip()
    if power_usage is not None:
        if dec(power_usage) <= 0:
            raise ValidationFailed("Power usage must be greater than 0")
        h.power_usage = d3(power_usage)
    if hash_rate is not None:
        if dec(hash_rate) < 0:
            raise ValidationFailed("Hash rate cannot be negative")
        h.hash_rate = d2(hash_rate)
    if quantity is not None:
        if quantity < 0:
            raise ValidationFailed("Quantity cannot be negative")
        h.quantity = quantity
    h.updated_at = utcnow()
    await db.flush()
    return h


async def delete_hardware(db: AsyncSession, hardware_id: str) -> None:
    h = await _hardware(db, hardware_id)
    in_use = await db.execute(
        select(func.count(Miner.id)).where(Miner.hardware_id == h.id, Miner.is_deleted.is_(False))
    )
    if (in_use.scalar() or 0) > 0:
        raise ConflictError("Hardware is used by existing miners")
    h.is_deleted = True
    h.updated_at = utcnow()
    await db.flush()


async def procure(
    db: AsyncSession,
    admin: User,
    hardware_id: str,
    quantity: int,
    price_per_unit: Any = None,
    note: Optional[str] = None,
) -> HardwareProcurement:
    if quantity is None or quantity <= 0:
        raise ValidationFailed("Quantity must be greater than 0")
    h = await _hardware(db, hardware_id)
    h.quantity = (h.quantity or 0) + quantity
    h.updated_at = utcnow()
    row = HardwareProcurement(
        hardware_id=h.id,
        quantity=quantity,
        price_per_unit=d2(price_per_unit) if price_per_unit is not None else None,
        note=note,
        created_by=admin.id,
    )
    db.add(row)
    await db.flush()
    log.info("[Fleet] procured %d x %s (stock %d)", quantity, h.model, h.quantity)
    return row


async def list_procurements(db: AsyncSession, hardware_id: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(HardwareProcurement, Hardware.model).join(Hardware, Hardware.id == HardwareProcurement.hardware_id)
    if hardware_id:
        stmt = stmt.where(HardwareProcurement.hardware_id == hardware_id)
    q = await db.execute(stmt.order_by(HardwareProcurement.created_at.desc()))
    return [
        {
            "id": p.id,
            "hardwareId": p.hardware_id,
            "model": model,
            "quantity": p.quantity,
            "pricePerUnit": money(p.price_per_unit) if p.price_per_unit is not None else None,
            "note": p.note,
            "createdBy": p.created_by,
            "createdAt": iso(p.created_at),
        }
        for p, model in q.all()
    ]


# =============================================================================
# Spaces
# =============================================================================
async def _space(db: AsyncSession, space_id: str) -> Space:
    s = await db.get(Space, space_id)
    if s is None:
        raise NotFoundError("Space not found")
    return s


async def _space_usage(db: AsyncSession) -> Dict[str, Dict[str, Decimal]]:
    q = await db.execute(
        select(
            Miner.space_id,
            func.count(Miner.id),
            func.coalesce(func.sum(Hardware.power_usage), 0),
        )
        .join(Hardware, Hardware.id == Miner.hardware_id)
        .where(Miner.is_deleted.is_(False))
        .group_by(Miner.space_id)
    )
    return {sid: {"miners": int(n), "power": dec(p)} for sid, n, p in q.all()}


def serialize_space(s: Space, usage: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    usage = usage or {"miners": 0, "power": Decimal("0")}
    capacity_kw = dec(s.power_capacity)
    return {
        "id": s.id,
        "name": s.name,
        "location": s.location,
        "capacity": s.capacity,
        "powerCapacity": float(d3(capacity_kw)),
        "status": s.status.value,
        "minerCount": usage["miners"],
        "powerUsed": float(d3(usage["power"])),
        "powerUtilization": float(d2(usage["power"] / capacity_kw * 100)) if capacity_kw > 0 else 0.0,
        "slotUtilization": float(d2(Decimal(usage["miners"]) / s.capacity * 100)) if s.capacity else 0.0,
        "createdAt": iso(s.created_at),
    }


async def list_spaces(db: AsyncSession) -> List[Dict[str, Any]]:
    usage = await _space_usage(db)
    q = await db.execute(select(Space).order_by(Space.name.asc()))
    return [serialize_space(s, usage.get(s.id)) for s in q.scalars().all()]


async def get_space(db: AsyncSession, space_id: str) -> Dict[str, Any]:
    s = await _space(db, space_id)
    usage = await _space_usage(db)
    return serialize_space(s, usage.get(s.id))


async def create_space(
    db: AsyncSession,
    name: str,
    location: str,
    capacity: int = 0,
    power_capacity: Any = 0,
    status: SpaceStatus = SpaceStatus.AVAILABLE,
) -> Space:
    if not name or not location:
        raise ValidationFailed("Name and location are required")
    if capacity < 0 or dec(power_capacity) < 0:
        raise ValidationFailed("Capacity cannot be negative")
    dup = await db.execute(select(Space.id).where(Space.name == name))
    if dup.first() is not None:
        raise ConflictError("Space name already exists")
    s = Space(name=name, location=location, capacity=capacity, power_capacity=d3(power_capacity), status=status)
    db.add(s)
    await db.flush()
    return s


async def update_space(db: AsyncSession, space_id: str, **fields: Any) -> Space:
    s = await _space(db, space_id)
    name = fields.get("name")
    if name is not None and name != s.name:
        dup = await db.execute(select(Space.id).where(Space.name == name, Space.id != s.id))
        if dup.first() is not None:
            raise ConflictError("Space name already exists")
    for key in ("name", "location", "capacity", "power_capacity", "status"):
        value = fields.get(key)
        if value is None:
            continue
        if key in ("capacity", "power_capacity") and dec(value) < 0:
            raise ValidationFailed("Capacity cannot be negative")
        setattr(s, key, d3(value) if key == "power_capacity" else value)
    s.updated_at = utcnow()
    await db.flush()
    return s


async def delete_space(db: AsyncSession, space_id: str) -> None:
    s = await _space(db, space_id)
    used = await db.execute(select(func.count(Miner.id)).where(Miner.space_id == s.id, Miner.is_deleted.is_(False)))
    if (used.scalar() or 0) > 0:
        raise ConflictError("Cannot delete a space that still hosts miners")
    # retired miners keep their history but lose the location
    await db.execute(update(Miner).where(Miner.space_id == s.id).values(space_id=None))
    await db.delete(s)
    await db.flush()


# =============================================================================
# Miners
# =============================================================================
SORT_FIELDS = {
    "name": Miner.name,
    "status": Miner.status,
    "createdAt": Miner.created_at,
    "model": Hardware.model,
    "hashRate": Hardware.hash_rate,
    "powerUsage": Hardware.power_usage,
}


def serialize_miner(m: Miner) -> Dict[str, Any]:
    loaded = m.__dict__
    data = {
        "id": m.id,
        "name": m.name,
        "userId": m.user_id,
        "spaceId": m.space_id,
        "hardwareId": m.hardware_id,
        "status": m.status.value,
        "ratePerKwh": float(m.rate_per_kwh) if m.rate_per_kwh is not None else None,
        "createdAt": iso(m.created_at),
        "updatedAt": iso(m.updated_at),
    }
    if loaded.get("user") is not None:
        data["user"] = {
            "id": m.user.id,
            "name": m.user.name,
            "email": m.user.email,
            "poolSubaccountName": m.user.pool_subaccount_name,
        }
    if loaded.get("space") is not None:
        data["space"] = {"id": m.space.id, "name": m.space.name, "location": m.space.location}
    if loaded.get("hardware") is not None:
        data["hardware"] = serialize_hardware(m.hardware)
    return data


def _with_relations(stmt):
    return stmt.options(selectinload(Miner.user), selectinload(Miner.space), selectinload(Miner.hardware))


async def _miner(db: AsyncSession, miner_id: str) -> Miner:
    q = await db.execute(_with_relations(select(Miner)).where(Miner.id == miner_id, Miner.is_deleted.is_(False)))
    m = q.scalar_one_or_none()
    if m is None:
        raise NotFoundError("Miner not found")
    return m


async def _name_taken(db: AsyncSession, name: str, user_id: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(Miner.id).where(Miner.name == name, Miner.user_id == user_id)
    if exclude_id:
        stmt = stmt.where(Miner.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


def _positive_rate(rate: Any) -> Decimal:
    if rate is None or rate == "":
        raise ValidationFailed("rate_per_kwh is required")
    try:
        value = dec(rate)
    except ArithmeticError:
        raise ValidationFailed("rate_per_kwh must be a positive number")
    if value <= 0:
        raise ValidationFailed("rate_per_kwh must be a positive number")
    return value


async def list_miners(
    db: AsyncSession,
    status: Optional[MinerStatus] = None,
    space_id: Optional[str] = None,
    user_id: Optional[str] = None,
    sort_by: str = "createdAt",
    order: str = "desc",
) -> List[Dict[str, Any]]:
    stmt = _with_relations(select(Miner)).join(Hardware, Hardware.id == Miner.hardware_id).where(
        Miner.is_deleted.is_(False)
    )
    if status is not None:
        stmt = stmt.where(Miner.status == status)
    if space_id:
        stmt = stmt.where(Miner.space_id == space_id)
    if user_id:
        stmt = stmt.where(Miner.user_id == user_id)
    column = SORT_FIELDS.get(sort_by, Miner.created_at)
    stmt = stmt.order_by(column.asc() if order == "asc" else column.desc(), Miner.id.asc())
    q = await db.execute(stmt)
    return [serialize_miner(m) for m in q.scalars().all()]


async def get_miner(db: AsyncSession, miner_id: str) -> Dict[str, Any]:
    return serialize_miner(await _miner(db, miner_id))


async def create_miner(
    db: AsyncSession,
    admin: User,
    name: str,
    hardware_id: str,
    user_id: str,
    space_id: str,
    rate_per_kwh: Any,
    status: Optional[MinerStatus] = None,
) -> Miner:
    if not name or not hardware_id or not user_id or not space_id:
        raise ValidationFailed("Missing required fields: name, hardwareId, userId, spaceId")
    rate = _positive_rate(rate_per_kwh)

    user = await db.get(User, user_id)
    if user is None or user.is_deleted:
        raise NotFoundError("User not found")
    space = await db.get(Space, space_id)
    if space is None:
        raise NotFoundError("Space not found")
    hardware = await db.get(Hardware, hardware_id)
    if hardware is None or hardware.is_deleted:
        raise NotFoundError("Hardware not found")
    if await _name_taken(db, name, user_id):
        raise ConflictError("A miner with this name already exists for this user")
    if (hardware.quantity or 0) <= 0:
        raise ConflictError("No available hardware units of this model")

    m = Miner(
        name=name,
        user_id=user.id,
        space_id=space.id,
        hardware_id=hardware.id,
        status=status or MinerStatus.DEPLOYMENT_IN_PROGRESS,
        rate_per_kwh=rate,
        user=user,
        space=space,
        hardware=hardware,
    )
    db.add(m)
    await db.flush()
    db.add(MinerRateHistory(miner_id=m.id, rate_per_kwh=rate, effective_from=utcnow(), created_by=admin.id))
    hardware.quantity -= 1
    await db.flush()
    log.info("[Fleet] miner %s (%s) deployed for user=%s", m.name, hardware.model, user.id)
    return m


async def update_miner(
    db: AsyncSession,
    admin: User,
    miner_id: str,
    name: Optional[str] = None,
    hardware_id: Optional[str] = None,
    user_id: Optional[str] = None,
    space_id: Optional[str] = None,
    status: Optional[MinerStatus] = None,
    rate_per_kwh: Any = None,
) -> Miner:
    m = await _miner(db, miner_id)
    if all(v is None for v in (name, hardware_id, user_id, space_id, status, rate_per_kwh)):
        raise ValidationFailed("No fields to update")

    owner = user_id or m.user_id
    new_name = name or m.name
    if user_id is not None and user_id != m.user_id:
        user = await db.get(User, user_id)
        if user is None or user.is_deleted:
            raise NotFoundError("User not found")
        m.user = user
    if (name is not None or user_id is not None) and await _name_taken(db, new_name, owner, exclude_id=m.id):
        raise ConflictError("A miner with this name already exists for this user")
    m.name = new_name

    if space_id is not None and space_id != m.space_id:
        m.space = await _space(db, space_id)
    if hardware_id is not None and hardware_id != m.hardware_id:
        new_hw = await db.get(Hardware, hardware_id)
        if new_hw is None or new_hw.is_deleted:
            raise NotFoundError("Hardware not found")
        if (new_hw.quantity or 0) <= 0:
            raise ConflictError("No available hardware units of this model")
        m.hardware.quantity += 1
        new_hw.quantity -= 1
        m.hardware = new_hw
    if status is not None:
        m.status = status
    if rate_per_kwh is not None:
        rate = _positive_rate(rate_per_kwh)
        if m.rate_per_kwh is None or dec(m.rate_per_kwh) != rate:
            m.rate_per_kwh = rate
            db.add(MinerRateHistory(miner_id=m.id, rate_per_kwh=rate, effective_from=utcnow(), created_by=admin.id))

    m.updated_at = utcnow()
    await db.flush()
    return m


async def delete_miner(db: AsyncSession, miner_id: str) -> None:
    """Soft delete; the hardware unit returns to stock."""
    m = await _miner(db, miner_id)
    m.is_deleted = True
    m.updated_at = utcnow()
    if m.hardware is not None:
        m.hardware.quantity += 1
    await db.flush()


async def bulk_delete(db: AsyncSession, miner_ids: List[str]) -> int:
    if not miner_ids:
        raise ValidationFailed("minerIds must be a non-empty array")
    q = await db.execute(
        _with_relations(select(Miner)).where(Miner.id.in_(miner_ids), Miner.is_deleted.is_(False))
    )
    miners = q.scalars().all()
    if len(miners) != len(set(miner_ids)):
        raise NotFoundError("One or more miners not found")
    for m in miners:
        m.is_deleted = True
        m.updated_at = utcnow()
        m.hardware.quantity += 1
    await db.flush()
    return len(miners)


async def bulk_update(
    db: AsyncSession,
    admin: User,
    miner_ids: List[str],
    status: Optional[MinerStatus] = None,
    space_id: Optional[str] = None,
    rate_per_kwh: Any = None,
) -> int:
    if not miner_ids:
        raise ValidationFailed("minerIds must be a non-empty array")
    if status is None and space_id is None and rate_per_kwh is None:
        raise ValidationFailed("updates object must contain at least one field")
    rate = _positive_rate(rate_per_kwh) if rate_per_kwh is not None else None

    q = await db.execute(select(Miner).where(Miner.id.in_(miner_ids), Miner.is_deleted.is_(False)))
    miners = q.scalars().all()
    if len(miners) != len(set(miner_ids)):
        raise NotFoundError("One or more miners not found")
    if space_id is not None:
        await _space(db, space_id)

    now = utcnow()
    for m in miners:
        if status is not None:
            m.status = status
        if space_id is not None:
            m.space_id = space_id
        if rate is not None and (m.rate_per_kwh is None or dec(m.rate_per_kwh) != rate):
            m.rate_per_kwh = rate
            db.add(MinerRateHistory(miner_id=m.id, rate_per_kwh=rate, effective_from=now, created_by=admin.id))
        m.updated_at = now
    await db.flush()
    return len(miners)


async def rate_history(db: AsyncSession, miner_id: str) -> List[Dict[str, Any]]:
    await _miner(db, miner_id)
    q = await db.execute(
        select(MinerRateHistory)
        .where(MinerRateHistory.miner_id == miner_id)
        .order_by(MinerRateHistory.effective_from.desc())
    )
    return [
        {"id": r.id, "ratePerKwh": float(r.rate_per_kwh), "effectiveFrom": iso(r.effective_from), "createdBy": r.created_by}
        for r in q.scalars().all()
    ]


async def miner_summary(db: AsyncSession, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Counts by status plus total hash rate / power of non-inactive miners."""
    stmt = (
        select(Miner.status, func.count(Miner.id), func.coalesce(func.sum(Hardware.hash_rate), 0),
               func.coalesce(func.sum(Hardware.power_usage), 0))
        .join(Hardware, Hardware.id == Miner.hardware_id)
        .where(Miner.is_deleted.is_(False))
        .group_by(Miner.status)
    )
    if user_id:
        stmt = stmt.where(Miner.user_id == user_id)
    by_status: Dict[str, int] = {s.value: 0 for s in MinerStatus}
    hash_rate = Decimal("0")
    power = Decimal("0")
    for status, count, hr, pw in (await db.execute(stmt)).all():
        by_status[status.value] = int(count)
        if status != MinerStatus.INACTIVE:
            hash_rate += dec(hr)
            power += dec(pw)
    return {
        "total": sum(by_status.values()),
        "byStatus": by_status,
        "totalHashRate": float(d2(hash_rate)),
        "totalPowerKw": float(d3(power)),
    }


# =============================================================================
# Electricity rates / daily costs
# =============================================================================
async def list_rates(db: AsyncSession) -> List[Dict[str, Any]]:
    q = await db.execute(select(ElectricityRate).order_by(ElectricityRate.valid_from.desc()))
    return [
        {"id": r.id, "ratePerKwh": float(r.rate_per_kwh), "validFrom": iso(r.valid_from), "createdAt": iso(r.created_at)}
        for r in q.scalars().all()
    ]


async def create_rate(db: AsyncSession, rate_per_kwh: Any, valid_from: Optional[datetime] = None) -> ElectricityRate:
    rate = _positive_rate(rate_per_kwh)
    row = ElectricityRate(rate_per_kwh=rate, valid_from=naive_utc(valid_from) or utcnow())
    db.add(row)
    await db.flush()
    log.info("[Fleet] global electricity rate %s valid from %s", rate, row.valid_from)
    return row


async def daily_costs(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    q = await db.execute(
        select(Miner)
        .options(selectinload(Miner.hardware))
        .join(Hardware, Hardware.id == Miner.hardware_id)
        .where(Miner.user_id == user_id, Miner.is_deleted.is_(False), Hardware.is_deleted.is_(False))
        .order_by(Miner.name.asc())
    )
    miners = q.scalars().all()
    rate_row = await accrual.latest_global_rate(db, now)
    global_rate = dec(rate_row.rate_per_kwh) if rate_row else Decimal("0")
    history = await accrual.effective_miner_rates(db, [m.id for m in miners], now)

    rows = []
    total_cost = Decimal("0")
    total_power = Decimal("0")
    for m in miners:
        power = dec(m.hardware.power_usage)
        rate = accrual.miner_rate(m.id, m.rate_per_kwh, history, global_rate)
        cost = Decimal("0") if m.status == MinerStatus.INACTIVE else accrual.daily_cost(power, rate)
        if m.status != MinerStatus.INACTIVE:
            total_power += power
        total_cost += cost
        rows.append({
            "minerId": m.id,
            "name": m.name,
            "model": m.hardware.model,
            "status": m.status.value,
            "powerUsage": float(d3(power)),
            "ratePerKwh": float(rate),
            "dailyCost": money(cost),
        })

    return {
        "miners": rows,
        "globalRatePerKwh": float(global_rate),
        "totalPowerKw": float(d3(total_power)),
        "totalDailyCost": money(total_cost),
        "activeMiners": sum(1 for m in miners if m.status != MinerStatus.INACTIVE),
    }
