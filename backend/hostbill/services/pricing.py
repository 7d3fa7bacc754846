# 📂 backend/hostbill/services/pricing.py — per-customer default unit price
# -----------------------------------------------------------------------------
# A CustomerPricingConfig is valid on [effective_from, effective_to). Creating
# a new config closes the customer's open ones at the new effective_from, so
# at most one config is open per customer. Archiving closes a config now.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..models import AuditAction, CustomerPricingConfig, User
from ..utils import d2, dec, iso, money, naive_utc, utcnow
from . import audit

ENTITY = "CustomerPricingConfig"


def serialize(c: CustomerPricingConfig) -> Dict[str, Any]:
    return {
        "id": c.id,
        "userId": c.user_id,
        "defaultUnitPrice": money(c.default_unit_price),
        "effectiveFrom": iso(c.effective_from),
        "effectiveTo": iso(c.effective_to),
        "createdBy": c.created_by,
        "updatedBy": c.updated_by,
        "createdAt": iso(c.created_at),
        "updatedAt": iso(c.updated_at),
    }


async def effective_price(db: AsyncSession, user_id: str, on_date: datetime) -> Optional[Decimal]:
    q = await db.execute(
        select(CustomerPricingConfig.default_unit_price)
        .where(
            CustomerPricingConfig.user_id == user_id,
            CustomerPricingConfig.effective_from <= on_date,
            or_(CustomerPricingConfig.effective_to.is_(None), CustomerPricingConfig.effective_to > on_date),
        )
        .order_by(CustomerPricingConfig.effective_from.desc())
        .limit(1)
    )
    price = q.scalar_one_or_none()
    return d2(price) if price is not None else None


async def list_configs(db: AsyncSession, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(CustomerPricingConfig)
    if user_id:
        stmt = stmt.where(CustomerPricingConfig.user_id == user_id)
    q = await db.execute(
        stmt.order_by(CustomerPricingConfig.user_id, CustomerPricingConfig.effective_from.desc())
    )
    return [serialize(c) for c in q.scalars().all()]


async def _get(db: AsyncSession, config_id: str) -> CustomerPricingConfig:
    c = await db.get(CustomerPricingConfig, config_id)
    if c is None:
        raise NotFoundError("Pricing config not found")
    return c


async def create_config(
    db: AsyncSession,
    admin: User,
    user_id: str,
    default_unit_price: Any,
    effective_from: datetime,
    effective_to: Optional[datetime] = None,
    request: Optional[Request] = None,
) -> CustomerPricingConfig:
    if dec(default_unit_price) <= 0:
        raise ValidationFailed("Default unit price must be greater than 0")
    effective_from = naive_utc(effective_from)
    effective_to = naive_utc(effective_to)
    if effective_to is not None and effective_to <= effective_from:
        raise ValidationFailed("effectiveTo must be after effectiveFrom")

    customer = await db.get(User, user_id)
    if customer is None or customer.is_deleted:
        raise NotFoundError("Customer not found")

    dup = await db.execute(
        select(CustomerPricingConfig.id).where(
            CustomerPricingConfig.user_id == user_id,
            CustomerPricingConfig.effective_from == effective_from,
        )
    )
    if dup.first() is not None:
        raise ConflictError("A pricing config with this effective date already exists")

    q = await db.execute(
        select(CustomerPricingConfig).where(
            CustomerPricingConfig.user_id == user_id,
            CustomerPricingConfig.effective_to.is_(None),
            CustomerPricingConfig.effective_from < effective_from,
        )
    )
    closed = []
    for open_cfg in q.scalars().all():
        open_cfg.effective_to = effective_from
        open_cfg.updated_by = admin.id
        closed.append(open_cfg.id)

    cfg = CustomerPricingConfig(
        user_id=user_id,
        default_unit_price=d2(default_unit_price),
        effective_from=effective_from,
        effective_to=effective_to,
        created_by=admin.id,
    )
    db.add(cfg)
    await db.flush()

    await audit.record(
        db,
        AuditAction.PRICING_CONFIG_CREATED,
        ENTITY,
        cfg.id,
        admin.id,
        f"Pricing ${d2(default_unit_price)}/miner from {effective_from:%Y-%m-%d} for {customer.name}",
        changes={
            "defaultUnitPrice": str(d2(default_unit_price)),
            "effectiveFrom": iso(effective_from),
            "effectiveTo": iso(effective_to),
            "closedConfigIds": closed,
        },
        request=request,
    )
    return cfg


async def update_config(
    db: AsyncSession,
    admin: User,
    config_id: str,
    default_unit_price: Any = None,
    effective_to: Optional[datetime] = None,
    request: Optional[Request] = None,
) -> CustomerPricingConfig:
    cfg = await _get(db, config_id)
    changes: Dict[str, Any] = {}
    if default_unit_price is not None:
        if dec(default_unit_price) <= 0:
            raise ValidationFailed("Default unit price must be greater than 0")
        changes["defaultUnitPrice"] = {"from": str(d2(cfg.default_unit_price)), "to": str(d2(default_unit_price))}
        cfg.default_unit_price = d2(default_unit_price)
    if effective_to is not None:
        effective_to = naive_utc(effective_to)
        if effective_to <= cfg.effective_from:
            raise ValidationFailed("effectiveTo must be after effectiveFrom")
        changes["effectiveTo"] = {"from": iso(cfg.effective_to), "to": iso(effective_to)}
        cfg.effective_to = effective_to
    if not changes:
        return cfg

    cfg.updated_by = admin.id
    cfg.updated_at = utcnow()
    await db.flush()
    await audit.record(
        db, AuditAction.PRICING_CONFIG_UPDATED, ENTITY, cfg.id, admin.id,
        "Pricing config updated", changes=changes, request=request,
    )
    return cfg


async def archive_config(db: AsyncSession, admin: User, config_id: str, request: Optional[Request] = None) -> CustomerPricingConfig:
    """Closes the config at the current time (history is kept)."""
    cfg = await _get(db, config_id)
    now = utcnow()
    previous = cfg.effective_to
    if cfg.effective_to is None or cfg.effective_to > now:
        cfg.effective_to = max(now, cfg.effective_from)
    cfg.updated_by = admin.id
    await db.flush()
    await audit.record(
        db, AuditAction.PRICING_CONFIG_ARCHIVED, ENTITY, cfg.id, admin.id,
        "Pricing config archived",
        changes={"effectiveTo": {"from": iso(previous), "to": iso(cfg.effective_to)}},
        request=request,
    )
    return cfg
