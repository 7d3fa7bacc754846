# 📂 backend/hostbill/services/audit.py — audit log writes and reads
# =============================================================================
# Every administrative mutation (invoices, payments, recurring templates,
# pricing) leaves one AuditLog row. Rows are only ever inserted.
# =============================================================================

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AuditAction, AuditLog
from ..utils import iso, page_window, pagination


def _client_meta(request: Optional[Request]) -> tuple[Optional[str], Optional[str]]:
    if request is None:
        return None, None
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return ip, request.headers.get("user-agent")


async def record(
    db: AsyncSession,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    user_id: Optional[str],
    description: str,
    changes: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    ip, ua = _client_meta(request)
    row = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        description=description,
        changes=changes,
        ip_address=ip,
        user_agent=ua,
    )
    db.add(row)
    await db.flush()
    return row


def serialize(row: AuditLog) -> Dict[str, Any]:
    return {
        "id": row.id,
        "action": row.action.value,
        "entityType": row.entity_type,
        "entityId": row.entity_id,
        "userId": row.user_id,
        "description": row.description,
        "changes": row.changes,
        "ipAddress": row.ip_address,
        "createdAt": iso(row.created_at),
    }


async def list_for_entity(db: AsyncSession, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
    q = await db.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.desc())
    )
    return [serialize(r) for r in q.scalars().all()]


async def list_logs(
    db: AsyncSession,
    action: Optional[AuditAction] = None,
    entity_type: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    conds = []
    if action is not None:
        conds.append(AuditLog.action == action)
    if entity_type:
        conds.append(AuditLog.entity_type == entity_type)
    if user_id:
        conds.append(AuditLog.user_id == user_id)

    offset, limit_ = page_window(page, limit)
    total = (await db.execute(select(func.count()).select_from(AuditLog).where(*conds))).scalar() or 0
    q = await db.execute(
        select(AuditLog).where(*conds).order_by(AuditLog.created_at.desc()).offset(offset).limit(limit_)
    )
    return {
        "logs": [serialize(r) for r in q.scalars().all()],
        "pagination": pagination(page, limit, int(total)),
    }
