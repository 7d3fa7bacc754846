# 📂 backend/hostbill/services/groups.py — customer groups (relationship managers)
# -----------------------------------------------------------------------------
# A group bundles pool sub-accounts handled by one relationship manager; its
# e-mail is CC'd on invoice mail (see emailer.build_cc_list). A sub-account
# belongs to at most one group.
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..models import Group, GroupSubaccount, User
from ..utils import iso, utcnow


def serialize(g: Group, subaccounts: Optional[List[str]] = None) -> Dict[str, Any]:
    data = {
        "id": g.id,
        "name": g.name,
        "relationshipManager": g.relationship_manager,
        "email": g.email,
        "description": g.description,
        "createdAt": iso(g.created_at),
        "updatedAt": iso(g.updated_at),
    }
    if subaccounts is not None:
        data["subaccounts"] = subaccounts
    return data


async def _get(db: AsyncSession, group_id: str) -> Group:
    g = await db.get(Group, group_id)
    if g is None:
        raise NotFoundError("Group not found")
    return g


async def _name_taken(db: AsyncSession, name: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(Group.id).where(Group.name == name)
    if exclude_id:
        stmt = stmt.where(Group.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


async def _subaccounts_by_group(db: AsyncSession) -> Dict[str, List[str]]:
    q = await db.execute(select(GroupSubaccount.group_id, GroupSubaccount.subaccount_name).order_by(GroupSubaccount.subaccount_name))
    out: Dict[str, List[str]] = {}
    for gid, name in q.all():
        out.setdefault(gid, []).append(name)
    return out


async def list_groups(db: AsyncSession) -> List[Dict[str, Any]]:
    members = await _subaccounts_by_group(db)
    q = await db.execute(select(Group).order_by(Group.name.asc()))
    return [serialize(g, members.get(g.id, [])) for g in q.scalars().all()]


async def get_group(db: AsyncSession, group_id: str) -> Dict[str, Any]:
    g = await _get(db, group_id)
    q = await db.execute(
        select(GroupSubaccount.subaccount_name).where(GroupSubaccount.group_id == g.id).order_by(GroupSubaccount.subaccount_name)
    )
    return serialize(g, list(q.scalars().all()))


async def create_group(
    db: AsyncSession,
    admin: User,
    name: str,
    relationship_manager: Optional[str] = None,
    email: Optional[str] = None,
    description: Optional[str] = None,
) -> Group:
    if not name or not name.strip():
        raise ValidationFailed("Group name is required")
    if await _name_taken(db, name.strip()):
        raise ConflictError("Group name already exists")
    g = Group(
        name=name.strip(),
        relationship_manager=relationship_manager,
        email=email,
        description=description,
        created_by=admin.id,
    )
    db.add(g)
    await db.flush()
    return g


async def update_group(db: AsyncSession, group_id: str, **fields: Any) -> Group:
    g = await _get(db, group_id)
    name = fields.get("name")
    if name is not None:
        if not name.strip():
            raise ValidationFailed("Group name is required")
        if await _name_taken(db, name.strip(), exclude_id=g.id):
            raise ConflictError("Group name already exists")
        g.name = name.strip()
    for key in ("relationship_manager", "email", "description"):
        if key in fields and fields[key] is not None:
            setattr(g, key, fields[key])
    g.updated_at = utcnow()
    await db.flush()
    return g


async def delete_group(db: AsyncSession, group_id: str) -> None:
    g = await _get(db, group_id)
    await db.execute(delete(GroupSubaccount).where(GroupSubaccount.group_id == g.id))
    await db.delete(g)
    await db.flush()


# -----------------------------------------------------------------------------
# Sub-accounts
# -----------------------------------------------------------------------------
async def group_for_subaccount(db: AsyncSession, subaccount_name: str) -> Optional[Group]:
    q = await db.execute(
        select(Group)
        .join(GroupSubaccount, GroupSubaccount.group_id == Group.id)
        .where(GroupSubaccount.subaccount_name == subaccount_name)
        .limit(1)
    )
    return q.scalar_one_or_none()


async def add_subaccounts(db: AsyncSession, admin: User, group_id: str, names: List[str]) -> Dict[str, Any]:
    """Adds each name not yet grouped; names owned by another group are reported, not moved."""
    g = await _get(db, group_id)
    cleaned = [n.strip() for n in names or [] if n and n.strip()]
    if not cleaned:
        raise ValidationFailed("At least one sub-account name is required")

    q = await db.execute(
        select(GroupSubaccount.subaccount_name, GroupSubaccount.group_id).where(
            GroupSubaccount.subaccount_name.in_(cleaned)
        )
    )
    owners = dict(q.all())
    added: List[str] = []
    skipped: List[Dict[str, str]] = []
    for name in dict.fromkeys(cleaned):
        owner = owners.get(name)
        if owner == g.id:
            skipped.append({"subaccountName": name, "reason": "Already in this group"})
        elif owner is not None:
            skipped.append({"subaccountName": name, "reason": "Assigned to another group"})
        else:
            db.add(GroupSubaccount(group_id=g.id, subaccount_name=name, added_by=admin.id))
            added.append(name)
    await db.flush()
    return {"added": added, "skipped": skipped}


async def remove_subaccount(db: AsyncSession, group_id: str, name: str) -> None:
    g = await _get(db, group_id)
    res = await db.execute(
        delete(GroupSubaccount).where(GroupSubaccount.group_id == g.id, GroupSubaccount.subaccount_name == name)
    )
    if not res.rowcount:
        raise NotFoundError("Sub-account not found in this group")
