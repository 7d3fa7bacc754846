# 📂 backend/hostbill/services/users.py — accounts, passwords, activity
# -----------------------------------------------------------------------------
# Purpose:
#   • Admin CRUD over users (soft delete, deleted users are invisible).
#   • New accounts get a random temporary password mailed with the welcome
#     template; forgot-password mails a fresh one.
#   • authenticate() for the login route + UserActivity rows for the audit
#     of sign-ins, password changes and 2FA toggles.
#
# Rules:
#   • E-mails are stored lower-case and are unique (409).
#   • forgot_password() never reveals whether an address exists.
#   • A welcome mail that cannot be delivered does not undo the account; the
#     caller gets emailSent=False.
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..emailer import password_reset_email, send_email, welcome_email
from ..errors import ConflictError, DeliveryError, NotFoundError, ValidationFailed
from ..models import ActivityType, User, UserActivity, UserRole
from ..security import hash_password, verify_password
from ..utils import get_logger, iso, page_window, pagination, temporary_password, utcnow

log = get_logger("users")

MIN_PASSWORD_LENGTH = 8
EDITABLE_FIELDS = ("name", "phone", "company_name", "company_url", "pool_subaccount_name", "image_url")


def serialize(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "role": u.role.value,
        "phone": u.phone,
        "companyName": u.company_name,
        "companyUrl": u.company_url,
        "imageUrl": u.image_url,
        "poolSubaccountName": u.pool_subaccount_name,
        "twoFactorEnabled": bool(u.two_factor_enabled),
        "createdAt": iso(u.created_at),
        "updatedAt": iso(u.updated_at),
    }


def _norm_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


async def find_by_email(db: AsyncSession, email: str) -> Optional[User]:
    q = await db.execute(select(User).where(User.email == _norm_email(email), User.is_deleted.is_(False)))
    return q.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: str) -> User:
    u = await db.get(User, user_id)
    if u is None or u.is_deleted:
        raise NotFoundError("User not found")
    return u


async def email_available(db: AsyncSession, email: str) -> bool:
    if not _norm_email(email):
        raise ValidationFailed("Email is required")
    q = await db.execute(select(User.id).where(User.email == _norm_email(email)))
    return q.first() is None


# -----------------------------------------------------------------------------
# Activity
# -----------------------------------------------------------------------------
async def log_activity(db: AsyncSession, user_id: str, kind: ActivityType, request: Optional[Request] = None) -> None:
    ip = ua = None
    if request is not None:
        ip = request.client.host if request.client else None
        ua = request.headers.get("user-agent")
    db.add(UserActivity(user_id=user_id, type=kind, ip_address=ip, user_agent=ua))
    await db.flush()


async def recent_activity(db: AsyncSession, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    q = await db.execute(
        select(UserActivity)
        .where(UserActivity.user_id == user_id)
        .order_by(UserActivity.created_at.desc())
        .limit(limit)
    )
    return [
        {"id": a.id, "type": a.type.value, "ipAddress": a.ip_address, "userAgent": a.user_agent, "createdAt": iso(a.created_at)}
        for a in q.scalars().all()
    ]


async def authenticate(db: AsyncSession, email: str, password: str, request: Optional[Request] = None) -> Optional[User]:
    """User for valid credentials, None otherwise (a failed attempt on a known account is logged)."""
    user = await find_by_email(db, email)
    if user is None:
        return None
    if not verify_password(password, user.password_hash):
        await log_activity(db, user.id, ActivityType.LOGIN_FAILED, request)
        return None
    return user


# -----------------------------------------------------------------------------
# Admin CRUD
# -----------------------------------------------------------------------------
async def list_users(
    db: AsyncSession,
    role: Optional[UserRole] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    stmt = select(User).where(User.is_deleted.is_(False))
    if role is not None:
        stmt = stmt.where(User.role == role)
    if search:
        like = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(User.email).like(like),
                func.lower(User.name).like(like),
                func.lower(func.coalesce(User.company_name, "")).like(like),
                func.lower(func.coalesce(User.pool_subaccount_name, "")).like(like),
            )
        )
    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    offset, limit_ = page_window(page, limit)
    q = await db.execute(stmt.order_by(User.created_at.desc()).offset(offset).limit(limit_))
    return {"users": [serialize(u) for u in q.scalars().all()], "pagination": pagination(page, limit, int(total))}


async def create_user(
    db: AsyncSession,
    email: str,
    name: str,
    role: UserRole = UserRole.CLIENT,
    creator: Optional[User] = None,
    **profile: Any,
) -> Dict[str, Any]:
    email = _norm_email(email)
    if not email or not name:
        raise ValidationFailed("Email and name are required")
    if role == UserRole.SUPER_ADMIN and (creator is None or creator.role != UserRole.SUPER_ADMIN):
        raise ValidationFailed("Only a super admin can create super admins")
    if not await email_available(db, email):
        raise ConflictError("User with this email already exists")

    temp = temporary_password()
    user = User(email=email, name=name, role=role, password_hash=hash_password(temp))
    for key in EDITABLE_FIELDS:
        if profile.get(key) is not None:
            setattr(user, key, profile[key])
    db.add(user)
    await db.flush()

    subject, html = welcome_email(email, temp)
    try:
        await send_email(email, subject, html)
        sent = True
    except DeliveryError as e:
        log.warning("[Users] welcome mail to %s failed: %s", email, e.message)
        sent = False
    log.info("[Users] user %s created (%s)", email, role.value)
    return {"user": serialize(user), "emailSent": sent}


async def update_user(db: AsyncSession, user_id: str, actor: Optional[User] = None, **fields: Any) -> User:
    user = await get_user(db, user_id)
    email = fields.get("email")
    if email is not None and _norm_email(email) != user.email:
        if not await email_available(db, email):
            raise ConflictError("User with this email already exists")
        user.email = _norm_email(email)
    role = fields.get("role")
    if role is not None and role != user.role:
        if actor is None or actor.role != UserRole.SUPER_ADMIN:
            raise ValidationFailed("Only a super admin can change roles")
        user.role = role
    for key in EDITABLE_FIELDS:
        if fields.get(key) is not None:
            setattr(user, key, fields[key])
    user.updated_at = utcnow()
    await db.flush()
    return user


async def delete_user(db: AsyncSession, actor: User, user_id: str) -> None:
    user = await get_user(db, user_id)
    if user.id == actor.id:
        raise ValidationFailed("You cannot delete your own account")
    user.is_deleted = True
    user.updated_at = utcnow()
    await db.flush()
    log.info("[Users] user %s soft-deleted by %s", user.email, actor.email)


# -----------------------------------------------------------------------------
# Passwords
# -----------------------------------------------------------------------------
async def change_password(
    db: AsyncSession, user: User, current_password: str, new_password: str, request: Optional[Request] = None
) -> None:
    if not verify_password(current_password, user.password_hash):
        raise ValidationFailed("Current password is incorrect")
    if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
    user.password_hash = hash_password(new_password)
    user.updated_at = utcnow()
    await log_activity(db, user.id, ActivityType.PASSWORD_CHANGE, request)


async def forgot_password(db: AsyncSession, email: str, request: Optional[Request] = None) -> None:
    """Mails a new temporary password when the account exists. Silent otherwise."""
    user = await find_by_email(db, email)
    if user is None:
        log.info("[Users] password reset requested for unknown address")
        return
    temp = temporary_password()
    subject, html = password_reset_email(user.email, temp)
    try:
        await send_email(user.email, subject, html)
    except DeliveryError as e:
        log.warning("[Users] password reset mail to %s failed: %s", user.email, e.message)
        return
    user.password_hash = hash_password(temp)
    user.updated_at = utcnow()
    await log_activity(db, user.id, ActivityType.PASSWORD_RESET, request)
