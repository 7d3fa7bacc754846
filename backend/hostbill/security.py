# 📂 backend/hostbill/security.py — passwords, JWT cookies, 2FA, role checks
# -----------------------------------------------------------------------------
# Purpose:
#   • bcrypt password hashing.
#   • HS256 JWTs (PyJWT): access token (15 min) and refresh token (7 days),
#     payload {"userId", "role", "type"}; stored in http-only cookies
#     `token` and `refresh_token`.
#   • TOTP two-factor auth (pyotp) and single-use backup codes.
#   • FastAPI dependencies:
#       - get_current_user     - cookie `token` (or Authorization: Bearer).
#       - require_admin        - ADMIN / SUPER_ADMIN, else 403.
#       - require_super_admin  - SUPER_ADMIN, else 403.
#       - require_cron_secret  - Authorization: Bearer <CRON_SECRET>, else 401.
# -----------------------------------------------------------------------------

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
import jwt
import pyotp
from fastapi import Cookie, Depends, Header, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import get_session
from .models import User, UserRole
from .utils import random_code

settings = get_settings()

ACCESS_COOKIE = "token"
REFRESH_COOKIE = "refresh_token"

# -----------------------------------------------------------------------------
# Passwords
# -----------------------------------------------------------------------------
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


# -----------------------------------------------------------------------------
# JWT
# -----------------------------------------------------------------------------
def _encode(user_id: str, role: str, token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "role": role,
        "type": token_type,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_access_token(user_id: str, role: str) -> str:
    return _encode(user_id, role, "access", timedelta(minutes=settings.ACCESS_TOKEN_MINUTES))


def create_refresh_token(user_id: str, role: str) -> str:
    return _encode(user_id, role, "refresh", timedelta(days=settings.REFRESH_TOKEN_DAYS))


def decode_token(token: str, expected_type: str = "access") -> Dict[str, Any]:
    """Decodes and validates a token; any failure is a 401."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != expected_type or not payload.get("userId"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def set_auth_cookies(response: Response, user: User) -> Tuple[str, str]:
    """Issues both tokens and stores them as http-only, samesite=strict cookies."""
    role = user.role.value
    access = create_access_token(user.id, role)
    refresh = create_refresh_token(user.id, role)
    response.set_cookie(
        ACCESS_COOKIE, access,
        max_age=settings.ACCESS_COOKIE_MAX_AGE, httponly=True,
        secure=settings.COOKIE_SECURE, samesite="strict", path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE, refresh,
        max_age=settings.REFRESH_COOKIE_MAX_AGE, httponly=True,
        secure=settings.COOKIE_SECURE, samesite="strict", path="/",
    )
    return access, refresh


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


# -----------------------------------------------------------------------------
# Two-factor auth (TOTP)
# -----------------------------------------------------------------------------
BACKUP_CODES_COUNT = 8


def new_totp_secret() -> str:
    return pyotp.random_base32()


def totp_uri(secret: str, email: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=settings.TOTP_ISSUER)


def verify_totp(secret: Optional[str], code: str) -> bool:
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(code.strip(), valid_window=1)


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


def new_backup_codes() -> Tuple[List[str], List[str]]:
    """Returns (plain codes shown once, hashes to store)."""
    plain = [random_code(8) for _ in range(BACKUP_CODES_COUNT)]
    return plain, [_hash_code(c) for c in plain]


def consume_backup_code(user: User, code: str) -> bool:
    """Removes a matching backup code from the user; True when one matched."""
    hashes = list(user.backup_codes or [])
    h = _hash_code(code)
    for stored in hashes:
        if hmac.compare_digest(stored, h):
            hashes.remove(stored)
            user.backup_codes = hashes
            return True
    return False


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
async def get_current_user(
    db: AsyncSession = Depends(get_session),
    token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None),
) -> User:
    """
    Resolves the signed-in user from the `token` cookie, falling back to an
    `Authorization: Bearer` header (API clients).
    """
    raw = token
    if not raw and authorization and authorization.lower().startswith("bearer "):
        raw = authorization[7:].strip()
    if not raw:
        raise HTTPException(status_code=401, detail="Unauthorized")

    payload = decode_token(raw, "access")
    q = await db.execute(select(User).where(User.id == payload["userId"]))
    user = q.scalar_one_or_none()
    if not user or user.is_deleted:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in (UserRole.ADMIN, UserRole.SUPER_ADMIN):
        raise HTTPException(status_code=403, detail="Forbidden: admin access required")
    return user


async def require_super_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden: super admin access required")
    return user


async def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Cron endpoints accept only `Authorization: Bearer <CRON_SECRET>`."""
    secret = settings.CRON_SECRET
    expected = f"Bearer {secret}" if secret else None
    if not expected or not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
