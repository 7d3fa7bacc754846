# 📂 backend/hostbill/auth_routes.py — sign-in, tokens, two-factor auth
# -----------------------------------------------------------------------------
# Endpoints:
#   • POST /auth/login            - e-mail + password; sets `token` / `refresh_token`
#                                   cookies, or returns {requires2FA, userId}
#   • POST /auth/2fa/validate     - second step of a 2FA login (TOTP or backup code)
#   • POST /auth/2fa/setup        - new TOTP secret + otpauth:// URI (not active yet)
#   • POST /auth/2fa/verify       - confirms the first code, enables 2FA, returns backup codes
#   • POST /auth/2fa/disable      - password (+ code) required
#   • POST /auth/refresh          - new cookie pair from the refresh cookie
#   • POST /auth/logout           - clears both cookies
#   • GET  /auth/check            - current user from the access cookie
#   • POST /auth/forgot-password  - always 200
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_session
from .models import ActivityType, User
from .schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorValidateRequest,
)
from .security import (
    REFRESH_COOKIE,
    clear_auth_cookies,
    consume_backup_code,
    decode_token,
    get_current_user,
    new_backup_codes,
    new_totp_secret,
    set_auth_cookies,
    totp_uri,
    verify_password,
    verify_totp,
)
from .services import users as users_svc
from .utils import get_logger

router = APIRouter()
log = get_logger("auth")


@router.post("/auth/login")
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
):
    user = await users_svc.authenticate(db, payload.email, payload.password, request)
    if user is None:
        await db.commit()
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if user.two_factor_enabled:
        return {"requires2FA": True, "userId": user.id}

    set_auth_cookies(response, user)
    await users_svc.log_activity(db, user.id, ActivityType.LOGIN, request)
    log.info("[Auth] %s signed in", user.email)
    return {"success": True, "user": users_svc.serialize(user)}


@router.post("/auth/2fa/validate")
async def two_factor_validate(
    payload: TwoFactorValidateRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
):
    user = await db.get(User, payload.user_id)
    if user is None or user.is_deleted or not user.two_factor_enabled:
        raise HTTPException(status_code=401, detail="Invalid 2FA request")

    ok = False
    if payload.code:
        ok = verify_totp(user.two_factor_secret, payload.code)
    elif payload.backup_code:
        ok = consume_backup_code(user, payload.backup_code)
    if not ok:
        await users_svc.log_activity(db, user.id, ActivityType.LOGIN_FAILED, request)
        await db.commit()
        raise HTTPException(status_code=401, detail="Invalid 2FA code")

    set_auth_cookies(response, user)
    await users_svc.log_activity(db, user.id, ActivityType.LOGIN, request)
    return {"success": True, "user": users_svc.serialize(user)}


@router.post("/auth/2fa/setup")
async def two_factor_setup(
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if user.two_factor_enabled:
        raise HTTPException(status_code=400, detail="Two-factor authentication is already enabled")
    secret = new_totp_secret()
    user.two_factor_secret = secret
    await db.flush()
    return {"secret": secret, "otpauthUrl": totp_uri(secret, user.email)}


@router.post("/auth/2fa/verify")
async def two_factor_verify(
    payload: TwoFactorCodeRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if not user.two_factor_secret:
        raise HTTPException(status_code=400, detail="Two-factor setup has not been started")
    if not verify_totp(user.two_factor_secret, payload.code):
        raise HTTPException(status_code=400, detail="Invalid 2FA code")

    plain, hashes = new_backup_codes()
    user.two_factor_enabled = True
    user.backup_codes = hashes
    await users_svc.log_activity(db, user.id, ActivityType.TWO_FACTOR_ENABLED, request)
    return {"success": True, "backupCodes": plain}


@router.post("/auth/2fa/disable")
async def two_factor_disable(
    payload: TwoFactorDisableRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if not user.two_factor_enabled:
        raise HTTPException(status_code=400, detail="Two-factor authentication is not enabled")
    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Password is incorrect")
    if not payload.code or not (
        verify_totp(user.two_factor_secret, payload.code) or consume_backup_code(user, payload.code)
    ):
        raise HTTPException(status_code=400, detail="Invalid 2FA code")

    user.two_factor_enabled = False
    user.two_factor_secret = None
    user.backup_codes = None
    await users_svc.log_activity(db, user.id, ActivityType.TWO_FACTOR_DISABLED, request)
    return {"success": True}


@router.post("/auth/refresh")
async def refresh(
    response: Response,
    db: AsyncSession = Depends(get_session),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    if not refresh_token:
        raise HTTPException(status_code=401, detail="Refresh token missing")
    payload = decode_token(refresh_token, "refresh")
    user = await db.get(User, payload["userId"])
    if user is None or user.is_deleted:
        raise HTTPException(status_code=401, detail="Unauthorized")
    set_auth_cookies(response, user)
    return {"success": True}


@router.post("/auth/logout")
async def logout(response: Response):
    clear_auth_cookies(response)
    return {"success": True}


@router.get("/auth/check")
async def check(user: User = Depends(get_current_user)):
    return {"authenticated": True, "user": users_svc.serialize(user)}


@router.post("/auth/forgot-password")
async def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
):
    await users_svc.forgot_password(db, payload.email, request)
    return {"success": True, "message": "If the account exists, a new password has been sent"}
