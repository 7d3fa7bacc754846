# tests/test_auth_routes.py

import pyotp
from sqlalchemy import select

from conftest import PASSWORD, auth_cookies, make_user
from hostbill.models import ActivityType, UserActivity

API = "/api"


async def _activity(db, user_id):
    q = await db.execute(select(UserActivity.type).where(UserActivity.user_id == user_id))
    return list(q.scalars().all())


async def test_login_sets_cookies_and_check_sees_user(db, client):
    user = await make_user(db)
    await db.commit()

    resp = await client.post(f"{API}/auth/login", json={"email": user.email, "password": PASSWORD})

    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == user.email
    assert {"token", "refresh_token"} <= set(resp.cookies.keys())

    check = await client.get(f"{API}/auth/check")
    assert check.status_code == 200
    assert check.json()["user"]["id"] == user.id
    assert await _activity(db, user.id) == [ActivityType.LOGIN]


async def test_wrong_password_is_401_and_recorded(db, client):
    user = await make_user(db)
    await db.commit()

    resp = await client.post(f"{API}/auth/login", json={"email": user.email, "password": "nope"})

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid email or password"
    assert await _activity(db, user.id) == [ActivityType.LOGIN_FAILED]


async def test_two_factor_login_needs_second_step(db, client):
    secret = pyotp.random_base32()
    user = await make_user(db, two_factor_enabled=True, two_factor_secret=secret)
    await db.commit()

    first = await client.post(f"{API}/auth/login", json={"email": user.email, "password": PASSWORD})
    assert first.json() == {"requires2FA": True, "userId": user.id}
    assert "token" not in first.cookies

    bad = await client.post(f"{API}/auth/2fa/validate", json={"userId": user.id, "code": "abcdef"})
    assert bad.status_code == 401
    assert await _activity(db, user.id) == [ActivityType.LOGIN_FAILED]

    ok = await client.post(f"{API}/auth/2fa/validate", json={"userId": user.id, "code": pyotp.TOTP(secret).now()})
    assert ok.status_code == 200
    assert "token" in ok.cookies


async def test_two_factor_setup_then_verify_returns_backup_codes(db, client):
    user = await make_user(db)
    await db.commit()
    client.cookies.update(auth_cookies(user))

    setup = await client.post(f"{API}/auth/2fa/setup")
    secret = setup.json()["secret"]
    assert setup.json()["otpauthUrl"].startswith("otpauth://totp/")

    verify = await client.post(f"{API}/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()})

    assert verify.status_code == 200
    assert len(verify.json()["backupCodes"]) == 8
    assert ActivityType.TWO_FACTOR_ENABLED in await _activity(db, user.id)


async def test_protected_routes_need_a_token(client):
    assert (await client.get(f"{API}/auth/check")).status_code == 401
    assert (await client.post(f"{API}/auth/refresh")).status_code == 401

    client.cookies.set("token", "garbage")
    assert (await client.get(f"{API}/user/profile")).status_code == 401


async def test_forgot_password_never_reveals_accounts(db, client, sent_mail):
    user = await make_user(db)
    await db.commit()

    unknown = await client.post(f"{API}/auth/forgot-password", json={"email": "ghost@example.com"})
    known = await client.post(f"{API}/auth/forgot-password", json={"email": user.email})

    assert unknown.status_code == known.status_code == 200
    assert unknown.json() == known.json()
    assert [m["to"] for m in sent_mail] == [user.email]


async def test_logout_clears_cookies(client):
    resp = await client.post(f"{API}/auth/logout")

    assert resp.status_code == 200
    cookies = " ".join(resp.headers.get_list("set-cookie"))
    assert "token=" in cookies
    assert "refresh_token=" in cookies
