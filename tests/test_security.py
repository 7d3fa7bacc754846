# tests/test_security.py

import hashlib
import hmac

import pyotp
import pytest
from fastapi import HTTPException

from hostbill.models import User
from hostbill.payment_gateway import verify_signature
from hostbill.security import (
    consume_backup_code,
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    new_backup_codes,
    verify_password,
    verify_totp,
)


def test_password_hash_roundtrip():
    hashed = hash_password("Secret123")
    assert hashed != "Secret123"
    assert verify_password("Secret123", hashed)
    assert not verify_password("secret123", hashed)
    assert not verify_password("Secret123", "not-a-bcrypt-hash")


def test_access_token_carries_user_and_role():
    payload = decode_token(create_access_token("u-1", "ADMIN"), "access")
    assert payload["userId"] == "u-1"
    assert payload["role"] == "ADMIN"


def test_refresh_token_is_not_accepted_as_access_token():
    token = create_refresh_token("u-1", "CLIENT")
    with pytest.raises(HTTPException) as exc:
        decode_token(token, "access")
    assert exc.value.status_code == 401


def test_garbage_token_is_401():
    with pytest.raises(HTTPException) as exc:
        decode_token("not.a.jwt")
    assert exc.value.detail == "Invalid token"


def test_totp_accepts_current_code_only():
    secret = pyotp.random_base32()
    assert verify_totp(secret, pyotp.TOTP(secret).now())
    assert not verify_totp(secret, "")
    assert not verify_totp(None, "123456")


def test_backup_codes_are_single_use():
    plain, hashes = new_backup_codes()
    user = User(email="a@example.com", name="A", password_hash="x", backup_codes=hashes)

    assert consume_backup_code(user, plain[0].lower())
    assert not consume_backup_code(user, plain[0])
    assert len(user.backup_codes) == len(plain) - 1


def test_webhook_signature_is_hex_hmac_sha256():
    body = b'{"id":"inv_1","status":"confirmed"}'
    good = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

    assert verify_signature(body, good, "whsec")
    assert verify_signature(body, good.upper(), "whsec")
    assert not verify_signature(body, good, "other")
    assert not verify_signature(body, None, "whsec")
