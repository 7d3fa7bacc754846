# tests/test_users_groups.py

import pytest

from conftest import PASSWORD, make_admin, make_user
from hostbill.emailer import build_cc_list
from hostbill.errors import ConflictError, DeliveryError, NotFoundError, ValidationFailed
from hostbill.models import UserRole
from hostbill.security import verify_password
from hostbill.services import groups, users


async def test_create_user_mails_welcome_and_normalises_email(db, sent_mail):
    admin = await make_admin(db)

    result = await users.create_user(db, "  New.Client@Example.com ", "New Client", creator=admin, company_name="Acme")

    assert result["emailSent"] is True
    assert result["user"]["email"] == "new.client@example.com"
    assert result["user"]["companyName"] == "Acme"
    assert [m["to"] for m in sent_mail] == ["new.client@example.com"]
    with pytest.raises(ConflictError):
        await users.create_user(db, "new.client@example.com", "Again", creator=admin)


async def test_only_super_admin_grants_super_admin(db, sent_mail):
    admin = await make_admin(db)
    root = await make_user(db, email="root@example.com", name="Root", role=UserRole.SUPER_ADMIN)
    customer = await make_user(db)

    with pytest.raises(ValidationFailed):
        await users.create_user(db, "x@example.com", "X", role=UserRole.SUPER_ADMIN, creator=admin)
    with pytest.raises(ValidationFailed):
        await users.update_user(db, customer.id, actor=admin, role=UserRole.ADMIN)

    await users.update_user(db, customer.id, actor=root, role=UserRole.ADMIN)
    assert customer.role == UserRole.ADMIN


async def test_soft_deleted_user_disappears(db):
    admin = await make_admin(db)
    customer = await make_user(db)

    with pytest.raises(ValidationFailed):
        await users.delete_user(db, admin, admin.id)

    await users.delete_user(db, admin, customer.id)

    with pytest.raises(NotFoundError):
        await users.get_user(db, customer.id)
    listing = await users.list_users(db, role=UserRole.CLIENT)
    assert listing["users"] == []


async def test_list_users_search(db):
    await make_user(db, email="alpha@example.com", name="Alpha", company_name="Hashworks")
    await make_user(db, email="beta@example.com", name="Beta")

    found = await users.list_users(db, search="hashw")

    assert [u["email"] for u in found["users"]] == ["alpha@example.com"]
    assert found["pagination"]["total"] == 1


async def test_authenticate_logs_failed_attempts(db):
    customer = await make_user(db)

    assert await users.authenticate(db, "CLIENT@example.com", PASSWORD) is customer
    assert await users.authenticate(db, customer.email, "wrong") is None
    assert await users.authenticate(db, "nobody@example.com", PASSWORD) is None

    activity = await users.recent_activity(db, customer.id)
    assert [a["type"] for a in activity] == ["LOGIN_FAILED"]


async def test_change_password(db):
    customer = await make_user(db)

    with pytest.raises(ValidationFailed):
        await users.change_password(db, customer, "wrong", "LongEnough1")
    with pytest.raises(ValidationFailed):
        await users.change_password(db, customer, PASSWORD, "short")

    await users.change_password(db, customer, PASSWORD, "LongEnough1")
    assert verify_password("LongEnough1", customer.password_hash)


async def test_forgot_password_is_silent_for_unknown_address(db, sent_mail):
    customer = await make_user(db)
    old_hash = customer.password_hash

    await users.forgot_password(db, "ghost@example.com")
    assert sent_mail == []

    await users.forgot_password(db, customer.email)
    assert [m["to"] for m in sent_mail] == [customer.email]
    assert customer.password_hash != old_hash
    assert not verify_password(PASSWORD, customer.password_hash)


async def test_forgot_password_hides_mail_failures(db, monkeypatch):
    customer = await make_user(db)

    async def broken(*args, **kwargs):
        raise DeliveryError("Failed to send email: connection refused")

    monkeypatch.setattr("hostbill.services.users.send_email", broken)

    await users.forgot_password(db, customer.email)

    assert verify_password(PASSWORD, customer.password_hash)


async def test_group_names_are_unique(db):
    admin = await make_admin(db)
    await groups.create_group(db, admin, "Nordics", relationship_manager="Ola", email="rm@example.com")

    with pytest.raises(ConflictError):
        await groups.create_group(db, admin, " Nordics ")
    with pytest.raises(ValidationFailed):
        await groups.create_group(db, admin, "  ")


async def test_subaccount_belongs_to_one_group(db):
    admin = await make_admin(db)
    north = await groups.create_group(db, admin, "North", email="north@example.com")
    south = await groups.create_group(db, admin, "South")

    first = await groups.add_subaccounts(db, admin, north.id, ["acme", " acme ", "bravo"])
    assert first == {"added": ["acme", "bravo"], "skipped": []}

    second = await groups.add_subaccounts(db, admin, south.id, ["acme", "charlie"])
    assert second["added"] == ["charlie"]
    assert second["skipped"] == [{"subaccountName": "acme", "reason": "Assigned to another group"}]

    again = await groups.add_subaccounts(db, admin, north.id, ["bravo"])
    assert again["skipped"][0]["reason"] == "Already in this group"

    owner = await groups.group_for_subaccount(db, "acme")
    assert owner.id == north.id
    assert (await groups.get_group(db, north.id))["subaccounts"] == ["acme", "bravo"]


async def test_remove_subaccount(db):
    admin = await make_admin(db)
    g = await groups.create_group(db, admin, "North")
    await groups.add_subaccounts(db, admin, g.id, ["acme"])

    await groups.remove_subaccount(db, g.id, "acme")

    with pytest.raises(NotFoundError):
        await groups.remove_subaccount(db, g.id, "acme")
    assert await groups.group_for_subaccount(db, "acme") is None


async def test_group_email_is_copied_on_invoice_mail(db):
    admin = await make_admin(db)
    g = await groups.create_group(db, admin, "North", email="north@example.com")
    await groups.add_subaccounts(db, admin, g.id, ["acme"])

    assert await build_cc_list(db, "acme") == ["north@example.com"]
    assert await build_cc_list(db, "unknown") == []
    assert await build_cc_list(db, None) == []
