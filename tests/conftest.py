# tests/conftest.py

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SMTP_HOST", "localhost")

from datetime import datetime  # noqa: E402
from decimal import Decimal  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import text  # noqa: E402

from hostbill.database import create_tables, get_session_factory, on_shutdown_dispose  # noqa: E402
from hostbill.models import (  # noqa: E402
    ElectricityRate,
    Hardware,
    Miner,
    MinerStatus,
    Space,
    User,
    UserRole,
)
from hostbill.security import create_access_token, hash_password  # noqa: E402

PASSWORD = "Secret123"


@pytest.fixture
async def db():
    await create_tables()
    session = get_session_factory()()
    try:
        yield session
    finally:
        await session.close()
        await on_shutdown_dispose()


@pytest.fixture
def sent_mail(monkeypatch):
    """Captures outbound mail in every module that sends it."""
    outbox = []

    async def fake_send(to, subject, html, cc=None):
        outbox.append({"to": to, "subject": subject, "html": html, "cc": list(cc or [])})

    for target in (
        "hostbill.services.invoices.send_email",
        "hostbill.services.email_runs.send_email",
        "hostbill.services.accrual.send_email",
        "hostbill.services.users.send_email",
    ):
        monkeypatch.setattr(target, fake_send)
    return outbox


@pytest.fixture
async def client(db):
    from hostbill.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def enforce_foreign_keys(db):
    """SQLite ignores FOREIGN KEY clauses unless asked; call before the first write."""
    await db.execute(text("PRAGMA foreign_keys=ON"))


def auth_cookies(user: User) -> dict:
    return {"token": create_access_token(user.id, user.role.value)}


async def make_user(db, email="client@example.com", name="Client", role=UserRole.CLIENT, **extra) -> User:
    user = User(email=email, name=name, role=role, password_hash=hash_password(PASSWORD), **extra)
    db.add(user)
    await db.flush()
    return user


async def make_admin(db, email="admin@example.com") -> User:
    return await make_user(db, email=email, name="Admin", role=UserRole.ADMIN)


async def make_fleet(db, user: User, count=2, power="3.250", quantity=10, status=MinerStatus.ACTIVE, rate=None):
    """Hardware + space + `count` miners for `user`."""
    hw = Hardware(model=f"S19-{user.id[:4]}", power_usage=Decimal(power), hash_rate=Decimal("95"), quantity=quantity)
    space = Space(name=f"Hall-{user.id[:4]}", location="Texas", capacity=100, power_capacity=Decimal("500"))
    db.add_all([hw, space])
    await db.flush()
    miners = []
    for i in range(count):
        m = Miner(
            name=f"miner-{i}",
            user_id=user.id,
            space_id=space.id,
            hardware_id=hw.id,
            status=status,
            rate_per_kwh=rate,
        )
        db.add(m)
        miners.append(m)
    await db.flush()
    return hw, space, miners


async def make_rate(db, rate="0.08", valid_from=None) -> ElectricityRate:
    row = ElectricityRate(rate_per_kwh=Decimal(rate), valid_from=valid_from or datetime(2020, 1, 1))
    db.add(row)
    await db.flush()
    return row
