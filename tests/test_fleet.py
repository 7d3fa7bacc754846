# tests/test_fleet.py

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import enforce_foreign_keys, make_admin, make_fleet, make_rate, make_user
from hostbill.errors import ConflictError, NotFoundError, ValidationFailed
from hostbill.models import Miner, MinerStatus
from hostbill.services import fleet


async def _setup(db, quantity=2):
    admin = await make_admin(db)
    customer = await make_user(db)
    hw = await fleet.create_hardware(db, "Antminer S21", "3.5", "200", quantity=quantity)
    space = await fleet.create_space(db, "Hall A", "Norway", capacity=4, power_capacity="14")
    return admin, customer, hw, space


async def test_hardware_model_is_unique_case_insensitively(db):
    await fleet.create_hardware(db, "Antminer S21", "3.5", "200")
    with pytest.raises(ConflictError):
        await fleet.create_hardware(db, "antminer s21", "3.5", "200")
    with pytest.raises(ValidationFailed):
        await fleet.create_hardware(db, "Other", "0", "200")


async def test_procurement_adds_stock(db):
    admin, _, hw, _ = await _setup(db, quantity=0)

    await fleet.procure(db, admin, hw.id, 5, price_per_unit="2400")

    assert hw.quantity == 5
    [row] = await fleet.list_procurements(db, hw.id)
    assert row["quantity"] == 5


async def test_deploying_a_miner_takes_a_unit_and_records_rate(db):
    admin, customer, hw, space = await _setup(db)

    m = await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, Decimal("0.07"))

    assert hw.quantity == 1
    assert m.status == MinerStatus.DEPLOYMENT_IN_PROGRESS
    history = await fleet.rate_history(db, m.id)
    assert [h["ratePerKwh"] for h in history] == [0.07]


async def test_create_miner_rules(db):
    admin, customer, hw, space = await _setup(db, quantity=1)

    with pytest.raises(ValidationFailed):
        await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, None)
    with pytest.raises(ValidationFailed):
        await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "-1")
    with pytest.raises(NotFoundError):
        await fleet.create_miner(db, admin, "rig-1", hw.id, "nobody", space.id, "0.07")

    await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")
    with pytest.raises(ConflictError):
        await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")
    with pytest.raises(ConflictError):
        # out of stock
        await fleet.create_miner(db, admin, "rig-2", hw.id, customer.id, space.id, "0.07")


async def test_delete_miner_returns_unit_and_frees_space(db):
    admin, customer, hw, space = await _setup(db)
    m = await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")

    with pytest.raises(ConflictError):
        await fleet.delete_space(db, space.id)
    with pytest.raises(ConflictError):
        await fleet.delete_hardware(db, hw.id)

    await fleet.delete_miner(db, m.id)

    assert hw.quantity == 2
    await fleet.delete_space(db, space.id)
    await fleet.delete_hardware(db, hw.id)
    assert await fleet.list_hardware(db) == []


async def test_space_of_retired_miners_can_be_removed(db):
    await enforce_foreign_keys(db)
    admin, customer, hw, space = await _setup(db)
    m = await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")
    await fleet.delete_miner(db, m.id)
    await db.commit()

    await fleet.delete_space(db, space.id)
    await db.commit()

    assert await fleet.list_spaces(db) == []
    row = (await db.execute(select(Miner.space_id, Miner.is_deleted).where(Miner.id == m.id))).one()
    assert row.space_id is None
    assert row.is_deleted is True


async def test_rate_change_appends_history_only_when_different(db):
    admin, customer, hw, space = await _setup(db)
    m = await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")

    await fleet.update_miner(db, admin, m.id, rate_per_kwh="0.07")
    await fleet.update_miner(db, admin, m.id, rate_per_kwh="0.09", status=MinerStatus.ACTIVE)

    assert len(await fleet.rate_history(db, m.id)) == 2
    assert m.status == MinerStatus.ACTIVE
    with pytest.raises(ValidationFailed):
        await fleet.update_miner(db, admin, m.id)


async def test_bulk_update_and_bulk_delete(db):
    admin, customer, hw, space = await _setup(db)
    a = await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")
    b = await fleet.create_miner(db, admin, "rig-2", hw.id, customer.id, space.id, "0.07")

    assert await fleet.bulk_update(db, admin, [a.id, b.id], status=MinerStatus.AUTO) == 2
    assert {a.status, b.status} == {MinerStatus.AUTO}
    with pytest.raises(NotFoundError):
        await fleet.bulk_delete(db, [a.id, "missing"])

    assert await fleet.bulk_delete(db, [a.id, b.id]) == 2
    assert hw.quantity == 2


async def test_space_utilization(db):
    admin, customer, hw, space = await _setup(db)
    await fleet.create_miner(db, admin, "rig-1", hw.id, customer.id, space.id, "0.07")

    data = await fleet.get_space(db, space.id)

    assert data["minerCount"] == 1
    assert data["powerUsed"] == 3.5
    assert data["powerUtilization"] == 25.0
    assert data["slotUtilization"] == 25.0


async def test_daily_costs_per_miner(db):
    customer = await make_user(db)
    _, _, miners = await make_fleet(db, customer, count=2, power="2.000", rate=Decimal("0.05"))
    miners[1].status = MinerStatus.INACTIVE
    await make_rate(db, "0.10")
    await db.flush()

    costs = await fleet.daily_costs(db, customer.id, now=datetime(2024, 3, 1))

    assert costs["globalRatePerKwh"] == 0.1
    assert costs["totalPowerKw"] == 2.0
    assert costs["totalDailyCost"] == 2.4
    assert sorted(m["dailyCost"] for m in costs["miners"]) == [0.0, 2.4]


async def test_miner_summary_counts_by_status(db):
    customer = await make_user(db)
    await make_fleet(db, customer, count=2, power="3.000")

    summary = await fleet.miner_summary(db, customer.id)

    assert summary["total"] == 2
    assert summary["byStatus"]["ACTIVE"] == 2
    assert summary["totalPowerKw"] == 6.0
