"""All-or-nothing material issuance and ledger guards."""
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from app.core.errors import (
    ForbiddenError,
    InvalidOperationError,
    InvalidStatusError,
    MaterialShortageError,
    NotFoundError,
    ValidationError,
)
from app.models.inventory import InventoryAdjustment, InventoryBalance
from app.services.batch_service import BatchService
from app.services.inventory_ledger import InventoryLedger
from app.services.material_issuance_service import MaterialIssuanceService
from app.services.production_order_service import ProductionOrderService

LOCATION = uuid.uuid4()
BASE_OIL = uuid.uuid4()
EXTRACT = uuid.uuid4()


@pytest.fixture
async def stocked(db, warehouse):
    await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("100"), "RECEIVING")
    await InventoryLedger.adjust(db, warehouse, EXTRACT, LOCATION, Decimal("10"), "RECEIVING")
    await db.commit()


def line(material_id, quantity):
    return {"material_id": material_id, "location_id": LOCATION, "quantity": quantity}


async def on_hand(db, material_id):
    balance = await InventoryLedger.get_balance(db, material_id, LOCATION)
    return balance.quantity_on_hand if balance else Decimal("0")


async def test_issue_to_batch_decrements_and_records(db, warehouse, started, stocked):
    _, result = started
    batch_id = result["batch_ids"][0]

    issued = await MaterialIssuanceService.issue(
        db, warehouse, batch_id, [line(BASE_OIL, "40"), line(EXTRACT, "2.5")], notes="Batch 1 charge",
    )
    assert issued["batch_id"] == batch_id
    assert [i["remaining_on_hand"] for i in issued["issued"]] == [Decimal("60"), Decimal("7.5")]
    assert await on_hand(db, BASE_OIL) == Decimal("60")
    assert await on_hand(db, EXTRACT) == Decimal("7.5")

    consumptions = (
        await db.scalars(select(InventoryAdjustment).where(InventoryAdjustment.adjustment_type == "CONSUMPTION"))
    ).all()
    assert len(consumptions) == 2
    assert {c.reference_type for c in consumptions} == {"BATCH"}
    assert {c.reference_id for c in consumptions} == {batch_id}
    assert sorted(c.delta_qty for c in consumptions) == [Decimal("-40"), Decimal("-2.5")]


async def test_shortage_reports_every_short_line_and_consumes_nothing(db, warehouse, started, stocked):
    _, result = started
    unknown = uuid.uuid4()

    with pytest.raises(MaterialShortageError) as exc:
        await MaterialIssuanceService.issue(
            db, warehouse, result["batch_ids"][0],
            [line(BASE_OIL, 50), line(EXTRACT, 11), line(unknown, 1)],
        )

    assert exc.value.code == "MATERIAL_SHORTAGE"
    shortages = {s["material_id"]: s for s in exc.value.details["shortages"]}
    assert set(shortages) == {str(EXTRACT), str(unknown)}
    assert shortages[str(EXTRACT)]["requested"] == Decimal("11")
    assert shortages[str(EXTRACT)]["available"] == Decimal("10")
    assert shortages[str(EXTRACT)]["shortage"] == Decimal("1")
    assert shortages[str(unknown)]["available"] == Decimal("0")

    assert await on_hand(db, BASE_OIL) == Decimal("100")
    assert await on_hand(db, EXTRACT) == Decimal("10")
    consumed = await db.scalar(select(InventoryAdjustment.id).where(InventoryAdjustment.adjustment_type == "CONSUMPTION"))
    assert consumed is None


async def test_duplicate_lines_are_summed(db, warehouse, started, stocked):
    _, result = started
    with pytest.raises(MaterialShortageError) as exc:
        await MaterialIssuanceService.issue(db, warehouse, result["batch_ids"][0], [line(EXTRACT, 6), line(EXTRACT, 6)])
    assert exc.value.details["shortages"][0]["requested"] == Decimal("12")


@pytest.fixture
def reservation_lands_after_lock(monkeypatch):
    """Another writer reserves 9 of EXTRACT right after issuance reads the balances."""
    lock_balances = InventoryLedger.lock_balances

    async def lock_then_reserve(session, keys):
        balances = await lock_balances(session, keys)
        await session.execute(
            update(InventoryBalance)
            .where(InventoryBalance.material_id == EXTRACT, InventoryBalance.location_id == LOCATION)
            .values(quantity_reserved=Decimal("9"))
            .execution_options(synchronize_session=False)
        )
        return balances

    monkeypatch.setattr(InventoryLedger, "lock_balances", staticmethod(lock_then_reserve))


async def consumption_count(db):
    return len((
        await db.scalars(select(InventoryAdjustment).where(InventoryAdjustment.adjustment_type == "CONSUMPTION"))
    ).all())


async def test_guarded_decrement_rejects_stale_balance(db, warehouse, started, stocked, reservation_lands_after_lock):
    _, result = started

    with pytest.raises(MaterialShortageError) as exc:
        await MaterialIssuanceService.issue(
            db, warehouse, result["batch_ids"][0], [line(BASE_OIL, 40), line(EXTRACT, 5)],
        )

    assert exc.value.code == "MATERIAL_SHORTAGE"
    [shortage] = exc.value.details["shortages"]
    assert shortage["material_id"] == str(EXTRACT)
    assert shortage["available"] == Decimal("1")
    assert shortage["shortage"] == Decimal("4")

    await db.rollback()
    assert await on_hand(db, BASE_OIL) == Decimal("100")
    assert await consumption_count(db) == 0


async def test_failed_issuance_leaves_nothing_for_a_committing_caller(
    db, warehouse, started, stocked, reservation_lands_after_lock,
):
    _, result = started

    try:
        await MaterialIssuanceService.issue(
            db, warehouse, result["batch_ids"][0], [line(BASE_OIL, 40), line(EXTRACT, 5)],
        )
    except MaterialShortageError:
        await db.commit()
    else:
        pytest.fail("issuance should have been short")

    assert await on_hand(db, BASE_OIL) == Decimal("100")
    assert await on_hand(db, EXTRACT) == Decimal("10")
    assert await consumption_count(db) == 0


async def test_reserved_stock_is_not_available(db, warehouse, started, stocked):
    _, result = started
    await InventoryLedger.reserve(db, warehouse, EXTRACT, LOCATION, Decimal("8"))

    with pytest.raises(MaterialShortageError) as exc:
        await MaterialIssuanceService.issue(db, warehouse, result["batch_ids"][0], [line(EXTRACT, 3)])
    assert exc.value.details["shortages"][0]["available"] == Decimal("2")

    await InventoryLedger.release(db, warehouse, EXTRACT, LOCATION, Decimal("8"))
    await MaterialIssuanceService.issue(db, warehouse, result["batch_ids"][0], [line(EXTRACT, 3)])
    assert await on_hand(db, EXTRACT) == Decimal("7")


async def test_issue_to_order(db, warehouse, started, stocked):
    order, _ = started
    issued = await MaterialIssuanceService.issue(db, warehouse, order.id, [line(BASE_OIL, 10)])
    assert issued["order_id"] == order.id
    assert issued["batch_id"] is None
    adjustment = await db.scalar(select(InventoryAdjustment).where(InventoryAdjustment.adjustment_type == "CONSUMPTION"))
    assert adjustment.reference_type == "PRODUCTION_ORDER"


async def test_issue_to_completed_batch_or_archived_order(db, admin, warehouse, started, stocked):
    order, result = started
    batch_id = result["batch_ids"][0]
    await BatchService.complete_batch(db, admin, batch_id, 100)
    with pytest.raises(InvalidStatusError):
        await MaterialIssuanceService.issue(db, warehouse, batch_id, [line(BASE_OIL, 1)])

    await ProductionOrderService.block_order(db, admin, order.id, "customer hold")
    await ProductionOrderService.archive_blocked_order(db, admin, order.id, "cancelled")
    with pytest.raises(InvalidStatusError):
        await MaterialIssuanceService.issue(db, warehouse, order.id, [line(BASE_OIL, 1)])


async def test_issue_validation(db, warehouse, operator_a, started, stocked):
    _, result = started
    batch_id = result["batch_ids"][0]
    with pytest.raises(ValidationError):
        await MaterialIssuanceService.issue(db, warehouse, batch_id, [])
    with pytest.raises(ValidationError):
        await MaterialIssuanceService.issue(db, warehouse, batch_id, [line(BASE_OIL, 0)])
    with pytest.raises(ValidationError):
        await MaterialIssuanceService.issue(db, warehouse, batch_id, [{"material_id": "nope", "location_id": LOCATION, "quantity": 1}])
    with pytest.raises(NotFoundError):
        await MaterialIssuanceService.issue(db, warehouse, uuid.uuid4(), [line(BASE_OIL, 1)])
    with pytest.raises(ForbiddenError):
        await MaterialIssuanceService.issue(db, operator_a, batch_id, [line(BASE_OIL, 1)])


async def test_adjust_guards(db, warehouse, stocked):
    with pytest.raises(ValidationError):
        await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("-5"), "MANUAL_CORRECTION")
    with pytest.raises(ValidationError):
        await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("5"), "CONSUMPTION")
    with pytest.raises(ValidationError):
        await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("-5"), "RECEIVING")
    with pytest.raises(InvalidOperationError):
        await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("-101"), "MANUAL_CORRECTION", "recount")

    await InventoryLedger.reserve(db, warehouse, BASE_OIL, LOCATION, Decimal("90"))
    with pytest.raises(InvalidOperationError):
        await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("-20"), "MANUAL_CORRECTION", "recount")

    balance = await InventoryLedger.adjust(db, warehouse, BASE_OIL, LOCATION, Decimal("-10"), "MANUAL_CORRECTION", "recount")
    assert balance.quantity_on_hand == Decimal("90")
    assert balance.quantity_available == Decimal("0")


async def test_reserve_and_release_guards(db, warehouse, stocked):
    with pytest.raises(MaterialShortageError):
        await InventoryLedger.reserve(db, warehouse, EXTRACT, LOCATION, Decimal("11"))
    with pytest.raises(InvalidOperationError):
        await InventoryLedger.release(db, warehouse, EXTRACT, LOCATION, Decimal("1"))

    balance = await InventoryLedger.reserve(db, warehouse, EXTRACT, LOCATION, Decimal("4"))
    assert balance.quantity_reserved == Decimal("4")
    assert balance.quantity_on_hand == Decimal("10")


async def test_operators_cannot_adjust(db, operator_a):
    with pytest.raises(ForbiddenError):
        await InventoryLedger.adjust(db, operator_a, BASE_OIL, LOCATION, Decimal("5"), "RECEIVING")
