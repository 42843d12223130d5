"""Run step state machine, claim exclusivity and per-run editing."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidOperationError,
    InvalidStatusError,
    ValidationError,
)
from app.services.batch_service import BatchService
from app.services.production_order_service import ProductionOrderService
from app.services.production_run_service import ProductionRunService
from app.services.run_health_service import RunHealthService
from app.services.run_step_service import RunStepService


@pytest.fixture
async def steps(db, started):
    _, result = started
    return await ProductionRunService.list_steps(db, result["production_run_id"])


async def test_claim_is_exclusive(db, operator_a, operator_b, steps):
    step = steps[0]
    result = await RunStepService.claim(db, operator_a, step.id)
    assert result["status"] == "CLAIMED"
    assert result["assigned_to_user_id"] == operator_a.id
    assert result["timestamps"]["claimed_at"] is not None
    assert result["run_status"] == "IN_PROGRESS"

    with pytest.raises(ConflictError) as exc:
        await RunStepService.claim(db, operator_b, step.id)
    assert exc.value.details["assigned_to_user_id"] == str(operator_a.id)

    step = await RunStepService.get_step(db, step.id)
    assert step.assigned_to_user_id == operator_a.id


def serve_stale_read(monkeypatch, step):
    """Make the next claim act on ``step`` as already loaded, without re-reading it."""
    async def stale_read(db, step_id):
        return step

    monkeypatch.setattr(RunStepService, "get_step", staticmethod(stale_read))


async def claim_in_other_session(engine, actor, step_id):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with maker() as other:
        result = await RunStepService.claim(other, actor, step_id)
        await other.commit()
    return result


async def test_claim_race_lost_to_another_operator(db, engine, monkeypatch, operator_a, operator_b, steps):
    seen = await RunStepService.get_step(db, steps[0].id)
    assert seen.status == "PENDING"

    await claim_in_other_session(engine, operator_b, seen.id)
    assert seen.assigned_to_user_id is None

    serve_stale_read(monkeypatch, seen)
    with pytest.raises(ConflictError) as exc:
        await RunStepService.claim(db, operator_a, seen.id)
    assert exc.value.details["assigned_to_user_id"] == str(operator_b.id)

    assert seen.status == "CLAIMED"
    assert seen.assigned_to_user_id == operator_b.id


async def test_stale_write_does_not_overwrite_winner(db, engine, operator_a, operator_b, steps):
    seen = await RunStepService.get_step(db, steps[0].id)
    await claim_in_other_session(engine, operator_b, seen.id)

    won = await RunStepService._compare_and_set(
        db, seen, status="CLAIMED", assigned_to_user_id=operator_a.id, claimed_at=datetime.now(timezone.utc),
    )
    assert not won
    assert seen.assigned_to_user_id == operator_b.id


async def test_claim_race_lost_to_own_duplicate_is_noop(db, engine, monkeypatch, operator_a, steps):
    seen = await RunStepService.get_step(db, steps[0].id)
    winner = await claim_in_other_session(engine, operator_a, seen.id)

    serve_stale_read(monkeypatch, seen)
    result = await RunStepService.claim(db, operator_a, seen.id)
    assert result["status"] == "CLAIMED"
    assert result["assigned_to_user_id"] == operator_a.id
    assert result["timestamps"]["claimed_at"] == winner["timestamps"]["claimed_at"]


async def test_claim_twice_by_owner_is_noop(db, operator_a, steps):
    first = await RunStepService.claim(db, operator_a, steps[0].id)
    second = await RunStepService.claim(db, operator_a, steps[0].id)
    assert second["status"] == "CLAIMED"
    assert second["timestamps"]["claimed_at"] == first["timestamps"]["claimed_at"]


async def test_claim_of_step_assigned_to_someone_else(db, admin, operator_a, operator_b, steps):
    await RunStepService.admin_assign(db, admin, steps[0].id, operator_a.id)
    with pytest.raises(ConflictError):
        await RunStepService.claim(db, operator_b, steps[0].id)
    result = await RunStepService.claim(db, operator_a, steps[0].id)
    assert result["status"] == "CLAIMED"


async def test_admin_assign_overrides_claim_and_keeps_status(db, admin, operator_a, operator_b, steps):
    await RunStepService.claim(db, operator_a, steps[0].id)
    result = await RunStepService.admin_assign(db, admin, steps[0].id, operator_b.id)
    assert result["status"] == "CLAIMED"
    assert result["assigned_to_user_id"] == operator_b.id

    cleared = await RunStepService.admin_assign(db, admin, steps[0].id, None)
    assert cleared["assigned_to_user_id"] is None


async def test_admin_assign_requires_admin(db, operator_a, operator_b, steps):
    with pytest.raises(ForbiddenError):
        await RunStepService.admin_assign(db, operator_a, steps[0].id, operator_b.id)


async def test_start_pending_claims_and_starts(db, operator_a, steps):
    result = await RunStepService.start(db, operator_a, steps[0].id)
    assert result["status"] == "IN_PROGRESS"
    assert result["assigned_to_user_id"] == operator_a.id
    assert result["timestamps"]["claimed_at"] is not None
    assert result["timestamps"]["started_at"] is not None

    again = await RunStepService.start(db, operator_a, steps[0].id)
    assert again["timestamps"]["started_at"] == result["timestamps"]["started_at"]


async def test_start_claimed_by_other_conflicts(db, operator_a, operator_b, steps):
    await RunStepService.claim(db, operator_a, steps[0].id)
    with pytest.raises(ConflictError):
        await RunStepService.start(db, operator_b, steps[0].id)


async def test_complete_requires_in_progress(db, operator_a, operator_b, steps):
    with pytest.raises(InvalidStatusError):
        await RunStepService.complete(db, operator_a, steps[0].id)

    await RunStepService.start(db, operator_a, steps[0].id)
    with pytest.raises(ConflictError):
        await RunStepService.complete(db, operator_b, steps[0].id)

    result = await RunStepService.complete(db, operator_a, steps[0].id)
    assert result["status"] == "DONE"
    assert result["timestamps"]["completed_at"] is not None

    repeat = await RunStepService.complete(db, operator_a, steps[0].id)
    assert repeat["status"] == "DONE"
    with pytest.raises(InvalidStatusError):
        await RunStepService.claim(db, operator_a, steps[0].id)


async def test_admin_can_complete_someone_elses_step(db, admin, operator_a, steps):
    await RunStepService.start(db, operator_a, steps[0].id)
    result = await RunStepService.complete(db, admin, steps[0].id)
    assert result["status"] == "DONE"


async def test_skip_requires_reason(db, operator_a, steps):
    with pytest.raises(ValidationError):
        await RunStepService.skip(db, operator_a, steps[0].id, "no")
    with pytest.raises(ValidationError):
        await RunStepService.skip(db, operator_a, steps[0].id, "     ")

    result = await RunStepService.skip(db, operator_a, steps[0].id, "Area already clean")
    assert result["status"] == "SKIPPED"
    assert result["timestamps"]["skipped_at"] is not None
    step = await RunStepService.get_step(db, steps[0].id)
    assert step.skip_reason == "Area already clean"


async def test_skip_done_step_is_rejected(db, operator_a, steps):
    await RunStepService.start(db, operator_a, steps[0].id)
    await RunStepService.complete(db, operator_a, steps[0].id)
    with pytest.raises(InvalidStatusError):
        await RunStepService.skip(db, operator_a, steps[0].id, "changed my mind")


async def test_required_skip_flags_health_until_compensated(db, admin, operator_a, started, steps):
    _, result = started
    run_id = result["production_run_id"]
    await RunStepService.skip(db, operator_a, steps[1].id, "Mixer out of service")

    health = await RunHealthService.get_run_health(db, admin, run_id)
    assert health.has_required_skips
    assert health.is_blocked
    assert health.unresolved_required_skips == 1

    rework = await RunStepService.add_step(db, admin, run_id, "Hand mix", required=True)
    await RunStepService.start(db, operator_a, rework.id)
    await RunStepService.complete(db, operator_a, rework.id)

    health = await RunHealthService.get_run_health(db, admin, run_id)
    assert health.has_required_skips
    assert not health.is_blocked


async def test_stalled_step_detection(db, admin, operator_a, started, steps):
    _, result = started
    await RunStepService.start(db, operator_a, steps[0].id)
    later = datetime.now(timezone.utc) + timedelta(hours=5)

    assert not (await RunHealthService.get_run_health(db, admin, result["production_run_id"])).has_stalled_step
    health = await RunHealthService.get_run_health(db, admin, result["production_run_id"], now=later)
    assert health.has_stalled_step
    assert health.stalled_steps == 1


async def test_steps_frozen_while_order_blocked(db, admin, operator_a, started, steps):
    order, _ = started
    await RunStepService.claim(db, operator_a, steps[0].id)
    await ProductionOrderService.block_order(db, admin, order.id, "line down")

    with pytest.raises(InvalidStatusError):
        await RunStepService.start(db, operator_a, steps[0].id)
    with pytest.raises(InvalidStatusError):
        await RunStepService.claim(db, operator_a, steps[1].id)
    with pytest.raises(InvalidStatusError):
        await RunStepService.skip(db, operator_a, steps[2].id, "Not needed today")

    # assignment is still possible on a blocked order
    result = await RunStepService.admin_assign(db, admin, steps[1].id, operator_a.id)
    assert result["assigned_to_user_id"] == operator_a.id

    await ProductionOrderService.start_order(db, admin, order.id)
    resumed = await RunStepService.start(db, operator_a, steps[0].id)
    assert resumed["status"] == "IN_PROGRESS"


async def test_run_status_follows_steps_and_batches(db, admin, operator_a, started, steps):
    order, result = started
    run_id = result["production_run_id"]
    assert await ProductionRunService.get_run_status(db, run_id) == "PLANNED"

    for step in steps:
        await RunStepService.start(db, operator_a, step.id)
        await RunStepService.complete(db, operator_a, step.id)
    assert await ProductionRunService.get_run_status(db, run_id) == "IN_PROGRESS"

    for batch in await ProductionRunService.list_batches(db, run_id):
        await BatchService.complete_batch(db, admin, batch.id, batch.planned_quantity)
    assert await ProductionRunService.get_run_status(db, run_id) == "COMPLETED"
    assert order.status == "IN_PROGRESS"


async def test_add_step_appends_adhoc(db, admin, started, steps):
    _, result = started
    step = await RunStepService.add_step(db, admin, result["production_run_id"], "Extra rinse")
    assert step.source == "ADHOC"
    assert step.template_id is None
    assert step.status == "PENDING"
    assert step.required is False
    assert step.order == len(steps) + 1
    assert step.key.startswith("adhoc_")

    with pytest.raises(ValidationError):
        await RunStepService.add_step(db, admin, result["production_run_id"], "  ")


async def test_add_step_rejected_on_finished_run(db, admin, started):
    order, result = started
    await ProductionOrderService.block_order(db, admin, order.id, "line down")
    with pytest.raises(InvalidStatusError):
        await RunStepService.add_step(db, admin, result["production_run_id"], "Extra rinse")

    await ProductionOrderService.archive_blocked_order(db, admin, order.id, "cancelled")
    with pytest.raises(InvalidOperationError):
        await RunStepService.add_step(db, admin, result["production_run_id"], "Extra rinse")


async def test_warehouse_cannot_edit_steps(db, warehouse, started, steps):
    _, result = started
    with pytest.raises(ForbiddenError):
        await RunStepService.add_step(db, warehouse, result["production_run_id"], "Extra rinse")
    with pytest.raises(ForbiddenError):
        await RunStepService.delete_step(db, warehouse, steps[0].id)


async def test_override_marks_template_step(db, admin, operator_a, steps):
    step = await RunStepService.update_step_override(db, admin, steps[2].id, label="Pack into trays", required=False)
    assert step.label == "Pack into trays"
    assert step.required is False
    assert step.overridden is True

    await RunStepService.claim(db, operator_a, steps[0].id)
    with pytest.raises(InvalidOperationError):
        await RunStepService.update_step_override(db, admin, steps[0].id, label="Changed")


async def test_delete_step_renumbers(db, admin, operator_a, started, steps):
    _, result = started
    await RunStepService.delete_step(db, admin, steps[1].id)
    remaining = await ProductionRunService.list_steps(db, result["production_run_id"])
    assert [s.key for s in remaining] == ["prep", "pack"]
    assert [s.order for s in remaining] == [1, 2]

    await RunStepService.start(db, operator_a, remaining[0].id)
    with pytest.raises(InvalidOperationError):
        await RunStepService.delete_step(db, admin, remaining[0].id)


async def test_reorder_steps_only_while_planned(db, admin, operator_a, started, steps):
    _, result = started
    run_id = result["production_run_id"]
    reordered = await RunStepService.reorder_steps(db, admin, run_id, [steps[2].id, steps[0].id, steps[1].id])
    assert [s.key for s in reordered] == ["pack", "prep", "mix"]

    with pytest.raises(ValidationError):
        await RunStepService.reorder_steps(db, admin, run_id, [steps[0].id, steps[1].id])

    await RunStepService.claim(db, operator_a, steps[0].id)
    with pytest.raises(InvalidOperationError):
        await RunStepService.reorder_steps(db, admin, run_id, [s.id for s in steps])


async def test_list_my_steps(db, admin, operator_a, operator_b, started, steps):
    order, _ = started
    await RunStepService.claim(db, operator_a, steps[0].id)
    await RunStepService.admin_assign(db, admin, steps[1].id, operator_a.id)
    await RunStepService.claim(db, operator_b, steps[2].id)

    mine = await RunStepService.list_my_steps(db, operator_a)
    assert [row["step"].key for row in mine] == ["prep", "mix"]
    assert all(row["order_number"] == order.order_number for row in mine)

    await ProductionOrderService.block_order(db, admin, order.id, "line down")
    assert await RunStepService.list_my_steps(db, operator_a) == []
