"""BATCHWORKS run step state machine.

    PENDING -> CLAIMED -> IN_PROGRESS -> DONE
    any non-terminal status -> SKIPPED

Every write is a compare-and-set on the (status, assignee) pair the caller
observed: ``UPDATE run_steps SET ... WHERE id = :id AND status = :seen AND
assigned_to_user_id = :seen_owner``. Zero rows affected means someone else
won; the step is re-read and the outcome is either an idempotent no-op
(already in the requested state for this user) or a CONFLICT.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.errors import ConflictError, InvalidOperationError, InvalidStatusError, NotFoundError, ValidationError
from app.core.rbac import (
    PERM_PRODUCTION_VIEW,
    PERM_STEPS_ASSIGN,
    PERM_STEPS_EDIT,
    PERM_STEPS_EXECUTE,
    CurrentUser,
    ensure_permission,
)
from app.models.production import (
    OrderStatus,
    ProductionOrder,
    ProductionRun,
    RunStatus,
    RunStep,
    StepSource,
    StepStatus,
    TERMINAL_STEP_STATUSES,
)
from app.services.audit_service import (
    ACTION_STEP_ADDED,
    ACTION_STEP_ASSIGNED,
    ACTION_STEP_CLAIMED,
    ACTION_STEP_COMPLETED,
    ACTION_STEP_DELETED,
    ACTION_STEP_SKIPPED,
    ACTION_STEP_STARTED,
    ACTION_STEP_UPDATED,
    ACTION_STEPS_REORDERED,
    log_audit,
)
from app.services.production_run_service import ProductionRunService

logger = logging.getLogger(__name__)

OPEN_STEP_STATUSES = [StepStatus.PENDING.value, StepStatus.CLAIMED.value, StepStatus.IN_PROGRESS.value]
# Orders whose steps are frozen: no claim/start/complete/skip
FROZEN_ORDER_STATUSES = {OrderStatus.BLOCKED.value, OrderStatus.COMPLETED.value, OrderStatus.ARCHIVED.value}


class RunStepService:

    # ── Queries ───────────────────────────────────────────────────────────────

    @staticmethod
    async def get_step(db: AsyncSession, step_id: UUID) -> RunStep:
        step = await db.scalar(
            select(RunStep).where(RunStep.id == step_id).execution_options(populate_existing=True)
        )
        if not step:
            raise NotFoundError("Run step not found", details={"step_id": str(step_id)})
        return step

    @staticmethod
    async def list_my_steps(db: AsyncSession, actor: CurrentUser | None) -> list[dict[str, Any]]:
        """Open steps assigned to the actor on orders that are PLANNED or IN_PROGRESS."""
        ensure_permission(actor, PERM_STEPS_EXECUTE)
        rows = (
            await db.execute(
                select(RunStep, ProductionOrder.id, ProductionOrder.order_number)
                .join(ProductionRun, ProductionRun.id == RunStep.run_id)
                .join(ProductionOrder, ProductionOrder.id == ProductionRun.order_id)
                .where(
                    RunStep.assigned_to_user_id == actor.id,
                    RunStep.status.in_(OPEN_STEP_STATUSES),
                    ProductionOrder.status.in_([OrderStatus.PLANNED.value, OrderStatus.IN_PROGRESS.value]),
                )
                .order_by(ProductionOrder.order_number, RunStep.order)
            )
        ).all()
        return [{"step": step, "order_id": order_id, "order_number": number} for step, order_id, number in rows]

    @staticmethod
    async def get_run_detail(db: AsyncSession, actor: CurrentUser | None, run_id: UUID) -> dict[str, Any]:
        ensure_permission(actor, PERM_PRODUCTION_VIEW)
        run = await ProductionRunService.get_run(db, run_id)
        order = await db.get(ProductionOrder, run.order_id)
        return {
            "run": run,
            "order": order,
            "run_status": await ProductionRunService.get_run_status(db, run.id),
            "batches": await ProductionRunService.list_batches(db, run.id),
            "steps": await ProductionRunService.list_steps(db, run.id),
        }

    # ── Execution transitions ─────────────────────────────────────────────────

    @staticmethod
    async def claim(db: AsyncSession, actor: CurrentUser | None, step_id: UUID) -> dict[str, Any]:
        """PENDING -> CLAIMED for the actor. Exclusive: a step has at most one claimant."""
        ensure_permission(actor, PERM_STEPS_EXECUTE)
        step = await RunStepService.get_step(db, step_id)
        await RunStepService._ensure_order_open(db, step)

        if step.status in TERMINAL_STEP_STATUSES:
            raise InvalidStatusError(f"Cannot claim a step in status {step.status}", details={"status": step.status})
        if step.status in (StepStatus.CLAIMED, StepStatus.IN_PROGRESS):
            if step.assigned_to_user_id == actor.id:
                return await RunStepService._result(db, step)
            raise RunStepService._owned_by_other(step)
        if step.assigned_to_user_id not in (None, actor.id) and not actor.is_admin:
            raise RunStepService._owned_by_other(step)

        won = await RunStepService._compare_and_set(
            db, step,
            status=StepStatus.CLAIMED.value,
            assigned_to_user_id=actor.id,
            claimed_at=datetime.now(timezone.utc),
        )
        if not won:
            if step.status in (StepStatus.CLAIMED, StepStatus.IN_PROGRESS) and step.assigned_to_user_id == actor.id:
                return await RunStepService._result(db, step)
            logger.warning("Claim race lost on step %s by %s", step.id, actor.id)
            raise RunStepService._owned_by_other(step)

        logger.info("Step %s (%s) claimed by %s", step.id, step.key, actor.id)
        await log_audit(
            db, actor.id, ACTION_STEP_CLAIMED, "run_step", step.id,
            summary=f"Step '{step.label}' claimed",
            before={"status": StepStatus.PENDING.value},
            after={"status": step.status, "assigned_to_user_id": actor.id},
        )
        return await RunStepService._result(db, step)

    @staticmethod
    async def start(db: AsyncSession, actor: CurrentUser | None, step_id: UUID) -> dict[str, Any]:
        """CLAIMED -> IN_PROGRESS. A PENDING step is claimed and started in one write."""
        ensure_permission(actor, PERM_STEPS_EXECUTE)
        step = await RunStepService.get_step(db, step_id)
        await RunStepService._ensure_order_open(db, step)

        if step.status in TERMINAL_STEP_STATUSES:
            raise InvalidStatusError(f"Cannot start a step in status {step.status}", details={"status": step.status})
        if step.status == StepStatus.IN_PROGRESS:
            if step.assigned_to_user_id == actor.id:
                return await RunStepService._result(db, step)
            raise RunStepService._owned_by_other(step)
        owner = step.assigned_to_user_id
        if owner not in (None, actor.id) and not actor.is_admin:
            raise RunStepService._owned_by_other(step)

        before = {"status": step.status, "assigned_to_user_id": owner}
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"status": StepStatus.IN_PROGRESS.value, "started_at": now}
        if step.status == StepStatus.PENDING:
            values["claimed_at"] = now
            if owner is None or not actor.is_admin:
                values["assigned_to_user_id"] = actor.id

        won = await RunStepService._compare_and_set(db, step, **values)
        if not won:
            if step.status == StepStatus.IN_PROGRESS and step.assigned_to_user_id == actor.id:
                return await RunStepService._result(db, step)
            logger.warning("Start race lost on step %s by %s", step.id, actor.id)
            raise RunStepService._owned_by_other(step)

        logger.info("Step %s (%s) started by %s", step.id, step.key, actor.id)
        await log_audit(
            db, actor.id, ACTION_STEP_STARTED, "run_step", step.id,
            summary=f"Step '{step.label}' started",
            before=before,
            after={"status": step.status, "assigned_to_user_id": step.assigned_to_user_id},
        )
        return await RunStepService._result(db, step)

    @staticmethod
    async def complete(db: AsyncSession, actor: CurrentUser | None, step_id: UUID) -> dict[str, Any]:
        """IN_PROGRESS -> DONE, by the claimant or an admin."""
        ensure_permission(actor, PERM_STEPS_EXECUTE)
        step = await RunStepService.get_step(db, step_id)
        if step.status == StepStatus.DONE:
            return await RunStepService._result(db, step)
        await RunStepService._ensure_order_open(db, step)
        if step.status != StepStatus.IN_PROGRESS:
            raise InvalidStatusError(
                f"Only an in-progress step can be completed (current: {step.status})",
                details={"status": step.status},
            )
        if step.assigned_to_user_id != actor.id and not actor.is_admin:
            raise RunStepService._owned_by_other(step)

        won = await RunStepService._compare_and_set(
            db, step,
            status=StepStatus.DONE.value,
            completed_at=datetime.now(timezone.utc),
            performed_by=actor.id,
        )
        if not won:
            if step.status == StepStatus.DONE:
                return await RunStepService._result(db, step)
            raise ConflictError("Step was changed by another user", details={"status": step.status})

        logger.info("Step %s (%s) completed by %s", step.id, step.key, actor.id)
        await log_audit(
            db, actor.id, ACTION_STEP_COMPLETED, "run_step", step.id,
            summary=f"Step '{step.label}' completed",
            before={"status": StepStatus.IN_PROGRESS.value},
            after={"status": step.status},
        )
        return await RunStepService._result(db, step)

    @staticmethod
    async def skip(db: AsyncSession, actor: CurrentUser | None, step_id: UUID, reason: str) -> dict[str, Any]:
        """
        Any non-terminal state -> SKIPPED with a written reason.

        Skipping a required step is allowed; it is surfaced by run health
        rather than rejected here.
        """
        ensure_permission(actor, PERM_STEPS_EXECUTE)
        reason = (reason or "").strip()
        min_length = get_settings().SKIP_REASON_MIN_LENGTH
        if len(reason) < min_length:
            raise ValidationError(
                f"Skip reason must be at least {min_length} characters",
                details={"field": "reason", "min_length": min_length},
            )
        step = await RunStepService.get_step(db, step_id)
        if step.status == StepStatus.SKIPPED:
            return await RunStepService._result(db, step)
        if step.status == StepStatus.DONE:
            raise InvalidStatusError("Cannot skip a completed step", details={"status": step.status})
        await RunStepService._ensure_order_open(db, step)

        before = {"status": step.status}
        won = await RunStepService._compare_and_set(
            db, step,
            status=StepStatus.SKIPPED.value,
            skipped_at=datetime.now(timezone.utc),
            skip_reason=reason,
            performed_by=actor.id,
        )
        if not won:
            if step.status == StepStatus.SKIPPED:
                return await RunStepService._result(db, step)
            if step.status == StepStatus.DONE:
                raise InvalidStatusError("Cannot skip a completed step", details={"status": step.status})
            raise ConflictError("Step was changed by another user", details={"status": step.status})

        if step.required:
            logger.warning("Required step %s (%s) skipped by %s: %s", step.id, step.key, actor.id, reason)
        else:
            logger.info("Step %s (%s) skipped by %s", step.id, step.key, actor.id)
        await log_audit(
            db, actor.id, ACTION_STEP_SKIPPED, "run_step", step.id,
            summary=f"Step '{step.label}' skipped",
            before=before,
            after={"status": step.status, "reason": reason, "required": step.required},
        )
        return await RunStepService._result(db, step)

    @staticmethod
    async def admin_assign(
        db: AsyncSession,
        actor: CurrentUser | None,
        step_id: UUID,
        user_id: UUID | None,
    ) -> dict[str, Any]:
        """Set or clear the assignee. Status is left as it is."""
        ensure_permission(actor, PERM_STEPS_ASSIGN)
        step = await RunStepService.get_step(db, step_id)
        previous = step.assigned_to_user_id

        await db.execute(
            update(RunStep)
            .where(RunStep.id == step.id)
            .values(assigned_to_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(step)

        logger.info("Step %s assignment %s -> %s by admin %s", step.id, previous, user_id, actor.id)
        await log_audit(
            db, actor.id, ACTION_STEP_ASSIGNED, "run_step", step.id,
            summary=f"Step '{step.label}' reassigned",
            before={"assigned_to_user_id": previous},
            after={"assigned_to_user_id": user_id, "status": step.status},
        )
        return await RunStepService._result(db, step)

    # ── Per-run editing ───────────────────────────────────────────────────────

    @staticmethod
    async def add_step(
        db: AsyncSession,
        actor: CurrentUser | None,
        run_id: UUID,
        label: str,
        required: bool = False,
    ) -> RunStep:
        """Append an ad-hoc step to an open run."""
        ensure_permission(actor, PERM_STEPS_EDIT)
        label = (label or "").strip()
        if not label:
            raise ValidationError("Step label is required", details={"field": "label"})
        run = await ProductionRunService.get_run(db, run_id)
        run_status = await ProductionRunService.get_run_status(db, run.id)
        if run_status not in (RunStatus.PLANNED, RunStatus.IN_PROGRESS):
            raise InvalidOperationError(
                f"Cannot add steps to a {run_status.lower()} run",
                details={"run_status": run_status},
            )
        order_status = await db.scalar(select(ProductionOrder.status).where(ProductionOrder.id == run.order_id))
        if order_status == OrderStatus.BLOCKED:
            raise InvalidStatusError("Order is blocked", details={"order_status": order_status})

        max_order = await db.scalar(select(func.coalesce(func.max(RunStep.order), 0)).where(RunStep.run_id == run.id))
        step = RunStep(
            run_id=run.id,
            key=f"adhoc_{secrets.token_hex(4)}",
            label=label,
            order=(max_order or 0) + 1,
            required=required,
            source=StepSource.ADHOC.value,
            template_id=None,
            status=StepStatus.PENDING.value,
        )
        db.add(step)
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_STEP_ADDED, "run_step", step.id,
            summary=f"Ad-hoc step '{label}' added",
            after={"run_id": run.id, "order": step.order, "required": required},
        )
        return step

    @staticmethod
    async def update_step_override(
        db: AsyncSession,
        actor: CurrentUser | None,
        step_id: UUID,
        label: str | None = None,
        required: bool | None = None,
    ) -> RunStep:
        """Edit a step for this run only. Template-sourced steps are marked as overridden."""
        ensure_permission(actor, PERM_STEPS_EDIT)
        step = await RunStepService.get_step(db, step_id)
        RunStepService._ensure_editable(step)
        before = {"label": step.label, "required": step.required}

        if label is not None:
            if not label.strip():
                raise ValidationError("Step label is required", details={"field": "label"})
            step.label = label.strip()
        if required is not None:
            step.required = required
        if step.source == StepSource.TEMPLATE:
            step.overridden = True
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_STEP_UPDATED, "run_step", step.id,
            summary=f"Step '{step.label}' overridden",
            before=before,
            after={"label": step.label, "required": step.required},
        )
        return step

    @staticmethod
    async def delete_step(db: AsyncSession, actor: CurrentUser | None, step_id: UUID) -> None:
        ensure_permission(actor, PERM_STEPS_EDIT)
        step = await RunStepService.get_step(db, step_id)
        RunStepService._ensure_editable(step)
        run_id, key, label = step.run_id, step.key, step.label

        await db.delete(step)
        await db.flush()
        for position, remaining in enumerate(await ProductionRunService.list_steps(db, run_id), start=1):
            remaining.order = position
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_STEP_DELETED, "run_step", step_id,
            summary=f"Step '{label}' removed from run",
            before={"key": key, "run_id": run_id},
        )

    @staticmethod
    async def reorder_steps(
        db: AsyncSession,
        actor: CurrentUser | None,
        run_id: UUID,
        ordered_step_ids: list[UUID],
    ) -> list[RunStep]:
        """Rewrite step order. Only before any work on the run has begun."""
        ensure_permission(actor, PERM_STEPS_EDIT)
        run = await ProductionRunService.get_run(db, run_id)
        run_status = await ProductionRunService.get_run_status(db, run.id)
        if run_status != RunStatus.PLANNED:
            raise InvalidOperationError(
                "Steps can only be reordered before the run has started",
                details={"run_status": run_status},
            )
        steps = await ProductionRunService.list_steps(db, run.id)
        by_id = {s.id: s for s in steps}
        if len(ordered_step_ids) != len(set(ordered_step_ids)) or set(ordered_step_ids) != set(by_id):
            raise ValidationError(
                "Reorder must list every step of the run exactly once",
                details={"expected": [str(i) for i in by_id], "received": [str(i) for i in ordered_step_ids]},
            )
        for position, step_id in enumerate(ordered_step_ids, start=1):
            by_id[step_id].order = position
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_STEPS_REORDERED, "production_run", run.id,
            summary="Run steps reordered",
            after={"order": [str(i) for i in ordered_step_ids]},
        )
        return sorted(steps, key=lambda s: s.order)

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    async def _compare_and_set(db: AsyncSession, step: RunStep, **values: Any) -> bool:
        """Apply ``values`` only if the step still has the status and assignee we read. Refreshes ``step``."""
        conditions = [RunStep.id == step.id, RunStep.status == step.status]
        if step.assigned_to_user_id is None:
            conditions.append(RunStep.assigned_to_user_id.is_(None))
        else:
            conditions.append(RunStep.assigned_to_user_id == step.assigned_to_user_id)

        result = await db.execute(
            update(RunStep).where(*conditions).values(**values).execution_options(synchronize_session=False)
        )
        await db.refresh(step)
        return result.rowcount == 1

    @staticmethod
    async def _ensure_order_open(db: AsyncSession, step: RunStep) -> None:
        order_status = await db.scalar(
            select(ProductionOrder.status)
            .join(ProductionRun, ProductionRun.order_id == ProductionOrder.id)
            .where(ProductionRun.id == step.run_id)
        )
        if order_status in FROZEN_ORDER_STATUSES:
            raise InvalidStatusError(
                f"Steps cannot change while the order is {order_status}",
                details={"order_status": order_status},
            )

    @staticmethod
    def _ensure_editable(step: RunStep) -> None:
        if step.status != StepStatus.PENDING:
            raise InvalidOperationError(
                "Only steps that have not been claimed or started can be edited",
                details={"step_id": str(step.id), "status": step.status},
            )

    @staticmethod
    def _owned_by_other(step: RunStep) -> ConflictError:
        return ConflictError(
            "Step is claimed or assigned by another user",
            details={
                "step_id": str(step.id),
                "status": step.status,
                "assigned_to_user_id": str(step.assigned_to_user_id) if step.assigned_to_user_id else None,
            },
        )

    @staticmethod
    async def _result(db: AsyncSession, step: RunStep) -> dict[str, Any]:
        return {
            "run_id": step.run_id,
            "step_id": step.id,
            "status": step.status,
            "run_status": await ProductionRunService.get_run_status(db, step.run_id),
            "assigned_to_user_id": step.assigned_to_user_id,
            "timestamps": {
                "claimed_at": step.claimed_at,
                "started_at": step.started_at,
                "completed_at": step.completed_at,
                "skipped_at": step.skipped_at,
            },
        }
