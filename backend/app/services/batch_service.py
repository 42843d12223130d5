"""BATCHWORKS batch execution: start, complete, QC, COA and labor entries."""
import logging
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidStatusError, NotFoundError, ValidationError
from app.core.rbac import (
    PERM_BATCHES_EXECUTE,
    PERM_BATCHES_LABOR,
    PERM_BATCHES_QC,
    PERM_PRODUCTION_VIEW,
    CurrentUser,
    ensure_permission,
)
from app.models.production import Batch, BatchStatus, LaborEntry, OrderStatus, ProductionOrder, QCStatus
from app.services.audit_service import (
    ACTION_BATCH_COA_ATTACHED,
    ACTION_BATCH_COMPLETED,
    ACTION_BATCH_QC_UPDATED,
    ACTION_BATCH_STARTED,
    ACTION_LABOR_LOGGED,
    log_audit,
)

logger = logging.getLogger(__name__)

QC_STATUSES = {s.value for s in QCStatus}


class BatchService:

    @staticmethod
    async def get_batch(db: AsyncSession, batch_id: UUID) -> Batch:
        batch = await db.scalar(select(Batch).where(Batch.id == batch_id).execution_options(populate_existing=True))
        if not batch:
            raise NotFoundError("Batch not found", details={"batch_id": str(batch_id)})
        return batch

    @staticmethod
    async def start_batch(db: AsyncSession, actor: CurrentUser | None, batch_id: UUID) -> Batch:
        ensure_permission(actor, PERM_BATCHES_EXECUTE)
        batch = await BatchService.get_batch(db, batch_id)
        await BatchService._ensure_order_running(db, batch)
        if batch.status == BatchStatus.IN_PROGRESS:
            return batch
        if batch.status != BatchStatus.PLANNED:
            raise InvalidStatusError(f"Cannot start a batch in status {batch.status}", details={"status": batch.status})

        moved = await BatchService._transition(
            db, batch, BatchStatus.PLANNED.value,
            status=BatchStatus.IN_PROGRESS.value, started_at=datetime.now(timezone.utc),
        )
        if not moved and batch.status != BatchStatus.IN_PROGRESS:
            raise InvalidStatusError("Batch status changed concurrently", details={"status": batch.status})

        logger.info("Batch %s started", batch.batch_code)
        await log_audit(
            db, actor.id, ACTION_BATCH_STARTED, "batch", batch.id,
            summary=f"Batch {batch.batch_code} started",
            before={"status": BatchStatus.PLANNED.value},
            after={"status": batch.status},
        )
        return batch

    @staticmethod
    async def complete_batch(
        db: AsyncSession,
        actor: CurrentUser | None,
        batch_id: UUID,
        actual_quantity: int,
        manufacture_date: date | None = None,
        expiration_date: date | None = None,
        coa_reference: str | None = None,
    ) -> Batch:
        """Record the produced quantity and mark the batch COMPLETED. Happens exactly once."""
        ensure_permission(actor, PERM_BATCHES_EXECUTE)
        if actual_quantity is None or actual_quantity < 0:
            raise ValidationError("Actual quantity must be zero or more", details={"field": "actual_quantity"})
        if manufacture_date and expiration_date and expiration_date < manufacture_date:
            raise ValidationError(
                "Expiration date cannot be before the manufacture date",
                details={"field": "expiration_date"},
            )
        batch = await BatchService.get_batch(db, batch_id)
        if batch.status == BatchStatus.COMPLETED:
            raise InvalidStatusError("Batch is already completed", details={"status": batch.status})
        await BatchService._ensure_order_running(db, batch)
        from_status = batch.status

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "status": BatchStatus.COMPLETED.value,
            "actual_quantity": actual_quantity,
            "manufacture_date": manufacture_date or now.date(),
            "expiration_date": expiration_date,
            "completed_at": now,
        }
        if batch.started_at is None:
            values["started_at"] = now
        if coa_reference:
            values["coa_reference"] = coa_reference

        moved = await BatchService._transition(db, batch, from_status, **values)
        if not moved:
            raise InvalidStatusError("Batch was completed concurrently", details={"status": batch.status})

        if actual_quantity != batch.planned_quantity:
            logger.warning(
                "Batch %s completed with %d units against %d planned",
                batch.batch_code, actual_quantity, batch.planned_quantity,
            )
        else:
            logger.info("Batch %s completed (%d units)", batch.batch_code, actual_quantity)
        await log_audit(
            db, actor.id, ACTION_BATCH_COMPLETED, "batch", batch.id,
            summary=f"Batch {batch.batch_code} completed",
            before={"status": from_status},
            after={"status": batch.status, "actual_quantity": actual_quantity, "planned_quantity": batch.planned_quantity},
        )
        return batch

    @staticmethod
    async def set_qc_status(
        db: AsyncSession,
        actor: CurrentUser | None,
        batch_id: UUID,
        qc_status: str,
        notes: str | None = None,
    ) -> Batch:
        ensure_permission(actor, PERM_BATCHES_QC)
        qc_status = (qc_status or "").upper()
        if qc_status not in QC_STATUSES:
            raise ValidationError(f"QC status must be one of {sorted(QC_STATUSES)}", details={"field": "qc_status"})
        batch = await BatchService.get_batch(db, batch_id)
        before = {"qc_status": batch.qc_status}

        batch.qc_status = qc_status
        if notes is not None:
            batch.qc_notes = notes
        await db.flush()

        if qc_status == QCStatus.FAIL:
            logger.warning("Batch %s failed QC: %s", batch.batch_code, notes)
        await log_audit(
            db, actor.id, ACTION_BATCH_QC_UPDATED, "batch", batch.id,
            summary=f"Batch {batch.batch_code} QC {qc_status}",
            before=before,
            after={"qc_status": qc_status, "notes": notes},
        )
        return batch

    @staticmethod
    async def attach_coa(db: AsyncSession, actor: CurrentUser | None, batch_id: UUID, reference: str) -> Batch:
        """Record where the certificate of analysis for the batch lives."""
        ensure_permission(actor, PERM_BATCHES_QC)
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("COA reference is required", details={"field": "reference"})
        batch = await BatchService.get_batch(db, batch_id)
        previous = batch.coa_reference
        batch.coa_reference = reference
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_BATCH_COA_ATTACHED, "batch", batch.id,
            summary=f"COA attached to {batch.batch_code}",
            before={"coa_reference": previous},
            after={"coa_reference": reference},
        )
        return batch

    @staticmethod
    async def add_labor_entry(
        db: AsyncSession,
        actor: CurrentUser | None,
        batch_id: UUID,
        worker_user_id: UUID,
        minutes: int,
        role: str | None = None,
        notes: str | None = None,
    ) -> LaborEntry:
        ensure_permission(actor, PERM_BATCHES_LABOR)
        if minutes is None or minutes <= 0:
            raise ValidationError("Minutes must be greater than zero", details={"field": "minutes"})
        batch = await BatchService.get_batch(db, batch_id)

        entry = LaborEntry(
            batch_id=batch.id,
            worker_user_id=worker_user_id,
            minutes=minutes,
            role=role,
            notes=notes,
            logged_by=actor.id,
        )
        db.add(entry)
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_LABOR_LOGGED, "batch", batch.id,
            summary=f"{minutes} min logged on {batch.batch_code}",
            after={"worker_user_id": worker_user_id, "minutes": minutes, "role": role},
        )
        return entry

    @staticmethod
    async def list_labor_entries(db: AsyncSession, actor: CurrentUser | None, batch_id: UUID) -> list[LaborEntry]:
        ensure_permission(actor, PERM_PRODUCTION_VIEW)
        await BatchService.get_batch(db, batch_id)
        result = await db.scalars(
            select(LaborEntry).where(LaborEntry.batch_id == batch_id).order_by(LaborEntry.created_at, LaborEntry.id)
        )
        return list(result.all())

    @staticmethod
    async def _ensure_order_running(db: AsyncSession, batch: Batch) -> None:
        order_status = await db.scalar(select(ProductionOrder.status).where(ProductionOrder.id == batch.order_id))
        if order_status != OrderStatus.IN_PROGRESS:
            raise InvalidStatusError(
                f"Batches can only change while the order is IN_PROGRESS (current: {order_status})",
                details={"order_status": order_status},
            )

    @staticmethod
    async def _transition(db: AsyncSession, batch: Batch, from_status: str, **values: Any) -> bool:
        result = await db.execute(
            update(Batch)
            .where(Batch.id == batch.id, Batch.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(batch)
        return result.rowcount == 1
