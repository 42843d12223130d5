"""BATCHWORKS production run / batch orchestrator.

Creates the run for an order, splits the order quantity into batches and
clones the product's step templates into PENDING run steps. Also owns run
status derivation: a run's status is never stored, it is computed from the
parent order, its batches and its steps every time it is read.
"""
import logging
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidOperationError, NotFoundError
from app.core.rbac import CurrentUser
from app.models.product import Product
from app.models.production import (
    Batch,
    BatchStatus,
    OrderStatus,
    ProductionOrder,
    ProductionRun,
    RunStatus,
    RunStep,
    StepSource,
    StepStatus,
    TERMINAL_STEP_STATUSES,
)
from app.services.audit_service import ACTION_RUN_CREATED, log_audit
from app.services.step_template_service import StepTemplateService

logger = logging.getLogger(__name__)


def plan_batch_quantities(quantity: int, default_batch_size: int | None) -> list[int]:
    """
    Split an order quantity into batch quantities.

    Full batches of ``default_batch_size`` with the remainder on the last one
    (250 / 100 -> [100, 100, 50]). Without a positive batch size the whole
    quantity is one batch.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    if not default_batch_size or default_batch_size <= 0:
        return [quantity]
    count = -(-quantity // default_batch_size)
    return [default_batch_size] * (count - 1) + [quantity - default_batch_size * (count - 1)]


def make_batch_code(sku: str, run_id: UUID, index: int) -> str:
    """Content-derived, so two runs can never collide: SKU-RUNHEX-NN."""
    return f"{sku}-{run_id.hex[:8].upper()}-{index:02d}"


def derive_run_status(
    order_status: str,
    batch_statuses: Iterable[str],
    step_statuses: Iterable[str],
) -> str:
    batch_statuses = list(batch_statuses)
    step_statuses = list(step_statuses)

    if order_status == OrderStatus.ARCHIVED:
        return RunStatus.CANCELLED.value
    if order_status == OrderStatus.COMPLETED:
        return RunStatus.COMPLETED.value
    if (
        batch_statuses
        and all(s == BatchStatus.COMPLETED for s in batch_statuses)
        and all(s in TERMINAL_STEP_STATUSES for s in step_statuses)
    ):
        return RunStatus.COMPLETED.value
    if any(s != StepStatus.PENDING for s in step_statuses) or any(s != BatchStatus.PLANNED for s in batch_statuses):
        return RunStatus.IN_PROGRESS.value
    return RunStatus.PLANNED.value


class ProductionRunService:

    @staticmethod
    async def create_for_order(
        db: AsyncSession,
        order: ProductionOrder,
        product: Product,
        actor: CurrentUser,
    ) -> tuple[ProductionRun, list[Batch], list[RunStep]]:
        """
        Create the run, its batches and its steps for ``order``.

        Everything is flushed into the caller's transaction; the request
        session commits or rolls back the whole set together with the order
        transition. Called only by the order lifecycle service, which has
        already checked permissions and status.
        """
        existing = await db.scalar(select(ProductionRun.id).where(ProductionRun.order_id == order.id))
        if existing:
            raise InvalidOperationError(
                "Production run already exists for this order",
                details={"order_id": str(order.id), "production_run_id": str(existing)},
            )

        run = ProductionRun(
            order_id=order.id,
            product_id=product.id,
            quantity=order.quantity,
            created_by=actor.id,
        )
        db.add(run)
        await db.flush()

        batches: list[Batch] = []
        for index, planned in enumerate(plan_batch_quantities(order.quantity, product.default_batch_size), start=1):
            batch = Batch(
                run_id=run.id,
                order_id=order.id,
                product_id=product.id,
                batch_code=make_batch_code(product.sku, run.id, index),
                planned_quantity=planned,
                status=BatchStatus.PLANNED.value,
            )
            db.add(batch)
            batches.append(batch)

        steps: list[RunStep] = []
        for template in await StepTemplateService.list_templates(db, product.id):
            step = RunStep(
                run_id=run.id,
                key=template.key,
                label=template.label,
                order=template.order,
                required=template.required,
                source=StepSource.TEMPLATE.value,
                template_id=template.id,
                status=StepStatus.PENDING.value,
            )
            db.add(step)
            steps.append(step)

        await db.flush()
        logger.info(
            "Production run %s created for order %s: %d batches, %d steps",
            run.id, order.order_number, len(batches), len(steps),
        )
        await log_audit(
            db, actor.id, ACTION_RUN_CREATED, "production_run", run.id,
            summary=f"Run created for {order.order_number}",
            after={
                "order_id": order.id,
                "batches": [{"batch_code": b.batch_code, "planned_quantity": b.planned_quantity} for b in batches],
                "steps": [s.key for s in steps],
            },
        )
        return run, batches, steps

    @staticmethod
    async def get_run(db: AsyncSession, run_id: UUID) -> ProductionRun:
        run = await db.get(ProductionRun, run_id)
        if not run:
            raise NotFoundError("Production run not found", details={"run_id": str(run_id)})
        return run

    @staticmethod
    async def get_run_for_order(db: AsyncSession, order_id: UUID) -> ProductionRun | None:
        return await db.scalar(select(ProductionRun).where(ProductionRun.order_id == order_id))

    @staticmethod
    async def list_batches(db: AsyncSession, run_id: UUID) -> list[Batch]:
        result = await db.scalars(select(Batch).where(Batch.run_id == run_id).order_by(Batch.batch_code))
        return list(result.all())

    @staticmethod
    async def list_steps(db: AsyncSession, run_id: UUID) -> list[RunStep]:
        result = await db.scalars(select(RunStep).where(RunStep.run_id == run_id).order_by(RunStep.order))
        return list(result.all())

    @staticmethod
    async def get_run_status(db: AsyncSession, run_id: UUID) -> str:
        """Derive the run status from fresh column reads."""
        order_status = await db.scalar(
            select(ProductionOrder.status)
            .join(ProductionRun, ProductionRun.order_id == ProductionOrder.id)
            .where(ProductionRun.id == run_id)
        )
        if order_status is None:
            raise NotFoundError("Production run not found", details={"run_id": str(run_id)})
        batch_statuses = (await db.scalars(select(Batch.status).where(Batch.run_id == run_id))).all()
        step_statuses = (await db.scalars(select(RunStep.status).where(RunStep.run_id == run_id))).all()
        return derive_run_status(order_status, batch_statuses, step_statuses)
