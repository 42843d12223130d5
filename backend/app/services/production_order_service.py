"""BATCHWORKS production order lifecycle: create, assign, start, block, archive, complete.

Status is only ever changed through guarded updates
(``UPDATE ... WHERE status IN (...)``) so two concurrent transitions cannot
both succeed from the same starting state.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidOperationError, InvalidStatusError, NotFoundError, ValidationError
from app.core.rbac import (
    PERM_PRODUCTION_ARCHIVE,
    PERM_PRODUCTION_ASSIGN,
    PERM_PRODUCTION_BLOCK,
    PERM_PRODUCTION_COMPLETE,
    PERM_PRODUCTION_CREATE,
    PERM_PRODUCTION_START,
    PERM_PRODUCTION_VIEW,
    CurrentUser,
    ensure_permission,
)
from app.models.product import Product
from app.models.production import (
    Batch,
    BatchStatus,
    OrderStatus,
    ProductionOrder,
    TERMINAL_ORDER_STATUSES,
)
from app.services.audit_service import (
    ACTION_ORDER_ARCHIVED,
    ACTION_ORDER_ASSIGNED,
    ACTION_ORDER_BLOCKED,
    ACTION_ORDER_COMPLETED,
    ACTION_ORDER_CREATED,
    ACTION_ORDER_RESUMED,
    ACTION_ORDER_STARTED,
    log_audit,
)
from app.services.production_run_service import ProductionRunService

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = {OrderStatus.DRAFT.value, OrderStatus.PLANNED.value, OrderStatus.BLOCKED.value}
BLOCKABLE_STATUSES = {OrderStatus.PLANNED.value, OrderStatus.IN_PROGRESS.value}


def _generate_order_number() -> str:
    return f"PO-{datetime.now(timezone.utc):%Y%m%d}-{secrets.token_hex(3).upper()}"


class ProductionOrderService:

    @staticmethod
    async def create_order(
        db: AsyncSession,
        actor: CurrentUser | None,
        product_id: UUID,
        quantity: int,
        *,
        draft: bool = False,
        assigned_to_user_id: UUID | None = None,
        notes: str | None = None,
    ) -> ProductionOrder:
        ensure_permission(actor, PERM_PRODUCTION_CREATE)
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be greater than zero", details={"field": "quantity"})

        product = await db.get(Product, product_id)
        if not product or not product.is_active:
            raise NotFoundError("Product not found or inactive", details={"product_id": str(product_id)})

        order = ProductionOrder(
            order_number=_generate_order_number(),
            product_id=product.id,
            quantity=quantity,
            status=(OrderStatus.DRAFT if draft else OrderStatus.PLANNED).value,
            assigned_to_user_id=assigned_to_user_id,
            notes=notes,
            created_by=actor.id,
        )
        db.add(order)
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_ORDER_CREATED, "production_order", order.id,
            summary=f"Production order {order.order_number} created for {product.sku} x {quantity}",
            after={"status": order.status, "quantity": quantity, "product_id": product.id},
        )
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: UUID) -> ProductionOrder:
        order = await db.get(ProductionOrder, order_id)
        if not order:
            raise NotFoundError("Production order not found", details={"order_id": str(order_id)})
        return order

    @staticmethod
    async def list_orders(
        db: AsyncSession,
        actor: CurrentUser | None,
        status: str | None = None,
    ) -> list[ProductionOrder]:
        ensure_permission(actor, PERM_PRODUCTION_VIEW)
        query = select(ProductionOrder)
        if status:
            query = query.where(ProductionOrder.status == status.upper())
        result = await db.scalars(query.order_by(ProductionOrder.created_at.desc(), ProductionOrder.order_number))
        return list(result.all())

    @staticmethod
    async def get_order_detail(db: AsyncSession, actor: CurrentUser | None, order_id: UUID) -> dict[str, Any]:
        """Order with its run, batches, steps and derived run status."""
        ensure_permission(actor, PERM_PRODUCTION_VIEW)
        order = await ProductionOrderService.get_order(db, order_id)
        run = await ProductionRunService.get_run_for_order(db, order.id)
        detail: dict[str, Any] = {"order": order, "run": None, "run_status": None, "batches": [], "steps": []}
        if run:
            detail["run"] = run
            detail["batches"] = await ProductionRunService.list_batches(db, run.id)
            detail["steps"] = await ProductionRunService.list_steps(db, run.id)
            detail["run_status"] = await ProductionRunService.get_run_status(db, run.id)
        return detail

    @staticmethod
    async def assign_order(
        db: AsyncSession,
        actor: CurrentUser | None,
        order_id: UUID,
        user_id: UUID | None,
    ) -> ProductionOrder:
        ensure_permission(actor, PERM_PRODUCTION_ASSIGN)
        order = await ProductionOrderService.get_order(db, order_id)
        if order.status in TERMINAL_ORDER_STATUSES:
            raise InvalidStatusError(
                f"Cannot assign an order in status {order.status}",
                details={"status": order.status},
            )
        previous = order.assigned_to_user_id
        order.assigned_to_user_id = user_id
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_ORDER_ASSIGNED, "production_order", order.id,
            summary=f"Order {order.order_number} assigned",
            before={"assigned_to_user_id": previous},
            after={"assigned_to_user_id": user_id},
        )
        return order

    @staticmethod
    async def start_order(
        db: AsyncSession,
        actor: CurrentUser | None,
        order_id: UUID,
        assign_to_user_id: UUID | None = None,
    ) -> dict[str, Any]:
        """
        Start (or resume) an order.

        From DRAFT/PLANNED: creates the run, its batches and steps, then moves
        the order to IN_PROGRESS. From BLOCKED: resumes the existing run; no
        new run or batches are created. Returns ``{production_run_id, batch_ids}``.
        """
        ensure_permission(actor, PERM_PRODUCTION_START)
        order = await ProductionOrderService.get_order(db, order_id)
        if order.status not in STARTABLE_STATUSES:
            raise InvalidStatusError(
                f"Cannot start an order in status {order.status}",
                details={"status": order.status, "allowed": sorted(STARTABLE_STATUSES)},
            )
        from_status = order.status

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"status": OrderStatus.IN_PROGRESS.value, "block_reason": None}
        if order.started_at is None:
            values["started_at"] = now
        if assign_to_user_id is not None:
            values["assigned_to_user_id"] = assign_to_user_id
        moved = await ProductionOrderService._transition(db, order, [from_status], values)
        if not moved:
            raise InvalidStatusError(
                "Order status changed concurrently, reload and retry",
                details={"expected": from_status},
            )

        run = await ProductionRunService.get_run_for_order(db, order.id)
        if run:
            batches = await ProductionRunService.list_batches(db, run.id)
            action = ACTION_ORDER_RESUMED
        else:
            product = await db.get(Product, order.product_id)
            if not product:
                raise NotFoundError("Product not found", details={"product_id": str(order.product_id)})
            run, batches, _ = await ProductionRunService.create_for_order(db, order, product, actor)
            action = ACTION_ORDER_STARTED

        logger.info("Order %s %s -> IN_PROGRESS (run %s)", order.order_number, from_status, run.id)
        await log_audit(
            db, actor.id, action, "production_order", order.id,
            summary=f"Order {order.order_number} started",
            before={"status": from_status},
            after={"status": OrderStatus.IN_PROGRESS.value, "production_run_id": run.id},
        )
        return {"production_run_id": run.id, "batch_ids": [b.id for b in batches]}

    @staticmethod
    async def block_order(
        db: AsyncSession,
        actor: CurrentUser | None,
        order_id: UUID,
        reason: str,
    ) -> ProductionOrder:
        """Put an order on hold. Existing batches and steps are left untouched."""
        ensure_permission(actor, PERM_PRODUCTION_BLOCK)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to block an order", details={"field": "reason"})
        order = await ProductionOrderService.get_order(db, order_id)
        if order.status not in BLOCKABLE_STATUSES:
            raise InvalidStatusError(
                f"Cannot block an order in status {order.status}",
                details={"status": order.status, "allowed": sorted(BLOCKABLE_STATUSES)},
            )
        from_status = order.status

        moved = await ProductionOrderService._transition(
            db, order, [from_status],
            {"status": OrderStatus.BLOCKED.value, "block_reason": reason, "blocked_at": datetime.now(timezone.utc)},
        )
        if not moved:
            raise InvalidStatusError("Order status changed concurrently, reload and retry", details={"expected": from_status})

        logger.info("Order %s blocked: %s", order.order_number, reason)
        await log_audit(
            db, actor.id, ACTION_ORDER_BLOCKED, "production_order", order.id,
            summary=f"Order {order.order_number} blocked",
            before={"status": from_status},
            after={"status": OrderStatus.BLOCKED.value, "reason": reason},
        )
        return order

    @staticmethod
    async def archive_blocked_order(
        db: AsyncSession,
        actor: CurrentUser | None,
        order_id: UUID,
        reason: str,
    ) -> ProductionOrder:
        """Terminal cancel path, only reachable from BLOCKED."""
        ensure_permission(actor, PERM_PRODUCTION_ARCHIVE)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to archive an order", details={"field": "reason"})
        order = await ProductionOrderService.get_order(db, order_id)
        if order.status != OrderStatus.BLOCKED:
            raise InvalidStatusError(
                "Only blocked orders can be archived",
                details={"status": order.status},
            )

        moved = await ProductionOrderService._transition(
            db, order, [OrderStatus.BLOCKED.value],
            {"status": OrderStatus.ARCHIVED.value, "archive_reason": reason, "archived_at": datetime.now(timezone.utc)},
        )
        if not moved:
            raise InvalidStatusError("Order status changed concurrently, reload and retry", details={"expected": "BLOCKED"})

        logger.info("Order %s archived: %s", order.order_number, reason)
        await log_audit(
            db, actor.id, ACTION_ORDER_ARCHIVED, "production_order", order.id,
            summary=f"Order {order.order_number} archived",
            before={"status": OrderStatus.BLOCKED.value, "block_reason": order.block_reason},
            after={"status": OrderStatus.ARCHIVED.value, "reason": reason},
        )
        return order

    @staticmethod
    async def complete_order(db: AsyncSession, actor: CurrentUser | None, order_id: UUID) -> ProductionOrder:
        """Close an IN_PROGRESS order once every batch of its run is COMPLETED."""
        ensure_permission(actor, PERM_PRODUCTION_COMPLETE)
        order = await ProductionOrderService.get_order(db, order_id)
        if order.status != OrderStatus.IN_PROGRESS:
            raise InvalidStatusError(
                f"Cannot complete an order in status {order.status}",
                details={"status": order.status},
            )

        rows = (
            await db.execute(select(Batch.id, Batch.status).where(Batch.order_id == order.id).order_by(Batch.batch_code))
        ).all()
        incomplete = [str(batch_id) for batch_id, status in rows if status != BatchStatus.COMPLETED]
        if not rows or incomplete:
            raise InvalidOperationError(
                "All batches must be completed before the order can be completed",
                details={"incomplete_batch_ids": incomplete},
            )

        moved = await ProductionOrderService._transition(
            db, order, [OrderStatus.IN_PROGRESS.value],
            {"status": OrderStatus.COMPLETED.value, "completed_at": datetime.now(timezone.utc)},
        )
        if not moved:
            raise InvalidStatusError("Order status changed concurrently, reload and retry", details={"expected": "IN_PROGRESS"})

        logger.info("Order %s completed", order.order_number)
        await log_audit(
            db, actor.id, ACTION_ORDER_COMPLETED, "production_order", order.id,
            summary=f"Order {order.order_number} completed",
            before={"status": OrderStatus.IN_PROGRESS.value},
            after={"status": OrderStatus.COMPLETED.value, "batches": len(rows)},
        )
        return order

    @staticmethod
    async def _transition(
        db: AsyncSession,
        order: ProductionOrder,
        from_statuses: list[str],
        values: dict[str, Any],
    ) -> bool:
        """Guarded status update. Returns False when another writer moved the order first."""
        result = await db.execute(
            update(ProductionOrder)
            .where(ProductionOrder.id == order.id, ProductionOrder.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(order)
        return result.rowcount == 1
