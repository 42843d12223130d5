"""BATCHWORKS inventory ledger adapter: balances per (material, location) plus an append-only adjustment log.

Every decrement is a guarded UPDATE (``WHERE on_hand - reserved >= qty``) so
concurrent consumers can never drive available stock negative.
"""
import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidOperationError, MaterialShortageError, ValidationError
from app.core.rbac import (
    PERM_INVENTORY_ADJUST,
    PERM_INVENTORY_RESERVE,
    PERM_INVENTORY_VIEW,
    CurrentUser,
    ensure_permission,
)
from app.models.inventory import AdjustmentType, InventoryAdjustment, InventoryBalance
from app.services.audit_service import ACTION_INVENTORY_ADJUSTED, log_audit

logger = logging.getLogger(__name__)

BalanceKey = tuple[UUID, UUID]

MANUAL_ADJUSTMENT_TYPES = {AdjustmentType.RECEIVING.value, AdjustmentType.MANUAL_CORRECTION.value}


class InventoryLedger:

    @staticmethod
    async def get_balance(db: AsyncSession, material_id: UUID, location_id: UUID) -> InventoryBalance | None:
        return await db.scalar(
            select(InventoryBalance)
            .where(InventoryBalance.material_id == material_id, InventoryBalance.location_id == location_id)
            .execution_options(populate_existing=True)
        )

    @staticmethod
    async def list_balances(
        db: AsyncSession,
        actor: CurrentUser | None,
        material_id: UUID | None = None,
        location_id: UUID | None = None,
    ) -> list[InventoryBalance]:
        ensure_permission(actor, PERM_INVENTORY_VIEW)
        query = select(InventoryBalance)
        if material_id:
            query = query.where(InventoryBalance.material_id == material_id)
        if location_id:
            query = query.where(InventoryBalance.location_id == location_id)
        result = await db.scalars(
            query.order_by(InventoryBalance.material_id, InventoryBalance.location_id)
            .execution_options(populate_existing=True)
        )
        return list(result.all())

    @staticmethod
    async def lock_balances(db: AsyncSession, keys: list[BalanceKey]) -> dict[BalanceKey, InventoryBalance]:
        """SELECT ... FOR UPDATE every balance row in ``keys``. Rows are locked in key order."""
        if not keys:
            return {}
        result = await db.scalars(
            select(InventoryBalance)
            .where(or_(*[
                and_(InventoryBalance.material_id == material_id, InventoryBalance.location_id == location_id)
                for material_id, location_id in keys
            ]))
            .order_by(InventoryBalance.material_id, InventoryBalance.location_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {(b.material_id, b.location_id): b for b in result.all()}

    @staticmethod
    async def try_decrement(db: AsyncSession, material_id: UUID, location_id: UUID, quantity: Decimal) -> bool:
        """Guarded on-hand decrement. False when available stock no longer covers ``quantity``."""
        result = await db.execute(
            update(InventoryBalance)
            .where(
                InventoryBalance.material_id == material_id,
                InventoryBalance.location_id == location_id,
                InventoryBalance.quantity_on_hand - InventoryBalance.quantity_reserved >= quantity,
            )
            .values(quantity_on_hand=InventoryBalance.quantity_on_hand - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def record_adjustment(
        db: AsyncSession,
        material_id: UUID,
        location_id: UUID,
        adjustment_type: AdjustmentType | str,
        delta_qty: Decimal,
        *,
        reason: str | None = None,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> InventoryAdjustment:
        entry = InventoryAdjustment(
            material_id=material_id,
            location_id=location_id,
            adjustment_type=adjustment_type.value if isinstance(adjustment_type, AdjustmentType) else adjustment_type,
            delta_qty=delta_qty,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
        db.add(entry)
        return entry

    @staticmethod
    async def adjust(
        db: AsyncSession,
        actor: CurrentUser | None,
        material_id: UUID,
        location_id: UUID,
        delta_qty: Decimal,
        adjustment_type: AdjustmentType | str = AdjustmentType.MANUAL_CORRECTION,
        reason: str | None = None,
    ) -> InventoryBalance:
        """Receive stock or correct a count. On-hand may never drop below zero or below the reserved quantity."""
        ensure_permission(actor, PERM_INVENTORY_ADJUST)
        adjustment_type = adjustment_type.value if isinstance(adjustment_type, AdjustmentType) else adjustment_type
        if adjustment_type not in MANUAL_ADJUSTMENT_TYPES:
            raise ValidationError(
                f"Adjustment type must be one of {sorted(MANUAL_ADJUSTMENT_TYPES)}",
                details={"field": "adjustment_type"},
            )
        delta_qty = Decimal(delta_qty)
        if delta_qty == 0:
            raise ValidationError("Adjustment quantity must be non-zero", details={"field": "delta_qty"})
        if adjustment_type == AdjustmentType.RECEIVING and delta_qty < 0:
            raise ValidationError("Received quantity must be positive", details={"field": "delta_qty"})
        if adjustment_type == AdjustmentType.MANUAL_CORRECTION and not (reason or "").strip():
            raise ValidationError("A reason is required for manual corrections", details={"field": "reason"})

        balance = (await InventoryLedger.lock_balances(db, [(material_id, location_id)])).get((material_id, location_id))
        if balance is None:
            balance = InventoryBalance(
                material_id=material_id,
                location_id=location_id,
                quantity_on_hand=Decimal("0"),
                quantity_reserved=Decimal("0"),
            )
            db.add(balance)
            await db.flush()

        before = {"on_hand": balance.quantity_on_hand, "reserved": balance.quantity_reserved}
        new_on_hand = balance.quantity_on_hand + delta_qty
        if new_on_hand < 0:
            raise InvalidOperationError(
                f"Negative stock not allowed: balance would be {new_on_hand}",
                details={"on_hand": balance.quantity_on_hand, "delta_qty": delta_qty},
            )
        if new_on_hand < balance.quantity_reserved:
            raise InvalidOperationError(
                "On-hand cannot drop below the reserved quantity",
                details={"on_hand": new_on_hand, "reserved": balance.quantity_reserved},
            )

        balance.quantity_on_hand = new_on_hand
        InventoryLedger.record_adjustment(
            db, material_id, location_id, adjustment_type, delta_qty,
            reason=reason, reference_type="MANUAL", actor_id=actor.id,
        )
        await db.flush()

        logger.info("Inventory %s@%s adjusted by %s (%s)", material_id, location_id, delta_qty, adjustment_type)
        await log_audit(
            db, actor.id, ACTION_INVENTORY_ADJUSTED, "inventory_balance", balance.id,
            summary=f"{adjustment_type} {delta_qty}",
            before=before,
            after={"on_hand": balance.quantity_on_hand, "reserved": balance.quantity_reserved},
        )
        return balance

    @staticmethod
    async def reserve(
        db: AsyncSession,
        actor: CurrentUser | None,
        material_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        reason: str | None = None,
    ) -> InventoryBalance:
        """Hold stock so it no longer counts as available."""
        ensure_permission(actor, PERM_INVENTORY_RESERVE)
        quantity = Decimal(quantity)
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero", details={"field": "quantity"})

        result = await db.execute(
            update(InventoryBalance)
            .where(
                InventoryBalance.material_id == material_id,
                InventoryBalance.location_id == location_id,
                InventoryBalance.quantity_on_hand - InventoryBalance.quantity_reserved >= quantity,
            )
            .values(quantity_reserved=InventoryBalance.quantity_reserved + quantity)
            .execution_options(synchronize_session=False)
        )
        balance = await InventoryLedger.get_balance(db, material_id, location_id)
        if result.rowcount != 1:
            available = balance.quantity_available if balance else Decimal("0")
            raise MaterialShortageError([{
                "material_id": str(material_id),
                "location_id": str(location_id),
                "requested": quantity,
                "available": available,
                "shortage": quantity - available,
            }], message="Insufficient available stock to reserve")

        InventoryLedger.record_adjustment(
            db, material_id, location_id, AdjustmentType.RESERVE, quantity,
            reason=reason or f"reserved {quantity}", actor_id=actor.id,
        )
        await db.flush()
        return balance

    @staticmethod
    async def release(
        db: AsyncSession,
        actor: CurrentUser | None,
        material_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        reason: str | None = None,
    ) -> InventoryBalance:
        ensure_permission(actor, PERM_INVENTORY_RESERVE)
        quantity = Decimal(quantity)
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero", details={"field": "quantity"})

        result = await db.execute(
            update(InventoryBalance)
            .where(
                InventoryBalance.material_id == material_id,
                InventoryBalance.location_id == location_id,
                InventoryBalance.quantity_reserved >= quantity,
            )
            .values(quantity_reserved=InventoryBalance.quantity_reserved - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidOperationError(
                "Cannot release more than is reserved",
                details={"material_id": str(material_id), "location_id": str(location_id), "requested": quantity},
            )

        InventoryLedger.record_adjustment(
            db, material_id, location_id, AdjustmentType.RELEASE, -quantity,
            reason=reason or f"released {quantity}", actor_id=actor.id,
        )
        await db.flush()
        return await InventoryLedger.get_balance(db, material_id, location_id)
