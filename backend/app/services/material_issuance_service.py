"""BATCHWORKS material issuance: consume raw materials against a batch or order, all or nothing."""
import logging
from collections import OrderedDict
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidStatusError, MaterialShortageError, NotFoundError, ValidationError
from app.core.rbac import PERM_MATERIALS_ISSUE, CurrentUser, ensure_permission
from app.models.inventory import AdjustmentType
from app.models.production import Batch, BatchStatus, ProductionOrder, TERMINAL_ORDER_STATUSES
from app.services.audit_service import ACTION_MATERIALS_ISSUED, log_audit
from app.services.inventory_ledger import BalanceKey, InventoryLedger

logger = logging.getLogger(__name__)


def _normalize_lines(lines: list[dict]) -> list[dict]:
    if not lines:
        raise ValidationError("At least one material line is required", details={"field": "lines"})
    normalized = []
    for index, line in enumerate(lines):
        try:
            quantity = Decimal(str(line["quantity"]))
            material_id = UUID(str(line["material_id"]))
            location_id = UUID(str(line["location_id"]))
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise ValidationError(f"Line {index} is malformed", details={"line": index}) from exc
        if quantity <= 0:
            raise ValidationError(
                f"Line {index}: quantity must be greater than zero",
                details={"line": index, "field": "quantity"},
            )
        normalized.append({"material_id": material_id, "location_id": location_id, "quantity": quantity})
    return normalized


class MaterialIssuanceService:

    @staticmethod
    async def issue(
        db: AsyncSession,
        actor: CurrentUser | None,
        target_id: UUID,
        lines: list[dict],
        notes: str | None = None,
    ) -> dict[str, Any]:
        """
        Issue materials to a batch (or, when ``target_id`` is an order id, to the order).

        1. Lock and read every balance involved.
        2. If any line is short, raise MATERIAL_SHORTAGE naming every short
           line with requested and available quantities. Nothing is consumed.
        3. Otherwise decrement each balance with a guarded update and write
           one CONSUMPTION adjustment per line.

        Steps 1 to 3 run inside a savepoint. A guard failure in step 3 also
        raises MATERIAL_SHORTAGE and rolls the savepoint back, so decrements
        already applied in this call are undone even if the caller commits.
        """
        ensure_permission(actor, PERM_MATERIALS_ISSUE)
        normalized = _normalize_lines(lines)
        order, batch = await MaterialIssuanceService._resolve_target(db, target_id)

        requested: "OrderedDict[BalanceKey, Decimal]" = OrderedDict()
        for line in normalized:
            key = (line["material_id"], line["location_id"])
            requested[key] = requested.get(key, Decimal("0")) + line["quantity"]
        reference_type, reference_id = ("BATCH", batch.id) if batch else ("PRODUCTION_ORDER", order.id)

        async with db.begin_nested():
            balances = await InventoryLedger.lock_balances(db, sorted(requested, key=lambda k: (str(k[0]), str(k[1]))))
            shortages = []
            for (material_id, location_id), quantity in requested.items():
                balance = balances.get((material_id, location_id))
                available = balance.quantity_available if balance else Decimal("0")
                if available < quantity:
                    shortages.append({
                        "material_id": str(material_id),
                        "location_id": str(location_id),
                        "requested": quantity,
                        "available": available,
                        "shortage": quantity - available,
                    })
            if shortages:
                logger.warning(
                    "Material shortage issuing to order %s: %d of %d lines short",
                    order.order_number, len(shortages), len(requested),
                )
                raise MaterialShortageError(shortages)

            for (material_id, location_id), quantity in requested.items():
                if not await InventoryLedger.try_decrement(db, material_id, location_id, quantity):
                    balance = await InventoryLedger.get_balance(db, material_id, location_id)
                    available = balance.quantity_available if balance else Decimal("0")
                    logger.warning("Balance %s@%s changed during issuance", material_id, location_id)
                    raise MaterialShortageError([{
                        "material_id": str(material_id),
                        "location_id": str(location_id),
                        "requested": quantity,
                        "available": available,
                        "shortage": quantity - available,
                    }])

            for line in normalized:
                InventoryLedger.record_adjustment(
                    db, line["material_id"], line["location_id"], AdjustmentType.CONSUMPTION, -line["quantity"],
                    reason=notes or f"Issued to {order.order_number}",
                    reference_type=reference_type,
                    reference_id=reference_id,
                    actor_id=actor.id,
                )
            await db.flush()

        issued = []
        for (material_id, location_id), quantity in requested.items():
            balance = await InventoryLedger.get_balance(db, material_id, location_id)
            issued.append({
                "material_id": material_id,
                "location_id": location_id,
                "quantity": quantity,
                "remaining_on_hand": balance.quantity_on_hand,
            })

        logger.info("Issued %d material lines to %s %s", len(normalized), reference_type, reference_id)
        await log_audit(
            db, actor.id, ACTION_MATERIALS_ISSUED, reference_type.lower(), reference_id,
            summary=f"Materials issued to {order.order_number}",
            after={"lines": normalized},
        )
        return {"order_id": order.id, "batch_id": batch.id if batch else None, "issued": issued}

    @staticmethod
    async def _resolve_target(db: AsyncSession, target_id: UUID) -> tuple[ProductionOrder, Batch | None]:
        batch = await db.get(Batch, target_id)
        if batch:
            order = await db.get(ProductionOrder, batch.order_id)
            if batch.status == BatchStatus.COMPLETED:
                raise InvalidStatusError("Cannot issue materials to a completed batch", details={"batch_id": str(batch.id)})
        else:
            order = await db.get(ProductionOrder, target_id)
        if not order:
            raise NotFoundError("Batch or production order not found", details={"target_id": str(target_id)})
        if order.status in TERMINAL_ORDER_STATUSES:
            raise InvalidStatusError(
                f"Cannot issue materials to an order in status {order.status}",
                details={"order_status": order.status},
            )
        return order, batch
