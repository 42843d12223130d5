"""BATCHWORKS audit sink."""
import logging
from typing import Any
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditLog

logger = logging.getLogger(__name__)

# ── Audit action constants ────────────────────────────────────────────────────
ACTION_ORDER_CREATED = "production_order.created"
ACTION_ORDER_ASSIGNED = "production_order.assigned"
ACTION_ORDER_STARTED = "production_order.started"
ACTION_ORDER_RESUMED = "production_order.resumed"
ACTION_ORDER_BLOCKED = "production_order.blocked"
ACTION_ORDER_ARCHIVED = "production_order.archived"
ACTION_ORDER_COMPLETED = "production_order.completed"
ACTION_RUN_CREATED = "production_run.created"
ACTION_STEP_CLAIMED = "run_step.claimed"
ACTION_STEP_STARTED = "run_step.started"
ACTION_STEP_COMPLETED = "run_step.completed"
ACTION_STEP_SKIPPED = "run_step.skipped"
ACTION_STEP_ASSIGNED = "run_step.assigned"
ACTION_STEP_ADDED = "run_step.added"
ACTION_STEP_UPDATED = "run_step.updated"
ACTION_STEP_DELETED = "run_step.deleted"
ACTION_STEPS_REORDERED = "run_step.reordered"
ACTION_BATCH_STARTED = "batch.started"
ACTION_BATCH_COMPLETED = "batch.completed"
ACTION_BATCH_QC_UPDATED = "batch.qc_updated"
ACTION_BATCH_COA_ATTACHED = "batch.coa_attached"
ACTION_LABOR_LOGGED = "batch.labor_logged"
ACTION_MATERIALS_ISSUED = "materials.issued"
ACTION_INVENTORY_ADJUSTED = "inventory.adjusted"
ACTION_TEMPLATE_CREATED = "step_template.created"
ACTION_TEMPLATE_UPDATED = "step_template.updated"
ACTION_TEMPLATE_DELETED = "step_template.deleted"
ACTION_TEMPLATES_REORDERED = "step_template.reordered"


async def log_audit(
    db: AsyncSession,
    actor_id: UUID | None,
    action: str,
    target_type: str | None = None,
    target_id: UUID | None = None,
    summary: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    payload: dict[str, Any] | None = None,
) -> None:
    """Write an audit log entry. Call this from services after the main action."""
    try:
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            summary=summary,
            before=jsonable_encoder(before) if before is not None else None,
            after=jsonable_encoder(after) if after is not None else None,
            payload=jsonable_encoder(payload) if payload is not None else None,
        )
        db.add(entry)
        # No flush here: the row is committed atomically with the main action.
    except Exception as exc:
        # Never allow audit failure to break the main request
        logger.error("Audit log write failed: %s", exc, exc_info=True)
