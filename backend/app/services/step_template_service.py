"""BATCHWORKS step template catalog: per-product ordered checklist cloned into new runs."""
import logging
import re
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidOperationError, NotFoundError, ValidationError
from app.core.rbac import PERM_PRODUCTION_VIEW, PERM_TEMPLATES_MANAGE, CurrentUser, ensure_permission
from app.models.product import Product, ProductStepTemplate
from app.models.production import OrderStatus, ProductionOrder, ProductionRun, RunStep
from app.services.audit_service import (
    ACTION_TEMPLATE_CREATED,
    ACTION_TEMPLATE_DELETED,
    ACTION_TEMPLATE_UPDATED,
    ACTION_TEMPLATES_REORDERED,
    log_audit,
)

logger = logging.getLogger(__name__)

TEMPLATE_KEY_RE = re.compile(r"^[a-z0-9_]+$", re.IGNORECASE)


class StepTemplateService:

    @staticmethod
    async def list_templates(db: AsyncSession, product_id: UUID) -> list[ProductStepTemplate]:
        """Templates for a product in execution order."""
        result = await db.scalars(
            select(ProductStepTemplate)
            .where(ProductStepTemplate.product_id == product_id)
            .order_by(ProductStepTemplate.order)
        )
        return list(result.all())

    @staticmethod
    async def list_for_actor(db: AsyncSession, actor: CurrentUser | None, product_id: UUID) -> list[ProductStepTemplate]:
        ensure_permission(actor, PERM_PRODUCTION_VIEW)
        await StepTemplateService._get_product(db, product_id)
        return await StepTemplateService.list_templates(db, product_id)

    @staticmethod
    async def create_template(
        db: AsyncSession,
        actor: CurrentUser | None,
        product_id: UUID,
        key: str,
        label: str,
        required: bool = True,
    ) -> ProductStepTemplate:
        """Append a template at the end of the product's sequence."""
        ensure_permission(actor, PERM_TEMPLATES_MANAGE)
        await StepTemplateService._get_product(db, product_id)

        key = (key or "").strip()
        label = (label or "").strip()
        if not TEMPLATE_KEY_RE.match(key):
            raise ValidationError(
                "Step key may only contain letters, digits and underscores",
                details={"field": "key"},
            )
        if not label:
            raise ValidationError("Step label is required", details={"field": "label"})

        duplicate = await db.scalar(
            select(ProductStepTemplate.id).where(
                ProductStepTemplate.product_id == product_id,
                ProductStepTemplate.key == key,
            )
        )
        if duplicate:
            raise ValidationError(f"Step key '{key}' already exists for this product", details={"field": "key"})

        max_order = await db.scalar(
            select(func.coalesce(func.max(ProductStepTemplate.order), 0)).where(
                ProductStepTemplate.product_id == product_id
            )
        )
        template = ProductStepTemplate(
            product_id=product_id,
            key=key,
            label=label,
            required=required,
            order=(max_order or 0) + 1,
        )
        db.add(template)
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_TEMPLATE_CREATED, "product_step_template", template.id,
            summary=f"Step template '{key}' added",
            after={"key": key, "label": label, "order": template.order, "required": required},
        )
        return template

    @staticmethod
    async def update_template(
        db: AsyncSession,
        actor: CurrentUser | None,
        template_id: UUID,
        label: str | None = None,
        required: bool | None = None,
    ) -> ProductStepTemplate:
        """Edit a template. Runs already created keep their cloned copy."""
        ensure_permission(actor, PERM_TEMPLATES_MANAGE)
        template = await StepTemplateService._get_template(db, template_id)
        before = {"label": template.label, "required": template.required}

        if label is not None:
            if not label.strip():
                raise ValidationError("Step label is required", details={"field": "label"})
            template.label = label.strip()
        if required is not None:
            template.required = required
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_TEMPLATE_UPDATED, "product_step_template", template.id,
            summary=f"Step template '{template.key}' updated",
            before=before,
            after={"label": template.label, "required": template.required},
        )
        return template

    @staticmethod
    async def reorder_templates(
        db: AsyncSession,
        actor: CurrentUser | None,
        product_id: UUID,
        ordered_ids: list[UUID],
    ) -> list[ProductStepTemplate]:
        """Rewrite the sequence. The list must name every template of the product exactly once."""
        ensure_permission(actor, PERM_TEMPLATES_MANAGE)
        templates = await StepTemplateService.list_templates(db, product_id)
        by_id = {t.id: t for t in templates}
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
            raise ValidationError(
                "Reorder must list every template of the product exactly once",
                details={"expected": [str(i) for i in by_id], "received": [str(i) for i in ordered_ids]},
            )
        for position, template_id in enumerate(ordered_ids, start=1):
            by_id[template_id].order = position
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_TEMPLATES_REORDERED, "product", product_id,
            summary="Step templates reordered",
            after={"order": [str(i) for i in ordered_ids]},
        )
        return sorted(templates, key=lambda t: t.order)

    @staticmethod
    async def delete_template(db: AsyncSession, actor: CurrentUser | None, template_id: UUID) -> None:
        """Delete a template unless an open run still holds a step cloned from it."""
        ensure_permission(actor, PERM_TEMPLATES_MANAGE)
        template = await StepTemplateService._get_template(db, template_id)

        in_use = await db.scalar(
            select(func.count(RunStep.id))
            .join(ProductionRun, ProductionRun.id == RunStep.run_id)
            .join(ProductionOrder, ProductionOrder.id == ProductionRun.order_id)
            .where(
                RunStep.template_id == template_id,
                ProductionOrder.status.notin_([OrderStatus.COMPLETED.value, OrderStatus.ARCHIVED.value]),
            )
        )
        if in_use:
            raise InvalidOperationError(
                "Step template is referenced by an in-flight production run",
                details={"template_id": str(template_id), "open_steps": in_use},
            )

        product_id = template.product_id
        key = template.key
        await db.delete(template)
        await db.flush()

        # Keep the sequence gap-free
        for position, remaining in enumerate(await StepTemplateService.list_templates(db, product_id), start=1):
            remaining.order = position
        await db.flush()

        await log_audit(
            db, actor.id, ACTION_TEMPLATE_DELETED, "product_step_template", template_id,
            summary=f"Step template '{key}' deleted",
        )

    @staticmethod
    async def _get_product(db: AsyncSession, product_id: UUID) -> Product:
        product = await db.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found", details={"product_id": str(product_id)})
        return product

    @staticmethod
    async def _get_template(db: AsyncSession, template_id: UUID) -> ProductStepTemplate:
        template = await db.get(ProductStepTemplate, template_id)
        if not template:
            raise NotFoundError("Step template not found", details={"template_id": str(template_id)})
        return template
