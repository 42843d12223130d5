"""Per-product step template catalog."""
import pytest

from app.core.errors import ForbiddenError, InvalidOperationError, ValidationError
from app.services.production_order_service import ProductionOrderService
from app.services.production_run_service import ProductionRunService
from app.services.step_template_service import StepTemplateService


async def test_templates_listed_in_order(db, admin, product):
    templates = await StepTemplateService.list_for_actor(db, admin, product.id)
    assert [t.key for t in templates] == ["prep", "mix", "pack"]
    assert [t.order for t in templates] == [1, 2, 3]


async def test_create_template_validation(db, admin, product):
    with pytest.raises(ValidationError):
        await StepTemplateService.create_template(db, admin, product.id, "bad key!", "Bad")
    with pytest.raises(ValidationError):
        await StepTemplateService.create_template(db, admin, product.id, "mix", "Mix again")
    with pytest.raises(ValidationError):
        await StepTemplateService.create_template(db, admin, product.id, "label", "  ")

    template = await StepTemplateService.create_template(db, admin, product.id, "label_bottles", "Label", required=False)
    assert template.order == 4
    assert template.required is False


async def test_rep_cannot_manage_templates(db, rep, product):
    with pytest.raises(ForbiddenError):
        await StepTemplateService.create_template(db, rep, product.id, "qc", "QC check")


async def test_reorder_templates(db, admin, product):
    prep, mix, pack = await StepTemplateService.list_templates(db, product.id)
    reordered = await StepTemplateService.reorder_templates(db, admin, product.id, [mix.id, prep.id, pack.id])
    assert [t.key for t in reordered] == ["mix", "prep", "pack"]

    with pytest.raises(ValidationError):
        await StepTemplateService.reorder_templates(db, admin, product.id, [mix.id, mix.id, pack.id])


async def test_template_edits_do_not_touch_existing_runs(db, admin, product, started):
    _, result = started
    prep = (await StepTemplateService.list_templates(db, product.id))[0]
    await StepTemplateService.update_template(db, admin, prep.id, label="Sanitize area", required=False)

    step = (await ProductionRunService.list_steps(db, result["production_run_id"]))[0]
    assert step.label == "Prepare work area"
    assert step.required is True

    order = await ProductionOrderService.create_order(db, admin, product.id, 50)
    second = await ProductionOrderService.start_order(db, admin, order.id)
    step = (await ProductionRunService.list_steps(db, second["production_run_id"]))[0]
    assert step.label == "Sanitize area"
    assert step.required is False


async def test_delete_template_in_use_by_open_run(db, admin, product, started):
    order, _ = started
    mix = (await StepTemplateService.list_templates(db, product.id))[1]
    with pytest.raises(InvalidOperationError):
        await StepTemplateService.delete_template(db, admin, mix.id)

    await ProductionOrderService.block_order(db, admin, order.id, "customer hold")
    await ProductionOrderService.archive_blocked_order(db, admin, order.id, "cancelled")
    await StepTemplateService.delete_template(db, admin, mix.id)

    remaining = await StepTemplateService.list_templates(db, product.id)
    assert [t.key for t in remaining] == ["prep", "pack"]
    assert [t.order for t in remaining] == [1, 2]


async def test_delete_unused_template(db, admin, product):
    pack = (await StepTemplateService.list_templates(db, product.id))[2]
    await StepTemplateService.delete_template(db, admin, pack.id)
    assert len(await StepTemplateService.list_templates(db, product.id)) == 2
