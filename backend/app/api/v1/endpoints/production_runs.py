"""BATCHWORKS production run endpoints: detail, health, ad-hoc steps and step reordering."""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_auth
from app.core.rbac import PERM_HEALTH_VIEW
from app.models.production import Batch, ProductionRun, RunStep
from app.schemas.common import ApiResponse
from app.schemas.production import (
    AdhocStepCreate,
    BatchResponse,
    ProductionRunResponse,
    RunHealthResponse,
    RunStepResponse,
    StepReorder,
)
from app.services.run_health_service import RunHealthService
from app.services.run_step_service import RunStepService

router = APIRouter()


def _run_to_response(
    run: ProductionRun,
    run_status: str,
    batches: list[Batch],
    steps: list[RunStep],
    order_number: str | None = None,
) -> ProductionRunResponse:
    return ProductionRunResponse(
        id=run.id,
        order_id=run.order_id,
        order_number=order_number,
        product_id=run.product_id,
        quantity=run.quantity,
        status=run_status,
        created_at=run.created_at,
        batches=[BatchResponse.model_validate(b) for b in batches],
        steps=[RunStepResponse.model_validate(s) for s in steps],
    )


@router.get("/{run_id}", response_model=ApiResponse[ProductionRunResponse])
async def get_production_run(
    run_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Run with derived status, batches, steps and health flags."""
    detail = await RunStepService.get_run_detail(db, user, run_id)
    payload = _run_to_response(
        detail["run"], detail["run_status"], detail["batches"], detail["steps"],
        detail["order"].order_number if detail["order"] else None,
    )
    if user.has_permission(PERM_HEALTH_VIEW):
        health = await RunHealthService.get_run_health(db, user, run_id)
        payload.health = RunHealthResponse(**health.to_dict())
    return ApiResponse(data=payload)


@router.get("/{run_id}/health", response_model=ApiResponse[RunHealthResponse])
async def get_production_run_health(
    run_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    health = await RunHealthService.get_run_health(db, user, run_id)
    return ApiResponse(data=RunHealthResponse(**health.to_dict()))


@router.post("/{run_id}/steps", response_model=ApiResponse[RunStepResponse], status_code=201)
async def add_adhoc_step(
    run_id: UUID,
    body: AdhocStepCreate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    step = await RunStepService.add_step(db, user, run_id, body.label, body.required)
    await db.commit()
    await db.refresh(step)
    return ApiResponse(data=RunStepResponse.model_validate(step))


@router.put("/{run_id}/steps/order", response_model=ApiResponse[list[RunStepResponse]])
async def reorder_run_steps(
    run_id: UUID,
    body: StepReorder,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    steps = await RunStepService.reorder_steps(db, user, run_id, body.step_ids)
    await db.commit()
    return ApiResponse(data=[RunStepResponse.model_validate(s) for s in steps])
