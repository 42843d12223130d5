"""BATCHWORKS run step endpoints: claim, start, complete, skip, assign and pre-start edits."""
from uuid import UUID

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_auth
from app.schemas.common import ApiResponse, Meta
from app.schemas.production import (
    MyStepResponse,
    RunStepResponse,
    StepAssign,
    StepOverride,
    StepSkip,
    StepTransitionResponse,
)
from app.services.run_step_service import RunStepService

router = APIRouter()


@router.get("/mine", response_model=ApiResponse[list[MyStepResponse]])
async def list_my_steps(
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Open steps assigned to the current user."""
    rows = await RunStepService.list_my_steps(db, user)
    data = [
        MyStepResponse(
            **RunStepResponse.model_validate(row["step"]).model_dump(),
            order_id=row["order_id"],
            order_number=row["order_number"],
        )
        for row in rows
    ]
    return ApiResponse(data=data, meta=Meta(page=1, page_size=len(data), total_count=len(data)))


@router.post("/{step_id}/claim", response_model=ApiResponse[StepTransitionResponse])
async def claim_step(
    step_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    result = await RunStepService.claim(db, user, step_id)
    await db.commit()
    return ApiResponse(data=StepTransitionResponse(**result))


@router.post("/{step_id}/start", response_model=ApiResponse[StepTransitionResponse])
async def start_step(
    step_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    result = await RunStepService.start(db, user, step_id)
    await db.commit()
    return ApiResponse(data=StepTransitionResponse(**result))


@router.post("/{step_id}/complete", response_model=ApiResponse[StepTransitionResponse])
async def complete_step(
    step_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    result = await RunStepService.complete(db, user, step_id)
    await db.commit()
    return ApiResponse(data=StepTransitionResponse(**result))


@router.post("/{step_id}/skip", response_model=ApiResponse[StepTransitionResponse])
async def skip_step(
    step_id: UUID,
    body: StepSkip,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    result = await RunStepService.skip(db, user, step_id, body.reason)
    await db.commit()
    return ApiResponse(data=StepTransitionResponse(**result))


@router.post("/{step_id}/assign", response_model=ApiResponse[StepTransitionResponse])
async def assign_step(
    step_id: UUID,
    body: StepAssign,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Admin only: set or clear the assignee without changing status."""
    result = await RunStepService.admin_assign(db, user, step_id, body.user_id)
    await db.commit()
    return ApiResponse(data=StepTransitionResponse(**result))


@router.patch("/{step_id}", response_model=ApiResponse[RunStepResponse])
async def update_step(
    step_id: UUID,
    body: StepOverride,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    step = await RunStepService.update_step_override(db, user, step_id, body.label, body.required)
    await db.commit()
    return ApiResponse(data=RunStepResponse.model_validate(step))


@router.delete("/{step_id}", status_code=204)
async def delete_step(
    step_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    await RunStepService.delete_step(db, user, step_id)
    await db.commit()
    return Response(status_code=204)
