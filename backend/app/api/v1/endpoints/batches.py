"""BATCHWORKS batch endpoints: start, complete, QC, COA, labor and material issuance."""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_auth
from app.schemas.common import ApiResponse
from app.schemas.inventory import MaterialIssue, MaterialIssueResponse
from app.schemas.production import (
    BatchCOA,
    BatchComplete,
    BatchQC,
    BatchResponse,
    LaborEntryCreate,
    LaborEntryResponse,
)
from app.services.batch_service import BatchService
from app.services.material_issuance_service import MaterialIssuanceService

router = APIRouter()


@router.post("/{batch_id}/start", response_model=ApiResponse[BatchResponse])
async def start_batch(
    batch_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    batch = await BatchService.start_batch(db, user, batch_id)
    await db.commit()
    return ApiResponse(data=BatchResponse.model_validate(batch))


@router.post("/{batch_id}/complete", response_model=ApiResponse[BatchResponse])
async def complete_batch(
    batch_id: UUID,
    body: BatchComplete,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Record actual quantity and dates. A batch can be completed once."""
    batch = await BatchService.complete_batch(
        db, user, batch_id,
        actual_quantity=body.actual_quantity,
        manufacture_date=body.manufacture_date,
        expiration_date=body.expiration_date,
        coa_reference=body.coa_reference,
    )
    await db.commit()
    return ApiResponse(data=BatchResponse.model_validate(batch))


@router.post("/{batch_id}/qc", response_model=ApiResponse[BatchResponse])
async def set_batch_qc(
    batch_id: UUID,
    body: BatchQC,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    batch = await BatchService.set_qc_status(db, user, batch_id, body.qc_status, body.notes)
    await db.commit()
    return ApiResponse(data=BatchResponse.model_validate(batch))


@router.post("/{batch_id}/coa", response_model=ApiResponse[BatchResponse])
async def attach_batch_coa(
    batch_id: UUID,
    body: BatchCOA,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    batch = await BatchService.attach_coa(db, user, batch_id, body.reference)
    await db.commit()
    return ApiResponse(data=BatchResponse.model_validate(batch))


@router.get("/{batch_id}/labor", response_model=ApiResponse[list[LaborEntryResponse]])
async def list_labor_entries(
    batch_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    entries = await BatchService.list_labor_entries(db, user, batch_id)
    return ApiResponse(data=[LaborEntryResponse.model_validate(e) for e in entries])


@router.post("/{batch_id}/labor", response_model=ApiResponse[LaborEntryResponse], status_code=201)
async def add_labor_entry(
    batch_id: UUID,
    body: LaborEntryCreate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    entry = await BatchService.add_labor_entry(
        db, user, batch_id, body.worker_user_id, body.minutes, role=body.role, notes=body.notes,
    )
    await db.commit()
    await db.refresh(entry)
    return ApiResponse(data=LaborEntryResponse.model_validate(entry))


@router.post("/{batch_id}/issue-materials", response_model=ApiResponse[MaterialIssueResponse])
async def issue_materials_to_batch(
    batch_id: UUID,
    body: MaterialIssue,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """All-or-nothing issuance. A shortage returns 409 MATERIAL_SHORTAGE listing every short line."""
    result = await MaterialIssuanceService.issue(
        db, user, batch_id, [line.model_dump() for line in body.lines], notes=body.notes,
    )
    await db.commit()
    return ApiResponse(data=MaterialIssueResponse(**result))
