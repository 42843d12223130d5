"""BATCHWORKS inventory endpoints: balances, adjustments, reservations and material issuance."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_auth
from app.schemas.common import ApiResponse, Meta
from app.schemas.inventory import (
    BalanceResponse,
    InventoryAdjust,
    InventoryReserve,
    MaterialIssueRequest,
    MaterialIssueResponse,
)
from app.services.inventory_ledger import InventoryLedger
from app.services.material_issuance_service import MaterialIssuanceService

router = APIRouter()


@router.get("/balances", response_model=ApiResponse[list[BalanceResponse]])
async def list_balances(
    material_id: UUID | None = Query(None),
    location_id: UUID | None = Query(None),
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    balances = await InventoryLedger.list_balances(db, user, material_id, location_id)
    return ApiResponse(
        data=[BalanceResponse.model_validate(b) for b in balances],
        meta=Meta(page=1, page_size=len(balances), total_count=len(balances)),
    )


@router.post("/adjustments", response_model=ApiResponse[BalanceResponse], status_code=201)
async def adjust_inventory(
    body: InventoryAdjust,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Receive stock or post a manual count correction."""
    balance = await InventoryLedger.adjust(
        db, user, body.material_id, body.location_id, body.delta_qty, body.adjustment_type.upper(), body.reason,
    )
    await db.commit()
    await db.refresh(balance)
    return ApiResponse(data=BalanceResponse.model_validate(balance))


@router.post("/reservations", response_model=ApiResponse[BalanceResponse])
async def reserve_inventory(
    body: InventoryReserve,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    balance = await InventoryLedger.reserve(db, user, body.material_id, body.location_id, body.quantity, body.reason)
    await db.commit()
    return ApiResponse(data=BalanceResponse.model_validate(balance))


@router.post("/reservations/release", response_model=ApiResponse[BalanceResponse])
async def release_inventory(
    body: InventoryReserve,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    balance = await InventoryLedger.release(db, user, body.material_id, body.location_id, body.quantity, body.reason)
    await db.commit()
    return ApiResponse(data=BalanceResponse.model_validate(balance))


@router.post("/issues", response_model=ApiResponse[MaterialIssueResponse])
async def issue_materials(
    body: MaterialIssueRequest,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Issue materials to a batch or production order. All lines succeed or none do."""
    result = await MaterialIssuanceService.issue(
        db, user, body.target_id, [line.model_dump() for line in body.lines], notes=body.notes,
    )
    await db.commit()
    return ApiResponse(data=MaterialIssueResponse(**result))
