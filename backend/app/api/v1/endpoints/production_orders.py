"""BATCHWORKS production order endpoints: create, list, detail, assign and lifecycle transitions."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_auth
from app.api.v1.endpoints.production_runs import _run_to_response
from app.models.production import ProductionOrder
from app.schemas.common import ApiResponse, Meta
from app.schemas.production import (
    OrderAssign,
    OrderStart,
    OrderStartResponse,
    ProductionOrderCreate,
    ProductionOrderDetail,
    ProductionOrderResponse,
    ReasonBody,
)
from app.services.production_order_service import ProductionOrderService

router = APIRouter()


def _order_to_response(order: ProductionOrder) -> ProductionOrderResponse:
    return ProductionOrderResponse.model_validate(order)


@router.get("", response_model=ApiResponse[list[ProductionOrderResponse]])
async def list_production_orders(
    status: str | None = Query(None, description="Filter by status (e.g. IN_PROGRESS, BLOCKED)"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    orders = await ProductionOrderService.list_orders(db, user, status)
    start = (page - 1) * page_size
    return ApiResponse(
        data=[_order_to_response(o) for o in orders[start:start + page_size]],
        meta=Meta(page=page, page_size=page_size, total_count=len(orders)),
    )


@router.post("", response_model=ApiResponse[ProductionOrderResponse], status_code=201)
async def create_production_order(
    body: ProductionOrderCreate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    order = await ProductionOrderService.create_order(
        db, user, body.product_id, body.quantity,
        draft=body.draft,
        assigned_to_user_id=body.assigned_to_user_id,
        notes=body.notes,
    )
    await db.commit()
    await db.refresh(order)
    return ApiResponse(data=_order_to_response(order))


@router.get("/{order_id}", response_model=ApiResponse[ProductionOrderDetail])
async def get_production_order(
    order_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Order with its run, batches, steps and derived run status."""
    detail = await ProductionOrderService.get_order_detail(db, user, order_id)
    order = detail["order"]
    payload = ProductionOrderDetail(**_order_to_response(order).model_dump())
    if detail["run"]:
        payload.run = _run_to_response(
            detail["run"], detail["run_status"], detail["batches"], detail["steps"], order.order_number,
        )
    return ApiResponse(data=payload)


@router.post("/{order_id}/assign", response_model=ApiResponse[ProductionOrderResponse])
async def assign_production_order(
    order_id: UUID,
    body: OrderAssign,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    order = await ProductionOrderService.assign_order(db, user, order_id, body.user_id)
    await db.commit()
    return ApiResponse(data=_order_to_response(order))


@router.post("/{order_id}/start", response_model=ApiResponse[OrderStartResponse])
async def start_production_order(
    order_id: UUID,
    body: OrderStart | None = None,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Start (creating run, batches and steps) or resume a blocked order."""
    result = await ProductionOrderService.start_order(
        db, user, order_id, assign_to_user_id=body.assign_to_user_id if body else None,
    )
    await db.commit()
    return ApiResponse(data=OrderStartResponse(**result))


@router.post("/{order_id}/block", response_model=ApiResponse[ProductionOrderResponse])
async def block_production_order(
    order_id: UUID,
    body: ReasonBody,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    order = await ProductionOrderService.block_order(db, user, order_id, body.reason)
    await db.commit()
    return ApiResponse(data=_order_to_response(order))


@router.post("/{order_id}/archive", response_model=ApiResponse[ProductionOrderResponse])
async def archive_production_order(
    order_id: UUID,
    body: ReasonBody,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Archive a blocked order. Terminal."""
    order = await ProductionOrderService.archive_blocked_order(db, user, order_id, body.reason)
    await db.commit()
    return ApiResponse(data=_order_to_response(order))


@router.post("/{order_id}/complete", response_model=ApiResponse[ProductionOrderResponse])
async def complete_production_order(
    order_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    order = await ProductionOrderService.complete_order(db, user, order_id)
    await db.commit()
    return ApiResponse(data=_order_to_response(order))
