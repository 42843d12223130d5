"""BATCHWORKS product and step template endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_auth
from app.schemas.common import ApiResponse, Meta
from app.schemas.product import (
    ProductCreate,
    ProductResponse,
    ProductUpdate,
    StepTemplateCreate,
    StepTemplateReorder,
    StepTemplateResponse,
    StepTemplateUpdate,
)
from app.services.product_service import ProductService
from app.services.step_template_service import StepTemplateService

router = APIRouter()


@router.get("", response_model=ApiResponse[list[ProductResponse]])
async def list_products(
    include_inactive: bool = Query(False),
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    products = await ProductService.list_products(db, user, include_inactive)
    return ApiResponse(
        data=[ProductResponse.model_validate(p) for p in products],
        meta=Meta(page=1, page_size=len(products), total_count=len(products)),
    )


@router.post("", response_model=ApiResponse[ProductResponse], status_code=201)
async def create_product(
    body: ProductCreate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    product = await ProductService.create_product(db, user, body.sku, body.name, body.default_batch_size)
    await db.commit()
    return ApiResponse(data=ProductResponse.model_validate(product))


@router.patch("/{product_id}", response_model=ApiResponse[ProductResponse])
async def update_product(
    product_id: UUID,
    body: ProductUpdate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    product = await ProductService.update_product(
        db, user, product_id, name=body.name, default_batch_size=body.default_batch_size, is_active=body.is_active,
    )
    await db.commit()
    return ApiResponse(data=ProductResponse.model_validate(product))


@router.get("/{product_id}/step-templates", response_model=ApiResponse[list[StepTemplateResponse]])
async def list_step_templates(
    product_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    templates = await StepTemplateService.list_for_actor(db, user, product_id)
    return ApiResponse(data=[StepTemplateResponse.model_validate(t) for t in templates])


@router.post("/{product_id}/step-templates", response_model=ApiResponse[StepTemplateResponse], status_code=201)
async def create_step_template(
    product_id: UUID,
    body: StepTemplateCreate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    template = await StepTemplateService.create_template(db, user, product_id, body.key, body.label, body.required)
    await db.commit()
    await db.refresh(template)
    return ApiResponse(data=StepTemplateResponse.model_validate(template))


@router.put("/{product_id}/step-templates/order", response_model=ApiResponse[list[StepTemplateResponse]])
async def reorder_step_templates(
    product_id: UUID,
    body: StepTemplateReorder,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    templates = await StepTemplateService.reorder_templates(db, user, product_id, body.template_ids)
    await db.commit()
    return ApiResponse(data=[StepTemplateResponse.model_validate(t) for t in templates])


@router.patch("/step-templates/{template_id}", response_model=ApiResponse[StepTemplateResponse])
async def update_step_template(
    template_id: UUID,
    body: StepTemplateUpdate,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    template = await StepTemplateService.update_template(db, user, template_id, body.label, body.required)
    await db.commit()
    return ApiResponse(data=StepTemplateResponse.model_validate(template))


@router.delete("/step-templates/{template_id}", status_code=204)
async def delete_step_template(
    template_id: UUID,
    user: CurrentUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    await StepTemplateService.delete_template(db, user, template_id)
    await db.commit()
    return Response(status_code=204)
