"""BATCHWORKS product and step template schemas."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    default_batch_size: int | None = Field(None, ge=0)


class ProductUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    default_batch_size: int | None = Field(None, ge=0)
    is_active: bool | None = None


class ProductResponse(BaseModel):
    id: UUID
    sku: str
    name: str
    default_batch_size: int | None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class StepTemplateCreate(BaseModel):
    key: str = Field(..., min_length=1, max_length=100, description="Letters, digits and underscores")
    label: str = Field(..., min_length=1, max_length=255)
    required: bool = True


class StepTemplateUpdate(BaseModel):
    label: str | None = Field(None, min_length=1, max_length=255)
    required: bool | None = None


class StepTemplateReorder(BaseModel):
    template_ids: list[UUID] = Field(..., min_length=1)


class StepTemplateResponse(BaseModel):
    id: UUID
    product_id: UUID
    key: str
    label: str
    order: int
    required: bool
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
