"""BATCHWORKS inventory and material issuance schemas."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BalanceResponse(BaseModel):
    id: UUID
    material_id: UUID
    location_id: UUID
    quantity_on_hand: Decimal
    quantity_reserved: Decimal
    quantity_available: Decimal
    updated_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class InventoryAdjust(BaseModel):
    material_id: UUID
    location_id: UUID
    delta_qty: Decimal
    adjustment_type: str = Field("MANUAL_CORRECTION", description="RECEIVING or MANUAL_CORRECTION")
    reason: str | None = Field(None, max_length=2000)


class InventoryReserve(BaseModel):
    material_id: UUID
    location_id: UUID
    quantity: Decimal = Field(..., gt=0)
    reason: str | None = Field(None, max_length=2000)


class IssueLine(BaseModel):
    material_id: UUID
    location_id: UUID
    quantity: Decimal = Field(..., gt=0)


class MaterialIssue(BaseModel):
    lines: list[IssueLine] = Field(..., min_length=1)
    notes: str | None = Field(None, max_length=2000)


class IssuedLine(BaseModel):
    material_id: UUID
    location_id: UUID
    quantity: Decimal
    remaining_on_hand: Decimal


class MaterialIssueResponse(BaseModel):
    order_id: UUID
    batch_id: UUID | None
    issued: list[IssuedLine]


class MaterialIssueRequest(MaterialIssue):
    target_id: UUID = Field(..., description="Batch id, or production order id")
