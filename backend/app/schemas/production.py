"""BATCHWORKS production order, run, batch and step schemas."""
from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProductionOrderCreate(BaseModel):
    product_id: UUID
    quantity: int = Field(..., gt=0)
    draft: bool = Field(False, description="Create as DRAFT instead of PLANNED")
    assigned_to_user_id: UUID | None = None
    notes: str | None = Field(None, max_length=2000)


class OrderStart(BaseModel):
    assign_to_user_id: UUID | None = None


class OrderAssign(BaseModel):
    user_id: UUID | None = None


class ReasonBody(BaseModel):
    reason: str = Field(..., max_length=2000)


class OrderStartResponse(BaseModel):
    production_run_id: UUID
    batch_ids: list[UUID]


class ProductionOrderResponse(BaseModel):
    id: UUID
    order_number: str
    product_id: UUID
    quantity: int
    status: str
    assigned_to_user_id: UUID | None
    notes: str | None
    block_reason: str | None
    archive_reason: str | None
    created_at: datetime | None
    started_at: datetime | None
    blocked_at: datetime | None
    completed_at: datetime | None
    archived_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class BatchResponse(BaseModel):
    id: UUID
    run_id: UUID
    order_id: UUID
    batch_code: str
    planned_quantity: int
    actual_quantity: int | None
    status: str
    qc_status: str
    qc_notes: str | None
    manufacture_date: date | None
    expiration_date: date | None
    coa_reference: str | None
    started_at: datetime | None
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class RunStepResponse(BaseModel):
    id: UUID
    run_id: UUID
    key: str
    label: str
    order: int
    required: bool
    source: str
    template_id: UUID | None
    overridden: bool
    status: str
    assigned_to_user_id: UUID | None
    performed_by: UUID | None
    skip_reason: str | None
    claimed_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    skipped_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class RunHealthResponse(BaseModel):
    has_required_skips: bool
    has_stalled_step: bool
    is_blocked: bool
    unresolved_required_skips: int
    stalled_steps: int


class ProductionRunResponse(BaseModel):
    id: UUID
    order_id: UUID
    order_number: str | None = None
    product_id: UUID
    quantity: int
    status: str
    created_at: datetime | None = None
    batches: list[BatchResponse] = []
    steps: list[RunStepResponse] = []
    health: RunHealthResponse | None = None


class ProductionOrderDetail(ProductionOrderResponse):
    run: ProductionRunResponse | None = None


class StepTimestamps(BaseModel):
    claimed_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    skipped_at: datetime | None


class StepTransitionResponse(BaseModel):
    run_id: UUID
    step_id: UUID
    status: str
    run_status: str
    assigned_to_user_id: UUID | None
    timestamps: StepTimestamps


class StepSkip(BaseModel):
    reason: str = Field(..., max_length=2000)


class StepAssign(BaseModel):
    user_id: UUID | None = None


class AdhocStepCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=255)
    required: bool = False


class StepOverride(BaseModel):
    label: str | None = Field(None, min_length=1, max_length=255)
    required: bool | None = None


class StepReorder(BaseModel):
    step_ids: list[UUID] = Field(..., min_length=1)


class MyStepResponse(RunStepResponse):
    order_id: UUID
    order_number: str


class BatchComplete(BaseModel):
    actual_quantity: int = Field(..., ge=0)
    manufacture_date: date | None = None
    expiration_date: date | None = None
    coa_reference: str | None = Field(None, max_length=500)


class BatchQC(BaseModel):
    qc_status: str = Field(..., description="PENDING, PASS or FAIL")
    notes: str | None = Field(None, max_length=2000)


class BatchCOA(BaseModel):
    reference: str = Field(..., min_length=1, max_length=500)


class LaborEntryCreate(BaseModel):
    worker_user_id: UUID
    minutes: int = Field(..., gt=0)
    role: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=2000)


class LaborEntryResponse(BaseModel):
    id: UUID
    batch_id: UUID
    worker_user_id: UUID
    minutes: int
    role: str | None
    notes: str | None
    logged_by: UUID | None
    created_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
