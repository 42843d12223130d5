"""BATCHWORKS SQLAlchemy models."""
from app.models.audit import AuditLog
from app.models.inventory import AdjustmentType, InventoryAdjustment, InventoryBalance
from app.models.product import Product, ProductStepTemplate
from app.models.production import (
    Batch,
    BatchStatus,
    LaborEntry,
    OrderStatus,
    ProductionOrder,
    ProductionRun,
    QCStatus,
    RunStatus,
    RunStep,
    StepSource,
    StepStatus,
)

__all__ = [
    "AuditLog",
    "AdjustmentType", "InventoryAdjustment", "InventoryBalance",
    "Product", "ProductStepTemplate",
    "ProductionOrder", "OrderStatus",
    "ProductionRun", "RunStatus",
    "Batch", "BatchStatus", "QCStatus", "LaborEntry",
    "RunStep", "StepStatus", "StepSource",
]
