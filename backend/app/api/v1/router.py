"""BATCHWORKS API v1 router aggregation."""
from fastapi import APIRouter

from app.api.v1.endpoints import (
    batches,
    inventory,
    production_orders,
    production_runs,
    products,
    reports,
    run_steps,
)

api_router = APIRouter()

api_router.include_router(products.router, prefix="/products", tags=["products"])
api_router.include_router(production_orders.router, prefix="/production-orders", tags=["production-orders"])
api_router.include_router(production_runs.router, prefix="/production-runs", tags=["production-runs"])
api_router.include_router(run_steps.router, prefix="/run-steps", tags=["run-steps"])
api_router.include_router(batches.router, prefix="/batches", tags=["batches"])
api_router.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
