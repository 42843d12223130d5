"""Shared fixtures: in-memory SQLite database, actors and a seeded product."""
import os
import uuid

# Must be set before app.config is imported anywhere
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("HEALTH_CACHE_ENABLED", "false")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401 registers all tables
from app.core.rbac import CurrentUser, Role
from app.db.base import Base
from app.services.product_service import ProductService
from app.services.production_order_service import ProductionOrderService
from app.services.step_template_service import StepTemplateService


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


def make_user(role: Role, email: str) -> CurrentUser:
    return CurrentUser(id=uuid.uuid4(), email=email, role=role.value)


@pytest.fixture
def admin() -> CurrentUser:
    return make_user(Role.ADMIN, "admin@test.local")


@pytest.fixture
def operator_a() -> CurrentUser:
    return make_user(Role.PRODUCTION, "a@test.local")


@pytest.fixture
def operator_b() -> CurrentUser:
    return make_user(Role.PRODUCTION, "b@test.local")


@pytest.fixture
def warehouse() -> CurrentUser:
    return make_user(Role.WAREHOUSE, "wh@test.local")


@pytest.fixture
def rep() -> CurrentUser:
    return make_user(Role.REP, "rep@test.local")


@pytest_asyncio.fixture
async def product(db, admin):
    """Batch size 100 with prep / mix / pack, all required."""
    product = await ProductService.create_product(db, admin, "TINCT-30", "Tincture 30ml", default_batch_size=100)
    for key, label in [("prep", "Prepare work area"), ("mix", "Mix base"), ("pack", "Pack cases")]:
        await StepTemplateService.create_template(db, admin, product.id, key, label, required=True)
    await db.commit()
    return product


@pytest_asyncio.fixture
async def order(db, admin, product):
    order = await ProductionOrderService.create_order(db, admin, product.id, 250)
    await db.commit()
    return order


@pytest_asyncio.fixture
async def started(db, admin, order):
    """(order, {"production_run_id", "batch_ids"}) for a started 250-unit order."""
    result = await ProductionOrderService.start_order(db, admin, order.id)
    await db.commit()
    return order, result
