"""BATCHWORKS seed a demo product, step templates, raw-material stock and an admin token (run after migrations)."""
import asyncio
import os
import sys
import uuid
from decimal import Decimal

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from app.core.rbac import CurrentUser, Role
from app.core.security import create_access_token
from app.db.session import async_session_maker
from app.models.product import Product
from app.services.inventory_ledger import InventoryLedger
from app.services.product_service import ProductService
from app.services.step_template_service import StepTemplateService

DEV_ADMIN_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")
DEV_LOCATION_ID = uuid.UUID("00000000-0000-4000-8000-0000000000a1")
DEV_MATERIALS = {
    "base_oil": uuid.UUID("00000000-0000-4000-8000-0000000000b1"),
    "bottle_30ml": uuid.UUID("00000000-0000-4000-8000-0000000000b2"),
}


async def seed():
    admin = CurrentUser(id=DEV_ADMIN_ID, email="admin@dev.local", role=Role.ADMIN.value)

    async with async_session_maker() as session:
        existing = await session.scalar(select(Product).where(Product.sku == "TINCT-30"))
        if existing:
            print("Demo product already exists. Skipping seed.")
        else:
            product = await ProductService.create_product(session, admin, "TINCT-30", "Tincture 30ml", default_batch_size=100)
            for key, label, required in [
                ("prep", "Prepare work area", True),
                ("mix", "Mix base", True),
                ("fill", "Fill bottles", True),
                ("label", "Apply labels", False),
                ("pack", "Pack cases", True),
            ]:
                await StepTemplateService.create_template(session, admin, product.id, key, label, required)
            for material_id in DEV_MATERIALS.values():
                await InventoryLedger.adjust(
                    session, admin, material_id, DEV_LOCATION_ID, Decimal("1000"), "RECEIVING", "Seed stock",
                )
            await session.commit()
            print(f"Seeded product {product.sku} with 5 step templates and raw-material stock")

    print("Dev admin token (15 min):")
    print(create_access_token(DEV_ADMIN_ID, Role.ADMIN.value, email="admin@dev.local"))


if __name__ == "__main__":
    asyncio.run(seed())
