"""BATCHWORKS product service: the minimal catalog rows production needs."""
import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, ValidationError
from app.core.rbac import PERM_PRODUCTION_VIEW, PERM_PRODUCTS_MANAGE, CurrentUser, ensure_permission
from app.models.product import Product

logger = logging.getLogger(__name__)


class ProductService:

    @staticmethod
    async def create_product(
        db: AsyncSession,
        actor: CurrentUser | None,
        sku: str,
        name: str,
        default_batch_size: int | None = None,
    ) -> Product:
        ensure_permission(actor, PERM_PRODUCTS_MANAGE)
        sku = sku.strip().upper()
        if not sku or not name.strip():
            raise ValidationError("SKU and name are required")
        if default_batch_size is not None and default_batch_size < 0:
            raise ValidationError("default_batch_size must be positive", details={"field": "default_batch_size"})
        existing = await db.scalar(select(Product).where(Product.sku == sku))
        if existing:
            raise ValidationError(f"Product with SKU '{sku}' already exists", details={"field": "sku"})

        product = Product(sku=sku, name=name.strip(), default_batch_size=default_batch_size, is_active=True)
        db.add(product)
        await db.flush()
        logger.info("Product %s created (%s)", product.sku, product.id)
        return product

    @staticmethod
    async def update_product(
        db: AsyncSession,
        actor: CurrentUser | None,
        product_id: UUID,
        name: str | None = None,
        default_batch_size: int | None = None,
        is_active: bool | None = None,
    ) -> Product:
        ensure_permission(actor, PERM_PRODUCTS_MANAGE)
        product = await ProductService.get_product(db, product_id)
        if name is not None:
            product.name = name.strip()
        if default_batch_size is not None:
            if default_batch_size < 0:
                raise ValidationError("default_batch_size must be positive", details={"field": "default_batch_size"})
            product.default_batch_size = default_batch_size or None
        if is_active is not None:
            product.is_active = is_active
        await db.flush()
        return product

    @staticmethod
    async def get_product(db: AsyncSession, product_id: UUID) -> Product:
        product = await db.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found", details={"product_id": str(product_id)})
        return product

    @staticmethod
    async def list_products(db: AsyncSession, actor: CurrentUser | None, include_inactive: bool = False) -> list[Product]:
        ensure_permission(actor, PERM_PRODUCTION_VIEW)
        query = select(Product)
        if not include_inactive:
            query = query.where(Product.is_active == True)  # noqa: E712
        result = await db.scalars(query.order_by(Product.sku))
        return list(result.all())
