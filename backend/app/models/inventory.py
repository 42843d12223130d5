"""BATCHWORKS raw-material inventory: balances and the adjustment log."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, Numeric, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AdjustmentType(str, Enum):
    RECEIVING = "RECEIVING"
    CONSUMPTION = "CONSUMPTION"
    MANUAL_CORRECTION = "MANUAL_CORRECTION"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"


class InventoryBalance(Base):
    """Current on-hand and reserved quantity of one material at one location."""

    __tablename__ = "inventory_balances"
    __table_args__ = (
        UniqueConstraint("material_id", "location_id", name="uq_inventory_balance_material_location"),
        CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_balances_on_hand_non_negative"),
        CheckConstraint("quantity_reserved >= 0", name="ck_inventory_balances_reserved_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Materials and locations are owned by the catalog/warehouse systems; weak references here
    material_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    location_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    quantity_on_hand: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    quantity_reserved: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def quantity_available(self) -> Decimal:
        return self.quantity_on_hand - self.quantity_reserved


class InventoryAdjustment(Base):
    """Append-only: one row per quantity change. Never UPDATE or DELETE."""

    __tablename__ = "inventory_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    material_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    location_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Change to on-hand; for RESERVE/RELEASE the change to the reserved quantity
    delta_qty: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
