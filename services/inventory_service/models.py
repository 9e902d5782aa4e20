"""Database models for the Inventory Ledger."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)

from shared.database import Base, utcnow


class ItemKind(str, Enum):
    """UNIT is one serialised console; SKU is a counted stock line."""
    UNIT = "UNIT"
    SKU = "SKU"


class ItemStatus(str, Enum):
    """Operational status tag of an item."""
    AVAILABLE = "AVAILABLE"
    MAINTENANCE = "MAINTENANCE"
    UNDER_REPAIR = "UNDER_REPAIR"
    LOST = "LOST"


UNBOOKABLE_STATUSES = {ItemStatus.MAINTENANCE.value, ItemStatus.UNDER_REPAIR.value, ItemStatus.LOST.value}


class ReservationState(str, Enum):
    """Reservation lifecycle."""
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    RESTORED = "RESTORED"


class InventoryItem(Base):
    """Stock counters for one unit or SKU."""

    __tablename__ = "inventory_items"

    sku = Column(String(64), primary_key=True)
    kind = Column(String(10), nullable=False, default=ItemKind.SKU.value)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=ItemStatus.AVAILABLE.value)

    total_count = Column(Integer, nullable=False, default=0)
    available_count = Column(Integer, nullable=False, default=0)
    reserved_count = Column(Integer, nullable=False, default=0)
    deducted_count = Column(Integer, nullable=False, default=0)

    sale_price = Column(Numeric(12, 2), nullable=True)
    deposit_amount = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("available_count >= 0", name="ck_inventory_available_non_negative"),
        CheckConstraint("reserved_count >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("deducted_count >= 0", name="ck_inventory_deducted_non_negative"),
    )


class Reservation(Base):
    """Hold of a quantity of one item on behalf of one transaction."""

    __tablename__ = "reservations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(Uuid, nullable=False, index=True)
    sku = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    state = Column(String(20), default=ReservationState.HELD.value, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_reservations_transaction_state", "transaction_id", "state"),
    )


class InventoryMovement(Base):
    """Audit trail of every counter mutation."""

    __tablename__ = "inventory_movements"

    id = Column(Uuid, primary_key=True, default=uuid4)
    sku = Column(String(64), nullable=False)
    transaction_id = Column(Uuid, nullable=True)
    reservation_id = Column(Uuid, nullable=True)
    operation = Column(String(20), nullable=False)  # reserve, commit, release, restore, receive
    quantity_delta = Column(Integer, nullable=False)  # change in available_count
    resulting_available = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inventory_movements_sku_created", "sku", "created_at"),
    )


class RateCard(Base):
    """Daily rental rate per category and duration tier."""

    __tablename__ = "rate_cards"

    id = Column(Uuid, primary_key=True, default=uuid4)
    category = Column(String(64), nullable=False)
    min_days = Column(Integer, nullable=False, default=1)
    daily_rate = Column(Numeric(12, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("category", "min_days", name="uq_rate_cards_category_tier"),
    )
