import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Float, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scm_dispatch.database import Base
from scm_dispatch.db_types import JSONType, UUIDType, MoneyType

if TYPE_CHECKING:
    from scm_dispatch.models.warehouse import Warehouse
    from scm_dispatch.models.carrier import Carrier
    from scm_dispatch.models.assignment import CarrierAssignment


class OrderStatus(str, Enum):
    """Order status enumeration for the fulfilment flow."""
    CREATED = "created"
    PENDING_CARRIER_ASSIGNMENT = "pending_carrier_assignment"  # Batch sent to carriers
    READY_TO_SHIP = "ready_to_ship"   # A carrier accepted
    ON_HOLD = "on_hold"               # Carrier attempts exhausted, needs manual assignment
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderPriority(str, Enum):
    """Order priority, doubles as the requested service type."""
    EXPRESS = "express"
    STANDARD = "standard"
    BULK = "bulk"


class ItemType(str, Enum):
    """Handling class of an item, ordered from least to most restrictive."""
    GENERAL = "general"
    FRAGILE = "fragile"
    PERISHABLE = "perishable"
    HAZARDOUS = "hazardous"


class Order(Base):
    """Customer order awaiting carrier assignment and shipment."""
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)

    priority: Mapped[str] = mapped_column(
        String(20),
        default=OrderPriority.STANDARD.value,
        nullable=False,
        comment="express, standard, bulk"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        default=OrderStatus.CREATED.value,
        nullable=False,
        index=True
    )

    # Fulfilment
    warehouse_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("warehouses.id", ondelete="SET NULL"),
        nullable=True
    )
    carrier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("carriers.id", ondelete="SET NULL"),
        nullable=True,
        comment="Stamped when a carrier accepts the assignment"
    )

    # Customer
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Address snapshot
    # {address_line1, address_line2, city, state, postal_code, country, latitude, longitude}
    shipping_address: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Amounts
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), default="PREPAID", nullable=False)
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)

    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Quote collection lock
    shipping_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    shipping_locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.created_at"
    )
    warehouse: Mapped[Optional["Warehouse"]] = relationship("Warehouse")
    carrier: Mapped[Optional["Carrier"]] = relationship("Carrier")
    assignments: Mapped[List["CarrierAssignment"]] = relationship(
        "CarrierAssignment",
        back_populates="order"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at"
    )

    def __repr__(self) -> str:
        return f"<Order(order_number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    """Order line item with the physical attributes pricing needs."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    sku: Mapped[str] = mapped_column(String(50), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    # Physical attributes (per unit)
    weight_kg: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    length_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    width_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    height_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Handling
    item_type: Mapped[str] = mapped_column(
        String(20),
        default=ItemType.GENERAL.value,
        nullable=False,
        comment="general, fragile, perishable, hazardous"
    )
    is_fragile: Mapped[bool] = mapped_column(Boolean, default=False)
    is_hazardous: Mapped[bool] = mapped_column(Boolean, default=False)
    is_perishable: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_cold_storage: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_insurance: Mapped[bool] = mapped_column(Boolean, default=False)
    declared_value: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    """Order status change history (audit notes for on_hold etc.)."""
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")

    __table_args__ = (
        Index("ix_order_status_history_order_created", "order_id", "created_at"),
    )
