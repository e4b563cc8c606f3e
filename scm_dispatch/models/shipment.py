import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Float
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scm_dispatch.database import Base
from scm_dispatch.db_types import JSONType, UUIDType, MoneyType

if TYPE_CHECKING:
    from scm_dispatch.models.order import Order
    from scm_dispatch.models.carrier import Carrier


class Shipment(Base):
    """Shipment created when a carrier accepts an assignment. One per order."""
    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    shipment_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Format: SH-YYYYMMDD-XXXXXX"
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    carrier_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("carriers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    carrier_assignment_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("carrier_assignments.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )

    status: Mapped[str] = mapped_column(String(30), default="created", nullable=False)

    # Tracking
    tracking_number: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    carrier_reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Aggregated physical / handling attributes
    item_type: Mapped[str] = mapped_column(String(20), default="general", nullable=False)
    package_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    actual_weight_kg: Mapped[float] = mapped_column(Float, default=0.0)
    volumetric_weight_kg: Mapped[float] = mapped_column(Float, default=0.0)
    chargeable_weight_kg: Mapped[float] = mapped_column(Float, default=0.0)
    total_volume_m3: Mapped[float] = mapped_column(Float, default=0.0)
    is_fragile: Mapped[bool] = mapped_column(Boolean, default=False)
    is_hazardous: Mapped[bool] = mapped_column(Boolean, default=False)
    is_perishable: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_cold_storage: Mapped[bool] = mapped_column(Boolean, default=False)
    declared_value: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))

    # Commercials from the carrier's acceptance
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    estimated_pickup_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    driver_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    pickup_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    delivery_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order")
    carrier: Mapped["Carrier"] = relationship("Carrier")

    def __repr__(self) -> str:
        return f"<Shipment(shipment_number='{self.shipment_number}', tracking='{self.tracking_number}')>"
