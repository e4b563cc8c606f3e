import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scm_dispatch.database import Base
from scm_dispatch.db_types import JSONType, UUIDType, MoneyType

if TYPE_CHECKING:
    from scm_dispatch.models.order import Order
    from scm_dispatch.models.carrier import Carrier


class AssignmentStatus(str, Enum):
    """Carrier assignment status."""
    PENDING = "pending"       # Waiting for the carrier to respond
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BUSY = "busy"             # Carrier at capacity, may reconsider later
    EXPIRED = "expired"       # No response within the expiry window
    CANCELLED = "cancelled"   # Another carrier won the order


class CarrierAssignment(Base):
    """
    One request to one carrier to ship one order.

    Rows are never deleted. Terminal rows are kept as the retry history
    the scheduler and the attempt ceiling are computed from.
    """
    __tablename__ = "carrier_assignments"

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
    carrier_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("carriers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=AssignmentStatus.PENDING.value,
        nullable=False,
        index=True
    )
    batch_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    # Snapshots
    pickup_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    delivery_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    request_payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    acceptance_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    rejection_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    estimated_price: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    busy_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    order: Mapped["Order"] = relationship("Order", back_populates="assignments")
    carrier: Mapped["Carrier"] = relationship("Carrier")

    __table_args__ = (
        Index("ix_carrier_assignments_status_expires", "status", "expires_at"),
        Index("ix_carrier_assignments_carrier_status", "carrier_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<CarrierAssignment(order_id='{self.order_id}', status='{self.status}')>"
