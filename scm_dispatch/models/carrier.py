"""Carrier models for shipping partners and their rate cards."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Float, Numeric
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scm_dispatch.database import Base
from scm_dispatch.db_types import UUIDType, MoneyType


class ServiceType(str, Enum):
    """Carrier service level."""
    EXPRESS = "express"
    STANDARD = "standard"
    BULK = "bulk"
    ALL = "all"  # Carrier serves every service level


class AvailabilityStatus(str, Enum):
    """Carrier availability as reported by the carrier."""
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Carrier(Base):
    """
    Carrier model for shipping partners.
    Carriers receive assignment batches and answer with accept/reject/busy.
    """
    __tablename__ = "carriers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Identification
    code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique carrier code e.g., DELHIVERY, BLUEDART"
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    service_type: Mapped[str] = mapped_column(
        String(20),
        default=ServiceType.STANDARD.value,
        nullable=False,
        comment="express, standard, bulk, all"
    )

    # Availability
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    availability_status: Mapped[str] = mapped_column(
        String(20),
        default=AvailabilityStatus.AVAILABLE.value,
        nullable=False,
        index=True
    )
    last_status_change: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    reliability_score: Mapped[float] = mapped_column(
        Float,
        default=0.8,
        nullable=False,
        comment="0-1, higher ranks first in carrier selection"
    )

    # API Integration
    api_endpoint: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    api_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    webhook_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    tracking_url_template: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="URL template with {tracking_number} placeholder"
    )

    # Capacity
    max_capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_load: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_weight_kg: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    supports_cold_storage: Mapped[bool] = mapped_column(Boolean, default=False)

    # Contact
    contact_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

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

    rate_cards: Mapped[List["CarrierRateCard"]] = relationship(
        "CarrierRateCard",
        back_populates="carrier",
        cascade="all, delete-orphan"
    )

    def get_tracking_url(self, tracking_number: str) -> Optional[str]:
        """Generate tracking URL for a tracking number."""
        if self.tracking_url_template:
            return self.tracking_url_template.replace("{tracking_number}", tracking_number)
        return None

    def __repr__(self) -> str:
        return f"<Carrier(code='{self.code}', availability='{self.availability_status}')>"


class CarrierRateCard(Base):
    """Per-carrier rate for a service type, optionally narrowed to one zone."""
    __tablename__ = "carrier_rate_cards"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    carrier_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("carriers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    zone: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="NULL applies to every zone"
    )

    rate_per_kg: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    fuel_surcharge_rate: Mapped[Decimal] = mapped_column(
        Numeric(6, 4),
        default=Decimal("0"),
        comment="Fraction of subtotal, e.g. 0.12"
    )
    min_charge_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    carrier: Mapped["Carrier"] = relationship("Carrier", back_populates="rate_cards")

    __table_args__ = (
        UniqueConstraint("carrier_id", "service_type", "zone", name="uq_rate_card_carrier_service_zone"),
    )
