"""Shipping quote bookkeeping: accepted quotes, rejections and cached results."""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scm_dispatch.database import Base
from scm_dispatch.db_types import JSONType, UUIDType, MoneyType

if TYPE_CHECKING:
    from scm_dispatch.models.carrier import Carrier


class CarrierQuote(Base):
    """Accepted quote returned by a carrier during quote collection."""
    __tablename__ = "carrier_quotes"

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
        nullable=False
    )

    quoted_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    estimated_delivery_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    service_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    response_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    was_retried: Mapped[bool] = mapped_column(Boolean, default=False)
    is_selected: Mapped[bool] = mapped_column(Boolean, default=False)
    selection_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    raw_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    carrier: Mapped["Carrier"] = relationship("Carrier")


class CarrierQuoteRejection(Base):
    """Carrier that declined, timed out or failed during quote collection."""
    __tablename__ = "carrier_quote_rejections"

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
        nullable=False
    )

    outcome: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="rejected, timeout, error"
    )
    reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    was_retried: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class QuoteIdempotencyRecord(Base):
    """Cached quote-collection result keyed by the caller's idempotency key."""
    __tablename__ = "quote_idempotency_records"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    response: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
