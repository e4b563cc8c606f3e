from scm_dispatch.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatus,
    OrderPriority,
    ItemType,
)
from scm_dispatch.models.warehouse import Warehouse
from scm_dispatch.models.carrier import Carrier, CarrierRateCard, ServiceType, AvailabilityStatus
from scm_dispatch.models.assignment import CarrierAssignment, AssignmentStatus
from scm_dispatch.models.shipment import Shipment
from scm_dispatch.models.quote import CarrierQuote, CarrierQuoteRejection, QuoteIdempotencyRecord

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OrderStatus",
    "OrderPriority",
    "ItemType",
    "Warehouse",
    "Carrier",
    "CarrierRateCard",
    "ServiceType",
    "AvailabilityStatus",
    "CarrierAssignment",
    "AssignmentStatus",
    "Shipment",
    "CarrierQuote",
    "CarrierQuoteRejection",
    "QuoteIdempotencyRecord",
]
