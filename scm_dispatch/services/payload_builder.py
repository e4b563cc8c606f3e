"""
Carrier request payloads and response parsing.

Builds the snapshot sent to a carrier with each assignment (pickup,
delivery, physicals, handling flags, pricing estimate, response contract)
and normalizes whatever JSON a carrier sends back on accept or reject.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from scm_dispatch.config import settings
from scm_dispatch.core.clock import utc_now
from scm_dispatch.models.carrier import Carrier
from scm_dispatch.models.order import ItemType, Order
from scm_dispatch.models.warehouse import Warehouse
from scm_dispatch.services.pricing_engine import (
    PricingEngine,
    ShipmentItem,
    calculate_weight,
    get_estimated_delivery_date,
)
from scm_dispatch.services.routing_service import RouteResult, RoutingService

logger = logging.getLogger(__name__)

FRAGILE_REQUIREMENT = "Handle with care - Fragile items"
HAZARDOUS_REQUIREMENT = "Hazardous materials - Special permits required"
PERISHABLE_REQUIREMENT = "Perishable goods - Expedited handling required"
COLD_STORAGE_REQUIREMENT = "Requires temperature-controlled transport"
DEFAULT_DELIVERY_INSTRUCTION = "Please call before delivery"

# Least to most restrictive
ITEM_TYPE_RANK = {
    ItemType.GENERAL.value: 0,
    ItemType.FRAGILE.value: 1,
    ItemType.PERISHABLE.value: 2,
    ItemType.HAZARDOUS.value: 3,
}

RESPONSE_REQUIRED = {
    "accepted_price": True,
    "estimated_pickup_time": True,
    "estimated_delivery_time": True,
    "tracking_number": True,
    "carrier_reference_id": True,
    "driver_details": False,
}


@dataclass
class SpecialHandling:
    fragile: bool = False
    hazardous: bool = False
    perishable: bool = False
    cold_storage: bool = False
    requirements: List[str] = field(default_factory=list)

    @property
    def required(self) -> bool:
        return self.fragile or self.hazardous or self.perishable or self.cold_storage

    def to_dict(self) -> dict:
        return {
            "required": self.required,
            "fragile": self.fragile,
            "hazardous": self.hazardous,
            "perishable": self.perishable,
            "cold_storage": self.cold_storage,
            "requirements": list(self.requirements),
        }


@dataclass
class ShipmentPhysicals:
    """Shipment-level totals aggregated from order items."""
    actual_weight: float
    volumetric_weight: float
    chargeable_weight: float
    total_volume_m3: float
    package_count: int
    length_cm: float
    width_cm: float
    height_cm: float
    declared_value: float
    item_type: str
    handling: SpecialHandling

    def to_dict(self) -> dict:
        return {
            "total_weight": self.actual_weight,
            "total_volumetric_weight": self.volumetric_weight,
            "chargeable_weight": self.chargeable_weight,
            "package_count": self.package_count,
            "total_volume": self.total_volume_m3,
            "dimensions": {
                "length": self.length_cm,
                "width": self.width_cm,
                "height": self.height_cm,
                "unit": "cm",
            },
            "item_type": self.item_type,
        }


def effective_item_type(item: ShipmentItem) -> str:
    """Item type upgraded by handling flags, e.g. a 'general' item flagged hazardous."""
    item_type = item.item_type if item.item_type in ITEM_TYPE_RANK else ItemType.GENERAL.value
    if item.is_hazardous:
        return ItemType.HAZARDOUS.value
    if (item.is_perishable or item.requires_cold_storage) and ITEM_TYPE_RANK[item_type] < 2:
        return ItemType.PERISHABLE.value
    if item.is_fragile and ITEM_TYPE_RANK[item_type] < 1:
        return ItemType.FRAGILE.value
    return item_type


def most_restrictive_item_type(items: Sequence[ShipmentItem]) -> str:
    if not items:
        return ItemType.GENERAL.value
    return max((effective_item_type(i) for i in items), key=lambda t: ITEM_TYPE_RANK[t])


def determine_special_handling(items: Sequence[ShipmentItem]) -> SpecialHandling:
    """OR each handling flag across items; each flag adds its requirement once."""
    handling = SpecialHandling()
    handling.fragile = any(i.is_fragile for i in items)
    handling.hazardous = any(i.is_hazardous for i in items)
    handling.perishable = any(i.is_perishable for i in items)
    handling.cold_storage = any(i.requires_cold_storage for i in items)

    if handling.fragile:
        handling.requirements.append(FRAGILE_REQUIREMENT)
    if handling.hazardous:
        handling.requirements.append(HAZARDOUS_REQUIREMENT)
    if handling.perishable:
        handling.requirements.append(PERISHABLE_REQUIREMENT)
    if handling.cold_storage:
        handling.requirements.append(COLD_STORAGE_REQUIREMENT)
    return handling


def calculate_shipment_physicals(items: Sequence[ShipmentItem]) -> ShipmentPhysicals:
    weight = calculate_weight(items)
    total_volume = 0.0
    max_length = 0.0
    max_width = 0.0
    stacked_height = 0.0
    declared_value = 0.0

    for item in items:
        quantity = item.quantity or 1
        if item.has_dimensions:
            total_volume += item.length_cm * item.width_cm * item.height_cm * quantity / 1_000_000
            max_length = max(max_length, item.length_cm)
            max_width = max(max_width, item.width_cm)
            stacked_height += item.height_cm * quantity
        if item.declared_value is not None:
            declared_value += float(item.declared_value)
        else:
            declared_value += float(item.item_value)

    return ShipmentPhysicals(
        actual_weight=weight.actual_weight,
        volumetric_weight=weight.volumetric_weight,
        chargeable_weight=weight.chargeable_weight,
        total_volume_m3=round(total_volume, 4),
        package_count=len(items),
        length_cm=max_length,
        width_cm=max_width,
        height_cm=stacked_height,
        declared_value=round(declared_value, 2),
        item_type=most_restrictive_item_type(items),
        handling=determine_special_handling(items),
    )


def default_warehouse() -> Dict[str, Any]:
    return {
        "id": None,
        "name": settings.DEFAULT_WAREHOUSE_NAME,
        "address_line1": settings.DEFAULT_WAREHOUSE_ADDRESS,
        "city": settings.DEFAULT_WAREHOUSE_CITY,
        "state": settings.DEFAULT_WAREHOUSE_STATE,
        "postal_code": settings.DEFAULT_WAREHOUSE_POSTAL_CODE,
        "country": settings.DEFAULT_WAREHOUSE_COUNTRY,
        "latitude": settings.DEFAULT_WAREHOUSE_LATITUDE,
        "longitude": settings.DEFAULT_WAREHOUSE_LONGITUDE,
        "contact_name": None,
        "contact_phone": None,
    }


def _normalize_address(address: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "line1": address.get("address_line1") or address.get("street"),
        "line2": address.get("address_line2") or address.get("landmark"),
        "city": address.get("city"),
        "state": address.get("state"),
        "postal_code": (
            address.get("postal_code") or address.get("postalCode") or address.get("pincode")
        ),
        "country": address.get("country") or "India",
    }


def _address_coordinates(address: Dict[str, Any]) -> Optional[tuple]:
    lat = address.get("latitude")
    lon = address.get("longitude")
    coords = address.get("coordinates") or {}
    lat = lat if lat is not None else coords.get("lat")
    lon = lon if lon is not None else coords.get("lon")
    if lat is None or lon is None:
        return None
    return (float(lat), float(lon))


def _first(data: Dict[str, Any], *keys: str, default=None):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


def parse_acceptance_payload(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Normalize a carrier's acceptance body.

    Accepts snake_case or camelCase keys; every field is optional and the
    driver block is None when the carrier sends none.
    """
    data = data or {}
    driver = data.get("driver")
    return {
        "accepted": True,
        "accepted_at": _first(data, "accepted_at", "acceptedAt", default=utc_now().isoformat()),
        "pricing": {
            "quoted_price": _first(data, "quoted_price", "quotedPrice", "price"),
            "currency": _first(data, "currency", default="INR"),
            "breakdown": _first(data, "price_breakdown", "priceBreakdown", default={}),
            "valid_until": _first(data, "quote_valid_until", "quoteValidUntil"),
        },
        "delivery": {
            "estimated_pickup_time": _first(data, "estimated_pickup_time", "estimatedPickupTime"),
            "estimated_delivery_time": _first(data, "estimated_delivery_time", "estimatedDeliveryTime"),
            "estimated_delivery_date": _first(data, "estimated_delivery_date", "estimatedDeliveryDate"),
            "service_level": _first(data, "service_level", "serviceLevel"),
        },
        "tracking": {
            "carrier_reference_id": _first(data, "carrier_reference_id", "carrierReferenceId"),
            "tracking_number": _first(data, "tracking_number", "trackingNumber"),
            "tracking_url": _first(data, "tracking_url", "trackingUrl"),
        },
        "driver": {
            "name": driver.get("name"),
            "phone": driver.get("phone"),
            "vehicle_number": _first(driver, "vehicle_number", "vehicleNumber"),
            "vehicle_type": _first(driver, "vehicle_type", "vehicleType"),
        } if isinstance(driver, dict) else None,
        "additional_info": _first(data, "additional_info", "additionalInfo", "notes"),
        "terms_accepted": bool(_first(data, "terms_accepted", "termsAccepted", default=True)),
    }


def parse_rejection_payload(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    data = data or {}
    return {
        "accepted": False,
        "rejected_at": _first(data, "rejected_at", "rejectedAt", default=utc_now().isoformat()),
        "reason": _first(data, "reason", default="Not specified"),
        "reason_code": _first(data, "reason_code", "reasonCode"),
        "message": _first(data, "message", "notes"),
        "alternative_options": _first(
            data, "alternative_options", "alternativeOptions", default=[]
        ),
    }


class PayloadBuilder:
    """Assembles the request snapshot sent to a carrier for one assignment."""

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        pricing_engine: Optional[PricingEngine] = None,
        routing_service: Optional[RoutingService] = None,
    ):
        self.db = db
        self.pricing_engine = pricing_engine or PricingEngine(db)
        self.routing_service = routing_service or RoutingService()

    def get_warehouse_details(self, warehouse: Optional[Warehouse]) -> Dict[str, Any]:
        """
        Pickup location for the payload.

        Falls back to the configured default warehouse when the order's
        warehouse is missing or lacks a usable address.
        """
        if warehouse is not None and warehouse.has_pickup_address():
            return {
                "id": str(warehouse.id),
                "name": warehouse.name,
                "address_line1": warehouse.address_line1,
                "city": warehouse.city,
                "state": warehouse.state,
                "postal_code": warehouse.postal_code,
                "country": warehouse.country or "India",
                "latitude": warehouse.latitude,
                "longitude": warehouse.longitude,
                "contact_name": warehouse.contact_name,
                "contact_phone": warehouse.contact_phone,
            }

        logger.warning(
            f"Warehouse {getattr(warehouse, 'id', None)} has no usable pickup address, "
            f"using default warehouse"
        )
        return default_warehouse()

    async def resolve_route(self, order: Order, warehouse: Optional[Warehouse]) -> RouteResult:
        pickup = self.get_warehouse_details(warehouse)
        return await self.routing_service.get_driving_distance(
            _address_coordinates(pickup),
            _address_coordinates(order.shipping_address or {}),
        )

    async def build_request_payload(
        self,
        order: Order,
        items: Sequence[ShipmentItem],
        warehouse: Optional[Warehouse],
        carrier: Carrier,
        service_type: str,
        route: Optional[RouteResult] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utc_now()
        pickup_details = self.get_warehouse_details(warehouse)
        delivery_address = order.shipping_address or {}

        if route is None:
            route = await self.routing_service.get_driving_distance(
                _address_coordinates(pickup_details),
                _address_coordinates(delivery_address),
            )

        physicals = calculate_shipment_physicals(items)
        estimate = await self.pricing_engine.calculate_shipping_cost(
            list(items),
            service_type,
            carrier_id=carrier.id,
            distance_km=route.distance_km,
            now=now,
        )

        pickup = {
            "type": "warehouse",
            "warehouse_id": pickup_details["id"],
            "warehouse_name": pickup_details["name"],
            "contact_person": pickup_details.get("contact_name") or "Warehouse Manager",
            "contact_phone": pickup_details.get("contact_phone") or order.customer_phone,
            "address": _normalize_address(pickup_details),
            "coordinates": {
                "lat": pickup_details.get("latitude"),
                "lon": pickup_details.get("longitude"),
            },
        }
        coords = _address_coordinates(delivery_address)
        delivery = {
            "type": "customer",
            "customer_name": order.customer_name,
            "contact_phone": order.customer_phone,
            "contact_email": order.customer_email,
            "address": _normalize_address(delivery_address),
            "coordinates": {"lat": coords[0], "lon": coords[1]} if coords else {},
        }

        return {
            "assignment_id": None,
            "requested_at": now.isoformat(),
            "expires_at": (now + timedelta(minutes=settings.ASSIGNMENT_EXPIRY_MINUTES)).isoformat(),
            "order": {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "order_date": order.created_at.isoformat() if order.created_at else None,
                "priority": order.priority,
                "total_amount": float(order.total_amount or 0),
                "payment_method": order.payment_method,
                "currency": "INR",
            },
            "carrier": {"id": str(carrier.id), "code": carrier.code, "name": carrier.name},
            "service": {
                "type": service_type,
                "estimated_delivery_days": estimate.estimated_delivery_days,
                "estimated_delivery_date": get_estimated_delivery_date(
                    estimate.estimated_delivery_days, now
                ).isoformat(),
            },
            "pickup": pickup,
            "delivery": delivery,
            "route": route.to_dict(),
            "shipment": physicals.to_dict(),
            "items": [
                {
                    "sku": item.sku,
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "weight": item.weight_kg,
                    "dimensions": {
                        "length": item.length_cm or 0,
                        "width": item.width_cm or 0,
                        "height": item.height_cm or 0,
                    },
                    "item_type": effective_item_type(item),
                    "is_fragile": item.is_fragile,
                    "is_hazardous": item.is_hazardous,
                    "is_perishable": item.is_perishable,
                    "requires_cold_storage": item.requires_cold_storage,
                    "unit_price": float(item.unit_price or 0),
                    "total_value": float(item.item_value),
                    "declared_value": (
                        float(item.declared_value) if item.declared_value is not None else None
                    ),
                    "requires_insurance": item.requires_insurance,
                }
                for item in items
            ],
            "special_handling": physicals.handling.to_dict(),
            "estimated_pricing": estimate.to_dict(),
            "instructions": {
                "special": order.special_instructions,
                "delivery": delivery_address.get("instructions") or DEFAULT_DELIVERY_INSTRUCTION,
            },
            "insurance": {
                "required": any(i.requires_insurance for i in items),
                "declared_value": physicals.declared_value,
            },
            "response_required": dict(RESPONSE_REQUIRED),
        }

    @staticmethod
    def parse_acceptance_payload(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return parse_acceptance_payload(data)

    @staticmethod
    def parse_rejection_payload(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return parse_rejection_payload(data)
