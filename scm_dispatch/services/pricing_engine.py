"""
Pricing Engine Service for carrier assignment.

This service handles:
1. Weight calculation (actual vs volumetric)
2. Zone determination from route distance
3. Base rate lookup (carrier rate card, falling back to built-in defaults)
4. Handling surcharges (fragile, hazardous, perishable, cold storage, insurance)
5. Full shipping cost breakdown with fuel surcharge and GST
6. Delivery estimates and the quick checkout estimate
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import uuid

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from scm_dispatch.config import settings
from scm_dispatch.models.carrier import CarrierRateCard

logger = logging.getLogger(__name__)

VOLUMETRIC_DIVISOR = 5000  # cm^3 per kg
GST_RATE = Decimal("0.18")
TWO_PLACES = Decimal("0.01")

# Surcharges as a fraction of item value (unit price x quantity)
FRAGILE_SURCHARGE_RATE = Decimal("0.10")
HAZARDOUS_SURCHARGE_RATE = Decimal("0.25")
HAZARDOUS_FLAT_FEE = Decimal("200")
PERISHABLE_SURCHARGE_RATE = Decimal("0.15")
COLD_STORAGE_SURCHARGE_RATE = Decimal("0.30")
INSURANCE_RATE = Decimal("0.02")


class Zone(str, Enum):
    """Distance band used for rate lookup and delivery estimates."""
    LOCAL = "local"          # <= 100 km
    REGIONAL = "regional"    # <= 300 km
    METRO = "metro"          # <= 1000 km
    NATIONAL = "national"    # <= 2000 km
    EXPRESS = "express"      # > 2000 km


ZONE_THRESHOLDS = [
    (100, Zone.LOCAL),
    (300, Zone.REGIONAL),
    (1000, Zone.METRO),
    (2000, Zone.NATIONAL),
]

# Estimated delivery days by (service type, zone)
DELIVERY_DAYS: Dict[str, Dict[Zone, int]] = {
    "express": {
        Zone.LOCAL: 1, Zone.REGIONAL: 1, Zone.METRO: 2, Zone.NATIONAL: 3, Zone.EXPRESS: 4,
    },
    "standard": {
        Zone.LOCAL: 2, Zone.REGIONAL: 3, Zone.METRO: 5, Zone.NATIONAL: 7, Zone.EXPRESS: 10,
    },
    "bulk": {
        Zone.LOCAL: 3, Zone.REGIONAL: 5, Zone.METRO: 7, Zone.NATIONAL: 10, Zone.EXPRESS: 15,
    },
}
DEFAULT_DELIVERY_DAYS = 5


@dataclass(frozen=True)
class RateInfo:
    """Per-kg rate with fuel surcharge fraction and minimum charge."""
    rate_per_kg: Decimal
    fuel_surcharge_rate: Decimal
    min_charge: Decimal
    source: str = "default"

    def to_dict(self) -> dict:
        return {
            "rate_per_kg": float(self.rate_per_kg),
            "fuel_surcharge_rate": float(self.fuel_surcharge_rate),
            "min_charge": float(self.min_charge),
            "source": self.source,
        }


DEFAULT_RATES: Dict[str, RateInfo] = {
    "express": RateInfo(Decimal("15"), Decimal("0.15"), Decimal("100")),
    "standard": RateInfo(Decimal("10"), Decimal("0.12"), Decimal("50")),
    "bulk": RateInfo(Decimal("7"), Decimal("0.10"), Decimal("30")),
}


@dataclass
class ShipmentItem:
    """Physical and handling attributes of one order line, as pricing sees it."""
    sku: str
    quantity: int = 1
    weight_kg: Optional[float] = None
    length_cm: Optional[float] = None
    width_cm: Optional[float] = None
    height_cm: Optional[float] = None
    unit_price: Decimal = Decimal("0")
    product_name: Optional[str] = None
    item_type: str = "general"
    is_fragile: bool = False
    is_hazardous: bool = False
    is_perishable: bool = False
    requires_cold_storage: bool = False
    requires_insurance: bool = False
    declared_value: Optional[Decimal] = None

    @classmethod
    def from_order_item(cls, item) -> "ShipmentItem":
        return cls(
            sku=item.sku,
            quantity=item.quantity or 1,
            weight_kg=item.weight_kg,
            length_cm=item.length_cm,
            width_cm=item.width_cm,
            height_cm=item.height_cm,
            unit_price=Decimal(str(item.unit_price or 0)),
            product_name=item.product_name,
            item_type=item.item_type or "general",
            is_fragile=bool(item.is_fragile),
            is_hazardous=bool(item.is_hazardous),
            is_perishable=bool(item.is_perishable),
            requires_cold_storage=bool(item.requires_cold_storage),
            requires_insurance=bool(item.requires_insurance),
            declared_value=(
                Decimal(str(item.declared_value)) if item.declared_value is not None else None
            ),
        )

    @property
    def has_dimensions(self) -> bool:
        return bool(self.length_cm and self.width_cm and self.height_cm)

    @property
    def item_value(self) -> Decimal:
        return Decimal(str(self.unit_price or 0)) * self.quantity


@dataclass
class WeightSummary:
    actual_weight: float
    volumetric_weight: float
    chargeable_weight: float

    def to_dict(self) -> dict:
        return {
            "actual_weight": self.actual_weight,
            "volumetric_weight": self.volumetric_weight,
            "chargeable_weight": self.chargeable_weight,
        }


@dataclass
class SurchargeBreakdown:
    fragile: Decimal = Decimal("0")
    hazardous: Decimal = Decimal("0")
    perishable: Decimal = Decimal("0")
    cold_storage: Decimal = Decimal("0")
    insurance: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.fragile + self.hazardous + self.perishable + self.cold_storage + self.insurance

    def to_dict(self) -> dict:
        return {
            "fragile": float(self.fragile),
            "hazardous": float(self.hazardous),
            "perishable": float(self.perishable),
            "cold_storage": float(self.cold_storage),
            "insurance": float(self.insurance),
            "total": float(self.total),
        }


class CostBreakdown:
    """Detailed cost breakdown for a shipment."""
    def __init__(self):
        self.weight_charge: Decimal = Decimal("0")
        self.surcharges: SurchargeBreakdown = SurchargeBreakdown()
        self.subtotal: Decimal = Decimal("0")
        self.fuel_surcharge: Decimal = Decimal("0")
        self.tax: Decimal = Decimal("0")
        self.total: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return {
            "weight_charge": float(self.weight_charge),
            "surcharges": self.surcharges.to_dict(),
            "subtotal": float(self.subtotal),
            "fuel_surcharge": float(self.fuel_surcharge),
            "tax": float(self.tax),
            "total": float(self.total),
        }


@dataclass
class ShippingCost:
    """Result of calculate_shipping_cost."""
    service_type: str
    zone: Zone
    distance_km: float
    weight: WeightSummary
    rate: RateInfo
    breakdown: CostBreakdown
    estimated_delivery_days: int
    estimated_delivery_date: date
    carrier_id: Optional[uuid.UUID] = None
    currency: str = "INR"
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return self.breakdown.total

    def to_dict(self) -> dict:
        return {
            "carrier_id": str(self.carrier_id) if self.carrier_id else None,
            "service_type": self.service_type,
            "zone": self.zone.value,
            "distance_km": round(self.distance_km, 2),
            "weight": self.weight.to_dict(),
            "rate": self.rate.to_dict(),
            "breakdown": self.breakdown.to_dict(),
            "total": float(self.breakdown.total),
            "currency": self.currency,
            "estimated_delivery_days": self.estimated_delivery_days,
            "estimated_delivery_date": self.estimated_delivery_date.isoformat(),
            **self.extra,
        }


def _money(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_weight(items: Iterable[ShipmentItem]) -> WeightSummary:
    """
    Sum actual and volumetric weight across items.

    Volumetric weight is (L x W x H) / 5000 per unit; items without all three
    dimensions contribute no volumetric weight. Chargeable is the larger total.
    """
    actual = 0.0
    volumetric = 0.0
    for item in items:
        quantity = item.quantity or 1
        actual += (item.weight_kg or 0) * quantity
        if item.has_dimensions:
            volumetric += (item.length_cm * item.width_cm * item.height_cm) / VOLUMETRIC_DIVISOR * quantity

    actual = round(actual, 2)
    volumetric = round(volumetric, 2)
    return WeightSummary(
        actual_weight=actual,
        volumetric_weight=volumetric,
        chargeable_weight=max(actual, volumetric),
    )


def determine_zone(distance_km: float) -> Zone:
    for threshold, zone in ZONE_THRESHOLDS:
        if distance_km <= threshold:
            return zone
    return Zone.EXPRESS


def calculate_surcharges(items: Iterable[ShipmentItem]) -> SurchargeBreakdown:
    """Handling surcharges. Each flag on each item applies independently."""
    surcharges = SurchargeBreakdown()
    for item in items:
        value = item.item_value
        if item.is_fragile:
            surcharges.fragile += value * FRAGILE_SURCHARGE_RATE
        if item.is_hazardous:
            surcharges.hazardous += value * HAZARDOUS_SURCHARGE_RATE + HAZARDOUS_FLAT_FEE
        if item.is_perishable:
            surcharges.perishable += value * PERISHABLE_SURCHARGE_RATE
        if item.requires_cold_storage:
            surcharges.cold_storage += value * COLD_STORAGE_SURCHARGE_RATE
        if item.requires_insurance:
            declared = item.declared_value if item.declared_value is not None else value
            surcharges.insurance += Decimal(str(declared)) * INSURANCE_RATE

    surcharges.fragile = _money(surcharges.fragile)
    surcharges.hazardous = _money(surcharges.hazardous)
    surcharges.perishable = _money(surcharges.perishable)
    surcharges.cold_storage = _money(surcharges.cold_storage)
    surcharges.insurance = _money(surcharges.insurance)
    return surcharges


def get_estimated_delivery_days(service_type: str, zone: Zone) -> int:
    return DELIVERY_DAYS.get(service_type, {}).get(zone, DEFAULT_DELIVERY_DAYS)


def get_estimated_delivery_date(days: int, start: Optional[datetime] = None) -> date:
    """Add business days to start, skipping Saturdays and Sundays."""
    current = (start or datetime.now()).date()
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


def estimate_distance_from_postal_codes(from_code: str, to_code: str) -> int:
    """Rough distance from the first three digits of two Indian PIN codes."""
    from_prefix, to_prefix = from_code[:3], to_code[:3]
    if from_prefix == to_prefix:
        return 50
    try:
        if abs(int(from_prefix) - int(to_prefix)) <= 50:
            return 300
    except ValueError:
        pass
    return 800


def quick_estimate(
    weight_kg: float = 1.0,
    service_type: str = "standard",
    distance_km: Optional[float] = None,
    from_postal_code: Optional[str] = None,
    to_postal_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Checkout-time estimate without rate cards or carrier APIs.

    Deliberately conservative; the real price comes from quote collection.
    """
    if distance_km is None:
        if from_postal_code and to_postal_code:
            distance_km = estimate_distance_from_postal_codes(from_postal_code, to_postal_code)
        else:
            distance_km = settings.DEFAULT_DISTANCE_KM

    base = 100 if service_type == "express" else 50
    distance_charge = 30 if distance_km > 500 else 15
    estimated = Decimal(str(base + distance_charge + weight_kg * 20)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    min_cost = (estimated * Decimal("0.8")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    max_cost = (estimated * Decimal("1.2")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    return {
        "estimated_cost": int(estimated),
        "min_cost": int(min_cost),
        "max_cost": int(max_cost),
        "range": f"{min_cost}-{max_cost}",
        "service_type": service_type,
        "distance_km": distance_km,
        "estimated_days": "1-2" if service_type == "express" else "3-5",
        "is_estimate": True,
        "message": "Approximate estimate. Actual cost determined after order confirmation.",
    }


class PricingEngine:
    """
    Shipping cost calculator.

    The only I/O is the optional rate-card lookup; pass ``db=None`` to price
    purely from the built-in default rates.
    """

    def __init__(self, db: Optional[AsyncSession] = None):
        self.db = db

    async def get_base_rate(
        self,
        carrier_id: Optional[uuid.UUID],
        zone: Zone,
        service_type: str,
    ) -> RateInfo:
        """
        Rate card for carrier/service type, preferring a zone-specific row.

        Falls back to the default rate for the service type, and unknown
        service types price as standard.
        """
        if self.db is not None and carrier_id is not None:
            try:
                result = await self.db.execute(
                    select(CarrierRateCard)
                    .where(
                        CarrierRateCard.carrier_id == carrier_id,
                        CarrierRateCard.service_type == service_type,
                        CarrierRateCard.is_active == True,
                        or_(CarrierRateCard.zone == zone.value, CarrierRateCard.zone.is_(None)),
                    )
                )
                cards = result.scalars().all()
            except Exception as e:
                logger.warning(f"Rate card lookup failed for carrier {carrier_id}: {e}")
                cards = []

            if cards:
                # Zone-specific card wins over the catch-all row
                card = sorted(cards, key=lambda c: c.zone is None)[0]
                return RateInfo(
                    rate_per_kg=Decimal(str(card.rate_per_kg)),
                    fuel_surcharge_rate=Decimal(str(card.fuel_surcharge_rate or 0)),
                    min_charge=Decimal(str(card.min_charge_amount or 0)),
                    source="rate_card",
                )

        return DEFAULT_RATES.get(service_type, DEFAULT_RATES["standard"])

    async def calculate_shipping_cost(
        self,
        items: List[ShipmentItem],
        service_type: str,
        carrier_id: Optional[uuid.UUID] = None,
        distance_km: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ShippingCost:
        """
        weight charge = max(chargeable kg x rate, minimum charge)
        subtotal      = weight charge + surcharges
        fuel          = subtotal x fuel rate
        tax           = (subtotal + fuel) x 18%
        total         = subtotal + fuel + tax
        """
        if distance_km is None:
            distance_km = settings.DEFAULT_DISTANCE_KM

        weight = calculate_weight(items)
        zone = determine_zone(distance_km)
        rate = await self.get_base_rate(carrier_id, zone, service_type)
        surcharges = calculate_surcharges(items)

        breakdown = CostBreakdown()
        breakdown.weight_charge = _money(
            max(Decimal(str(weight.chargeable_weight)) * rate.rate_per_kg, rate.min_charge)
        )
        breakdown.surcharges = surcharges
        breakdown.subtotal = _money(breakdown.weight_charge + surcharges.total)
        breakdown.fuel_surcharge = _money(breakdown.subtotal * rate.fuel_surcharge_rate)
        breakdown.tax = _money((breakdown.subtotal + breakdown.fuel_surcharge) * GST_RATE)
        breakdown.total = breakdown.subtotal + breakdown.fuel_surcharge + breakdown.tax

        days = get_estimated_delivery_days(service_type, zone)
        return ShippingCost(
            service_type=service_type,
            zone=zone,
            distance_km=distance_km,
            weight=weight,
            rate=rate,
            breakdown=breakdown,
            estimated_delivery_days=days,
            estimated_delivery_date=get_estimated_delivery_date(days, now),
            carrier_id=carrier_id,
        )
