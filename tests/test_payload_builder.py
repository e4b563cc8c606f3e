import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from scm_dispatch.config import settings
from scm_dispatch.models import Carrier, Order, Warehouse
from scm_dispatch.services.payload_builder import (
    COLD_STORAGE_REQUIREMENT,
    FRAGILE_REQUIREMENT,
    HAZARDOUS_REQUIREMENT,
    PayloadBuilder,
    calculate_shipment_physicals,
    determine_special_handling,
    effective_item_type,
    most_restrictive_item_type,
    parse_acceptance_payload,
    parse_rejection_payload,
)
from scm_dispatch.services.pricing_engine import ShipmentItem

from conftest import DELIVERY_ADDRESS, StubRoutingService


NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def make_order(**overrides) -> Order:
    values = {
        "id": uuid.uuid4(),
        "order_number": "ORD-20261019-0001",
        "priority": "standard",
        "status": "created",
        "customer_name": "Asha Rao",
        "customer_phone": "9876543210",
        "customer_email": "asha@example.com",
        "shipping_address": dict(DELIVERY_ADDRESS),
        "total_amount": Decimal("2500.00"),
        "payment_method": "COD",
        "special_instructions": "Leave with security",
    }
    values.update(overrides)
    return Order(**values)


def make_warehouse(**overrides) -> Warehouse:
    values = {
        "id": uuid.uuid4(),
        "code": "WH-BHW",
        "name": "Bhiwandi DC",
        "address_line1": "Plot 7, MIDC",
        "city": "Bhiwandi",
        "state": "Maharashtra",
        "postal_code": "421302",
        "country": "India",
        "latitude": 19.2813,
        "longitude": 73.0483,
        "contact_name": "Ravi",
        "contact_phone": "9000000001",
    }
    values.update(overrides)
    return Warehouse(**values)


def make_carrier() -> Carrier:
    return Carrier(id=uuid.uuid4(), code="BLUEDART", name="Blue Dart")


class TestItemClassification:
    def test_flags_upgrade_item_type(self):
        assert effective_item_type(ShipmentItem(sku="A", is_hazardous=True)) == "hazardous"
        assert effective_item_type(ShipmentItem(sku="A", requires_cold_storage=True)) == "perishable"
        assert effective_item_type(ShipmentItem(sku="A", is_fragile=True)) == "fragile"
        assert effective_item_type(ShipmentItem(sku="A", item_type="perishable", is_fragile=True)) == "perishable"

    def test_most_restrictive_type_wins(self):
        items = [
            ShipmentItem(sku="A", item_type="fragile"),
            ShipmentItem(sku="B", item_type="perishable"),
            ShipmentItem(sku="C"),
        ]
        assert most_restrictive_item_type(items) == "perishable"
        assert most_restrictive_item_type([]) == "general"

    def test_special_handling_requirements(self):
        items = [
            ShipmentItem(sku="A", is_fragile=True),
            ShipmentItem(sku="B", is_fragile=True, requires_cold_storage=True),
        ]

        handling = determine_special_handling(items)

        assert handling.required
        assert handling.requirements == [FRAGILE_REQUIREMENT, COLD_STORAGE_REQUIREMENT]
        assert not handling.hazardous

    def test_no_special_handling(self):
        handling = determine_special_handling([ShipmentItem(sku="A")])
        assert handling.to_dict() == {
            "required": False,
            "fragile": False,
            "hazardous": False,
            "perishable": False,
            "cold_storage": False,
            "requirements": [],
        }


class TestShipmentPhysicals:
    def test_totals_across_items(self):
        items = [
            ShipmentItem(sku="A", quantity=2, weight_kg=5.0, length_cm=50, width_cm=40, height_cm=30,
                         unit_price=Decimal("1000")),
            ShipmentItem(sku="B", weight_kg=1.0, length_cm=20, width_cm=60, height_cm=10,
                         unit_price=Decimal("300"), declared_value=Decimal("500")),
        ]

        physicals = calculate_shipment_physicals(items)

        assert physicals.actual_weight == 11.0
        assert physicals.volumetric_weight == 26.4
        assert physicals.chargeable_weight == 26.4
        assert physicals.total_volume_m3 == 0.132
        assert physicals.package_count == 2
        assert physicals.length_cm == 50
        assert physicals.width_cm == 60
        assert physicals.height_cm == 70
        assert physicals.declared_value == 2500.0


class TestWarehouseDetails:
    def test_uses_order_warehouse(self):
        details = PayloadBuilder().get_warehouse_details(make_warehouse())

        assert details["name"] == "Bhiwandi DC"
        assert details["contact_name"] == "Ravi"

    def test_missing_warehouse_falls_back_to_default(self):
        details = PayloadBuilder().get_warehouse_details(None)

        assert details["id"] is None
        assert details["name"] == settings.DEFAULT_WAREHOUSE_NAME
        assert details["postal_code"] == settings.DEFAULT_WAREHOUSE_POSTAL_CODE

    def test_incomplete_address_falls_back_to_default(self):
        details = PayloadBuilder().get_warehouse_details(make_warehouse(postal_code=None))
        assert details["name"] == settings.DEFAULT_WAREHOUSE_NAME


class TestBuildRequestPayload:
    @pytest.mark.asyncio
    async def test_payload_sections(self):
        routing = StubRoutingService(distance_km=980.0)
        builder = PayloadBuilder(routing_service=routing)
        order = make_order()
        carrier = make_carrier()
        items = [
            ShipmentItem(sku="TV-55", product_name="LED TV", weight_kg=18.0,
                         length_cm=140, width_cm=20, height_cm=85,
                         unit_price=Decimal("42000"), is_fragile=True),
        ]

        payload = await builder.build_request_payload(
            order, items, make_warehouse(), carrier, "express", now=NOW
        )

        assert routing.calls == 1
        assert payload["assignment_id"] is None
        assert payload["requested_at"] == NOW.isoformat()
        assert payload["order"]["order_number"] == "ORD-20261019-0001"
        assert payload["order"]["payment_method"] == "COD"
        assert payload["carrier"] == {"id": str(carrier.id), "code": "BLUEDART", "name": "Blue Dart"}
        assert payload["service"]["type"] == "express"
        assert payload["service"]["estimated_delivery_days"] == 2

        assert payload["pickup"]["warehouse_name"] == "Bhiwandi DC"
        assert payload["pickup"]["address"]["postal_code"] == "421302"
        assert payload["delivery"]["customer_name"] == "Asha Rao"
        assert payload["delivery"]["coordinates"] == {"lat": 12.9716, "lon": 77.5946}
        assert payload["delivery"]["address"]["city"] == "Bengaluru"

        assert payload["route"]["distance_km"] == 980.0
        assert payload["shipment"]["total_weight"] == 18.0
        assert payload["shipment"]["chargeable_weight"] == 47.6
        assert payload["items"][0]["item_type"] == "fragile"
        assert payload["special_handling"]["requirements"] == [FRAGILE_REQUIREMENT]
        assert payload["estimated_pricing"]["zone"] == "metro"
        assert payload["estimated_pricing"]["total"] > 0
        assert payload["instructions"] == {
            "special": "Leave with security",
            "delivery": "Please call before delivery",
        }
        assert payload["insurance"]["required"] is False
        assert payload["response_required"]["tracking_number"] is True

    @pytest.mark.asyncio
    async def test_precomputed_route_skips_routing(self):
        routing = StubRoutingService()
        builder = PayloadBuilder(routing_service=routing)
        route = await routing.get_driving_distance(None, None)

        payload = await builder.build_request_payload(
            make_order(), [ShipmentItem(sku="A", weight_kg=1.0)], None,
            make_carrier(), "standard", route=route, now=NOW,
        )

        assert routing.calls == 1
        assert payload["pickup"]["warehouse_id"] is None
        assert payload["pickup"]["warehouse_name"] == settings.DEFAULT_WAREHOUSE_NAME

    @pytest.mark.asyncio
    async def test_hazardous_items(self):
        builder = PayloadBuilder(routing_service=StubRoutingService())
        items = [ShipmentItem(sku="GAS", weight_kg=3.0, is_hazardous=True, requires_insurance=True)]

        payload = await builder.build_request_payload(
            make_order(), items, make_warehouse(), make_carrier(), "standard", now=NOW
        )

        assert payload["shipment"]["item_type"] == "hazardous"
        assert HAZARDOUS_REQUIREMENT in payload["special_handling"]["requirements"]
        assert payload["insurance"]["required"] is True
        assert payload["estimated_pricing"]["breakdown"]["surcharges"]["hazardous"] == 200.0


class TestResponseParsing:
    def test_acceptance_camel_case(self):
        parsed = parse_acceptance_payload({
            "quotedPrice": 480,
            "trackingNumber": "BD123",
            "carrierReferenceId": "JOB-9",
            "estimatedPickupTime": "2026-10-19T14:00:00Z",
            "driver": {"name": "Ravi", "phone": "9000000002", "vehicleNumber": "MH04AB1234"},
        })

        assert parsed["accepted"] is True
        assert parsed["pricing"]["quoted_price"] == 480
        assert parsed["pricing"]["currency"] == "INR"
        assert parsed["tracking"]["tracking_number"] == "BD123"
        assert parsed["tracking"]["carrier_reference_id"] == "JOB-9"
        assert parsed["delivery"]["estimated_pickup_time"] == "2026-10-19T14:00:00Z"
        assert parsed["driver"]["vehicle_number"] == "MH04AB1234"

    def test_acceptance_without_body(self):
        parsed = parse_acceptance_payload(None)

        assert parsed["driver"] is None
        assert parsed["pricing"]["quoted_price"] is None
        assert parsed["terms_accepted"] is True
        assert parsed["accepted_at"]

    def test_rejection_defaults(self):
        parsed = parse_rejection_payload({})

        assert parsed["accepted"] is False
        assert parsed["reason"] == "Not specified"
        assert parsed["alternative_options"] == []

    def test_rejection_camel_case(self):
        parsed = parse_rejection_payload({"reason": "No trucks", "reasonCode": "NO_CAPACITY"})

        assert parsed["reason"] == "No trucks"
        assert parsed["reason_code"] == "NO_CAPACITY"
