"""
Shared fixtures: a throwaway SQLite database per test, seeding helpers and
stand-ins for the routing service and the carrier notifier.
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select

from scm_dispatch.core.clock import utc_now
from scm_dispatch.database import create_engine_for, create_session_factory, init_db
from scm_dispatch.models import (
    Carrier,
    CarrierAssignment,
    Order,
    OrderItem,
    OrderStatusHistory,
    Warehouse,
)
from scm_dispatch.services.carrier_assignment_service import CarrierAssignmentService
from scm_dispatch.services.routing_service import RouteResult, RoutingService


DELIVERY_ADDRESS = {
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "latitude": 12.9716,
    "longitude": 77.5946,
}


class StubRoutingService(RoutingService):
    """Fixed road distance, never touches the network."""

    def __init__(self, distance_km: float = 250.0):
        super().__init__()
        self.distance_km = distance_km
        self.calls = 0

    async def get_driving_distance(self, origin, destination) -> RouteResult:
        self.calls += 1
        return RouteResult(
            distance_km=self.distance_km,
            duration_minutes=round(self.distance_km),
            method="osrm",
            success=True,
        )


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def enqueue(self, notification):
        self.sent.append(notification)


class Seeder:
    """Inserts rows through the test session factory and reads them back."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    async def add(self, *objects):
        async with self.session_factory() as session:
            async with session.begin():
                session.add_all(objects)
        return objects[0]

    async def warehouse(self, **overrides) -> Warehouse:
        n = self._next()
        values = {
            "code": f"WH-{n:03d}",
            "name": f"Bhiwandi DC {n}",
            "address_line1": "Plot 7, MIDC",
            "city": "Bhiwandi",
            "state": "Maharashtra",
            "postal_code": "421302",
            "latitude": 19.2813,
            "longitude": 73.0483,
        }
        values.update(overrides)
        return await self.add(Warehouse(**values))

    async def carrier(self, code: Optional[str] = None, **overrides) -> Carrier:
        n = self._next()
        values = {
            "code": code or f"CAR{n:03d}",
            "name": f"Carrier {code or n}",
            "service_type": "all",
            "is_active": True,
            "availability_status": "available",
            "last_status_change": utc_now() - timedelta(hours=2),
            "reliability_score": 0.8,
        }
        values.update(overrides)
        return await self.add(Carrier(**values))

    async def carriers(self, count: int, **overrides) -> List[Carrier]:
        # Descending reliability so batch order is predictable
        return [
            await self.carrier(reliability_score=round(0.99 - i * 0.01, 2), **overrides)
            for i in range(count)
        ]

    async def order(
        self,
        warehouse: Optional[Warehouse] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        **overrides,
    ) -> Order:
        n = self._next()
        values = {
            "order_number": f"ORD-20261019-{n:04d}",
            "priority": "standard",
            "status": "created",
            "warehouse_id": warehouse.id if warehouse else None,
            "customer_name": "Asha Rao",
            "customer_phone": "9876543210",
            "shipping_address": dict(DELIVERY_ADDRESS),
            "total_amount": Decimal("2500.00"),
            "payment_method": "PREPAID",
        }
        values.update(overrides)
        order = Order(id=uuid.uuid4(), **values)

        if items is None:
            items = [{}]
        rows = []
        for i, item in enumerate(items):
            item_values = {
                "sku": f"SKU-{i + 1}",
                "product_name": "Ceiling Fan",
                "quantity": 1,
                "unit_price": Decimal("1000.00"),
                "weight_kg": 5.0,
                "length_cm": 30.0,
                "width_cm": 30.0,
                "height_cm": 20.0,
            }
            item_values.update(item)
            rows.append(OrderItem(order_id=order.id, **item_values))

        return await self.add(order, *rows)

    async def get(self, model, pk):
        async with self.session_factory() as session:
            return await session.get(model, pk)

    async def all(self, model, *criteria, order_by=None) -> list:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def assignments(self, order_id) -> List[CarrierAssignment]:
        return await self.all(
            CarrierAssignment,
            CarrierAssignment.order_id == order_id,
            order_by=CarrierAssignment.requested_at,
        )

    async def history(self, order_id) -> List[OrderStatusHistory]:
        return await self.all(
            OrderStatusHistory,
            OrderStatusHistory.order_id == order_id,
            order_by=OrderStatusHistory.created_at,
        )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def routing():
    return StubRoutingService()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def assignment_service(session_factory, notifier, routing):
    return CarrierAssignmentService(
        session_factory=session_factory,
        notifier=notifier,
        routing_service=routing,
    )
