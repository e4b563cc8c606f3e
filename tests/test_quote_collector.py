import asyncio
import json
import uuid
from collections import defaultdict
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from scm_dispatch.core.clock import utc_now
from scm_dispatch.exceptions import (
    IdempotencyKeyConflictError,
    NoCarriersAvailableError,
    OrderNotAssignableError,
    OrderNotFoundError,
    ShippingLockError,
)
from scm_dispatch.models import Carrier, CarrierQuote, CarrierQuoteRejection, Order
from scm_dispatch.services.carrier_quote_client import CarrierQuoteClient
from scm_dispatch.services.carrier_selection import WeightedScoreSelectionPolicy
from scm_dispatch.services.quote_collector import QuoteCollector


class CarrierAPIs:
    """
    Mock carrier quote endpoints keyed by host.

    Each behaviour is a list of responses consumed one call at a time; the
    last one repeats. A response is a dict (JSON body), an int (bare status
    code) or a float (seconds to stall before answering).
    """

    def __init__(self, **behaviours):
        self.behaviours = behaviours
        self.calls = defaultdict(int)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host.split(".")[0]
        responses = self.behaviours[host]
        response = responses[min(self.calls[host], len(responses) - 1)]
        self.calls[host] += 1

        if isinstance(response, float):
            await asyncio.sleep(response)
            return httpx.Response(200, json={"accepted": True, "quoted_price": 1.0})
        if isinstance(response, int):
            return httpx.Response(response)
        return httpx.Response(200, json=response)


def accept(price, days=3):
    return {"accepted": True, "quoted_price": price, "estimated_delivery_days": days}


def decline(reason="no_capacity"):
    return {"accepted": False, "reason": reason, "message": "Fleet fully booked"}


@pytest.fixture
def make_collector(session_factory):
    def factory(apis: CarrierAPIs, **kwargs) -> QuoteCollector:
        client = CarrierQuoteClient(transport=httpx.MockTransport(apis))
        kwargs.setdefault("timeout", 2.0)
        return QuoteCollector(session_factory=session_factory, client=client, **kwargs)
    return factory


async def seed_api_carriers(seed, *codes, **overrides):
    carriers = []
    for i, code in enumerate(codes):
        carriers.append(await seed.carrier(
            code.upper(),
            api_endpoint=f"https://{code}.test/quotes",
            reliability_score=round(0.95 - i * 0.05, 2),
            **overrides,
        ))
    return carriers


class TestCollectQuotes:
    @pytest.mark.asyncio
    async def test_cheapest_quote_is_selected_and_recorded(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", "delhivery", "dtdc")
        order = await seed.order(await seed.warehouse())
        apis = CarrierAPIs(bluedart=[accept(520)], delhivery=[accept(480, days=4)], dtdc=[decline()])

        result = await make_collector(apis).collect_quotes(order.id)

        assert result["recommended"]["carrier_code"] == "DELHIVERY"
        assert result["recommended"]["selection_reason"] == "lowest_price"
        assert result["capacity_reserved"] is True
        assert [q["carrier_code"] for q in result["rejected_carriers"]] == ["DTDC"]
        assert result["stats"]["total_carriers"] == 3
        assert result["stats"]["accepted_count"] == 2
        assert result["stats"]["acceptance_rate"] == "66.7%"
        # Two accepted meets the minimum, nobody is asked twice
        assert dict(apis.calls) == {"bluedart": 1, "delhivery": 1, "dtdc": 1}

        saved = await seed.get(Order, order.id)
        assert saved.shipping_cost == Decimal("480.00")
        assert saved.carrier_id is None
        assert saved.shipping_locked is False

        quotes = await seed.all(CarrierQuote, CarrierQuote.order_id == order.id)
        assert len(quotes) == 2
        selected = [q for q in quotes if q.is_selected]
        assert len(selected) == 1
        assert selected[0].selection_reason == "lowest_price"
        rejections = await seed.all(CarrierQuoteRejection, CarrierQuoteRejection.order_id == order.id)
        assert [(r.outcome, r.reason) for r in rejections] == [("rejected", "no_capacity")]

        carrier = (await seed.all(Carrier, Carrier.code == "DELHIVERY"))[0]
        assert carrier.current_load == 1

    @pytest.mark.asyncio
    async def test_failed_carriers_are_retried_once_for_the_minimum(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", "delhivery", "dtdc")
        order = await seed.order()
        apis = CarrierAPIs(
            bluedart=[accept(520)],
            delhivery=[503, accept(470)],
            dtdc=[decline("route_not_serviced")],
        )

        result = await make_collector(apis).collect_quotes(order.id)

        assert dict(apis.calls) == {"bluedart": 1, "delhivery": 2, "dtdc": 2}
        accepted = {q["carrier_code"]: q for q in result["accepted_quotes"]}
        assert accepted["DELHIVERY"]["was_retried"] is True
        assert accepted["BLUEDART"]["was_retried"] is False
        assert result["recommended"]["carrier_code"] == "DELHIVERY"
        # Failed twice: the first failure is what gets reported
        rejected = result["rejected_carriers"][0]
        assert rejected["carrier_code"] == "DTDC"
        assert rejected["was_retried"] is False
        assert rejected["reason"] == "route_not_serviced"

    @pytest.mark.asyncio
    async def test_slow_carrier_times_out(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", "slowship")
        order = await seed.order()
        apis = CarrierAPIs(bluedart=[accept(500)], slowship=[1.0])

        result = await make_collector(apis, timeout=0.05).collect_quotes(order.id)

        timed_out = result["rejected_carriers"][0]
        assert timed_out["carrier_code"] == "SLOWSHIP"
        assert timed_out["status"] == "timeout"
        assert timed_out["reason"] == "api_timeout"
        assert result["stats"]["timed_out_count"] == 1
        assert result["recommended"]["selection_reason"] == "only_option"

    @pytest.mark.asyncio
    async def test_nobody_accepts(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", "delhivery")
        order = await seed.order()
        apis = CarrierAPIs(bluedart=[decline()], delhivery=[500])

        with pytest.raises(NoCarriersAvailableError) as exc_info:
            await make_collector(apis).collect_quotes(order.id)

        assert exc_info.value.status_code == 503
        assert {r["carrier_code"] for r in exc_info.value.rejections} == {"BLUEDART", "DELHIVERY"}
        # No retry round when nothing was accepted at all
        assert dict(apis.calls) == {"bluedart": 1, "delhivery": 1}

        saved = await seed.get(Order, order.id)
        assert saved.shipping_locked is False
        assert saved.shipping_cost is None
        rejections = await seed.all(CarrierQuoteRejection, CarrierQuoteRejection.order_id == order.id)
        assert len(rejections) == 2

    @pytest.mark.asyncio
    async def test_no_carrier_has_an_api(self, make_collector, seed):
        await seed.carrier("OFFLINE1")
        order = await seed.order()

        with pytest.raises(NoCarriersAvailableError) as exc_info:
            await make_collector(CarrierAPIs()).collect_quotes(order.id)

        assert exc_info.value.rejections == []
        assert (await seed.get(Order, order.id)).shipping_locked is False

    @pytest.mark.asyncio
    async def test_unusable_prices_are_not_selected(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", "delhivery", "dtdc")
        order = await seed.order()
        apis = CarrierAPIs(
            bluedart=[accept(520)],
            delhivery=[{"accepted": True, "quoted_price": "NaN"}],
            dtdc=[accept(-999)],
        )

        result = await make_collector(apis).collect_quotes(order.id)

        assert result["recommended"]["carrier_code"] == "BLUEDART"
        assert result["recommended"]["selection_reason"] == "only_option"
        assert {r["carrier_code"]: r["reason"] for r in result["rejected_carriers"]} == {
            "DELHIVERY": "api_error",
            "DTDC": "api_error",
        }
        assert (await seed.get(Order, order.id)).shipping_cost == Decimal("520.00")

    @pytest.mark.asyncio
    async def test_weighted_policy(self, make_collector, seed):
        await seed_api_carriers(seed, "cheap", "quick", "pricey")
        order = await seed.order()
        apis = CarrierAPIs(
            cheap=[accept(500, days=7)],
            quick=[accept(510, days=2)],
            pricey=[accept(600, days=4)],
        )

        result = await make_collector(apis).collect_quotes(order.id, policy=WeightedScoreSelectionPolicy())

        assert result["recommended"]["carrier_code"] == "QUICK"
        assert result["recommended"]["selection_reason"] == "fastest_delivery"

    @pytest.mark.asyncio
    async def test_carrier_at_capacity_is_still_quoted(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", max_capacity=2, current_load=2)
        order = await seed.order()

        result = await make_collector(CarrierAPIs(bluedart=[accept(450)])).collect_quotes(order.id)

        assert result["capacity_reserved"] is False
        assert (await seed.get(Order, order.id)).shipping_cost == Decimal("450.00")

    @pytest.mark.asyncio
    async def test_shipped_order_is_refused(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart")
        order = await seed.order(status="shipped")

        with pytest.raises(OrderNotAssignableError):
            await make_collector(CarrierAPIs(bluedart=[accept(450)])).collect_quotes(order.id)

        assert (await seed.get(Order, order.id)).shipping_locked is False

    @pytest.mark.asyncio
    async def test_unknown_order(self, make_collector):
        with pytest.raises(OrderNotFoundError):
            await make_collector(CarrierAPIs()).collect_quotes(uuid.uuid4())


class TestShippingLock:
    @pytest.mark.asyncio
    async def test_locked_order_is_refused(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart")
        order = await seed.order(shipping_locked=True, shipping_locked_at=utc_now())
        apis = CarrierAPIs(bluedart=[accept(450)])

        with pytest.raises(ShippingLockError):
            await make_collector(apis).collect_quotes(order.id)

        assert apis.calls == {}
        assert (await seed.get(Order, order.id)).shipping_locked is True

    @pytest.mark.asyncio
    async def test_lock_is_released_on_error(self, make_collector, seed):
        order = await seed.order()
        collector = make_collector(CarrierAPIs())

        with pytest.raises(RuntimeError):
            async with collector.shipping_lock(order.id):
                assert (await seed.get(Order, order.id)).shipping_locked is True
                raise RuntimeError("carrier fan-out crashed")

        assert (await seed.get(Order, order.id)).shipping_locked is False

    @pytest.mark.asyncio
    async def test_second_holder_is_refused(self, make_collector, seed):
        order = await seed.order()
        collector = make_collector(CarrierAPIs())

        async with collector.shipping_lock(order.id):
            with pytest.raises(ShippingLockError):
                await collector.acquire_lock(order.id)

    @pytest.mark.asyncio
    async def test_stale_locks_are_released(self, make_collector, seed):
        stale = await seed.order(shipping_locked=True, shipping_locked_at=utc_now() - timedelta(minutes=10))
        fresh = await seed.order(shipping_locked=True, shipping_locked_at=utc_now() - timedelta(minutes=1))

        released = await make_collector(CarrierAPIs()).release_stale_locks()

        assert released == 1
        assert (await seed.get(Order, stale.id)).shipping_locked is False
        assert (await seed.get(Order, fresh.id)).shipping_locked is True


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_key_replays_result(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart", "delhivery")
        order = await seed.order()
        apis = CarrierAPIs(bluedart=[accept(520)], delhivery=[accept(480)])
        collector = make_collector(apis)

        first = await collector.collect_quotes(order.id, idempotency_key="checkout-7f3a")
        second = await collector.collect_quotes(order.id, idempotency_key="checkout-7f3a")

        assert second == first
        assert dict(apis.calls) == {"bluedart": 1, "delhivery": 1}
        assert len(await seed.all(CarrierQuote, CarrierQuote.order_id == order.id)) == 2

    @pytest.mark.asyncio
    async def test_key_reused_for_another_order(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart")
        first_order = await seed.order()
        other_order = await seed.order()
        collector = make_collector(CarrierAPIs(bluedart=[accept(450)]))
        await collector.collect_quotes(first_order.id, idempotency_key="checkout-7f3a")

        with pytest.raises(IdempotencyKeyConflictError):
            await collector.collect_quotes(other_order.id, idempotency_key="checkout-7f3a")

    @pytest.mark.asyncio
    async def test_without_key_every_call_asks_carriers(self, make_collector, seed):
        await seed_api_carriers(seed, "bluedart")
        order = await seed.order()
        apis = CarrierAPIs(bluedart=[accept(450)])
        collector = make_collector(apis)

        await collector.collect_quotes(order.id)
        await collector.collect_quotes(order.id)

        assert apis.calls["bluedart"] == 2


class TestQuoteRequest:
    @pytest.mark.asyncio
    async def test_request_body_summarizes_shipment(self, session_factory, seed):
        await seed_api_carriers(seed, "bluedart", supports_cold_storage=True)
        order = await seed.order(
            await seed.warehouse(),
            items=[
                {"quantity": 2, "weight_kg": 5.0, "length_cm": 50.0, "width_cm": 40.0, "height_cm": 30.0},
                {"sku": "ICE-1", "weight_kg": 1.0, "length_cm": None, "width_cm": None, "height_cm": None,
                 "requires_cold_storage": True, "is_fragile": True},
            ],
            priority="express",
        )
        bodies = []

        async def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=accept(900))

        collector = QuoteCollector(
            session_factory=session_factory,
            client=CarrierQuoteClient(transport=httpx.MockTransport(handler)),
        )
        await collector.collect_quotes(order.id)

        body = bodies[0]
        assert body["order_number"] == order.order_number
        assert body["service_type"] == "express"
        assert body["origin"]["city"] == "Bhiwandi"
        assert body["destination"]["postal_code"] == "560001"
        assert body["total_weight"] == 11.0
        assert body["chargeable_weight"] == 24.0
        assert body["has_fragile_items"] is True
        assert body["requires_cold_storage"] is True
        assert len(body["items"]) == 2
