"""Quote client parsing and carrier selection policies."""
import json
import uuid
from decimal import Decimal

import httpx
import pytest

from scm_dispatch.models import Carrier
from scm_dispatch.services.carrier_quote_client import (
    CarrierQuoteClient,
    QuoteOutcome,
    QuoteStatus,
    check_rejection_reasons,
)
from scm_dispatch.services.carrier_selection import (
    LowestPriceSelectionPolicy,
    SelectionReason,
    WeightedScoreSelectionPolicy,
    determine_selection_reason,
    select_best_quote,
)

DETAILS = {
    "order_id": "9b1c",
    "service_type": "standard",
    "total_weight": 12.5,
    "requires_cold_storage": False,
}


def make_carrier(**overrides) -> Carrier:
    values = {
        "id": uuid.uuid4(),
        "code": "BLUEDART",
        "name": "Blue Dart",
        "api_endpoint": "https://bluedart.test/quotes",
        "api_key": "secret",
        "reliability_score": 0.9,
        "supports_cold_storage": False,
    }
    values.update(overrides)
    return Carrier(**values)


def client_returning(status_code=200, body=None, content=None, seen=None) -> CarrierQuoteClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if content is not None:
            return httpx.Response(status_code, content=content)
        return httpx.Response(status_code, json=body)

    return CarrierQuoteClient(timeout=2, transport=httpx.MockTransport(handler))


def quote(code, price, days=3, reliability=0.8, status=QuoteStatus.ACCEPTED) -> QuoteOutcome:
    return QuoteOutcome(
        carrier_id=uuid.uuid4(),
        carrier_code=code,
        carrier_name=code.title(),
        status=status,
        quoted_price=Decimal(str(price)) if price is not None else None,
        estimated_delivery_days=days,
        reliability_score=reliability,
    )


class TestQuoteClient:
    @pytest.mark.asyncio
    async def test_accepted_quote(self):
        seen = []
        client = client_returning(body={
            "accepted": True, "quoted_price": 450.0, "currency": "INR", "estimated_delivery_days": 3,
        }, seen=seen)

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.status == QuoteStatus.ACCEPTED
        assert outcome.quoted_price == Decimal("450.0")
        assert outcome.estimated_delivery_days == 3
        assert outcome.service_type == "standard"
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(seen[0].content)["total_weight"] == 12.5

    @pytest.mark.asyncio
    async def test_camel_case_without_accepted_flag(self):
        client = client_returning(body={"quotedPrice": "399.99", "estimatedDeliveryDays": "4"})

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.accepted
        assert outcome.quoted_price == Decimal("399.99")
        assert outcome.estimated_delivery_days == 4

    @pytest.mark.asyncio
    async def test_carrier_declines(self):
        client = client_returning(body={"accepted": False, "reason": "no_capacity", "message": "Fleet full"})

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.status == QuoteStatus.REJECTED
        assert outcome.reason == "no_capacity"
        assert outcome.to_dict()["message"] == "Fleet full"
        assert "quoted_price" not in outcome.to_dict()

    @pytest.mark.asyncio
    async def test_decline_without_reason(self):
        outcome = await client_returning(body={"accepted": False}).get_quote(make_carrier(), DETAILS)
        assert outcome.reason == "declined"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,content", [
        (500, b'{"error": "boom"}'),
        (200, b"<html>maintenance</html>"),
        (200, b"[1, 2, 3]"),
    ])
    async def test_bad_responses_are_errors(self, status_code, content):
        client = client_returning(status_code=status_code, content=content)

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.status == QuoteStatus.ERROR
        assert outcome.reason == "api_error"

    @pytest.mark.asyncio
    async def test_unparseable_price_is_an_error(self):
        client = client_returning(body={"accepted": True, "quoted_price": "call us", "estimated_delivery_days": 2})

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.status == QuoteStatus.ERROR
        assert "call us" in outcome.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["NaN", "Infinity", -999, 0])
    async def test_price_must_be_a_positive_amount(self, price):
        client = client_returning(body={"accepted": True, "quoted_price": price, "estimated_delivery_days": 2})

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.status == QuoteStatus.ERROR
        assert outcome.reason == "api_error"
        assert outcome.quoted_price is None

    @pytest.mark.asyncio
    async def test_connection_failure_is_an_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = CarrierQuoteClient(transport=httpx.MockTransport(handler))

        outcome = await client.get_quote(make_carrier(), DETAILS)

        assert outcome.status == QuoteStatus.ERROR

    @pytest.mark.asyncio
    async def test_weight_limit_rejects_without_calling(self):
        seen = []
        client = client_returning(body={"accepted": True, "quoted_price": 1}, seen=seen)

        outcome = await client.get_quote(make_carrier(max_weight_kg=10.0), DETAILS)

        assert outcome.reason == "weight_exceeded"
        assert seen == []

    def test_cold_chain_requirement(self):
        details = {**DETAILS, "requires_cold_storage": True}

        assert check_rejection_reasons(make_carrier(), details)["reason"] == "no_cold_storage"
        assert check_rejection_reasons(make_carrier(supports_cold_storage=True), details) is None


class TestSelection:
    def test_single_quote_is_only_option(self):
        best, reason = select_best_quote([quote("DTDC", 500)])
        assert best.carrier_code == "DTDC"
        assert reason == SelectionReason.ONLY_OPTION

    def test_lowest_price(self):
        quotes = [quote("DTDC", 520), quote("BLUEDART", 480), quote("XPRESS", 610, days=1)]

        best, reason = select_best_quote(quotes, LowestPriceSelectionPolicy())

        assert best.carrier_code == "BLUEDART"
        assert reason == SelectionReason.LOWEST_PRICE

    def test_price_tie_goes_to_reliability(self):
        quotes = [quote("DTDC", 500, reliability=0.7), quote("BLUEDART", 500, reliability=0.95)]

        best, _ = select_best_quote(quotes)

        assert best.carrier_code == "BLUEDART"

    def test_rejected_quotes_are_ignored(self):
        quotes = [quote("DTDC", None, status=QuoteStatus.REJECTED), quote("BLUEDART", 700)]

        best, reason = select_best_quote(quotes)

        assert best.carrier_code == "BLUEDART"
        assert reason == SelectionReason.ONLY_OPTION

    def test_nothing_accepted(self):
        with pytest.raises(ValueError):
            select_best_quote([quote("DTDC", None, status=QuoteStatus.TIMEOUT)])

    def test_weighted_score_prefers_much_faster_quote(self):
        quotes = [quote("CHEAP", 500, days=7), quote("QUICK", 510, days=2), quote("PRICEY", 600, days=4)]

        best, reason = select_best_quote(quotes, WeightedScoreSelectionPolicy())

        assert best.carrier_code == "QUICK"
        assert reason == SelectionReason.FASTEST_DELIVERY

    def test_weighted_score_best_balance(self):
        quotes = [quote("CHEAP", 500, days=9), quote("MIDDLE", 510, days=3), quote("QUICK", 700, days=2)]

        best, reason = select_best_quote(quotes, WeightedScoreSelectionPolicy())

        assert best.carrier_code == "MIDDLE"
        assert reason == SelectionReason.BEST_BALANCE

    def test_unknown_transit_time_scores_zero_speed(self):
        policy = WeightedScoreSelectionPolicy()
        quotes = [quote("KNOWN", 500, days=3), quote("UNKNOWN", 500, days=None)]

        ranked = policy.rank(quotes)

        assert ranked[0].carrier_code == "KNOWN"
        assert determine_selection_reason(ranked[0], quotes) == SelectionReason.LOWEST_PRICE
