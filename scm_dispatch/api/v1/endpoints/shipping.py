"""Shipping estimate and carrier quote endpoints."""
from typing import Optional
import uuid

from fastapi import APIRouter, Body, Header

from scm_dispatch.api.deps import QuoteCollectorDep
from scm_dispatch.schemas.shipping import (
    QuickEstimateRequest,
    QuickEstimateResponse,
    ShippingQuoteRequest,
    ShippingQuoteResponse,
)
from scm_dispatch.services.carrier_selection import (
    LowestPriceSelectionPolicy,
    WeightedScoreSelectionPolicy,
)
from scm_dispatch.services.pricing_engine import quick_estimate


router = APIRouter()

SELECTION_POLICIES = {
    "lowest_price": LowestPriceSelectionPolicy,
    "weighted_score": WeightedScoreSelectionPolicy,
}


@router.post(
    "/shipping/quick-estimate",
    response_model=QuickEstimateResponse,
)
async def get_quick_estimate(payload: QuickEstimateRequest):
    """Approximate cost for checkout. No carrier is contacted."""
    return QuickEstimateResponse(**quick_estimate(
        weight_kg=payload.weight_kg,
        service_type=payload.service_type.value,
        distance_km=payload.distance_km,
        from_postal_code=payload.from_postal_code,
        to_postal_code=payload.to_postal_code,
    ))


@router.post(
    "/orders/{order_id}/shipping-quotes",
    response_model=ShippingQuoteResponse,
)
async def collect_shipping_quotes(
    order_id: uuid.UUID,
    collector: QuoteCollectorDep,
    payload: Optional[ShippingQuoteRequest] = Body(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
):
    """
    Real quotes from every carrier with an API endpoint.

    Blocks until all carriers answered or timed out (plus one retry round
    when fewer than the minimum accepted). 409 while another collection for
    the same order is running; 503 when no carrier accepted.
    """
    payload = payload or ShippingQuoteRequest()
    policy = SELECTION_POLICIES[payload.selection_policy]()
    result = await collector.collect_quotes(order_id, idempotency_key=idempotency_key, policy=policy)
    return ShippingQuoteResponse(**result)
