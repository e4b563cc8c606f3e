"""
Carrier Quote API client.

Sends one quote request to one carrier and normalizes the answer into a
QuoteOutcome. A carrier either accepts with a price or rejects with a
reason; transport and protocol failures are reported as status "error"
(reason api_error) so quote collection can treat them like a rejection.

Request body (JSON POST to carrier.api_endpoint):
    {order_id, order_number, service_type, origin, destination,
     total_weight, chargeable_weight, has_fragile_items,
     requires_cold_storage, items[]}

Accepted response:
    {"accepted": true, "quoted_price": 450.0, "currency": "INR",
     "estimated_delivery_days": 3}
Rejected response:
    {"accepted": false, "reason": "no_capacity", "message": "..."}

camelCase keys (quotedPrice, estimatedDeliveryDays) are accepted too.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from scm_dispatch.config import settings
from scm_dispatch.exceptions import CarrierAPIError
from scm_dispatch.models.carrier import Carrier

logger = logging.getLogger(__name__)


class QuoteStatus:
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class QuoteOutcome:
    """One carrier's answer to a quote request."""
    carrier_id: uuid.UUID
    carrier_code: str
    carrier_name: str
    status: str
    quoted_price: Optional[Decimal] = None
    currency: str = "INR"
    estimated_delivery_days: Optional[int] = None
    service_type: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    response_time_ms: int = 0
    was_retried: bool = False
    reliability_score: float = 0.8
    raw_response: Optional[Dict[str, Any]] = None

    @property
    def accepted(self) -> bool:
        return self.status == QuoteStatus.ACCEPTED

    def to_dict(self) -> dict:
        data = {
            "carrier_id": str(self.carrier_id),
            "carrier_code": self.carrier_code,
            "carrier_name": self.carrier_name,
            "status": self.status,
            "response_time_ms": self.response_time_ms,
            "was_retried": self.was_retried,
        }
        if self.accepted:
            data.update({
                "quoted_price": float(self.quoted_price),
                "currency": self.currency,
                "estimated_delivery_days": self.estimated_delivery_days,
                "service_type": self.service_type,
            })
        else:
            data.update({"reason": self.reason, "message": self.message})
        return data


def check_rejection_reasons(carrier: Carrier, details: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Rejections known before calling the carrier: weight limit and cold chain."""
    total_weight = details.get("total_weight") or 0
    if carrier.max_weight_kg is not None and total_weight > carrier.max_weight_kg:
        return {
            "reason": "weight_exceeded",
            "message": f"Shipment weight {total_weight}kg exceeds carrier limit of {carrier.max_weight_kg}kg",
        }
    if details.get("requires_cold_storage") and not carrier.supports_cold_storage:
        return {
            "reason": "no_cold_storage",
            "message": "Carrier does not support temperature-controlled transport",
        }
    return None


def _pick(data: Dict[str, Any], *keys: str):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


class CarrierQuoteClient:
    """HTTP client for carrier quote endpoints."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout or settings.QUOTE_TIMEOUT_SECONDS
        self._transport = transport

    async def get_quote(self, carrier: Carrier, details: Dict[str, Any]) -> QuoteOutcome:
        """Quote from one carrier. Never raises for carrier-side failures."""
        outcome = QuoteOutcome(
            carrier_id=carrier.id,
            carrier_code=carrier.code,
            carrier_name=carrier.name,
            status=QuoteStatus.REJECTED,
            service_type=details.get("service_type"),
            reliability_score=float(carrier.reliability_score or 0),
        )

        rejection = check_rejection_reasons(carrier, details)
        if rejection:
            outcome.reason = rejection["reason"]
            outcome.message = rejection["message"]
            return outcome

        try:
            data = await self._request(carrier, details)
        except (CarrierAPIError, httpx.HTTPError) as e:
            logger.warning(f"Quote request to {carrier.code} failed: {e}")
            outcome.status = QuoteStatus.ERROR
            outcome.reason = "api_error"
            outcome.message = str(e)
            return outcome

        return self._parse_response(outcome, data)

    async def _request(self, carrier: Carrier, details: Dict[str, Any]) -> Dict[str, Any]:
        if not carrier.api_endpoint:
            raise CarrierAPIError(carrier.code, "no API endpoint configured")

        headers = {"Content-Type": "application/json"}
        if carrier.api_key:
            headers["Authorization"] = f"Bearer {carrier.api_key}"

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.post(carrier.api_endpoint, json=details, headers=headers)

        if response.status_code >= 400:
            raise CarrierAPIError(
                carrier.code,
                f"HTTP {response.status_code}: {response.text[:200]}",
                upstream_status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            raise CarrierAPIError(carrier.code, "response is not valid JSON", response.status_code)
        if not isinstance(data, dict):
            raise CarrierAPIError(carrier.code, "response is not a JSON object", response.status_code)
        return data

    def _parse_response(self, outcome: QuoteOutcome, data: Dict[str, Any]) -> QuoteOutcome:
        outcome.raw_response = data
        price = _pick(data, "quoted_price", "quotedPrice", "price")
        accepted = data.get("accepted")
        if accepted is None:
            accepted = price is not None

        if not accepted:
            outcome.reason = _pick(data, "reason", "reasonCode", "reason_code") or "declined"
            outcome.message = data.get("message")
            return outcome

        days = _pick(data, "estimated_delivery_days", "estimatedDeliveryDays", "transit_days")
        try:
            outcome.quoted_price = Decimal(str(price))
            if not outcome.quoted_price.is_finite() or outcome.quoted_price <= 0:
                raise ValueError(f"price must be a positive amount, got {price!r}")
            days = int(days) if days is not None else None
        except (InvalidOperation, TypeError, ValueError):
            outcome.status = QuoteStatus.ERROR
            outcome.quoted_price = None
            outcome.reason = "api_error"
            outcome.message = f"Invalid quote: price={price!r} days={days!r}"
            return outcome

        outcome.status = QuoteStatus.ACCEPTED
        outcome.currency = data.get("currency") or "INR"
        outcome.estimated_delivery_days = days
        outcome.service_type = _pick(data, "service_type", "serviceType") or outcome.service_type
        return outcome
