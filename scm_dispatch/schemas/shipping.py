"""Pydantic schemas for shipping estimates and carrier quotes."""
from pydantic import BaseModel, Field

from scm_dispatch.schemas.base import BaseCreateSchema, BaseResponseSchema
from typing import List, Literal, Optional

from scm_dispatch.models.order import OrderPriority


# ==================== QUICK ESTIMATE ====================

class QuickEstimateRequest(BaseCreateSchema):
    """Checkout-time estimate; either a distance or two postal codes."""
    from_postal_code: Optional[str] = Field(None, max_length=10)
    to_postal_code: Optional[str] = Field(None, max_length=10)
    weight_kg: float = Field(1.0, gt=0)
    service_type: OrderPriority = OrderPriority.STANDARD
    distance_km: Optional[float] = Field(None, ge=0)


class QuickEstimateResponse(BaseModel):
    estimated_cost: int
    min_cost: int
    max_cost: int
    range: str
    service_type: str
    distance_km: float
    estimated_days: str
    is_estimate: bool = True
    message: str


# ==================== REAL QUOTES ====================

class ShippingQuoteRequest(BaseCreateSchema):
    selection_policy: Literal["lowest_price", "weighted_score"] = "lowest_price"


class QuoteResult(BaseModel):
    carrier_id: str
    carrier_code: str
    carrier_name: str
    status: str
    response_time_ms: int
    was_retried: bool = False
    quoted_price: Optional[float] = None
    currency: Optional[str] = None
    estimated_delivery_days: Optional[int] = None
    service_type: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class RecommendedQuote(QuoteResult):
    selection_reason: str


class QuoteStats(BaseModel):
    total_carriers: int
    accepted_count: int
    rejected_count: int
    timed_out_count: int
    acceptance_rate: str
    avg_response_time_ms: Optional[int] = None


class ShippingQuoteResponse(BaseResponseSchema):
    order_id: str
    order_number: str
    accepted_quotes: List[QuoteResult]
    rejected_carriers: List[QuoteResult]
    recommended: RecommendedQuote
    capacity_reserved: bool
    stats: QuoteStats
    message: str
