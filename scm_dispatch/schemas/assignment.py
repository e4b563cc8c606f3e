"""Pydantic schemas for carrier assignment endpoints."""
from pydantic import BaseModel, Field

from scm_dispatch.schemas.base import BaseCreateSchema, BaseResponseSchema, CarrierPayloadSchema
from typing import Any, Dict, List, Optional
import uuid

from scm_dispatch.models.carrier import AvailabilityStatus
from scm_dispatch.models.order import OrderPriority


# ==================== ASSIGNMENT REQUEST ====================

class CarrierAssignmentRequest(BaseCreateSchema):
    """Request the next carrier batch for an order."""
    service_type: Optional[OrderPriority] = Field(
        None, description="Defaults to the order priority"
    )
    force: bool = Field(
        False, description="Send a new batch even while assignments are still open"
    )


class AssignmentSummary(BaseModel):
    assignment_id: str
    carrier_id: str
    carrier_code: str
    carrier_name: str
    status: str
    estimated_price: Optional[float] = None
    expires_at: str


class CarrierAssignmentResponse(BaseResponseSchema):
    order_id: str
    order_number: str
    batch_number: Optional[int] = None
    assignments: List[AssignmentSummary] = []
    pending_acceptance: int
    attempts: int
    message: str


# ==================== CARRIER RESPONSES ====================

class AcceptAssignmentRequest(CarrierPayloadSchema):
    """
    Carrier acceptance.

    Everything besides carrier_id is the carrier's acceptance body
    (quoted_price, tracking_number, driver, estimated times ...).
    """
    carrier_id: uuid.UUID


class RejectAssignmentRequest(CarrierPayloadSchema):
    carrier_id: uuid.UUID
    reason: Optional[str] = None


class BusyAssignmentRequest(BaseCreateSchema):
    carrier_id: uuid.UUID
    reason: Optional[str] = None


class AcceptAssignmentResponse(BaseResponseSchema):
    assignment_id: str
    status: str
    order_id: str
    order_number: str
    order_status: str
    shipment_id: str
    shipment_number: str
    tracking_number: str
    carrier_reference_id: Optional[str] = None
    cancelled_assignments: int = 0


class AssignmentStatusResponse(BaseResponseSchema):
    assignment_id: str
    order_id: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None


# ==================== CARRIER QUERIES ====================

class PendingAssignment(BaseResponseSchema):
    assignment_id: str
    order_id: str
    order_number: Optional[str] = None
    service_type: str
    batch_number: int
    status: str
    estimated_price: Optional[float] = None
    requested_at: str
    expires_at: str
    hours_until_expiry: float
    request_payload: Dict[str, Any]


class PendingAssignmentListResponse(BaseModel):
    carrier_code: str
    items: List[PendingAssignment]
    total: int


class CarrierAvailabilityUpdate(BaseCreateSchema):
    """Inbound carrier availability webhook."""
    code: str = Field(..., min_length=1, max_length=20)
    status: AvailabilityStatus


class CarrierAvailabilityResponse(BaseResponseSchema):
    carrier_id: str
    carrier_code: str
    availability_status: str
    pending_count: Optional[int] = None
