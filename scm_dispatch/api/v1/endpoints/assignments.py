"""Carrier assignment API endpoints."""
from typing import Optional
import uuid

from fastapi import APIRouter, Body

from scm_dispatch.api.deps import AssignmentServiceDep
from scm_dispatch.schemas.assignment import (
    CarrierAssignmentRequest,
    CarrierAssignmentResponse,
    AcceptAssignmentRequest,
    AcceptAssignmentResponse,
    RejectAssignmentRequest,
    BusyAssignmentRequest,
    AssignmentStatusResponse,
)


router = APIRouter()


# ==================== ORDER SIDE ====================

@router.post(
    "/orders/{order_id}/carrier-assignment",
    response_model=CarrierAssignmentResponse,
)
async def request_carrier_assignment(
    order_id: uuid.UUID,
    service: AssignmentServiceDep,
    payload: Optional[CarrierAssignmentRequest] = Body(None),
):
    """
    Offer the order to the next batch of carriers.

    Returns as soon as the batch is stored; carriers answer through the
    accept / reject / busy endpoints. An empty assignment list means no
    carrier is available right now and the retry job will try again.
    """
    payload = payload or CarrierAssignmentRequest()
    result = await service.request_carrier_assignment(
        order_id,
        service_type=payload.service_type.value if payload.service_type else None,
        force=payload.force,
    )
    return CarrierAssignmentResponse(**result)


# ==================== CARRIER SIDE ====================

@router.post(
    "/assignments/{assignment_id}/accept",
    response_model=AcceptAssignmentResponse,
)
async def accept_assignment(
    assignment_id: uuid.UUID,
    payload: AcceptAssignmentRequest,
    service: AssignmentServiceDep,
):
    """Carrier accepts; creates the shipment and moves the order to ready_to_ship."""
    result = await service.accept_assignment(
        assignment_id,
        payload.carrier_id,
        acceptance_data=dict(payload.model_extra or {}),
    )
    return AcceptAssignmentResponse(**result)


@router.post(
    "/assignments/{assignment_id}/reject",
    response_model=AssignmentStatusResponse,
)
async def reject_assignment(
    assignment_id: uuid.UUID,
    payload: RejectAssignmentRequest,
    service: AssignmentServiceDep,
):
    result = await service.reject_assignment(
        assignment_id,
        payload.carrier_id,
        reason=payload.reason,
        rejection_data=dict(payload.model_extra or {}),
    )
    return AssignmentStatusResponse(**result)


@router.post(
    "/assignments/{assignment_id}/busy",
    response_model=AssignmentStatusResponse,
)
async def mark_assignment_busy(
    assignment_id: uuid.UUID,
    payload: BusyAssignmentRequest,
    service: AssignmentServiceDep,
):
    result = await service.mark_as_busy(assignment_id, payload.carrier_id, reason=payload.reason)
    return AssignmentStatusResponse(**result)
