"""Carrier-facing query and availability endpoints."""
from typing import Optional

from fastapi import APIRouter, Query

from scm_dispatch.api.deps import DB, AssignmentServiceDep
from scm_dispatch.exceptions import CarrierNotFoundError
from scm_dispatch.models.order import OrderPriority
from scm_dispatch.schemas.assignment import (
    PendingAssignment,
    PendingAssignmentListResponse,
    CarrierAvailabilityUpdate,
    CarrierAvailabilityResponse,
)
from scm_dispatch.services.assignment_store import AssignmentStore


router = APIRouter()


@router.get(
    "/{carrier_code}/assignments",
    response_model=PendingAssignmentListResponse,
)
async def list_pending_assignments(
    carrier_code: str,
    db: DB,
    service: AssignmentServiceDep,
    service_type: Optional[OrderPriority] = Query(None),
):
    """Pending assignments the carrier still has to answer, oldest first."""
    carrier = await AssignmentStore(db).get_carrier_by_code(carrier_code)
    if carrier is None:
        raise CarrierNotFoundError(carrier_code)

    items = await service.get_pending_assignments(
        carrier.id,
        service_type=service_type.value if service_type else None,
    )
    return PendingAssignmentListResponse(
        carrier_code=carrier.code,
        items=[PendingAssignment(**item) for item in items],
        total=len(items),
    )


@router.put(
    "/availability",
    response_model=CarrierAvailabilityResponse,
)
async def update_availability(
    payload: CarrierAvailabilityUpdate,
    service: AssignmentServiceDep,
):
    """
    Carrier availability webhook.

    Going available returns the number of assignments still pending for the
    carrier; busy assignments come back on the next retry run.
    """
    result = await service.update_carrier_availability(payload.code, payload.status.value)
    return CarrierAvailabilityResponse(**result)
