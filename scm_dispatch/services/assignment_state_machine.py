"""
Carrier Assignment State Machine

This module is the single place that decides which assignment and order
status changes are legal. Services call validate_transition() before every
conditional UPDATE, so an illegal change (e.g. accepted -> pending) fails
before it reaches the database.

    pending -> accepted | rejected | busy | expired | cancelled
    busy    -> pending (carrier available again) | expired | cancelled

Order status only moves forward:

    created -> pending_carrier_assignment -> ready_to_ship | on_hold
"""

from typing import Dict, List

from scm_dispatch.exceptions import InvalidTransitionError
from scm_dispatch.models.assignment import AssignmentStatus
from scm_dispatch.models.order import OrderStatus


# =============================================================================
# ASSIGNMENT TRANSITIONS
# =============================================================================

ASSIGNMENT_TRANSITIONS: Dict[AssignmentStatus, List[AssignmentStatus]] = {
    AssignmentStatus.PENDING: [
        AssignmentStatus.ACCEPTED,
        AssignmentStatus.REJECTED,
        AssignmentStatus.BUSY,
        AssignmentStatus.EXPIRED,
        AssignmentStatus.CANCELLED,
    ],
    AssignmentStatus.BUSY: [
        AssignmentStatus.PENDING,     # Carrier reported availability
        AssignmentStatus.EXPIRED,
        AssignmentStatus.CANCELLED,   # Another carrier accepted
    ],
    AssignmentStatus.ACCEPTED: [],
    AssignmentStatus.REJECTED: [],
    AssignmentStatus.EXPIRED: [],
    AssignmentStatus.CANCELLED: [],
}

# Terminal statuses that count as "this carrier did not take the order"
FAILED_STATUSES = (
    AssignmentStatus.REJECTED,
    AssignmentStatus.BUSY,
    AssignmentStatus.EXPIRED,
)

# Statuses that still hold a carrier's attention for the order
LIVE_STATUSES = (
    AssignmentStatus.PENDING,
    AssignmentStatus.ACCEPTED,
)


def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    allowed = ASSIGNMENT_TRANSITIONS.get(AssignmentStatus(current_status), [])
    return AssignmentStatus(new_status) in allowed


def get_allowed_transitions(current_status: str) -> List[str]:
    return [s.value for s in ASSIGNMENT_TRANSITIONS.get(AssignmentStatus(current_status), [])]


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidTransitionError unless current -> new is allowed."""
    if not can_transition(current_status, new_status):
        raise InvalidTransitionError(
            AssignmentStatus(current_status).value,
            AssignmentStatus(new_status).value,
            get_allowed_transitions(current_status),
        )


def is_terminal(status: str) -> bool:
    return not ASSIGNMENT_TRANSITIONS.get(AssignmentStatus(status))


# =============================================================================
# ORDER STATUS
# =============================================================================

ORDER_STATUS_RANK: Dict[OrderStatus, int] = {
    OrderStatus.CREATED: 0,
    OrderStatus.PENDING_CARRIER_ASSIGNMENT: 1,
    OrderStatus.READY_TO_SHIP: 2,
    OrderStatus.ON_HOLD: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
    OrderStatus.CANCELLED: 5,
}

# Orders in these statuses take part in carrier assignment
ASSIGNABLE_ORDER_STATUSES = (
    OrderStatus.CREATED,
    OrderStatus.PENDING_CARRIER_ASSIGNMENT,
)


def can_advance_order(current_status: str, new_status: str) -> bool:
    """Order status may stay put or move forward, never back."""
    current = OrderStatus(current_status)
    new = OrderStatus(new_status)
    if current == new:
        return True
    if current in (OrderStatus.READY_TO_SHIP, OrderStatus.ON_HOLD) and new in (
        OrderStatus.READY_TO_SHIP, OrderStatus.ON_HOLD
    ):
        return False
    return ORDER_STATUS_RANK[new] > ORDER_STATUS_RANK[current]


def is_assignable(order_status: str) -> bool:
    return OrderStatus(order_status) in ASSIGNABLE_ORDER_STATUSES
