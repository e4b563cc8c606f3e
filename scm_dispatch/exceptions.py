"""Domain errors raised by the carrier assignment and quoting services.

Every error carries an HTTP status code so the API layer can render it
without a per-endpoint try/except.
"""
from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    """Base class for carrier assignment / quoting errors."""

    status_code: int = 400
    error_code: str = "DISPATCH_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class OrderNotFoundError(DispatchError):
    status_code = 404
    error_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found", {"order_id": str(order_id)})


class AssignmentNotFoundError(DispatchError):
    status_code = 404
    error_code = "ASSIGNMENT_NOT_FOUND"

    def __init__(self, assignment_id):
        super().__init__(
            f"Assignment {assignment_id} not found",
            {"assignment_id": str(assignment_id)},
        )


class CarrierNotFoundError(DispatchError):
    status_code = 404
    error_code = "CARRIER_NOT_FOUND"

    def __init__(self, carrier_ref):
        super().__init__(f"Carrier {carrier_ref} not found", {"carrier": str(carrier_ref)})


class AssignmentOwnershipError(DispatchError):
    """Assignment exists but belongs to a different carrier."""

    status_code = 403
    error_code = "ASSIGNMENT_UNAUTHORIZED"

    def __init__(self, assignment_id, carrier_id, owner_id, owner_name: Optional[str]):
        self.owner_name = owner_name
        super().__init__(
            f"Assignment {assignment_id} is not assigned to this carrier; "
            f"it belongs to {owner_name or owner_id}",
            {
                "assignment_id": str(assignment_id),
                "requested_by": str(carrier_id),
                "assigned_carrier_id": str(owner_id),
                "assigned_carrier_name": owner_name,
            },
        )


class InvalidTransitionError(DispatchError):
    status_code = 409
    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current_status: str, new_status: str, allowed: List[str]):
        if allowed:
            message = (
                f"Cannot change assignment from '{current_status}' to '{new_status}'. "
                f"Allowed transitions: {', '.join(allowed)}"
            )
        else:
            message = (
                f"Assignment in '{current_status}' status cannot be modified. "
                f"This is a terminal state."
            )
        super().__init__(
            message,
            {"current_status": current_status, "requested_status": new_status, "allowed": allowed},
        )


class AssignmentConflictError(DispatchError):
    """Another request changed the assignment between read and update."""

    status_code = 409
    error_code = "ASSIGNMENT_CONFLICT"


class OrderNotAssignableError(DispatchError):
    status_code = 409
    error_code = "ORDER_NOT_ASSIGNABLE"


class MaxAttemptsExceededError(DispatchError):
    status_code = 422
    error_code = "MAX_ATTEMPTS_EXCEEDED"

    def __init__(self, order_id, attempts: int, limit: int):
        super().__init__(
            f"Maximum carrier assignment attempts exceeded for order {order_id} "
            f"({attempts} carriers tried, limit {limit})",
            {"order_id": str(order_id), "attempts": attempts, "limit": limit},
        )


class ShippingLockError(DispatchError):
    status_code = 409
    error_code = "SHIPPING_LOCK_HELD"

    def __init__(self, order_id):
        super().__init__(
            f"Shipping quote collection already in progress for order {order_id}. "
            f"Retry later.",
            {"order_id": str(order_id)},
        )


class NoCarriersAvailableError(DispatchError):
    status_code = 503
    error_code = "NO_CARRIERS_AVAILABLE"

    def __init__(self, order_id, rejections: List[Dict[str, Any]]):
        self.rejections = rejections
        super().__init__(
            "No carriers available to ship this order",
            {"order_id": str(order_id), "rejections": rejections},
        )


class CarrierAPIError(DispatchError):
    """Carrier API returned an error or an unreadable response."""

    status_code = 502
    error_code = "CARRIER_API_ERROR"

    def __init__(self, carrier_code: str, message: str, upstream_status: Optional[int] = None):
        self.carrier_code = carrier_code
        self.upstream_status = upstream_status
        super().__init__(
            f"Carrier API error ({carrier_code}): {message}",
            {"carrier_code": carrier_code, "upstream_status": upstream_status},
        )


class IdempotencyKeyConflictError(DispatchError):
    """Idempotency key already used for a different order."""

    status_code = 422
    error_code = "IDEMPOTENCY_KEY_REUSED"

    def __init__(self, key: str, order_id):
        super().__init__(
            f"Idempotency key {key} was already used for another order",
            {"idempotency_key": key, "order_id": str(order_id)},
        )
