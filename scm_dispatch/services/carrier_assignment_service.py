"""
Carrier Assignment Service.

Drives an order from "needs a carrier" to "ready to ship":
- request_carrier_assignment: offer the order to the next batch of carriers
- accept / reject / mark_as_busy: carrier responses on a single assignment
- get_pending_assignments / notify_carrier_of_pending_assignments: carrier-side polling
  and availability glue

Each operation runs in its own transaction. Carrier notifications are handed
to the notifier only after the transaction commits.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scm_dispatch.config import settings
from scm_dispatch.core.clock import as_utc, utc_now
from scm_dispatch.database import async_session_factory
from scm_dispatch.exceptions import (
    AssignmentConflictError,
    AssignmentNotFoundError,
    AssignmentOwnershipError,
    CarrierNotFoundError,
    MaxAttemptsExceededError,
    OrderNotAssignableError,
    OrderNotFoundError,
)
from scm_dispatch.models.assignment import AssignmentStatus, CarrierAssignment
from scm_dispatch.models.carrier import AvailabilityStatus
from scm_dispatch.models.order import Order, OrderStatus
from scm_dispatch.services.assignment_state_machine import is_assignable, validate_transition
from scm_dispatch.services.assignment_store import AssignmentStore
from scm_dispatch.services.carrier_notifier import CarrierNotification, CarrierNotifier
from scm_dispatch.services.payload_builder import (
    PayloadBuilder,
    calculate_shipment_physicals,
    parse_acceptance_payload,
    parse_rejection_payload,
)
from scm_dispatch.services.pricing_engine import ShipmentItem
from scm_dispatch.services.routing_service import RouteResult, RoutingService

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "No reason provided"
DEFAULT_BUSY_REASON = "At capacity - can accept later"


def _epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def generate_tracking_number(now: datetime) -> str:
    return f"TRACK-{_epoch_ms(now)}-{uuid.uuid4().hex[:6].upper()}"


def generate_shipment_number(now: datetime) -> str:
    """Shipment number: SH-YYYYMMDD-XXXXXXXX"""
    return f"SH-{now.strftime('%Y%m%d')}-{str(uuid.uuid4())[:8].upper()}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


class CarrierAssignmentService:
    """
    Carrier assignment orchestrator.

    Built once at application start (see main.lifespan) and shared by the
    API and the retry scheduler. Holds no per-order state: everything it
    decides comes from the assignment rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        notifier: Optional[CarrierNotifier] = None,
        routing_service: Optional[RoutingService] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.routing_service = routing_service or RoutingService()
        self.batch_size = settings.ASSIGNMENT_BATCH_SIZE
        self.max_attempts = settings.MAX_CARRIER_ATTEMPTS
        self.expiry = timedelta(minutes=settings.ASSIGNMENT_EXPIRY_MINUTES)

    # ==================== BATCH REQUEST ====================

    async def request_carrier_assignment(
        self,
        order_id: uuid.UUID,
        service_type: Optional[str] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Offer the order to the next batch of carriers.

        Returns immediately with the assignments created; carriers answer
        later through accept/reject/busy. Zero eligible carriers is not an
        error: the order is left untouched for the retry sweep.

        Raises:
            OrderNotFoundError, OrderNotAssignableError,
            AssignmentConflictError (open assignments and not force),
            MaxAttemptsExceededError (order is put on hold first)
        """
        now = utc_now()
        exhausted_attempts: Optional[int] = None
        notifications: List[CarrierNotification] = []
        route = await self._resolve_route(order_id)

        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                order = await store.get_order(order_id)
                if order is None:
                    raise OrderNotFoundError(order_id)

                if not is_assignable(order.status) and order.status != OrderStatus.ON_HOLD.value:
                    raise OrderNotAssignableError(
                        f"Order {order.order_number} is {order.status}, carrier assignment not allowed",
                        {"order_id": str(order.id), "status": order.status},
                    )

                live = await store.count_live_assignments(order.id)
                if live and not force:
                    raise AssignmentConflictError(
                        f"Order {order.order_number} still has {live} open assignment(s)",
                        {"order_id": str(order.id), "open_assignments": live},
                    )

                attempts = await store.count_distinct_carriers(order.id)
                if attempts >= self.max_attempts:
                    await store.put_order_on_hold(order, attempts)
                    exhausted_attempts = attempts
                elif order.status == OrderStatus.ON_HOLD.value:
                    raise OrderNotAssignableError(
                        f"Order {order.order_number} is on hold",
                        {"order_id": str(order.id), "status": order.status},
                    )
                else:
                    result = await self._create_batch(
                        store, session, order, service_type or order.priority, attempts, now, notifications, route
                    )

        # Hold is committed before the caller hears about it
        if exhausted_attempts is not None:
            raise MaxAttemptsExceededError(order_id, exhausted_attempts, self.max_attempts)

        self.dispatch_notifications(notifications)
        return result

    async def _resolve_route(self, order_id: uuid.UUID) -> Optional[RouteResult]:
        """
        Pickup to delivery route for the order.

        Read in its own short session; the routing provider is never called
        while the batch transaction is open.
        """
        async with self.session_factory() as session:
            order = await AssignmentStore(session).get_order(order_id)
        if order is None:
            return None
        builder = PayloadBuilder(routing_service=self.routing_service)
        return await builder.resolve_route(order, order.warehouse)

    async def _create_batch(
        self,
        store: AssignmentStore,
        session: AsyncSession,
        order: Order,
        service_type: str,
        attempts: int,
        now: datetime,
        notifications: List[CarrierNotification],
        route: Optional[RouteResult] = None,
    ) -> Dict[str, Any]:
        remaining = self.max_attempts - attempts
        tried = await store.get_tried_carrier_ids(order.id)
        carriers = await store.find_eligible_carriers(
            service_type,
            exclude_ids=tried,
            limit=min(self.batch_size, remaining),
        )

        if not carriers:
            logger.info(
                f"No available {service_type} carriers for order {order.order_number}; "
                f"leaving it in {order.status} for the retry sweep"
            )
            return {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "batch_number": None,
                "assignments": [],
                "pending_acceptance": 0,
                "attempts": attempts,
                "message": "No carriers available right now; assignment will be retried",
            }

        builder = PayloadBuilder(session, routing_service=self.routing_service)
        items = [ShipmentItem.from_order_item(item) for item in order.items]
        batch_number = await store.next_batch_number(order.id)
        expires_at = now + self.expiry

        assignments: List[CarrierAssignment] = []
        for carrier in carriers:
            payload = await builder.build_request_payload(
                order, items, order.warehouse, carrier, service_type, route=route, now=now
            )
            assignment = await store.create_assignment(
                order,
                carrier,
                service_type,
                batch_number,
                payload,
                requested_at=now,
                expires_at=expires_at,
                estimated_price=_to_decimal(payload["estimated_pricing"]["total"]),
            )
            assignments.append(assignment)
            notifications.append(CarrierNotification(
                assignment_id=assignment.id,
                carrier_id=carrier.id,
                carrier_code=carrier.code,
                webhook_url=carrier.webhook_url,
                payload=assignment.request_payload,
            ))

        await store.update_order_status(
            order,
            OrderStatus.PENDING_CARRIER_ASSIGNMENT,
            notes=f"Carrier assignment batch {batch_number} sent to {len(carriers)} carrier(s)",
        )

        logger.info(
            f"Order {order.order_number}: batch {batch_number} sent to "
            f"{', '.join(c.code for c in carriers)}"
        )
        carriers_by_id = {c.id: c for c in carriers}
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "batch_number": batch_number,
            "assignments": [
                {
                    "assignment_id": str(a.id),
                    "carrier_id": str(a.carrier_id),
                    "carrier_code": carriers_by_id[a.carrier_id].code,
                    "carrier_name": carriers_by_id[a.carrier_id].name,
                    "status": a.status,
                    "estimated_price": float(a.estimated_price) if a.estimated_price is not None else None,
                    "expires_at": expires_at.isoformat(),
                }
                for a in assignments
            ],
            "pending_acceptance": len(assignments),
            "attempts": attempts + len(assignments),
            "message": f"Assignment request sent to {len(assignments)} carrier(s)",
        }

    def dispatch_notifications(self, notifications: List[CarrierNotification]) -> None:
        if self.notifier is None:
            return
        for notification in notifications:
            try:
                self.notifier.enqueue(notification)
            except Exception as e:
                logger.error(
                    f"Could not queue notification for assignment {notification.assignment_id}: {e}"
                )

    # ==================== CARRIER RESPONSES ====================

    async def _load_owned_assignment(
        self,
        store: AssignmentStore,
        assignment_id: uuid.UUID,
        carrier_id: uuid.UUID,
    ) -> CarrierAssignment:
        assignment = await store.get_assignment(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)
        if assignment.carrier_id != carrier_id:
            raise AssignmentOwnershipError(
                assignment_id,
                carrier_id,
                assignment.carrier_id,
                assignment.carrier.name if assignment.carrier else None,
            )
        return assignment

    async def accept_assignment(
        self,
        assignment_id: uuid.UUID,
        carrier_id: uuid.UUID,
        acceptance_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Carrier accepts: assignment -> accepted, one Shipment, order -> ready_to_ship.

        Other open assignments for the order are cancelled in the same
        transaction, so a second carrier accepting later fails its transition.
        """
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                assignment = await self._load_owned_assignment(store, assignment_id, carrier_id)
                validate_transition(assignment.status, AssignmentStatus.ACCEPTED.value)

                order = await store.get_order(assignment.order_id)
                if order is None:
                    raise OrderNotFoundError(assignment.order_id)
                if not is_assignable(order.status):
                    raise OrderNotAssignableError(
                        f"Order {order.order_number} is {order.status} and can no longer be accepted",
                        {"order_id": str(order.id), "status": order.status},
                    )

                parsed = parse_acceptance_payload(acceptance_data)
                accepted = await store.transition_assignment(
                    assignment,
                    AssignmentStatus.ACCEPTED,
                    carrier_id=carrier_id,
                    acceptance_payload=parsed,
                    responded_at=now,
                )
                if not accepted:
                    raise AssignmentConflictError(
                        f"Assignment {assignment_id} was changed by another request",
                        {"assignment_id": str(assignment_id)},
                    )

                if await store.get_shipment_for_order(order.id) is not None:
                    raise AssignmentConflictError(
                        f"Order {order.order_number} already has a shipment",
                        {"order_id": str(order.id)},
                    )

                cancelled = await store.cancel_sibling_assignments(order.id, assignment.id, now)
                shipment = await self._create_shipment(store, order, assignment, parsed, now)

                advanced = await store.update_order_status(
                    order,
                    OrderStatus.READY_TO_SHIP,
                    notes=f"Carrier {assignment.carrier.name} accepted assignment",
                    carrier_id=assignment.carrier_id,
                    shipping_cost=shipment.shipping_cost,
                )
                if not advanced:
                    raise AssignmentConflictError(
                        f"Order {order.order_number} changed status during acceptance",
                        {"order_id": str(order.id)},
                    )

        logger.info(
            f"Assignment {assignment_id} accepted by {assignment.carrier.code}; "
            f"shipment {shipment.shipment_number}, {cancelled} sibling assignment(s) cancelled"
        )
        return {
            "assignment_id": str(assignment.id),
            "status": assignment.status,
            "order_id": str(order.id),
            "order_number": order.order_number,
            "order_status": order.status,
            "shipment_id": str(shipment.id),
            "shipment_number": shipment.shipment_number,
            "tracking_number": shipment.tracking_number,
            "carrier_reference_id": shipment.carrier_reference_id,
            "cancelled_assignments": cancelled,
        }

    async def _create_shipment(
        self,
        store: AssignmentStore,
        order: Order,
        assignment: CarrierAssignment,
        parsed: Dict[str, Any],
        now: datetime,
    ):
        items = [ShipmentItem.from_order_item(item) for item in order.items]
        physicals = calculate_shipment_physicals(items)
        tracking = parsed["tracking"]
        tracking_number = tracking.get("tracking_number") or generate_tracking_number(now)
        quoted_price = _to_decimal(parsed["pricing"].get("quoted_price"))
        delivery = parsed["delivery"]

        return await store.create_shipment(
            shipment_number=generate_shipment_number(now),
            order_id=order.id,
            carrier_id=assignment.carrier_id,
            carrier_assignment_id=assignment.id,
            tracking_number=tracking_number,
            carrier_reference_id=tracking.get("carrier_reference_id") or f"JOB-{_epoch_ms(now)}",
            tracking_url=(
                tracking.get("tracking_url")
                or assignment.carrier.get_tracking_url(tracking_number)
            ),
            item_type=physicals.item_type,
            package_count=physicals.package_count,
            actual_weight_kg=physicals.actual_weight,
            volumetric_weight_kg=physicals.volumetric_weight,
            chargeable_weight_kg=physicals.chargeable_weight,
            total_volume_m3=physicals.total_volume_m3,
            is_fragile=physicals.handling.fragile,
            is_hazardous=physicals.handling.hazardous,
            is_perishable=physicals.handling.perishable,
            requires_cold_storage=physicals.handling.cold_storage,
            declared_value=Decimal(str(physicals.declared_value)),
            shipping_cost=quoted_price if quoted_price is not None else assignment.estimated_price,
            currency=parsed["pricing"].get("currency") or "INR",
            estimated_pickup_at=_parse_timestamp(delivery.get("estimated_pickup_time")),
            estimated_delivery_at=_parse_timestamp(
                delivery.get("estimated_delivery_time") or delivery.get("estimated_delivery_date")
            ),
            driver_details=parsed["driver"],
            pickup_address=assignment.pickup_address,
            delivery_address=assignment.delivery_address,
        )

    async def reject_assignment(
        self,
        assignment_id: uuid.UUID,
        carrier_id: uuid.UUID,
        reason: Optional[str] = None,
        rejection_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Carrier declines. The next batch is left to the retry sweep."""
        now = utc_now()
        rejection_data = dict(rejection_data or {})
        rejection_data["reason"] = reason or rejection_data.get("reason") or DEFAULT_REJECTION_REASON
        parsed = parse_rejection_payload(rejection_data)

        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                assignment = await self._load_owned_assignment(store, assignment_id, carrier_id)
                rejected = await store.transition_assignment(
                    assignment,
                    AssignmentStatus.REJECTED,
                    carrier_id=carrier_id,
                    rejection_reason=parsed["reason"],
                    rejection_payload=parsed,
                    responded_at=now,
                )
                if not rejected:
                    raise AssignmentConflictError(
                        f"Assignment {assignment_id} was changed by another request",
                        {"assignment_id": str(assignment_id)},
                    )

        logger.info(f"Assignment {assignment_id} rejected by {assignment.carrier.code}: {parsed['reason']}")
        return {
            "assignment_id": str(assignment.id),
            "order_id": str(assignment.order_id),
            "status": assignment.status,
            "reason": parsed["reason"],
        }

    async def mark_as_busy(
        self,
        assignment_id: uuid.UUID,
        carrier_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Carrier is at capacity; the assignment comes back when it reports available."""
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                assignment = await self._load_owned_assignment(store, assignment_id, carrier_id)
                marked = await store.transition_assignment(
                    assignment,
                    AssignmentStatus.BUSY,
                    carrier_id=carrier_id,
                    busy_reason=reason or DEFAULT_BUSY_REASON,
                    responded_at=now,
                )
                if not marked:
                    raise AssignmentConflictError(
                        f"Assignment {assignment_id} was changed by another request",
                        {"assignment_id": str(assignment_id)},
                    )

        logger.info(f"Assignment {assignment_id} marked busy by {assignment.carrier.code}")
        return {
            "assignment_id": str(assignment.id),
            "order_id": str(assignment.order_id),
            "status": assignment.status,
            "reason": assignment.busy_reason,
            "message": "Marked as busy. The assignment returns to pending once you report available.",
        }

    # ==================== CARRIER QUERIES ====================

    async def get_pending_assignments(
        self,
        carrier_id: uuid.UUID,
        service_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        now = utc_now()
        async with self.session_factory() as session:
            store = AssignmentStore(session)
            assignments = await store.get_pending_for_carrier(carrier_id, service_type)

        pending = []
        for a in assignments:
            expires_at = as_utc(a.expires_at)
            hours_left = max((expires_at - now).total_seconds() / 3600, 0)
            pending.append({
                "assignment_id": str(a.id),
                "order_id": str(a.order_id),
                "order_number": a.order.order_number if a.order else None,
                "service_type": a.service_type,
                "batch_number": a.batch_number,
                "status": a.status,
                "estimated_price": float(a.estimated_price) if a.estimated_price is not None else None,
                "requested_at": as_utc(a.requested_at).isoformat(),
                "expires_at": expires_at.isoformat(),
                "hours_until_expiry": round(hours_left, 2),
                "request_payload": a.request_payload,
            })
        return pending

    async def notify_carrier_of_pending_assignments(self, carrier_code: str) -> Dict[str, Any]:
        """
        Carrier came back online: flip it to available and report its pending count.

        Nothing is resent; busy assignments are picked up by the retry sweep.
        """
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                carrier = await store.get_carrier_by_code(carrier_code)
                if carrier is None:
                    raise CarrierNotFoundError(carrier_code)
                await store.set_carrier_availability(carrier, AvailabilityStatus.AVAILABLE, now)
                pending_count = await store.count_pending_for_carrier(carrier.id)

        logger.info(f"Carrier {carrier.code} available with {pending_count} pending assignment(s)")
        return {
            "carrier_id": str(carrier.id),
            "carrier_code": carrier.code,
            "availability_status": carrier.availability_status,
            "pending_count": pending_count,
        }

    async def update_carrier_availability(self, carrier_code: str, status: str) -> Dict[str, Any]:
        """Inbound availability webhook: {code, status: available|busy|offline}."""
        availability = AvailabilityStatus(status)
        if availability == AvailabilityStatus.AVAILABLE:
            return await self.notify_carrier_of_pending_assignments(carrier_code)

        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                carrier = await store.get_carrier_by_code(carrier_code)
                if carrier is None:
                    raise CarrierNotFoundError(carrier_code)
                await store.set_carrier_availability(carrier, availability, now)

        logger.info(f"Carrier {carrier.code} reported {availability.value}")
        return {
            "carrier_id": str(carrier.id),
            "carrier_code": carrier.code,
            "availability_status": carrier.availability_status,
            "pending_count": None,
        }
