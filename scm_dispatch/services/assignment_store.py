"""
Persistence operations for carrier assignment.

Every status change here is a conditional UPDATE guarded by the expected
current status, so concurrent accept/reject/busy calls on the same row
serialize in the database: the first committer wins and the loser sees
zero affected rows. The caller owns the transaction.
"""
import hashlib
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func, and_, or_, case, distinct, exists
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from scm_dispatch.models.assignment import AssignmentStatus, CarrierAssignment
from scm_dispatch.models.carrier import AvailabilityStatus, Carrier, ServiceType
from scm_dispatch.models.order import Order, OrderStatus, OrderStatusHistory
from scm_dispatch.models.shipment import Shipment
from scm_dispatch.services.assignment_state_machine import (
    ASSIGNABLE_ORDER_STATUSES,
    FAILED_STATUSES,
    LIVE_STATUSES,
    can_advance_order,
    validate_transition,
)

logger = logging.getLogger(__name__)


def make_idempotency_key(order_id: uuid.UUID, carrier_id: uuid.UUID, batch_number: int) -> str:
    """Deterministic key: retrying the same batch for the same carrier collides."""
    raw = f"{order_id}:{carrier_id}:{batch_number}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AssignmentStore:
    """Queries and guarded updates over orders, carriers and assignments."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== ORDERS ====================

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """Order with items and warehouse loaded."""
        stmt = (
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.warehouse))
            .where(Order.id == order_id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def update_order_status(
        self,
        order: Order,
        new_status: OrderStatus,
        notes: Optional[str] = None,
        **values: Any,
    ) -> bool:
        """
        Advance the order status and record history.

        Guarded on the status we read, so a concurrent writer that moved the
        order first makes this a no-op returning False.
        """
        current = order.status
        if not can_advance_order(current, new_status.value):
            logger.warning(
                f"Order {order.order_number}: refusing status change {current} -> {new_status.value}"
            )
            return False

        if current == new_status.value and not values:
            return True

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current)
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        order.status = new_status.value
        for key, value in values.items():
            setattr(order, key, value)

        if current != new_status.value:
            self.db.add(OrderStatusHistory(
                order_id=order.id,
                from_status=current,
                to_status=new_status.value,
                notes=notes,
            ))
        return True

    async def put_order_on_hold(self, order: Order, attempts: int) -> bool:
        notes = (
            f"[SYSTEM] All carrier assignment attempts exhausted ({attempts} carriers tried). "
            f"Requires manual carrier assignment."
        )
        changed = await self.update_order_status(order, OrderStatus.ON_HOLD, notes=notes)
        if changed:
            logger.warning(f"Order {order.order_number} put on hold after {attempts} carrier attempts")
        return changed

    # ==================== CARRIERS ====================

    async def get_carrier_by_code(self, code: str) -> Optional[Carrier]:
        result = await self.db.execute(select(Carrier).where(Carrier.code == code.upper()))
        return result.scalar_one_or_none()

    async def find_eligible_carriers(
        self,
        service_type: str,
        exclude_ids: Sequence[uuid.UUID] = (),
        limit: int = 3,
    ) -> List[Carrier]:
        """Active, available carriers for the service type, most reliable first."""
        stmt = (
            select(Carrier)
            .where(
                Carrier.is_active == True,
                Carrier.availability_status == AvailabilityStatus.AVAILABLE.value,
                or_(
                    Carrier.service_type == service_type,
                    Carrier.service_type == ServiceType.ALL.value,
                ),
            )
            .order_by(Carrier.reliability_score.desc(), Carrier.code)
            .limit(limit)
        )
        if exclude_ids:
            stmt = stmt.where(Carrier.id.not_in(list(exclude_ids)))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def set_carrier_availability(
        self,
        carrier: Carrier,
        status: AvailabilityStatus,
        now: datetime,
    ) -> None:
        carrier.availability_status = status.value
        carrier.last_status_change = now
        await self.db.flush()

    async def get_recently_available_carriers(self, since: datetime) -> List[Carrier]:
        stmt = (
            select(Carrier)
            .where(
                Carrier.is_active == True,
                Carrier.availability_status == AvailabilityStatus.AVAILABLE.value,
                Carrier.last_status_change >= since,
            )
            .order_by(Carrier.last_status_change)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ==================== ASSIGNMENTS ====================

    async def get_assignment(self, assignment_id: uuid.UUID) -> Optional[CarrierAssignment]:
        stmt = (
            select(CarrierAssignment)
            .options(selectinload(CarrierAssignment.carrier))
            .where(CarrierAssignment.id == assignment_id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def count_distinct_carriers(self, order_id: uuid.UUID) -> int:
        """Distinct carriers ever asked to ship the order."""
        stmt = select(func.count(distinct(CarrierAssignment.carrier_id))).where(
            CarrierAssignment.order_id == order_id
        )
        return (await self.db.execute(stmt)).scalar() or 0

    async def get_tried_carrier_ids(self, order_id: uuid.UUID) -> List[uuid.UUID]:
        stmt = select(distinct(CarrierAssignment.carrier_id)).where(
            CarrierAssignment.order_id == order_id
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def next_batch_number(self, order_id: uuid.UUID) -> int:
        stmt = select(func.max(CarrierAssignment.batch_number)).where(
            CarrierAssignment.order_id == order_id
        )
        return ((await self.db.execute(stmt)).scalar() or 0) + 1

    async def count_live_assignments(self, order_id: uuid.UUID) -> int:
        """Assignments still pending or already accepted for the order."""
        stmt = select(func.count(CarrierAssignment.id)).where(
            CarrierAssignment.order_id == order_id,
            CarrierAssignment.status.in_([s.value for s in LIVE_STATUSES]),
        )
        return (await self.db.execute(stmt)).scalar() or 0

    async def create_assignment(
        self,
        order: Order,
        carrier: Carrier,
        service_type: str,
        batch_number: int,
        request_payload: Dict[str, Any],
        requested_at: datetime,
        expires_at: datetime,
        estimated_price=None,
    ) -> CarrierAssignment:
        assignment_id = uuid.uuid4()
        assignment = CarrierAssignment(
            id=assignment_id,
            order_id=order.id,
            carrier_id=carrier.id,
            service_type=service_type,
            status=AssignmentStatus.PENDING.value,
            batch_number=batch_number,
            idempotency_key=make_idempotency_key(order.id, carrier.id, batch_number),
            pickup_address=request_payload.get("pickup"),
            delivery_address=request_payload.get("delivery"),
            request_payload={**request_payload, "assignment_id": str(assignment_id)},
            estimated_price=estimated_price,
            requested_at=requested_at,
            expires_at=expires_at,
        )
        self.db.add(assignment)
        await self.db.flush()
        return assignment

    async def transition_assignment(
        self,
        assignment: CarrierAssignment,
        new_status: AssignmentStatus,
        carrier_id: Optional[uuid.UUID] = None,
        **values: Any,
    ) -> bool:
        """
        Move an assignment from its current status to new_status.

        The UPDATE matches id, the status we read and (when given) the
        carrier, so it affects zero rows if anyone got there first.
        """
        current = assignment.status
        validate_transition(current, new_status.value)

        conditions = [
            CarrierAssignment.id == assignment.id,
            CarrierAssignment.status == current,
        ]
        if carrier_id is not None:
            conditions.append(CarrierAssignment.carrier_id == carrier_id)

        result = await self.db.execute(
            update(CarrierAssignment)
            .where(*conditions)
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        assignment.status = new_status.value
        for key, value in values.items():
            setattr(assignment, key, value)
        return True

    async def cancel_sibling_assignments(
        self,
        order_id: uuid.UUID,
        accepted_id: uuid.UUID,
        now: datetime,
    ) -> int:
        """Cancel the order's other open assignments once one is accepted."""
        result = await self.db.execute(
            update(CarrierAssignment)
            .where(
                CarrierAssignment.order_id == order_id,
                CarrierAssignment.id != accepted_id,
                CarrierAssignment.status.in_([
                    AssignmentStatus.PENDING.value,
                    AssignmentStatus.BUSY.value,
                ]),
            )
            .values(status=AssignmentStatus.CANCELLED.value, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def get_pending_for_carrier(
        self,
        carrier_id: uuid.UUID,
        service_type: Optional[str] = None,
    ) -> List[CarrierAssignment]:
        stmt = (
            select(CarrierAssignment)
            .options(selectinload(CarrierAssignment.order))
            .where(
                CarrierAssignment.carrier_id == carrier_id,
                CarrierAssignment.status == AssignmentStatus.PENDING.value,
            )
            .order_by(CarrierAssignment.requested_at)
        )
        if service_type:
            stmt = stmt.where(CarrierAssignment.service_type == service_type)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_pending_for_carrier(self, carrier_id: uuid.UUID) -> int:
        stmt = select(func.count(CarrierAssignment.id)).where(
            CarrierAssignment.carrier_id == carrier_id,
            CarrierAssignment.status == AssignmentStatus.PENDING.value,
        )
        return (await self.db.execute(stmt)).scalar() or 0

    # ==================== SHIPMENTS ====================

    async def get_shipment_for_order(self, order_id: uuid.UUID) -> Optional[Shipment]:
        result = await self.db.execute(select(Shipment).where(Shipment.order_id == order_id))
        return result.scalar_one_or_none()

    async def create_shipment(self, **values: Any) -> Shipment:
        shipment = Shipment(**values)
        self.db.add(shipment)
        await self.db.flush()
        return shipment

    # ==================== SWEEP QUERIES ====================

    async def get_expired_pending_order_ids(self, now: datetime) -> List[uuid.UUID]:
        """Active orders holding pending assignments whose window has passed."""
        stmt = (
            select(distinct(CarrierAssignment.order_id))
            .join(Order, Order.id == CarrierAssignment.order_id)
            .where(
                CarrierAssignment.status == AssignmentStatus.PENDING.value,
                CarrierAssignment.expires_at < now,
                Order.status.in_([s.value for s in ASSIGNABLE_ORDER_STATUSES]),
            )
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_expired_pending_assignments(
        self,
        order_id: uuid.UUID,
        now: datetime,
    ) -> List[CarrierAssignment]:
        stmt = select(CarrierAssignment).where(
            CarrierAssignment.order_id == order_id,
            CarrierAssignment.status == AssignmentStatus.PENDING.value,
            CarrierAssignment.expires_at < now,
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_oldest_busy_assignments(
        self,
        carrier_id: uuid.UUID,
        limit: int,
    ) -> List[CarrierAssignment]:
        stmt = (
            select(CarrierAssignment)
            .join(Order, Order.id == CarrierAssignment.order_id)
            .where(
                CarrierAssignment.carrier_id == carrier_id,
                CarrierAssignment.status == AssignmentStatus.BUSY.value,
                Order.status.in_([s.value for s in ASSIGNABLE_ORDER_STATUSES]),
            )
            .order_by(CarrierAssignment.requested_at, CarrierAssignment.created_at)
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_orders_with_failed_batches(self) -> List[uuid.UUID]:
        """
        Active orders whose latest batch ended without a taker.

        Every assignment in the order's highest batch is rejected, busy or
        expired, and nothing anywhere on the order is still pending or
        accepted. Batch size does not matter, so a batch of one or two
        carriers qualifies as well as a full batch.
        """
        ca = CarrierAssignment
        latest = (
            select(ca.order_id, func.max(ca.batch_number).label("batch_number"))
            .group_by(ca.order_id)
            .subquery()
        )
        live = aliased(CarrierAssignment)
        failed_count = func.sum(
            case((ca.status.in_([s.value for s in FAILED_STATUSES]), 1), else_=0)
        )
        stmt = (
            select(ca.order_id)
            .join(latest, and_(
                ca.order_id == latest.c.order_id,
                ca.batch_number == latest.c.batch_number,
            ))
            .join(Order, Order.id == ca.order_id)
            .where(
                Order.status.in_([s.value for s in ASSIGNABLE_ORDER_STATUSES]),
                ~exists().where(
                    live.order_id == ca.order_id,
                    live.status.in_([s.value for s in LIVE_STATUSES]),
                ),
            )
            .group_by(ca.order_id)
            .having(func.count(ca.id) == failed_count)
        )
        return list((await self.db.execute(stmt)).scalars().all())
