"""
Shipping Quote Collector.

Real-time quotes for a placed order:
1. Take the order's shipping lock (conditional UPDATE on the order row)
2. Ask every active carrier with an API endpoint, each raced against
   QUOTE_TIMEOUT_SECONDS
3. If fewer than MIN_REQUIRED_QUOTES accepted (but at least one), ask the
   failed carriers once more
4. Pick the best quote, reserve capacity with that carrier, persist quotes
   and rejections, stamp the order's shipping cost
5. Release the lock, whatever happened

Zero accepted quotes raises NoCarriersAvailableError carrying every
rejection. With an idempotency key the final result is cached and replayed
for QUOTE_IDEMPOTENCY_TTL_MINUTES.
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from scm_dispatch.config import settings
from scm_dispatch.core.clock import as_utc, utc_now
from scm_dispatch.database import async_session_factory
from scm_dispatch.exceptions import (
    IdempotencyKeyConflictError,
    NoCarriersAvailableError,
    OrderNotAssignableError,
    OrderNotFoundError,
    ShippingLockError,
)
from scm_dispatch.models.carrier import Carrier
from scm_dispatch.models.order import Order, OrderStatus
from scm_dispatch.models.quote import CarrierQuote, CarrierQuoteRejection, QuoteIdempotencyRecord
from scm_dispatch.services.carrier_quote_client import CarrierQuoteClient, QuoteOutcome, QuoteStatus
from scm_dispatch.services.carrier_selection import SelectionPolicy, select_best_quote
from scm_dispatch.services.payload_builder import PayloadBuilder, calculate_shipment_physicals
from scm_dispatch.services.pricing_engine import ShipmentItem

logger = logging.getLogger(__name__)

# Quoting makes no sense once the order has left the building
CLOSED_ORDER_STATUSES = (
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
)


class QuoteCollector:
    """Fan-out quote collection with timeout, retry-to-minimum and selection."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        client: Optional[CarrierQuoteClient] = None,
        policy: Optional[SelectionPolicy] = None,
        timeout: Optional[float] = None,
        min_required_quotes: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.client = client or CarrierQuoteClient()
        self.policy = policy
        self.timeout = timeout or settings.QUOTE_TIMEOUT_SECONDS
        self.min_required_quotes = min_required_quotes or settings.MIN_REQUIRED_QUOTES

    # ==================== SHIPPING LOCK ====================

    async def acquire_lock(self, order_id: uuid.UUID) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.shipping_locked == False)
                    .values(shipping_locked=True, shipping_locked_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.info(f"Acquired shipping lock for order {order_id}")
                    return

                exists = await session.execute(select(Order.id).where(Order.id == order_id))
                if exists.scalar_one_or_none() is None:
                    raise OrderNotFoundError(order_id)

        logger.warning(f"Shipping lock for order {order_id} already held")
        raise ShippingLockError(order_id)

    async def release_lock(self, order_id: uuid.UUID) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(shipping_locked=False, shipping_locked_at=None)
                    .execution_options(synchronize_session=False)
                )

    @asynccontextmanager
    async def shipping_lock(self, order_id: uuid.UUID):
        """Hold the order's shipping lock for the body; a second holder gets ShippingLockError."""
        await self.acquire_lock(order_id)
        try:
            yield
        finally:
            try:
                await self.release_lock(order_id)
            except Exception as e:
                # Left for release_stale_locks
                logger.error(f"Failed to release shipping lock for order {order_id}: {e}", exc_info=True)

    async def release_stale_locks(self, now: Optional[datetime] = None) -> int:
        """Clear locks older than SHIPPING_LOCK_STALE_MINUTES (crashed requests)."""
        now = now or utc_now()
        cutoff = now - timedelta(minutes=settings.SHIPPING_LOCK_STALE_MINUTES)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Order)
                    .where(Order.shipping_locked == True, Order.shipping_locked_at < cutoff)
                    .values(shipping_locked=False, shipping_locked_at=None)
                    .execution_options(synchronize_session=False)
                )
        released = result.rowcount or 0
        if released:
            logger.warning(f"Released {released} stale shipping lock(s)")
        return released

    # ==================== IDEMPOTENCY ====================

    async def _get_cached_result(self, key: str, order_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            record = await session.get(QuoteIdempotencyRecord, key)
        if record is None or as_utc(record.expires_at) <= utc_now():
            return None
        if record.order_id != order_id:
            raise IdempotencyKeyConflictError(key, order_id)
        logger.info(f"Replaying cached quote result for order {order_id} (key {key})")
        return record.response

    async def _cache_result(self, key: str, order_id: uuid.UUID, response: Dict[str, Any]) -> None:
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                await session.merge(QuoteIdempotencyRecord(
                    key=key,
                    order_id=order_id,
                    response=response,
                    created_at=now,
                    expires_at=now + timedelta(minutes=settings.QUOTE_IDEMPOTENCY_TTL_MINUTES),
                ))

    # ==================== COLLECTION ====================

    async def collect_quotes(
        self,
        order_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        policy: Optional[SelectionPolicy] = None,
    ) -> Dict[str, Any]:
        """
        Collect quotes from all carriers and select one.

        Raises:
            OrderNotFoundError, OrderNotAssignableError,
            ShippingLockError (another collection running for the order),
            NoCarriersAvailableError (nobody accepted, even after the retry)
        """
        if idempotency_key:
            cached = await self._get_cached_result(idempotency_key, order_id)
            if cached is not None:
                return cached

        async with self.shipping_lock(order_id):
            order, carriers, details = await self._load_request(order_id)
            if not carriers:
                raise NoCarriersAvailableError(order_id, [])

            logger.info(
                f"Requesting quotes for order {order.order_number} from {len(carriers)} carrier(s) "
                f"({self.timeout:g}s timeout each)"
            )
            outcomes = await self._fan_out(carriers, details)
            outcomes = await self._retry_for_minimum(carriers, details, outcomes)

            accepted = [o for o in outcomes if o.accepted]
            rejected = [o for o in outcomes if not o.accepted]

            if not accepted:
                await self._record(order.id, accepted, rejected)
                raise NoCarriersAvailableError(order_id, [o.to_dict() for o in rejected])

            best, reason = select_best_quote(accepted, policy or self.policy)
            capacity_reserved = await self._record(order.id, accepted, rejected, best, reason)

        response = self._build_response(order, carriers, accepted, rejected, best, reason, capacity_reserved)
        logger.info(
            f"Quotes for order {order.order_number}: {len(accepted)} accepted, "
            f"{len(rejected)} unavailable, selected {best.carrier_code} ({reason})"
        )

        if idempotency_key:
            await self._cache_result(idempotency_key, order_id, response)
        return response

    async def _load_request(self, order_id: uuid.UUID):
        async with self.session_factory() as session:
            order = (await session.execute(
                select(Order)
                .options(selectinload(Order.items), selectinload(Order.warehouse))
                .where(Order.id == order_id)
            )).scalar_one_or_none()
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status in CLOSED_ORDER_STATUSES:
                raise OrderNotAssignableError(
                    f"Order {order.order_number} is {order.status}, shipping quotes not allowed",
                    {"order_id": str(order.id), "status": order.status},
                )

            carriers = list((await session.execute(
                select(Carrier)
                .where(Carrier.is_active == True, Carrier.api_endpoint.is_not(None))
                .order_by(Carrier.reliability_score.desc(), Carrier.code)
            )).scalars().all())

        return order, carriers, self.build_quote_request(order)

    def build_quote_request(self, order: Order) -> Dict[str, Any]:
        """Shipment summary sent to every carrier quote endpoint."""
        items = [ShipmentItem.from_order_item(item) for item in order.items]
        physicals = calculate_shipment_physicals(items)
        pickup = PayloadBuilder().get_warehouse_details(order.warehouse)
        destination = order.shipping_address or {}

        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "service_type": order.priority,
            "origin": {
                "address": pickup.get("address_line1"),
                "city": pickup.get("city"),
                "postal_code": pickup.get("postal_code"),
                "lat": pickup.get("latitude"),
                "lon": pickup.get("longitude"),
            },
            "destination": {
                "address": destination.get("address_line1"),
                "city": destination.get("city"),
                "postal_code": destination.get("postal_code"),
                "lat": destination.get("latitude"),
                "lon": destination.get("longitude"),
            },
            "total_weight": physicals.actual_weight,
            "chargeable_weight": physicals.chargeable_weight,
            "declared_value": physicals.declared_value,
            "has_fragile_items": physicals.handling.fragile,
            "requires_cold_storage": physicals.handling.cold_storage,
            "items": [
                {
                    "sku": item.sku,
                    "quantity": item.quantity,
                    "weight": item.weight_kg,
                    "dimensions": {
                        "length": item.length_cm or 0,
                        "width": item.width_cm or 0,
                        "height": item.height_cm or 0,
                    },
                }
                for item in items
            ],
        }

    async def _timed_quote(
        self,
        carrier: Carrier,
        details: Dict[str, Any],
        was_retried: bool = False,
    ) -> QuoteOutcome:
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(self.client.get_quote(carrier, details), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Carrier {carrier.code} did not quote within {self.timeout:g}s")
            outcome = QuoteOutcome(
                carrier_id=carrier.id,
                carrier_code=carrier.code,
                carrier_name=carrier.name,
                status=QuoteStatus.TIMEOUT,
                service_type=details.get("service_type"),
                reason="api_timeout",
                message=f"Carrier API did not respond within {self.timeout:g} seconds",
                reliability_score=float(carrier.reliability_score or 0),
            )
        outcome.response_time_ms = int((time.monotonic() - started) * 1000)
        outcome.was_retried = was_retried
        return outcome

    async def _fan_out(
        self,
        carriers: Sequence[Carrier],
        details: Dict[str, Any],
        was_retried: bool = False,
    ) -> List[QuoteOutcome]:
        return list(await asyncio.gather(
            *(self._timed_quote(carrier, details, was_retried) for carrier in carriers)
        ))

    async def _retry_for_minimum(
        self,
        carriers: Sequence[Carrier],
        details: Dict[str, Any],
        outcomes: List[QuoteOutcome],
    ) -> List[QuoteOutcome]:
        """One more round for the failed carriers when only a few accepted."""
        accepted_count = sum(1 for o in outcomes if o.accepted)
        failed = [o for o in outcomes if not o.accepted]
        if accepted_count == 0 or accepted_count >= self.min_required_quotes or not failed:
            return outcomes

        logger.warning(
            f"Only {accepted_count} quote(s) accepted, retrying {len(failed)} carrier(s) once"
        )
        by_id = {c.id: c for c in carriers}
        retried = await self._fan_out([by_id[o.carrier_id] for o in failed], details, was_retried=True)
        retried_by_id = {o.carrier_id: o for o in retried if o.accepted}

        # Keep the first failure for carriers that failed again
        merged = []
        for outcome in outcomes:
            replacement = retried_by_id.get(outcome.carrier_id)
            if replacement is not None and not outcome.accepted:
                logger.info(f"Retry successful for {replacement.carrier_code}")
                merged.append(replacement)
            else:
                merged.append(outcome)
        return merged

    async def _record(
        self,
        order_id: uuid.UUID,
        accepted: Sequence[QuoteOutcome],
        rejected: Sequence[QuoteOutcome],
        best: Optional[QuoteOutcome] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Persist quotes/rejections; with a winner also reserve capacity and set the cost."""
        capacity_reserved = False
        async with self.session_factory() as session:
            async with session.begin():
                for o in accepted:
                    selected = best is not None and o.carrier_id == best.carrier_id
                    session.add(CarrierQuote(
                        order_id=order_id,
                        carrier_id=o.carrier_id,
                        quoted_price=o.quoted_price,
                        currency=o.currency,
                        estimated_delivery_days=o.estimated_delivery_days,
                        service_type=o.service_type,
                        response_time_ms=o.response_time_ms,
                        was_retried=o.was_retried,
                        is_selected=selected,
                        selection_reason=reason if selected else None,
                        raw_response=o.raw_response,
                    ))
                for o in rejected:
                    session.add(CarrierQuoteRejection(
                        order_id=order_id,
                        carrier_id=o.carrier_id,
                        outcome=o.status,
                        reason=o.reason,
                        message=o.message,
                        response_time_ms=o.response_time_ms,
                        was_retried=o.was_retried,
                    ))

                if best is not None:
                    capacity_reserved = await self._reserve_capacity(session, best)
                    await session.execute(
                        update(Order)
                        .where(Order.id == order_id)
                        .values(shipping_cost=best.quoted_price)
                        .execution_options(synchronize_session=False)
                    )
        return capacity_reserved

    async def _reserve_capacity(self, session: AsyncSession, quote: QuoteOutcome) -> bool:
        result = await session.execute(
            update(Carrier)
            .where(
                Carrier.id == quote.carrier_id,
                or_(Carrier.max_capacity.is_(None), Carrier.current_load < Carrier.max_capacity),
            )
            .values(current_load=Carrier.current_load + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Carrier {quote.carrier_code} is at full capacity; no capacity reserved")
            return False
        return True

    def _build_response(
        self,
        order: Order,
        carriers: Sequence[Carrier],
        accepted: Sequence[QuoteOutcome],
        rejected: Sequence[QuoteOutcome],
        best: QuoteOutcome,
        reason: str,
        capacity_reserved: bool,
    ) -> Dict[str, Any]:
        total = len(carriers)
        timed_out = sum(1 for o in rejected if o.status == QuoteStatus.TIMEOUT)
        avg_response = (
            round(sum(o.response_time_ms for o in accepted) / len(accepted)) if accepted else None
        )
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "accepted_quotes": [o.to_dict() for o in accepted],
            "rejected_carriers": [o.to_dict() for o in rejected],
            "recommended": {**best.to_dict(), "selection_reason": reason},
            "capacity_reserved": capacity_reserved,
            "stats": {
                "total_carriers": total,
                "accepted_count": len(accepted),
                "rejected_count": len(rejected),
                "timed_out_count": timed_out,
                "acceptance_rate": f"{len(accepted) / total * 100:.1f}%",
                "avg_response_time_ms": avg_response,
            },
            "message": (
                f"Received {len(accepted)} quote(s) from carriers. "
                f"{len(rejected)} carrier(s) unavailable."
            ),
        }
