"""
Carrier assignment retry sweeps.

Three independent sweeps reconcile assignment state that no request is
waiting on:
- process_expired_assignments: pending past expires_at -> expired, then next batch
- retry_busy_assignments: busy -> pending for carriers that came back online
- process_all_rejected_orders: latest batch failed outright -> next batch

Sweeps keep nothing between runs; every decision is re-derived from the
assignment rows. Each order (or carrier) is handled in its own transaction
so one failure does not stop the rest of the sweep.
"""
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List

from scm_dispatch.config import settings
from scm_dispatch.core.clock import utc_now
from scm_dispatch.exceptions import MaxAttemptsExceededError
from scm_dispatch.models.assignment import AssignmentStatus
from scm_dispatch.services.assignment_store import AssignmentStore
from scm_dispatch.services.carrier_assignment_service import CarrierAssignmentService
from scm_dispatch.services.carrier_notifier import CarrierNotification

logger = logging.getLogger(__name__)


class AssignmentRetryScheduler:
    """Periodic reconciliation of carrier assignments."""

    def __init__(self, assignment_service: CarrierAssignmentService):
        self.assignment_service = assignment_service
        self.session_factory = assignment_service.session_factory
        self.max_attempts = settings.MAX_CARRIER_ATTEMPTS
        self.busy_window = timedelta(minutes=settings.BUSY_RETRY_WINDOW_MINUTES)
        self.busy_limit = settings.BUSY_RETRY_LIMIT
        self.expiry = timedelta(minutes=settings.ASSIGNMENT_EXPIRY_MINUTES)

    # ==================== EXPIRED ====================

    async def process_expired_assignments(self, now=None) -> Dict[str, int]:
        """
        Expire stale pending assignments and start the next batch.

        Orders that already reached the carrier ceiling go on hold instead.
        """
        now = now or utc_now()
        summary = {"orders": 0, "expired": 0, "retried": 0, "waiting": 0, "on_hold": 0, "errors": 0}

        async with self.session_factory() as session:
            order_ids = await AssignmentStore(session).get_expired_pending_order_ids(now)

        for order_id in order_ids:
            summary["orders"] += 1
            try:
                expired_count, outcome = await self._expire_order(order_id, now)
                summary["expired"] += expired_count
                if outcome == "retry":
                    result = await self.assignment_service.request_carrier_assignment(order_id)
                    outcome = "retried" if result["assignments"] else "waiting"
                if outcome in summary:
                    summary[outcome] += 1
            except MaxAttemptsExceededError:
                summary["on_hold"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Expired-assignment sweep failed for order {order_id}: {e}", exc_info=True)

        if summary["orders"]:
            logger.info(f"Expired assignment sweep: {summary}")
        return summary

    async def _expire_order(self, order_id: uuid.UUID, now) -> tuple:
        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                order = await store.get_order(order_id)
                if order is None:
                    return 0, "skipped"

                expired_count = 0
                for assignment in await store.get_expired_pending_assignments(order_id, now):
                    if await store.transition_assignment(assignment, AssignmentStatus.EXPIRED):
                        expired_count += 1

                if expired_count == 0:
                    # Another sweep got here first
                    return 0, "skipped"

                attempts = await store.count_distinct_carriers(order_id)
                if attempts >= self.max_attempts:
                    await store.put_order_on_hold(order, attempts)
                    return expired_count, "on_hold"

                if await store.count_live_assignments(order_id) > 0:
                    return expired_count, "skipped"

        logger.info(f"Order {order_id}: {expired_count} assignment(s) expired, requesting next batch")
        return expired_count, "retry"

    # ==================== BUSY ====================

    async def retry_busy_assignments(self, now=None) -> Dict[str, int]:
        """
        Give carriers that recently came back online another look at the
        orders they parked as busy, oldest first, a few at a time.
        """
        now = now or utc_now()
        since = now - self.busy_window
        summary = {"carriers": 0, "reactivated": 0, "errors": 0}

        async with self.session_factory() as session:
            carriers = await AssignmentStore(session).get_recently_available_carriers(since)

        for carrier in carriers:
            summary["carriers"] += 1
            try:
                reactivated = await self._reactivate_busy(carrier.id, now)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Busy retry failed for carrier {carrier.code}: {e}", exc_info=True)
                continue

            summary["reactivated"] += len(reactivated)
            if reactivated:
                logger.info(f"Carrier {carrier.code}: {len(reactivated)} busy assignment(s) back to pending")
                self.assignment_service.dispatch_notifications([
                    CarrierNotification(
                        assignment_id=a.id,
                        carrier_id=carrier.id,
                        carrier_code=carrier.code,
                        webhook_url=carrier.webhook_url,
                        payload=a.request_payload,
                    )
                    for a in reactivated
                ])

        return summary

    async def _reactivate_busy(self, carrier_id: uuid.UUID, now) -> List[Any]:
        reactivated = []
        async with self.session_factory() as session:
            async with session.begin():
                store = AssignmentStore(session)
                for assignment in await store.get_oldest_busy_assignments(carrier_id, self.busy_limit):
                    ok = await store.transition_assignment(
                        assignment,
                        AssignmentStatus.PENDING,
                        carrier_id=carrier_id,
                        busy_reason=None,
                        expires_at=now + self.expiry,
                    )
                    if ok:
                        reactivated.append(assignment)
        return reactivated

    # ==================== ALL REJECTED ====================

    async def process_all_rejected_orders(self) -> Dict[str, int]:
        """Start the next batch for orders whose latest batch found no taker."""
        summary = {"orders": 0, "retried": 0, "waiting": 0, "on_hold": 0, "errors": 0}

        async with self.session_factory() as session:
            order_ids = await AssignmentStore(session).get_orders_with_failed_batches()

        for order_id in order_ids:
            summary["orders"] += 1
            try:
                result = await self.assignment_service.request_carrier_assignment(order_id)
                summary["retried" if result["assignments"] else "waiting"] += 1
            except MaxAttemptsExceededError:
                summary["on_hold"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Rejected-order retry failed for order {order_id}: {e}", exc_info=True)

        if summary["orders"]:
            logger.info(f"All-rejected sweep: {summary}")
        return summary

    # ==================== RUN ====================

    async def run(self, now=None) -> Dict[str, Any]:
        """Run all three sweeps in order and return their summaries."""
        started = time.monotonic()
        now = now or utc_now()

        result = {
            "expired": await self.process_expired_assignments(now),
            "busy": await self.retry_busy_assignments(now),
            "all_rejected": await self.process_all_rejected_orders(),
        }
        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        return result
