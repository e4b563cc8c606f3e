"""
Background dispatcher for new-assignment notifications.

Assignment requests enqueue a notification after their transaction has
committed and return immediately. A worker task drains the queue and POSTs
the request payload to the carrier's webhook. Carriers without a webhook
pick assignments up by polling, so those are only logged.

Failures are counted and logged, never raised to the requester. An
assignment nobody heard about simply expires and the retry sweep moves on.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import uuid

import httpx

from scm_dispatch.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CarrierNotification:
    assignment_id: uuid.UUID
    carrier_id: uuid.UUID
    carrier_code: str
    webhook_url: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)


class CarrierNotifier:
    """Queue plus single worker task delivering carrier notifications."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout or settings.CARRIER_NOTIFY_TIMEOUT_SECONDS
        self._transport = transport
        self._queue: "asyncio.Queue[CarrierNotification]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self.stats = {"sent": 0, "failed": 0, "skipped": 0}

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run(), name="carrier-notifier")
            logger.info("Carrier notification worker started")

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the worker."""
        if not self.running:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(f"Carrier notification worker stopped: {self.stats}")

    def enqueue(self, notification: CarrierNotification) -> None:
        self._queue.put_nowait(notification)
        if not self.running:
            logger.warning(
                f"Notification for assignment {notification.assignment_id} queued "
                f"but the notifier is not running"
            )

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self.deliver(notification)
            except Exception as e:
                self.stats["failed"] += 1
                logger.error(
                    f"Unexpected error notifying {notification.carrier_code} "
                    f"of assignment {notification.assignment_id}: {e}",
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def deliver(self, notification: CarrierNotification) -> bool:
        """Send one notification. Returns True when the carrier acknowledged it."""
        if not notification.webhook_url:
            self.stats["skipped"] += 1
            logger.info(
                f"Carrier {notification.carrier_code} has no webhook, "
                f"assignment {notification.assignment_id} available by polling"
            )
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    notification.webhook_url,
                    json={
                        "event": "assignment.created",
                        "assignment_id": str(notification.assignment_id),
                        "payload": notification.payload,
                    },
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            self.stats["failed"] += 1
            logger.warning(f"Notifying carrier {notification.carrier_code} failed: {e}")
            return False

        if response.status_code >= 400:
            self.stats["failed"] += 1
            logger.warning(
                f"Carrier {notification.carrier_code} webhook returned "
                f"{response.status_code} for assignment {notification.assignment_id}"
            )
            return False

        self.stats["sent"] += 1
        logger.info(
            f"Carrier {notification.carrier_code} notified of assignment {notification.assignment_id}"
        )
        return True
