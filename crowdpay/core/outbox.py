"""
Notification outbox relay.

OutboxNotificationSink writes one row per notification in the same place the
payment state lives. This relay drains those rows to the chat service:

- rows are read in id order, at most batch_size at a time
- each row is turned into a chat message and handed to the deliver coroutine
- delivered rows are flagged published; failed rows get attempts += 1 and
  their last error, and are parked once attempts reaches max_attempts

Delivery is at least once. The chat service de-duplicates on event_id.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crowdpay.database.models import OutboxEvent, utcnow
from crowdpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


def notification_message(event: OutboxEvent) -> Dict[str, Any]:
    """Chat service message for an outbox row."""
    return {
        "event_id": event.id,
        **event.payload,
        "created_at": event.created_at.isoformat(),
    }


async def log_only(message: Dict[str, Any]) -> None:
    logger.info(
        "notification_not_delivered_no_endpoint",
        event_id=message.get("event_id"),
        notification_type=message.get("type"),
        user_id=message.get("user_id"),
    )


class OutboxPublisher:
    """Relays queued notifications to the chat service."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 10,
    ):
        """
        Args:
            session_factory: Database session factory
            publisher_func: Coroutine delivering one chat message; logs only if None
            batch_size: Rows read per pass
            poll_interval_seconds: Idle wait between passes
            max_attempts: Failed deliveries after which a row is parked
        """
        self.session_factory = session_factory
        self.deliver = publisher_func or log_only
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._stopping = asyncio.Event()

    def _deliverable(self):
        return (OutboxEvent.published.is_(False), OutboxEvent.attempts < self.max_attempts)

    async def _next_batch(self) -> List[OutboxEvent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(OutboxEvent)
                .where(*self._deliverable())
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _record(self, delivered: List[int], failures: List[Tuple[OutboxEvent, str]]) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                if delivered:
                    await db.execute(
                        update(OutboxEvent)
                        .where(OutboxEvent.id.in_(delivered))
                        .values(published=True, published_at=utcnow(), last_error=None)
                        .execution_options(synchronize_session=False)
                    )
                for event, error in failures:
                    await db.execute(
                        update(OutboxEvent)
                        .where(OutboxEvent.id == event.id)
                        .values(attempts=OutboxEvent.attempts + 1, last_error=error[:1000])
                        .execution_options(synchronize_session=False)
                    )

        for event, error in failures:
            if event.attempts + 1 >= self.max_attempts:
                logger.warning(
                    "notification_parked",
                    event_id=event.id,
                    notification_type=event.event_type,
                    attempts=event.attempts + 1,
                    error=error,
                )

    async def process_batch(self) -> int:
        """
        Deliver one batch of queued notifications.

        Returns:
            int: Number of notifications delivered
        """
        events = await self._next_batch()
        if not events:
            return 0

        delivered: List[int] = []
        failures: List[Tuple[OutboxEvent, str]] = []
        for event in events:
            started = time.perf_counter()
            try:
                await self.deliver(notification_message(event))
            except Exception as e:
                logger.warning(
                    "notification_delivery_failed",
                    event_id=event.id,
                    notification_type=event.event_type,
                    attempt=event.attempts + 1,
                    error=str(e),
                )
                failures.append((event, str(e) or type(e).__name__))
                continue
            metrics.record_outbox_event_published(event.event_type, time.perf_counter() - started)
            delivered.append(event.id)

        await self._record(delivered, failures)
        logger.info("outbox_batch_relayed", delivered=len(delivered), failed=len(failures))
        return len(delivered)

    async def get_pending_count(self) -> int:
        """Notifications still waiting for delivery (parked rows excluded)."""
        async with self.session_factory() as db:
            count = await db.scalar(select(func.count(OutboxEvent.id)).where(*self._deliverable()))
            return int(count or 0)

    async def start(self) -> None:
        """Relay until stop() is called."""
        logger.info("outbox_publisher_started", batch_size=self.batch_size)
        try:
            while not self._stopping.is_set():
                try:
                    delivered = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_relay_pass_failed", error=str(e))
                    delivered = 0

                # A full batch means more rows are probably waiting
                wait = 0 if delivered >= self.batch_size else self.poll_interval_seconds
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=wait or 0.01)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        self._stopping.set()
