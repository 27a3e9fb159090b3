"""
User notifications for payment outcomes.

The chat/notification service is an external collaborator; this module
only hands it "push event to user X" messages. Delivery is best effort
and never affects the outcome of a payment.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crowdpay.database.models import OutboxEvent
from crowdpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CONTRIBUTION_SUCCESS = "contribution_success"
NEW_CONTRIBUTION = "new_contribution"
CONTRIBUTION_FAILED = "contribution_failed"
TRANSACTION_CANCELLED = "transaction_cancelled"

NOTIFICATION_AGGREGATE = "notification"


class NotificationSink(ABC):
    """Destination for user notifications."""

    @abstractmethod
    async def emit(
        self,
        user_id: int,
        notification_type: str,
        content: str,
        related_id: Optional[str] = None,
    ) -> None:
        """
        Push a notification to a user.

        Args:
            user_id: Recipient
            notification_type: One of the *_SUCCESS / *_FAILED / ... constants
            content: Human-readable message
            related_id: Transaction or project the notification is about
        """


class OutboxNotificationSink(NotificationSink):
    """
    Queues notifications in the outbox table for the publisher worker.

    The row is written in its own session after the payment outcome has
    committed. A crash between the two loses the notification, never the credit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def emit(
        self,
        user_id: int,
        notification_type: str,
        content: str,
        related_id: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "user_id": user_id,
            "type": notification_type,
            "content": content,
            "related_id": related_id,
        }
        async with self.session_factory() as db:
            db.add(
                OutboxEvent(
                    aggregate_id=related_id or str(user_id),
                    aggregate_type=NOTIFICATION_AGGREGATE,
                    event_type=notification_type,
                    payload=payload,
                )
            )
            await db.commit()

        logger.info(
            "notification_queued",
            user_id=user_id,
            notification_type=notification_type,
            related_id=related_id,
        )


class LoggingNotificationSink(NotificationSink):
    """Sink that only logs; used when no outbox is wanted."""

    async def emit(
        self,
        user_id: int,
        notification_type: str,
        content: str,
        related_id: Optional[str] = None,
    ) -> None:
        logger.info(
            "notification_emitted",
            user_id=user_id,
            notification_type=notification_type,
            content=content,
            related_id=related_id,
        )


async def emit_safely(
    sink: NotificationSink,
    user_id: int,
    notification_type: str,
    content: str,
    related_id: Optional[str] = None,
) -> bool:
    """
    Emit a notification, downgrading any failure to a warning.

    Returns:
        bool: True if the sink accepted the notification
    """
    try:
        await sink.emit(user_id, notification_type, content, related_id)
    except Exception as e:
        metrics.record_notification_failure(notification_type)
        logger.warning(
            "notification_emit_failed",
            user_id=user_id,
            notification_type=notification_type,
            related_id=related_id,
            error=str(e),
        )
        return False
    return True
