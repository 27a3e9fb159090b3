"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers notification events to
the chat service.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import httpx
import structlog

from crowdpay.config import Settings, get_settings
from crowdpay.core.outbox import OutboxPublisher, PublisherFunc
from crowdpay.database.connection import create_engine, create_session_factory
from crowdpay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def make_webhook_publisher(client: httpx.AsyncClient, url: str) -> PublisherFunc:
    """
    Build a deliver coroutine that POSTs each chat message as JSON to url.

    Non-2xx responses raise, so the row stays queued and counts an attempt.
    """

    async def publish(message: Dict[str, Any]) -> None:
        response = await client.post(url, json=message)
        response.raise_for_status()
        logger.info(
            "notification_delivered",
            event_id=message.get("event_id"),
            notification_type=message.get("type"),
            status_code=response.status_code,
        )

    return publish


async def start_outbox_publisher(settings: Optional[Settings] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped. Without notification_webhook_url the
    events are only logged.
    """
    settings = settings or get_settings()
    logger.info("outbox_publisher_worker_starting")

    db_engine = create_engine(settings)
    client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    publisher_func = None
    if settings.notification_webhook_url:
        publisher_func = make_webhook_publisher(client, settings.notification_webhook_url)

    publisher = OutboxPublisher(
        create_session_factory(db_engine),
        publisher_func=publisher_func,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await client.aclose()
        await db_engine.dispose()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    asyncio.run(start_outbox_publisher(settings))


if __name__ == "__main__":
    main()
