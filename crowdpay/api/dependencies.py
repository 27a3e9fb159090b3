"""
Service wiring for the API and workers.

Everything is built explicitly from Settings; there is no module-level
engine, so tests can assemble services around their own database and
provider doubles.
"""
from dataclasses import dataclass
from typing import Mapping, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from crowdpay.config import ProviderRegistry, Settings
from crowdpay.core.currency import CurrencyConverter
from crowdpay.core.notifications import NotificationSink, OutboxNotificationSink
from crowdpay.core.reconciliation import ReconciliationEngine
from crowdpay.core.reporting import ReportingAggregator
from crowdpay.database.connection import create_engine, create_session_factory
from crowdpay.database.store import TransactionStore
from crowdpay.integrations.base import ProviderAdapter
from crowdpay.integrations.registry import build_adapters
from crowdpay.integrations.webhook_handler import WebhookHandler
from crowdpay.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Long-lived collaborators shared by all requests."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    store: TransactionStore
    engine: ReconciliationEngine
    reporting: ReportingAggregator
    webhook_handler: WebhookHandler
    health: HealthCheck
    db_engine: Optional[AsyncEngine] = None
    redis_client: Optional[aioredis.Redis] = None

    async def aclose(self) -> None:
        """Release provider clients, Redis and database connections."""
        for adapter in self.engine.adapters.values():
            await adapter.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("services_closed")


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    adapters: Optional[Mapping[str, ProviderAdapter]] = None,
    redis_client: Optional[aioredis.Redis] = None,
    notifications: Optional[NotificationSink] = None,
) -> Services:
    """
    Assemble the service graph.

    Args:
        settings: Application settings
        session_factory: Existing session factory (a new engine is created otherwise)
        adapters: Provider adapters (built from the registry otherwise)
        redis_client: Redis client (created from settings.redis_url otherwise)
        notifications: Notification sink (outbox-backed otherwise)

    Returns:
        Services: The wired services
    """
    db_engine = None
    if session_factory is None:
        db_engine = create_engine(settings)
        session_factory = create_session_factory(db_engine)

    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)

    registry = ProviderRegistry.from_settings(settings)
    if adapters is None:
        adapters = build_adapters(registry, settings)

    store = TransactionStore(session_factory)
    engine = ReconciliationEngine(
        store=store,
        registry=registry,
        adapters=adapters,
        settings=settings,
        notifications=notifications or OutboxNotificationSink(session_factory),
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        store=store,
        engine=engine,
        reporting=ReportingAggregator(
            store, CurrencyConverter(settings.exchange_rates), settings.default_currency
        ),
        webhook_handler=WebhookHandler(engine, settings, redis_client),
        health=HealthCheck(session_factory, redis_client),
        db_engine=db_engine,
        redis_client=redis_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_engine(request: Request) -> ReconciliationEngine:
    return get_services(request).engine
