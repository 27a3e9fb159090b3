"""
Pytest configuration and fixtures.

The store runs against a temporary SQLite file through aiosqlite; providers
are replaced by in-memory fakes unless a test exercises a real adapter.
"""
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from crowdpay.config import ProviderConfig, ProviderRegistry, Settings
from crowdpay.core.notifications import NotificationSink
from crowdpay.core.reconciliation import ReconciliationEngine, generate_transaction_id
from crowdpay.database.connection import create_engine, create_session_factory, init_db
from crowdpay.database.models import PENDING, PaymentTransaction, Project, utcnow
from crowdpay.database.store import TransactionStore
from crowdpay.exceptions import PaymentError
from crowdpay.integrations.base import (
    InitiationResult,
    PaymentRequest,
    ProviderAdapter,
    ProviderStatus,
)

PROJECT_ID = 6
CREATOR_ID = 99
CONTRIBUTOR_ID = 42


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "race: concurrent resolution scenarios")
    config.addinivalue_line("markers", "integration: tests crossing the HTTP API")


class FakeAdapter(ProviderAdapter):
    """In-memory provider: answers are set by the test."""

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.status = ProviderStatus.PENDING
        self.initiate_error: Optional[PaymentError] = None
        self.status_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.redirect_url: Optional[str] = None
        self.requests: List[PaymentRequest] = []
        self.status_checks: List[str] = []
        self.cancelled: List[str] = []

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        self.requests.append(request)
        if self.initiate_error is not None:
            raise self.initiate_error
        return InitiationResult(
            provider_reference=f"{self.provider_id}-ref-{request.transaction_id}",
            redirect_url=self.redirect_url,
        )

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        self.status_checks.append(transaction.transaction_id)
        if self.status_error is not None:
            raise self.status_error
        return self.status

    async def cancel(self, transaction: PaymentTransaction) -> bool:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(transaction.transaction_id)
        return True


class RecordingSink(NotificationSink):
    """Keeps emitted notifications in memory."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []
        self.fail = False

    async def emit(
        self,
        user_id: int,
        notification_type: str,
        content: str,
        related_id: Optional[str] = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("chat service unavailable")
        self.events.append(
            {
                "user_id": user_id,
                "type": notification_type,
                "content": content,
                "related_id": related_id,
            }
        )

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == notification_type]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'crowdpay_test.db'}",
        redis_url="",
        app_name="crowdpay-test",
        app_env="test",
        log_level="DEBUG",
        api_base_url="https://pay.example.test",
        mtn_api_base_url="https://mtn.test",
        mtn_api_key="mtn-user",
        mtn_api_secret="mtn-secret",
        moov_api_base_url="https://moov.test",
        moov_api_key="moov-key",
        flooz_api_base_url="https://flooz.test",
        flooz_api_key="flooz-key",
        flooz_api_secret="flooz-secret",
        orange_api_base_url="https://orange.test",
        orange_api_key="orange-client",
        orange_api_secret="orange-secret",
        wave_api_base_url="https://wave.test",
        wave_api_key="wave-key",
        paypal_api_base_url="https://paypal.test",
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        stripe_api_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        provider_retry_max_attempts=2,
        provider_retry_base_delay=0,
        provider_cancel_timeout_seconds=0.5,
        sweep_concurrency=3,
        sweep_item_timeout_seconds=2,
    )


@pytest.fixture
def registry(test_settings: Settings) -> ProviderRegistry:
    return ProviderRegistry.from_settings(test_settings)


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh SQLite database with all tables."""
    engine = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> TransactionStore:
    return TransactionStore(session_factory)


@pytest_asyncio.fixture
async def project(session_factory: async_sessionmaker[AsyncSession]) -> Project:
    """Seed the project contributions are credited to."""
    async with session_factory() as db:
        project = Project(
            id=PROJECT_ID,
            title="Solar pumps for Kara",
            creator_id=CREATOR_ID,
            target_amount=Decimal("100000"),
            current_amount=Decimal("0"),
            currency="XOF",
        )
        db.add(project)
        await db.commit()
    return project


@pytest.fixture
def fake_adapters(registry: ProviderRegistry) -> Dict[str, FakeAdapter]:
    return {config.provider_id: FakeAdapter(config) for config in registry}


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(
    store: TransactionStore,
    registry: ProviderRegistry,
    fake_adapters: Dict[str, FakeAdapter],
    test_settings: Settings,
    sink: RecordingSink,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=store,
        registry=registry,
        adapters=fake_adapters,
        settings=test_settings,
        notifications=sink,
    )


async def make_pending(
    store: TransactionStore,
    provider: str = "mtn",
    amount: Decimal = Decimal("5000"),
    age: timedelta = timedelta(0),
    **overrides: Any,
) -> PaymentTransaction:
    """Insert a pending transaction as if initiated `age` ago."""
    fields: Dict[str, Any] = {
        "transaction_id": generate_transaction_id(),
        "user_id": CONTRIBUTOR_ID,
        "project_id": PROJECT_ID,
        "amount": amount,
        "currency": "XOF",
        "method": "mobile_money",
        "provider": provider,
        "phone_number": "22890123456",
        "status": PENDING,
        "created_at": utcnow() - age,
    }
    fields.update(overrides)
    return await store.create_transaction(**fields)
