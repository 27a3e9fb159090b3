"""Database package for crowdpay."""
from .connection import create_engine, create_session_factory, init_db
from .models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    Base,
    Contribution,
    OutboxEvent,
    PaymentTransaction,
    Project,
)
from .store import ResolutionResult, TransactionStore

__all__ = [
    "Base",
    "CANCELLED",
    "COMPLETED",
    "Contribution",
    "FAILED",
    "OutboxEvent",
    "PENDING",
    "PaymentTransaction",
    "Project",
    "ResolutionResult",
    "TransactionStore",
    "create_engine",
    "create_session_factory",
    "init_db",
]
