"""Core payment orchestration logic."""
from .currency import CurrencyConverter
from .notifications import (
    LoggingNotificationSink,
    NotificationSink,
    OutboxNotificationSink,
    emit_safely,
)
from .outbox import OutboxPublisher
from .phone_resolver import PhoneResolver
from .reconciliation import ReconciliationEngine, generate_transaction_id
from .reporting import ReportingAggregator

__all__ = [
    "CurrencyConverter",
    "LoggingNotificationSink",
    "NotificationSink",
    "OutboxNotificationSink",
    "OutboxPublisher",
    "PhoneResolver",
    "ReconciliationEngine",
    "ReportingAggregator",
    "emit_safely",
    "generate_transaction_id",
]
