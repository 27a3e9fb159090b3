"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["start_outbox_publisher", "start_reconciliation_worker"]
