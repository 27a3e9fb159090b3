"""Payment provider integrations."""
from .base import InitiationResult, PaymentRequest, ProviderAdapter, ProviderStatus
from .callbacks import CallbackEvent, CallbackNormalizer
from .registry import build_adapters
from .webhook_handler import WebhookError, WebhookHandler

__all__ = [
    "CallbackEvent",
    "CallbackNormalizer",
    "InitiationResult",
    "PaymentRequest",
    "ProviderAdapter",
    "ProviderStatus",
    "WebhookError",
    "WebhookHandler",
    "build_adapters",
]
