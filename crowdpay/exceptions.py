"""
Exception taxonomy for payment orchestration.

Every error carries:
- A stable error code (for API clients)
- The HTTP status the API layer maps it to
- Structured context (transaction id, provider, ...) for logging
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment orchestration errors."""

    error_code = "payment_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "context": {k: v for k, v in self.context.items() if v is not None},
            }
        }


class UnsupportedProvider(PaymentError):
    """Raised when a provider id is not registered."""

    error_code = "unsupported_provider"
    http_status = 400

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}", provider=provider)
        self.provider = provider


class InvalidPayer(PaymentError):
    """Raised when the payer phone number fails provider validation."""

    error_code = "invalid_payer"
    http_status = 400


class InvalidCallbackPayload(PaymentError):
    """Raised when a webhook payload cannot be mapped to a transaction."""

    error_code = "invalid_callback_payload"
    http_status = 400


class ProviderUnreachable(PaymentError):
    """Raised on transport failure, timeout or provider-side 5xx."""

    error_code = "provider_unreachable"
    http_status = 502


class ProviderRejected(PaymentError):
    """Raised when the provider synchronously declines a request."""

    error_code = "provider_rejected"
    http_status = 402


class TransactionNotFound(PaymentError):
    """Raised when no transaction matches the given id."""

    error_code = "transaction_not_found"
    http_status = 404

    def __init__(self, transaction_id: Optional[str]):
        super().__init__(
            f"Transaction not found: {transaction_id}", transaction_id=transaction_id
        )
        self.transaction_id = transaction_id


class AlreadyCompleted(PaymentError):
    """Raised when cancelling a transaction that has already been credited."""

    error_code = "already_completed"
    http_status = 409

    def __init__(self, transaction_id: str):
        super().__init__(
            "Cannot cancel a transaction that is already completed",
            transaction_id=transaction_id,
        )
        self.transaction_id = transaction_id


class ReportingError(PaymentError):
    """Raised when report aggregation fails."""

    error_code = "reporting_error"
    http_status = 500


class UnsupportedCurrency(PaymentError):
    """Raised when no exchange rate is configured for a currency."""

    error_code = "unsupported_currency"
    http_status = 400

    def __init__(self, currency: str):
        super().__init__(f"Unsupported currency: {currency}", currency=currency)
        self.currency = currency


class InvalidAmount(PaymentError):
    """Raised when a payment amount is not a positive number."""

    error_code = "invalid_amount"
    http_status = 400
