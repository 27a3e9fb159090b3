"""
Provider adapter interface.

Every payment provider, mobile-money operator or card gateway, is driven
through the same three calls. Adapters translate transport and provider
errors into ProviderUnreachable / ProviderRejected and never touch the store.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from crowdpay.config.providers import ProviderConfig
from crowdpay.database.models import PaymentTransaction


class ProviderStatus(Enum):
    """Outcome of a provider status query."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentRequest:
    """Everything an adapter needs to initiate a payment."""

    transaction_id: str
    amount: Decimal
    currency: str
    description: str
    callback_url: str
    phone_number: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiationResult:
    """Provider acknowledgement of an initiated payment."""

    provider_reference: Optional[str]
    accepted_pending: bool = True
    redirect_url: Optional[str] = None


class ProviderAdapter(ABC):
    """Base class for provider adapters."""

    def __init__(self, config: ProviderConfig):
        self.config = config

    @property
    def provider_id(self) -> str:
        return self.config.provider_id

    @abstractmethod
    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        """
        Ask the provider to start collecting a payment.

        Args:
            request: Payment request

        Returns:
            InitiationResult: Provider reference and optional redirect URL

        Raises:
            ProviderRejected: Provider declined the request
            ProviderUnreachable: Transport failure, timeout or provider 5xx
        """

    @abstractmethod
    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        """
        Query the provider for the current outcome of a transaction.

        Statuses the adapter does not recognise map to PENDING.
        """

    async def cancel(self, transaction: PaymentTransaction) -> bool:
        """
        Cancel a payment on the provider side.

        Mobile-money collections cannot be withdrawn once pushed to the
        payer's handset, so the default is a no-op that reports success.
        """
        return True

    async def aclose(self) -> None:
        """Release transport resources."""
