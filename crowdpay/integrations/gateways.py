"""
International gateway adapters: PayPal and Stripe.

Both redirect the payer to a hosted checkout page. The browser comes back
to the callback URL with ?transaction_id=...&status=success|cancel, and
Stripe additionally posts signed checkout.session.* events.
"""
import asyncio
import functools
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Tuple

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from crowdpay.config import ProviderConfig, Settings
from crowdpay.database.models import PaymentTransaction
from crowdpay.exceptions import ProviderRejected, ProviderUnreachable
from crowdpay.integrations.base import (
    InitiationResult,
    PaymentRequest,
    ProviderAdapter,
    ProviderStatus,
)
from crowdpay.integrations.http import CircuitBreaker, format_amount, is_transient, json_body
from crowdpay.integrations.mobile_money import HttpProviderAdapter, OAuthAdapterMixin
from crowdpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_DESCRIPTION = "Crowdfunding contribution"

# Currencies Stripe charges in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "XOF", "XAF", "GNF", "MGA", "RWF"})


def _return_urls(callback_url: str, transaction_id: str) -> Tuple[str, str]:
    base = f"{callback_url}?transaction_id={transaction_id}"
    return f"{base}&status=success", f"{base}&status=cancel"


class PayPalAdapter(OAuthAdapterMixin, HttpProviderAdapter):
    """PayPal Orders v2 API."""

    token_path = "/v1/oauth2/token"
    status_map = {
        "COMPLETED": ProviderStatus.COMPLETED,
        "VOIDED": ProviderStatus.FAILED,
    }

    def __init__(self, config: ProviderConfig, settings: Settings, **kwargs: Any):
        super().__init__(config, settings, **kwargs)
        self._init_token_cache()

    async def _fetch_token(self) -> Tuple[str, int]:
        response = await self.http.request(
            "POST",
            self.token_path,
            "token",
            data={"grant_type": "client_credentials"},
            auth=(self.config.api_key, self.config.api_secret),
        )
        body = json_body(response)
        if not body.get("access_token"):
            raise ProviderUnreachable(
                "PayPal token response has no access_token", provider=self.provider_id
            )
        return body["access_token"], int(body.get("expires_in", 3600))

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        return_url, cancel_url = _return_urls(request.callback_url, request.transaction_id)
        response = await self.http.request(
            "POST",
            "/v2/checkout/orders",
            "initiate",
            headers={
                **await self._auth_headers(),
                "PayPal-Request-Id": request.transaction_id,
            },
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": request.transaction_id,
                        "description": request.description or DEFAULT_DESCRIPTION,
                        "amount": {
                            "currency_code": request.currency,
                            "value": format_amount(request.amount.quantize(Decimal("0.01"))),
                        },
                    }
                ],
                "application_context": {"return_url": return_url, "cancel_url": cancel_url},
            },
        )
        body = json_body(response)
        approval_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return InitiationResult(provider_reference=body.get("id"), redirect_url=approval_url)

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        if not transaction.provider_reference:
            raise ProviderRejected(
                "PayPal transaction has no order id",
                provider=self.provider_id,
                transaction_id=transaction.transaction_id,
            )
        response = await self.http.request(
            "GET",
            f"/v2/checkout/orders/{transaction.provider_reference}",
            "check_status",
            headers=await self._auth_headers(),
        )
        return self.map_status(json_body(response).get("status"))

    async def cancel(self, transaction: PaymentTransaction) -> bool:
        if transaction.provider_reference:
            await self.http.request(
                "POST",
                f"/v2/checkout/orders/{transaction.provider_reference}/cancel",
                "cancel",
                headers=await self._auth_headers(),
                json={},
            )
        return True


class StripeAdapter(ProviderAdapter):
    """
    Stripe Checkout Sessions through the official SDK.

    The SDK is synchronous, so calls run in the default executor. The API
    key is passed per call instead of being set on the stripe module.
    """

    def __init__(self, config: ProviderConfig, settings: Settings):
        super().__init__(config)
        self.settings = settings
        self.max_attempts = max(settings.provider_retry_max_attempts, 1)
        self.base_delay = settings.provider_retry_base_delay
        self.circuit_breaker = CircuitBreaker(
            config.provider_id,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout_seconds,
        )

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a Stripe SDK call with retry and circuit breaker protection.

        Raises:
            ProviderRejected: Card declined, invalid request, authentication error
            ProviderUnreachable: Connection error, rate limit, Stripe 5xx
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=16),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(
                    self._run, operation, func, *args, **kwargs
                )

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        call = functools.partial(func, *args, api_key=self.config.api_key, **kwargs)
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, call), timeout=self.settings.provider_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self._record(operation, "unreachable", start)
            raise ProviderUnreachable(
                f"Stripe timed out during {operation}", provider=self.provider_id
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            self._record(operation, "unreachable", start)
            logger.warning(
                "stripe_api_error",
                operation=operation,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise ProviderUnreachable(
                f"Stripe unreachable during {operation}: {e}", provider=self.provider_id
            ) from e
        except stripe.StripeError as e:
            self._record(operation, "rejected", start)
            logger.info(
                "stripe_request_rejected",
                operation=operation,
                error_type=type(e).__name__,
                error_code=getattr(e, "code", None),
            )
            raise ProviderRejected(
                getattr(e, "user_message", None) or str(e),
                provider=self.provider_id,
                error_code=getattr(e, "code", None),
            ) from e

        self._record(operation, "success", start)
        return result

    def _record(self, operation: str, outcome: str, start: float) -> None:
        metrics.record_provider_api_call(
            self.provider_id, operation, outcome, time.perf_counter() - start
        )

    @staticmethod
    def _unit_amount(amount: Decimal, currency: str) -> int:
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        success_url, cancel_url = _return_urls(request.callback_url, request.transaction_id)
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "product_data": {
                            "name": DEFAULT_DESCRIPTION,
                            "description": request.description or DEFAULT_DESCRIPTION,
                        },
                        "unit_amount": self._unit_amount(request.amount, request.currency),
                    },
                    "quantity": 1,
                }
            ],
            "mode": "payment",
            "client_reference_id": request.transaction_id,
            "metadata": {"transaction_id": request.transaction_id, **request.metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
            "idempotency_key": request.transaction_id,
        }
        session = await self._call("initiate", stripe.checkout.Session.create, **params)
        logger.info(
            "stripe_checkout_session_created",
            transaction_id=request.transaction_id,
            session_id=session["id"],
        )
        return InitiationResult(provider_reference=session["id"], redirect_url=session.get("url"))

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        if not transaction.provider_reference:
            raise ProviderRejected(
                "Stripe transaction has no checkout session id",
                provider=self.provider_id,
                transaction_id=transaction.transaction_id,
            )
        session = await self._call(
            "check_status", stripe.checkout.Session.retrieve, transaction.provider_reference
        )
        if session.get("payment_status") == "paid":
            return ProviderStatus.COMPLETED
        if session.get("status") == "expired":
            return ProviderStatus.FAILED
        return ProviderStatus.PENDING

    async def cancel(self, transaction: PaymentTransaction) -> bool:
        if transaction.provider_reference:
            await self._call(
                "cancel", stripe.checkout.Session.expire, transaction.provider_reference
            )
        return True
