"""
Shared HTTP plumbing for provider adapters.

Implements:
- Error translation (httpx / HTTP status -> ProviderUnreachable / ProviderRejected)
- Exponential backoff for transient errors (tenacity)
- Per-provider circuit breaker
- OAuth access token caching
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from crowdpay.config import ProviderConfig, Settings
from crowdpay.exceptions import ProviderRejected, ProviderUnreachable
from crowdpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Refresh tokens this many seconds before the provider says they expire
TOKEN_EXPIRY_MARGIN = 60


class CircuitOpenError(ProviderUnreachable):
    """Raised instead of calling a provider whose circuit is open."""

    error_code = "circuit_open"


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents hammering a provider that is down by failing fast once
    consecutive transient failures reach the threshold. Declines
    (ProviderRejected) mean the provider is up and do not count.
    """

    def __init__(
        self,
        provider_id: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider_id: Provider the breaker protects
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await func with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.provider_id)
            else:
                raise CircuitOpenError(
                    f"Circuit breaker is open for {self.provider_id}",
                    provider=self.provider_id,
                )

        try:
            result = await func(*args, **kwargs)
        except ProviderUnreachable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider_id)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider_id,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider_id, state)


class TokenCache:
    """Caches one OAuth access token until shortly before it expires."""

    def __init__(self) -> None:
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get(self, fetch: Callable[[], Awaitable[Tuple[str, int]]]) -> str:
        """
        Return the cached token, calling fetch for a new one when expired.

        Args:
            fetch: Coroutine returning (access_token, expires_in_seconds)
        """
        async with self._lock:
            if self._token is None or time.monotonic() >= self._expires_at:
                token, expires_in = await fetch()
                self._token = token
                self._expires_at = time.monotonic() + max(int(expires_in) - TOKEN_EXPIRY_MARGIN, 0)
            return self._token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class ProviderHttpClient:
    """
    httpx wrapper used by every HTTP-based adapter.

    Each request is retried on ProviderUnreachable with exponential backoff
    and every attempt passes through the provider's circuit breaker.
    """

    def __init__(
        self,
        config: ProviderConfig,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Provider static configuration
            settings: Application settings (timeouts, retry, breaker)
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.provider_id = config.provider_id
        self.max_attempts = max(settings.provider_retry_max_attempts, 1)
        self.base_delay = settings.provider_retry_base_delay
        self.circuit_breaker = CircuitBreaker(
            config.provider_id,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout_seconds,
        )
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request to the provider.

        Args:
            method: HTTP method
            path: Path relative to the provider base URL
            operation: Operation name for logs and metrics
            **kwargs: Passed through to httpx (json, data, headers, auth)

        Returns:
            httpx.Response: A 2xx response

        Raises:
            ProviderRejected: On HTTP 4xx
            ProviderUnreachable: On transport error, timeout or HTTP 5xx after retries
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
                    self._send, method, path, operation, **kwargs
                )
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send(
        self, method: str, path: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        start = time.perf_counter()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            self._record(operation, "unreachable", start)
            logger.warning("provider_timeout", provider=self.provider_id, operation=operation)
            raise ProviderUnreachable(
                f"{self.provider_id} timed out during {operation}",
                provider=self.provider_id,
                operation=operation,
            ) from e
        except httpx.TransportError as e:
            self._record(operation, "unreachable", start)
            logger.warning(
                "provider_transport_error",
                provider=self.provider_id,
                operation=operation,
                error=str(e),
            )
            raise ProviderUnreachable(
                f"{self.provider_id} unreachable during {operation}: {e}",
                provider=self.provider_id,
                operation=operation,
            ) from e
        except httpx.RequestError as e:
            # Undecodable body, redirect loop and the like
            self._record(operation, "unreachable", start)
            logger.warning(
                "provider_bad_response",
                provider=self.provider_id,
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ProviderUnreachable(
                f"{self.provider_id} sent an unusable response during {operation}: {e}",
                provider=self.provider_id,
                operation=operation,
            ) from e

        if response.status_code >= 500:
            self._record(operation, "unreachable", start)
            logger.warning(
                "provider_server_error",
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderUnreachable(
                f"{self.provider_id} returned HTTP {response.status_code}",
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            self._record(operation, "rejected", start)
            logger.info(
                "provider_rejected_request",
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ProviderRejected(
                _error_message(response) or f"{self.provider_id} declined the request",
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )

        self._record(operation, "success", start)
        return response

    def _record(self, operation: str, outcome: str, start: float) -> None:
        metrics.record_provider_api_call(
            self.provider_id, operation, outcome, time.perf_counter() - start
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def is_transient(error: BaseException) -> bool:
    return isinstance(error, ProviderUnreachable) and not isinstance(error, CircuitOpenError)


def json_body(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body, or return an empty dict."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def format_amount(value: Any) -> str:
    """Render a Decimal amount without exponent notation."""
    return format(value, "f")


def _error_message(response: httpx.Response) -> Optional[str]:
    body = json_body(response)
    for key in ("message", "error_description", "error", "reason"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None
