"""
Mobile money operator adapters.

MTN, Moov, Flooz, Orange Money and Wave. All five push a collection request
to the payer's handset and report the outcome later through a callback, so
initiation only ever yields an accepted-pending result.
"""
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from crowdpay.config import ProviderConfig, Settings
from crowdpay.database.models import PaymentTransaction
from crowdpay.exceptions import ProviderUnreachable
from crowdpay.integrations.base import (
    InitiationResult,
    PaymentRequest,
    ProviderAdapter,
    ProviderStatus,
)
from crowdpay.integrations.http import (
    ProviderHttpClient,
    TokenCache,
    format_amount,
    json_body,
)

logger = structlog.get_logger(__name__)

DEFAULT_PAYER_MESSAGE = "Contribution payment"


class HttpProviderAdapter(ProviderAdapter):
    """Adapter talking to the provider's REST API through ProviderHttpClient."""

    # Provider status value -> outcome; anything else stays pending
    status_map: Dict[str, ProviderStatus] = {}

    def __init__(
        self,
        config: ProviderConfig,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self.settings = settings
        self.http = ProviderHttpClient(config, settings, transport=transport)

    def map_status(self, raw_status: Any) -> ProviderStatus:
        outcome = self.status_map.get(str(raw_status))
        if outcome is None:
            logger.debug(
                "provider_status_unmapped",
                provider=self.provider_id,
                raw_status=raw_status,
            )
            return ProviderStatus.PENDING
        return outcome

    async def aclose(self) -> None:
        await self.http.aclose()


class OAuthAdapterMixin:
    """Client-credentials OAuth with a cached access token."""

    token_path = "/oauth/token"

    http: ProviderHttpClient
    config: ProviderConfig

    def _init_token_cache(self) -> None:
        self._token_cache = TokenCache()

    async def _fetch_token(self) -> Tuple[str, int]:
        response = await self.http.request(
            "POST",
            self.token_path,
            "token",
            json={"grant_type": "client_credentials"},
            auth=(self.config.api_key, self.config.api_secret),
        )
        body = json_body(response)
        token = body.get("access_token")
        if not token:
            raise ProviderUnreachable(
                f"{self.config.provider_id} token response has no access_token",
                provider=self.config.provider_id,
            )
        try:
            expires_in = int(body.get("expires_in", 3600))
        except (TypeError, ValueError):
            logger.warning(
                "provider_token_expiry_unparseable",
                provider=self.config.provider_id,
                expires_in=body.get("expires_in"),
            )
            expires_in = 3600
        return token, expires_in

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._token_cache.get(self._fetch_token)
        return {"Authorization": f"Bearer {token}"}


class MtnAdapter(OAuthAdapterMixin, HttpProviderAdapter):
    """MTN Mobile Money collection API (request-to-pay)."""

    token_path = "/collection/token"
    status_map = {
        "SUCCESSFUL": ProviderStatus.COMPLETED,
        "FAILED": ProviderStatus.FAILED,
        "REJECTED": ProviderStatus.FAILED,
        "TIMEOUT": ProviderStatus.FAILED,
    }

    def __init__(self, config: ProviderConfig, settings: Settings, **kwargs: Any):
        super().__init__(config, settings, **kwargs)
        self._init_token_cache()

    def _headers(self, auth: Dict[str, str]) -> Dict[str, str]:
        return {**auth, "X-Target-Environment": self.settings.mtn_target_environment}

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        headers = self._headers(await self._auth_headers())
        headers.update(
            {
                "X-Reference-Id": request.transaction_id,
                "X-Callback-Url": request.callback_url,
            }
        )
        await self.http.request(
            "POST",
            "/collection/v1/requesttopay",
            "initiate",
            headers=headers,
            json={
                "amount": format_amount(request.amount),
                "currency": request.currency,
                "externalId": request.transaction_id,
                "payer": {"partyIdType": "MSISDN", "partyId": request.phone_number},
                "payerMessage": request.description or DEFAULT_PAYER_MESSAGE,
                "payeeNote": f"Contribution {request.transaction_id}",
            },
        )
        # MTN answers 202 with an empty body; the reference is our own id
        return InitiationResult(provider_reference=request.transaction_id)

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        headers = self._headers(await self._auth_headers())
        response = await self.http.request(
            "GET",
            f"/collection/v1/requesttopay/{transaction.transaction_id}",
            "check_status",
            headers=headers,
        )
        return self.map_status(json_body(response).get("status"))


class MoovAdapter(HttpProviderAdapter):
    """Moov Money merchant API."""

    status_map = {
        "SUCCESS": ProviderStatus.COMPLETED,
        "FAILED": ProviderStatus.FAILED,
    }

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        response = await self.http.request(
            "POST",
            "/api/v1/payments",
            "initiate",
            headers=self._headers(),
            json={
                "phoneNumber": request.phone_number,
                "amount": format_amount(request.amount),
                "currency": request.currency,
                "reference": request.transaction_id,
                "description": request.description or DEFAULT_PAYER_MESSAGE,
                "callbackUrl": f"{request.callback_url}?reference={request.transaction_id}",
            },
        )
        body = json_body(response)
        return InitiationResult(
            provider_reference=body.get("providerReference") or request.transaction_id
        )

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        response = await self.http.request(
            "GET",
            f"/api/v1/transactions/{transaction.transaction_id}/status",
            "check_status",
            headers=self._headers(),
        )
        return self.map_status(json_body(response).get("status"))


class FloozAdapter(MoovAdapter):
    """Flooz merchant API. Shares Moov's status endpoint."""

    status_map = {
        "SUCCESS": ProviderStatus.COMPLETED,
        "00": ProviderStatus.COMPLETED,
        "FAILED": ProviderStatus.FAILED,
    }

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.config.api_key, "X-API-Secret": self.config.api_secret}

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        response = await self.http.request(
            "POST",
            "/api/merchant/payments",
            "initiate",
            headers=self._headers(),
            json={
                "msisdn": request.phone_number,
                "amount": format_amount(request.amount),
                "currency": request.currency,
                "orderId": request.transaction_id,
                "description": request.description or DEFAULT_PAYER_MESSAGE,
                "callbackUrl": f"{request.callback_url}?orderId={request.transaction_id}",
            },
        )
        body = json_body(response)
        return InitiationResult(provider_reference=body.get("sessionId") or request.transaction_id)


class OrangeAdapter(OAuthAdapterMixin, HttpProviderAdapter):
    """Orange Money web payment API."""

    token_path = "/oauth/token"
    status_map = {
        "SUCCESSFUL": ProviderStatus.COMPLETED,
        "FAILED": ProviderStatus.FAILED,
    }

    def __init__(self, config: ProviderConfig, settings: Settings, **kwargs: Any):
        super().__init__(config, settings, **kwargs)
        self._init_token_cache()

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        await self.http.request(
            "POST",
            "/payment/v1/payments",
            "initiate",
            headers=await self._auth_headers(),
            json={
                "amount": format_amount(request.amount),
                "currency": request.currency,
                "reference": request.transaction_id,
                "payerMessage": request.description or DEFAULT_PAYER_MESSAGE,
                "payeeNote": f"Contribution {request.transaction_id}",
                "msisdn": request.phone_number,
                "notifUrl": request.callback_url,
            },
        )
        return InitiationResult(provider_reference=request.transaction_id)

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        response = await self.http.request(
            "GET",
            f"/payment/v1/payments/{transaction.transaction_id}",
            "check_status",
            headers=await self._auth_headers(),
        )
        return self.map_status(json_body(response).get("status"))


class WaveAdapter(HttpProviderAdapter):
    """Wave checkout sessions API."""

    status_map = {
        "SUCCESSFUL": ProviderStatus.COMPLETED,
        "FAILED": ProviderStatus.FAILED,
    }

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def initiate(self, request: PaymentRequest) -> InitiationResult:
        response = await self.http.request(
            "POST",
            "/checkout/sessions",
            "initiate",
            headers=self._headers(),
            json={
                "amount": format_amount(request.amount),
                "currency": request.currency,
                "externalReference": request.transaction_id,
                "mobileNumber": request.phone_number,
                "description": request.description or DEFAULT_PAYER_MESSAGE,
                "callbackUrl": f"{request.callback_url}?ref={request.transaction_id}",
            },
        )
        body = json_body(response)
        return InitiationResult(
            provider_reference=body.get("sessionId") or request.transaction_id,
            redirect_url=body.get("paymentUrl"),
        )

    async def check_status(self, transaction: PaymentTransaction) -> ProviderStatus:
        session_id = transaction.provider_reference or transaction.transaction_id
        response = await self.http.request(
            "GET",
            f"/checkout/sessions/{session_id}",
            "check_status",
            headers=self._headers(),
        )
        return self.map_status(json_body(response).get("status"))
