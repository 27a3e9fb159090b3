"""
Provider webhook ingress with signature verification and delivery deduplication.

Implements:
- Stripe webhook signature verification
- Delivery deduplication using Redis (fail-open)
- Hand-off to the reconciliation engine

Redis only short-circuits exact redeliveries. Exactly-once crediting is
guaranteed by the store's conditional update, so losing Redis never
risks a double credit.
"""
import hashlib
import json
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from crowdpay.config import Settings
from crowdpay.exceptions import InvalidCallbackPayload, PaymentError

if TYPE_CHECKING:
    from crowdpay.core.reconciliation import ReconciliationEngine

logger = structlog.get_logger(__name__)


class WebhookError(PaymentError):
    """Raised when a webhook fails signature verification."""

    error_code = "invalid_webhook_signature"
    http_status = 400


class WebhookHandler:
    """Verifies, de-duplicates and dispatches provider callbacks."""

    def __init__(
        self,
        engine: "ReconciliationEngine",
        settings: Settings,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            engine: Reconciliation engine callbacks are handed to
            settings: Application settings
            redis_client: Optional Redis client for delivery deduplication
        """
        self.engine = engine
        self.settings = settings
        self.redis_client = redis_client

    def verify_signature(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a Stripe webhook signature.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: The verified event body

        Raises:
            WebhookError: If signature verification fails
        """
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {str(e)}", provider="stripe") from e
        except ValueError as e:
            logger.error("webhook_verification_error", error=str(e))
            raise WebhookError(f"Webhook payload is not valid JSON: {str(e)}", provider="stripe") from e

        logger.info("webhook_signature_verified", event_id=event["id"], event_type=event["type"])
        return json.loads(payload)

    @staticmethod
    def delivery_key(provider: str, body: bytes, query: Mapping[str, str]) -> str:
        digest = hashlib.sha256(body)
        for name in sorted(query):
            digest.update(f"&{name}={query[name]}".encode())
        return f"webhook:processed:{provider}:{digest.hexdigest()}"

    async def is_delivery_processed(self, key: str) -> bool:
        """
        Check whether this exact delivery has already been processed.

        Returns False when Redis is unavailable so the callback is still handled.
        """
        if self.redis_client is None:
            return False
        try:
            return bool(await self.redis_client.exists(key))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), key=key)
            return False

    async def mark_delivery_processed(self, key: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(key, self.settings.webhook_dedup_ttl, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), key=key)

    def parse_payload(
        self,
        provider: str,
        body: bytes,
        query: Mapping[str, str],
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Decode a callback into a payload dict.

        Query parameters are merged under the JSON body. Stripe events must be
        signed when a webhook secret is configured.

        Raises:
            WebhookError: Missing or invalid Stripe signature
            InvalidCallbackPayload: Body is not a JSON object
        """
        payload: Dict[str, Any] = dict(query)
        if not body.strip():
            return payload

        if provider == "stripe" and self.settings.stripe_webhook_secret:
            if not signature:
                raise WebhookError("Missing Stripe-Signature header", provider=provider)
            payload.update(self.verify_signature(body, signature))
            return payload

        try:
            decoded = json.loads(body)
        except ValueError as e:
            raise InvalidCallbackPayload(
                f"{provider} callback body is not valid JSON", provider=provider
            ) from e
        if not isinstance(decoded, dict):
            raise InvalidCallbackPayload(
                f"{provider} callback body is not a JSON object", provider=provider
            )
        payload.update(decoded)
        return payload

    async def handle(
        self,
        provider: str,
        body: bytes,
        query: Optional[Mapping[str, str]] = None,
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Process one callback delivery.

        Args:
            provider: Provider id from the callback URL
            body: Raw request body
            query: Query string parameters
            signature: Stripe-Signature header, if present

        Returns:
            Dict[str, Any]: Engine result, or a duplicate marker
        """
        query = query or {}
        payload = self.parse_payload(provider, body, query, signature)

        key = self.delivery_key(provider, body, query)
        if await self.is_delivery_processed(key):
            logger.info("webhook_delivery_already_processed", provider=provider)
            return {"success": True, "status": "duplicate", "message": "Delivery already processed"}

        result = await self.engine.handle_callback(provider, payload)
        await self.mark_delivery_processed(key)
        return result
