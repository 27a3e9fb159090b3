"""
Provider callback normalization.

Each provider posts its own payload shape. The normalizer reduces all of
them to a CallbackEvent: which transaction, and what happened to it.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import structlog

from crowdpay.exceptions import InvalidCallbackPayload, UnsupportedProvider
from crowdpay.integrations.base import ProviderStatus

logger = structlog.get_logger(__name__)

DEFAULT_FAILURE_REASON = "Payment failed"

COMPLETED = ProviderStatus.COMPLETED
FAILED = ProviderStatus.FAILED
PENDING = ProviderStatus.PENDING


@dataclass(frozen=True)
class CallbackEvent:
    """A provider callback reduced to the fields the engine acts on."""

    transaction_id: str
    outcome: ProviderStatus
    reason: Optional[str] = None


def _explicit(success: Tuple[str, ...], failure: Tuple[str, ...]) -> Callable[[Any], ProviderStatus]:
    """Success and failure vocabularies are listed; anything else is pending."""

    def classify(status: Any) -> ProviderStatus:
        status = str(status) if status is not None else ""
        if status in success:
            return COMPLETED
        if status in failure:
            return FAILED
        return PENDING

    return classify


def _binary(success: Tuple[str, ...]) -> Callable[[Any], ProviderStatus]:
    """Only success is listed; any other status is a failure."""

    def classify(status: Any) -> ProviderStatus:
        return COMPLETED if str(status) in success else FAILED

    return classify


@dataclass(frozen=True)
class _Mapping:
    id_fields: Tuple[str, ...]
    classify: Callable[[Any], ProviderStatus]
    # Status values used when synthesizing a payload from a polled outcome
    completed_value: str
    failed_value: str


CALLBACK_MAPPINGS: Dict[str, _Mapping] = {
    "mtn": _Mapping(
        ("externalId",),
        _explicit(("SUCCESSFUL",), ("FAILED", "REJECTED", "TIMEOUT")),
        "SUCCESSFUL",
        "FAILED",
    ),
    "moov": _Mapping(("reference",), _explicit(("SUCCESS",), ("FAILED",)), "SUCCESS", "FAILED"),
    "flooz": _Mapping(("orderId",), _binary(("00",)), "00", "FAILED"),
    "orange": _Mapping(("reference",), _binary(("SUCCESSFUL",)), "SUCCESSFUL", "FAILED"),
    "wave": _Mapping(("externalReference",), _binary(("SUCCESSFUL",)), "SUCCESSFUL", "FAILED"),
    "paypal": _Mapping(
        ("transaction_id", "orderID"), _binary(("success", "COMPLETED")), "COMPLETED", "FAILED"
    ),
    "stripe": _Mapping(("transaction_id",), _binary(("success",)), "success", "failed"),
}

STRIPE_COMPLETED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
STRIPE_FAILED_EVENTS = ("checkout.session.expired", "checkout.session.async_payment_failed")


class CallbackNormalizer:
    """Maps raw provider payloads to CallbackEvents."""

    def normalize(self, provider: str, payload: Mapping[str, Any]) -> CallbackEvent:
        """
        Normalize a provider callback.

        Args:
            provider: Provider id the callback arrived for
            payload: Decoded callback body (plus query parameters)

        Returns:
            CallbackEvent: Transaction id, outcome and optional failure reason

        Raises:
            UnsupportedProvider: Unknown provider id
            InvalidCallbackPayload: No transaction id in the payload
        """
        mapping = CALLBACK_MAPPINGS.get(provider)
        if mapping is None:
            raise UnsupportedProvider(provider)

        if provider == "stripe" and "type" in payload and "data" in payload:
            return self._normalize_stripe_event(payload)

        transaction_id = next(
            (str(payload[field]) for field in mapping.id_fields if payload.get(field)),
            None,
        )
        if not transaction_id:
            raise InvalidCallbackPayload(
                f"{provider} callback has no transaction reference",
                provider=provider,
                expected_fields=list(mapping.id_fields),
            )

        outcome = mapping.classify(payload.get("status"))
        reason = None
        if outcome is FAILED:
            reason = _reason(payload)
        return CallbackEvent(transaction_id=transaction_id, outcome=outcome, reason=reason)

    @staticmethod
    def _normalize_stripe_event(event: Mapping[str, Any]) -> CallbackEvent:
        session = (event.get("data") or {}).get("object") or {}
        metadata = session.get("metadata") or {}
        transaction_id = session.get("client_reference_id") or metadata.get("transaction_id")
        if not transaction_id:
            raise InvalidCallbackPayload(
                "Stripe event has no client_reference_id",
                provider="stripe",
                event_type=event.get("type"),
            )

        event_type = event.get("type")
        if event_type in STRIPE_COMPLETED_EVENTS and session.get("payment_status") == "paid":
            outcome = COMPLETED
        elif event_type in STRIPE_FAILED_EVENTS:
            outcome = FAILED
        else:
            # Unpaid completions (delayed methods) and unrelated event types
            outcome = PENDING

        reason = f"Stripe {event_type}" if outcome is FAILED else None
        return CallbackEvent(transaction_id=str(transaction_id), outcome=outcome, reason=reason)

    def synthesize(
        self, provider: str, transaction_id: str, outcome: ProviderStatus
    ) -> Dict[str, Any]:
        """
        Build a provider-shaped payload for an outcome learned by polling.

        Lets status checks and sweeps go through the same path as real callbacks.
        """
        mapping = CALLBACK_MAPPINGS.get(provider)
        if mapping is None:
            raise UnsupportedProvider(provider)
        if outcome is PENDING:
            raise ValueError("Only terminal outcomes can be synthesized")

        status = mapping.completed_value if outcome is COMPLETED else mapping.failed_value
        payload: Dict[str, Any] = {
            mapping.id_fields[0]: transaction_id,
            "status": status,
            "source": "status_check",
        }
        if outcome is FAILED:
            payload["reason"] = f"Reported failed by {provider} status check"
        return payload


def _reason(payload: Mapping[str, Any]) -> str:
    reason = payload.get("reason") or payload.get("message")
    if isinstance(reason, Mapping):
        reason = reason.get("message") or reason.get("code")
    return str(reason) if reason else DEFAULT_FAILURE_REASON
