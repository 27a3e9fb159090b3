"""
Tests for provider callback normalization.
"""
import pytest

from crowdpay.exceptions import InvalidCallbackPayload, UnsupportedProvider
from crowdpay.integrations.base import ProviderStatus
from crowdpay.integrations.callbacks import CallbackNormalizer


@pytest.fixture
def normalizer() -> CallbackNormalizer:
    return CallbackNormalizer()


@pytest.mark.unit
class TestCallbackNormalizer:
    """Provider payload shapes reduced to CallbackEvents."""

    @pytest.mark.parametrize(
        "provider,payload,expected",
        [
            ("mtn", {"externalId": "TX-1", "status": "SUCCESSFUL"}, ProviderStatus.COMPLETED),
            ("mtn", {"externalId": "TX-1", "status": "REJECTED"}, ProviderStatus.FAILED),
            ("mtn", {"externalId": "TX-1", "status": "ONGOING"}, ProviderStatus.PENDING),
            ("moov", {"reference": "TX-1", "status": "SUCCESS"}, ProviderStatus.COMPLETED),
            ("moov", {"reference": "TX-1", "status": "PROCESSING"}, ProviderStatus.PENDING),
            ("flooz", {"orderId": "TX-1", "status": "00"}, ProviderStatus.COMPLETED),
            ("flooz", {"orderId": "TX-1", "status": "51"}, ProviderStatus.FAILED),
            ("orange", {"reference": "TX-1", "status": "SUCCESSFUL"}, ProviderStatus.COMPLETED),
            ("wave", {"externalReference": "TX-1", "status": "CANCELLED"}, ProviderStatus.FAILED),
            ("paypal", {"transaction_id": "TX-1", "status": "success"}, ProviderStatus.COMPLETED),
            ("paypal", {"orderID": "TX-1", "status": "cancel"}, ProviderStatus.FAILED),
            ("stripe", {"transaction_id": "TX-1", "status": "success"}, ProviderStatus.COMPLETED),
        ],
    )
    def test_outcomes(self, normalizer, provider, payload, expected) -> None:
        event = normalizer.normalize(provider, payload)

        assert event.transaction_id == "TX-1"
        assert event.outcome is expected

    def test_failure_reason(self, normalizer) -> None:
        event = normalizer.normalize(
            "mtn", {"externalId": "TX-1", "status": "FAILED", "reason": "PAYER_NOT_FOUND"}
        )
        assert event.reason == "PAYER_NOT_FOUND"

        event = normalizer.normalize("wave", {"externalReference": "TX-1", "status": "FAILED"})
        assert event.reason == "Payment failed"

    def test_missing_transaction_id(self, normalizer) -> None:
        with pytest.raises(InvalidCallbackPayload):
            normalizer.normalize("mtn", {"status": "SUCCESSFUL"})

    def test_unknown_provider(self, normalizer) -> None:
        with pytest.raises(UnsupportedProvider):
            normalizer.normalize("bitcoin", {"transaction_id": "TX-1"})

    def test_stripe_checkout_events(self, normalizer) -> None:
        paid = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"client_reference_id": "TX-1", "payment_status": "paid"}},
        }
        unpaid = {
            "id": "evt_2",
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"transaction_id": "TX-2"}, "payment_status": "unpaid"}},
        }
        expired = {
            "id": "evt_3",
            "type": "checkout.session.expired",
            "data": {"object": {"client_reference_id": "TX-3"}},
        }

        assert normalizer.normalize("stripe", paid).outcome is ProviderStatus.COMPLETED
        event = normalizer.normalize("stripe", unpaid)
        assert (event.transaction_id, event.outcome) == ("TX-2", ProviderStatus.PENDING)
        event = normalizer.normalize("stripe", expired)
        assert event.outcome is ProviderStatus.FAILED
        assert event.reason == "Stripe checkout.session.expired"

    @pytest.mark.parametrize("provider", ["mtn", "moov", "flooz", "orange", "wave", "paypal", "stripe"])
    def test_synthesized_payloads_normalize_back(self, normalizer, provider) -> None:
        for outcome in (ProviderStatus.COMPLETED, ProviderStatus.FAILED):
            payload = normalizer.synthesize(provider, "TX-9", outcome)

            event = normalizer.normalize(provider, payload)

            assert event.transaction_id == "TX-9"
            assert event.outcome is outcome

    def test_pending_cannot_be_synthesized(self, normalizer) -> None:
        with pytest.raises(ValueError):
            normalizer.synthesize("mtn", "TX-1", ProviderStatus.PENDING)
