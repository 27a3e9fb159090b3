"""
Tests for the reconciliation engine state machine.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import CONTRIBUTOR_ID, CREATOR_ID, PROJECT_ID, make_pending
from crowdpay.core.notifications import (
    CONTRIBUTION_FAILED,
    CONTRIBUTION_SUCCESS,
    NEW_CONTRIBUTION,
    TRANSACTION_CANCELLED,
)
from crowdpay.database.models import CANCELLED, COMPLETED, FAILED, PENDING, Contribution, utcnow
from crowdpay.exceptions import (
    AlreadyCompleted,
    InvalidAmount,
    InvalidCallbackPayload,
    InvalidPayer,
    ProviderRejected,
    ProviderUnreachable,
    TransactionNotFound,
    UnsupportedProvider,
)
from crowdpay.integrations.base import ProviderStatus


async def count_contributions(session_factory, transaction_id: str) -> int:
    async with session_factory() as db:
        return await db.scalar(
            select(func.count(Contribution.id)).where(
                Contribution.transaction_id == transaction_id
            )
        )


@pytest.mark.unit
class TestInitiatePayment:
    """Payment initiation."""

    @pytest.mark.asyncio
    async def test_mobile_money_initiation(self, engine, store, fake_adapters, project) -> None:
        result = await engine.initiate_payment(
            provider="mtn",
            payer="+228 90 12 34 56",
            amount=5000,
            project_id=PROJECT_ID,
            user_id=CONTRIBUTOR_ID,
        )

        assert result["success"] is True
        assert result["status"] == PENDING
        assert result["transaction_id"].startswith("TX-")

        request = fake_adapters["mtn"].requests[0]
        assert request.phone_number == "22890123456"
        assert request.amount == Decimal("5000")
        assert request.callback_url == "https://pay.example.test/webhooks/mtn"

        stored = await store.find_transaction_by_id(result["transaction_id"])
        assert stored.status == PENDING
        assert stored.method == "mobile_money"
        assert stored.provider_reference == f"mtn-ref-{result['transaction_id']}"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, engine) -> None:
        with pytest.raises(UnsupportedProvider):
            await engine.initiate_payment("bitcoin", "90123456", 5000, PROJECT_ID, CONTRIBUTOR_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, "abc"])
    async def test_invalid_amount(self, engine, amount) -> None:
        with pytest.raises(InvalidAmount):
            await engine.initiate_payment("mtn", "90123456", amount, PROJECT_ID, CONTRIBUTOR_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "provider,payer,amount",
        [
            ("mtn", "90123456", "0.001"),
            ("paypal", None, 1),
            ("stripe", None, 2),
            ("mtn", "90123456", "1000000000000"),
        ],
    )
    async def test_amount_unrepresentable_after_rounding(
        self, engine, store, fake_adapters, provider, payer, amount
    ) -> None:
        with pytest.raises(InvalidAmount):
            await engine.initiate_payment(
                provider, payer, amount, PROJECT_ID, CONTRIBUTOR_ID, "x", "XOF"
            )

        assert fake_adapters[provider].requests == []
        assert await store.find_pending_older_than(utcnow() + timedelta(minutes=1)) == []

    @pytest.mark.asyncio
    async def test_amount_is_rounded_to_cents(self, engine, store) -> None:
        initiated = await engine.initiate_payment(
            "mtn", "90123456", "5000.005", PROJECT_ID, CONTRIBUTOR_ID
        )

        transaction = await store.find_transaction_by_id(initiated["transaction_id"])
        assert transaction.amount == Decimal("5000.01")

    @pytest.mark.asyncio
    async def test_payer_not_valid_for_operator(self, engine, fake_adapters) -> None:
        # 96 is a Moov prefix in Togo
        with pytest.raises(InvalidPayer):
            await engine.initiate_payment("mtn", "96123456", 5000, PROJECT_ID, CONTRIBUTOR_ID)

        assert fake_adapters["mtn"].requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_class", [ProviderRejected, ProviderUnreachable])
    async def test_provider_failure_leaves_transaction_pending(
        self, engine, store, fake_adapters, error_class
    ) -> None:
        fake_adapters["moov"].initiate_error = error_class("Insufficient funds", provider="moov")

        with pytest.raises(error_class) as exc_info:
            await engine.initiate_payment("moov", "96123456", 5000, PROJECT_ID, CONTRIBUTOR_ID)

        transaction_id = exc_info.value.context["transaction_id"]
        stored = await store.find_transaction_by_id(transaction_id)
        assert stored.status == PENDING
        assert stored.error_message == "Insufficient funds"

    @pytest.mark.asyncio
    async def test_gateway_amount_converted_to_settlement_currency(
        self, engine, store, fake_adapters, project
    ) -> None:
        fake_adapters["stripe"].redirect_url = "https://checkout.stripe.test/c/pay"

        result = await engine.initiate_payment(
            "stripe", None, 6559.57, PROJECT_ID, CONTRIBUTOR_ID, currency="XOF"
        )

        assert result["currency"] == "EUR"
        assert result["amount"] == Decimal("10.00")
        assert result["redirect_url"] == "https://checkout.stripe.test/c/pay"
        stored = await store.find_transaction_by_id(result["transaction_id"])
        assert stored.method == "card"
        assert stored.requested_currency == "XOF"
        assert stored.phone_number is None


@pytest.mark.unit
class TestHandleCallback:
    """Callback resolution."""

    @pytest.mark.asyncio
    async def test_successful_mtn_payment_credits_project(
        self, engine, store, session_factory, sink, project
    ) -> None:
        initiated = await engine.initiate_payment(
            "mtn", "90123456", 5000, PROJECT_ID, CONTRIBUTOR_ID
        )
        transaction_id = initiated["transaction_id"]

        result = await engine.handle_callback(
            "mtn", {"externalId": transaction_id, "status": "SUCCESSFUL"}
        )

        assert result["applied"] is True
        assert result["status"] == COMPLETED
        updated = await store.find_project_by_id(PROJECT_ID)
        assert updated.current_amount == Decimal("5000")
        assert await count_contributions(session_factory, transaction_id) == 1

        stored = await store.find_transaction_by_id(transaction_id)
        assert stored.raw_callback == {"externalId": transaction_id, "status": "SUCCESSFUL"}

        assert sink.of_type(CONTRIBUTION_SUCCESS)[0]["user_id"] == CONTRIBUTOR_ID
        assert "Solar pumps for Kara" in sink.of_type(CONTRIBUTION_SUCCESS)[0]["content"]
        assert sink.of_type(NEW_CONTRIBUTION)[0]["user_id"] == CREATOR_ID

    @pytest.mark.asyncio
    async def test_duplicate_callback_is_a_no_op(
        self, engine, store, session_factory, sink, project
    ) -> None:
        transaction = await make_pending(store)
        payload = {"externalId": transaction.transaction_id, "status": "SUCCESSFUL"}

        await engine.handle_callback("mtn", payload)
        second = await engine.handle_callback("mtn", payload)

        assert second["applied"] is False
        assert second["status"] == COMPLETED
        updated = await store.find_project_by_id(PROJECT_ID)
        assert updated.current_amount == Decimal("5000")
        assert await count_contributions(session_factory, transaction.transaction_id) == 1
        assert len(sink.of_type(CONTRIBUTION_SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_late_failure_does_not_undo_completion(self, engine, store, project) -> None:
        transaction = await make_pending(store)

        await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "SUCCESSFUL"}
        )
        result = await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "FAILED"}
        )

        assert result["status"] == COMPLETED
        assert result["applied"] is False

    @pytest.mark.asyncio
    async def test_failed_callback(self, engine, store, sink, project) -> None:
        transaction = await make_pending(store, provider="wave")

        result = await engine.handle_callback(
            "wave",
            {
                "externalReference": transaction.transaction_id,
                "status": "FAILED",
                "reason": "Payer cancelled",
            },
        )

        assert result["status"] == FAILED
        stored = await store.find_transaction_by_id(transaction.transaction_id)
        assert stored.error_message == "Payer cancelled"
        assert (await store.find_project_by_id(PROJECT_ID)).current_amount == Decimal("0")
        assert [e["type"] for e in sink.events] == [CONTRIBUTION_FAILED]

    @pytest.mark.asyncio
    async def test_pending_callback_leaves_transaction_unchanged(self, engine, store) -> None:
        transaction = await make_pending(store)

        result = await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "PENDING"}
        )

        assert result["applied"] is False
        assert result["status"] == PENDING

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, engine) -> None:
        with pytest.raises(TransactionNotFound):
            await engine.handle_callback("mtn", {"externalId": "TX-missing", "status": "SUCCESSFUL"})

    @pytest.mark.asyncio
    async def test_callback_from_other_provider_rejected(self, engine, store) -> None:
        transaction = await make_pending(store, provider="mtn")

        with pytest.raises(InvalidCallbackPayload):
            await engine.handle_callback(
                "moov", {"reference": transaction.transaction_id, "status": "SUCCESS"}
            )

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_payment(
        self, engine, store, sink, project
    ) -> None:
        sink.fail = True
        transaction = await make_pending(store)

        result = await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "SUCCESSFUL"}
        )

        assert result["status"] == COMPLETED
        assert (await store.find_project_by_id(PROJECT_ID)).current_amount == Decimal("5000")

    @pytest.mark.asyncio
    async def test_converted_gateway_payment_credits_requested_amount(
        self, engine, store, project
    ) -> None:
        initiated = await engine.initiate_payment(
            "paypal", None, 6000, PROJECT_ID, CONTRIBUTOR_ID, currency="XOF"
        )

        await engine.handle_callback(
            "paypal", {"transaction_id": initiated["transaction_id"], "status": "success"}
        )

        updated = await store.find_project_by_id(PROJECT_ID)
        assert updated.current_amount == Decimal("6000")
        contribution = await store.find_contribution_by_transaction_id(initiated["transaction_id"])
        assert contribution.payment_method == "paypal"


@pytest.mark.unit
class TestCheckStatus:
    """On-demand status checks."""

    @pytest.mark.asyncio
    async def test_polled_completion_is_applied(
        self, engine, store, fake_adapters, session_factory, project
    ) -> None:
        transaction = await make_pending(store)
        fake_adapters["mtn"].status = ProviderStatus.COMPLETED

        result = await engine.check_status(transaction.transaction_id)

        assert result["transaction"]["status"] == COMPLETED
        assert result["contribution"]["amount"] == Decimal("5000")
        assert result["project"]["current_amount"] == Decimal("5000")
        assert result["project"]["progress"] == 5
        assert result["provider_error"] is None
        stored = await store.find_transaction_by_id(transaction.transaction_id)
        assert stored.raw_callback["source"] == "status_check"

    @pytest.mark.asyncio
    async def test_still_pending(self, engine, store, fake_adapters, project) -> None:
        transaction = await make_pending(store)

        result = await engine.check_status(transaction.transaction_id)

        assert result["transaction"]["status"] == PENDING
        assert result["contribution"] is None
        assert fake_adapters["mtn"].status_checks == [transaction.transaction_id]

    @pytest.mark.asyncio
    async def test_provider_error_is_reported_not_raised(
        self, engine, store, fake_adapters, project
    ) -> None:
        transaction = await make_pending(store)
        fake_adapters["mtn"].status_error = ProviderUnreachable("MTN down", provider="mtn")

        result = await engine.check_status(transaction.transaction_id)

        assert result["transaction"]["status"] == PENDING
        assert result["provider_error"] == "MTN down"

    @pytest.mark.asyncio
    async def test_terminal_transaction_is_not_polled(
        self, engine, store, fake_adapters, project
    ) -> None:
        transaction = await make_pending(store)
        await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "FAILED"}
        )

        result = await engine.check_status(transaction.transaction_id)

        assert result["transaction"]["status"] == FAILED
        assert fake_adapters["mtn"].status_checks == []

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, engine) -> None:
        with pytest.raises(TransactionNotFound):
            await engine.check_status("TX-missing")


@pytest.mark.unit
class TestCancelTransaction:
    """Cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, engine, store, fake_adapters, sink) -> None:
        transaction = await make_pending(store, provider="paypal", method="paypal")

        result = await engine.cancel_transaction(transaction.transaction_id)

        assert result["applied"] is True
        assert result["status"] == CANCELLED
        assert result["provider_cancelled"] is True
        assert fake_adapters["paypal"].cancelled == [transaction.transaction_id]
        assert [e["type"] for e in sink.events] == [TRANSACTION_CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, engine, store, sink) -> None:
        transaction = await make_pending(store)
        await engine.cancel_transaction(transaction.transaction_id)

        result = await engine.cancel_transaction(transaction.transaction_id)

        assert result["applied"] is False
        assert result["status"] == CANCELLED
        assert len(sink.events) == 1

    @pytest.mark.asyncio
    async def test_cancel_completed_raises(self, engine, store, project) -> None:
        transaction = await make_pending(store)
        await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "SUCCESSFUL"}
        )

        with pytest.raises(AlreadyCompleted):
            await engine.cancel_transaction(transaction.transaction_id)

    @pytest.mark.asyncio
    async def test_failed_transaction_returned_unchanged(self, engine, store, project) -> None:
        transaction = await make_pending(store)
        await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "FAILED"}
        )

        result = await engine.cancel_transaction(transaction.transaction_id)

        assert result["applied"] is False
        assert result["status"] == FAILED

    @pytest.mark.asyncio
    async def test_provider_cancel_failure_still_cancels(
        self, engine, store, fake_adapters
    ) -> None:
        transaction = await make_pending(store, provider="stripe", method="card")
        fake_adapters["stripe"].cancel_error = ProviderUnreachable("Stripe down")

        result = await engine.cancel_transaction(transaction.transaction_id)

        assert result["status"] == CANCELLED
        assert result["provider_cancelled"] is False

    @pytest.mark.asyncio
    async def test_slow_provider_cancel_is_bounded(
        self, engine, store, fake_adapters, mocker
    ) -> None:
        transaction = await make_pending(store)

        async def hang(_transaction):
            await asyncio.sleep(5)
            return True

        mocker.patch.object(fake_adapters["mtn"], "cancel", side_effect=hang)

        result = await engine.cancel_transaction(transaction.transaction_id)

        assert result["status"] == CANCELLED
        assert result["provider_cancelled"] is False

    @pytest.mark.asyncio
    async def test_callback_after_cancel_is_ignored(self, engine, store, project) -> None:
        transaction = await make_pending(store)
        await engine.cancel_transaction(transaction.transaction_id)

        result = await engine.handle_callback(
            "mtn", {"externalId": transaction.transaction_id, "status": "SUCCESSFUL"}
        )

        assert result["status"] == CANCELLED
        assert (await store.find_project_by_id(PROJECT_ID)).current_amount == Decimal("0")


@pytest.mark.unit
class TestReconcilePending:
    """Reconciliation sweep."""

    @pytest.mark.asyncio
    async def test_only_stale_transactions_are_swept(
        self, engine, store, fake_adapters, project
    ) -> None:
        stale = [await make_pending(store, age=timedelta(hours=30)) for _ in range(3)]
        for _ in range(7):
            await make_pending(store, age=timedelta(hours=1))
        fake_adapters["mtn"].status = ProviderStatus.COMPLETED

        result = await engine.reconcile_pending(timedelta(hours=24))

        assert result["results"] == {
            "processed": 3,
            "completed": 3,
            "failed": 0,
            "remained_pending": 0,
            "errors": 0,
        }
        assert sorted(fake_adapters["mtn"].status_checks) == sorted(
            t.transaction_id for t in stale
        )
        assert (await store.find_project_by_id(PROJECT_ID)).current_amount == Decimal("15000")

    @pytest.mark.asyncio
    async def test_one_provider_error_does_not_stop_the_sweep(
        self, engine, store, fake_adapters, project
    ) -> None:
        await make_pending(store, provider="mtn", age=timedelta(hours=30))
        await make_pending(store, provider="moov", age=timedelta(hours=30))
        await make_pending(store, provider="wave", age=timedelta(hours=30))
        fake_adapters["mtn"].status_error = ProviderUnreachable("MTN down", provider="mtn")
        fake_adapters["moov"].status = ProviderStatus.FAILED
        fake_adapters["wave"].status = ProviderStatus.PENDING

        result = await engine.reconcile_pending(timedelta(hours=24))

        assert result["results"] == {
            "processed": 3,
            "completed": 0,
            "failed": 1,
            "remained_pending": 1,
            "errors": 1,
        }

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_counted(
        self, engine, store, fake_adapters, project
    ) -> None:
        await make_pending(store, provider="mtn", age=timedelta(hours=30))
        await make_pending(store, provider="orange", age=timedelta(hours=30))
        fake_adapters["mtn"].status_error = RuntimeError("bug")
        fake_adapters["orange"].status = ProviderStatus.COMPLETED

        result = await engine.reconcile_pending()

        assert result["results"]["errors"] == 1
        assert result["results"]["completed"] == 1
        assert result["older_than_hours"] == 24

    @pytest.mark.asyncio
    async def test_empty_sweep(self, engine) -> None:
        result = await engine.reconcile_pending()

        assert result["success"] is True
        assert result["results"]["processed"] == 0


@pytest.mark.unit
class TestProviderCatalogue:
    def test_list_providers(self, engine) -> None:
        ids = [p["id"] for p in engine.list_providers()["providers"]]

        assert ids == ["mtn", "moov", "flooz", "orange", "wave", "paypal", "stripe"]

    def test_identify_provider(self, engine) -> None:
        result = engine.identify_provider("+228 96 12 34 56")

        assert result == {
            "phone_number": "22896123456",
            "provider": "moov",
            "provider_name": "Moov Money",
        }
