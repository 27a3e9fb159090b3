"""
Tests for transaction reports.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import PROJECT_ID, make_pending
from crowdpay.core.currency import CurrencyConverter
from crowdpay.core.reporting import ReportingAggregator
from crowdpay.database.models import COMPLETED, utcnow
from crowdpay.exceptions import ReportingError


@pytest.fixture
def aggregator(store, test_settings) -> ReportingAggregator:
    return ReportingAggregator(store, CurrencyConverter(test_settings.exchange_rates), "XOF")


@pytest.mark.unit
class TestReportingAggregator:
    @pytest.mark.asyncio
    async def test_report_breakdowns(self, engine, store, aggregator, project) -> None:
        completed = await make_pending(store, provider="mtn", amount=Decimal("5000"))
        await make_pending(store, provider="mtn", amount=Decimal("2000"))
        await make_pending(store, provider="moov", amount=Decimal("3000"), project_id=77)
        await engine.handle_callback(
            "mtn", {"externalId": completed.transaction_id, "status": "SUCCESSFUL"}
        )
        # Outside the period
        await make_pending(store, amount=Decimal("9999"), age=timedelta(days=40))

        end = utcnow() + timedelta(minutes=1)
        report = await aggregator.generate_report(end - timedelta(days=30), end)

        assert report["summary"] == {
            "total_transactions": 3,
            "total_amount": Decimal("10000"),
            "currency": "XOF",
            "successful_transactions": 1,
            "success_rate": 33.33,
            "unconverted_transactions": 0,
        }
        assert report["by_currency"]["XOF"]["count"] == 3
        assert report["by_provider"]["mtn"] == {
            "count": 2,
            "amount": Decimal("7000"),
            "successful": 1,
        }
        rows = {row["project_id"]: row for row in report["by_project"]}
        assert rows[PROJECT_ID]["title"] == "Solar pumps for Kara"
        assert rows[77]["title"] == "Project #77"

    @pytest.mark.asyncio
    async def test_status_filter(self, engine, store, aggregator, project) -> None:
        completed = await make_pending(store)
        await make_pending(store)
        await engine.handle_callback(
            "mtn", {"externalId": completed.transaction_id, "status": "SUCCESSFUL"}
        )

        end = utcnow() + timedelta(minutes=1)
        report = await aggregator.generate_report(end - timedelta(days=1), end, status=COMPLETED)

        assert report["summary"]["total_transactions"] == 1
        assert report["summary"]["success_rate"] == 100.0

    @pytest.mark.asyncio
    async def test_empty_period(self, aggregator) -> None:
        end = utcnow()
        report = await aggregator.generate_report(end - timedelta(days=1), end)

        assert report["summary"]["total_transactions"] == 0
        assert report["summary"]["success_rate"] == 0.0
        assert report["by_project"] == []

    @pytest.mark.asyncio
    async def test_mixed_currencies_are_totalled_in_report_currency(
        self, store, aggregator, project
    ) -> None:
        await make_pending(store, amount=Decimal("6000"))
        await make_pending(
            store, provider="paypal", method="paypal", amount=Decimal("10"), currency="USD"
        )
        await make_pending(
            store, provider="stripe", method="card", amount=Decimal("1"), currency="GBP"
        )

        end = utcnow() + timedelta(minutes=1)
        report = await aggregator.generate_report(end - timedelta(days=1), end)

        # 10 USD at 600 XOF; GBP has no rate
        assert report["summary"]["total_amount"] == Decimal("12000")
        assert report["summary"]["currency"] == "XOF"
        assert report["summary"]["unconverted_transactions"] == 1
        assert report["by_currency"]["USD"]["amount"] == Decimal("10")
        assert report["by_provider"]["paypal"]["amount"] == Decimal("6000")
        rows = {row["project_id"]: row for row in report["by_project"]}
        assert rows[PROJECT_ID]["amount"] == Decimal("12000")
        assert rows[PROJECT_ID]["count"] == 3

    @pytest.mark.asyncio
    async def test_store_failure_raises_reporting_error(self, aggregator, store, mocker) -> None:
        mocker.patch.object(
            store, "find_transactions_between", side_effect=RuntimeError("db gone")
        )

        with pytest.raises(ReportingError):
            end = utcnow()
            await aggregator.generate_report(end - timedelta(days=1), end)
