"""Read-only transaction reports for the admin back office."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from crowdpay.core.currency import CurrencyConverter
from crowdpay.database.models import COMPLETED, PaymentTransaction
from crowdpay.database.store import TransactionStore
from crowdpay.exceptions import ReportingError, UnsupportedCurrency

logger = structlog.get_logger(__name__)


def _bucket() -> Dict[str, Any]:
    return {"count": 0, "amount": Decimal("0"), "successful": 0}


class ReportingAggregator:
    """
    Aggregates transactions over a period.

    by_currency totals stay in each transaction's own currency. Every other
    amount (summary, by_provider, by_project) is converted into
    report_currency so unlike currencies are never added together.
    """

    def __init__(
        self,
        store: TransactionStore,
        converter: CurrencyConverter,
        report_currency: str = "XOF",
    ):
        self.store = store
        self.converter = converter
        self.report_currency = report_currency.upper()

    def _in_report_currency(self, transaction: PaymentTransaction) -> Optional[Decimal]:
        try:
            return self.converter.convert(
                transaction.amount, transaction.currency, self.report_currency
            )
        except UnsupportedCurrency:
            logger.warning(
                "report_amount_not_convertible",
                transaction_id=transaction.transaction_id,
                currency=transaction.currency,
                report_currency=self.report_currency,
            )
            return None

    async def generate_report(
        self, start: datetime, end: datetime, status: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Summarize transactions created in [start, end].

        Args:
            start: Period start (inclusive)
            end: Period end (inclusive)
            status: Only include transactions with this status

        Returns:
            Dict[str, Any]: period, summary, by_currency, by_provider, by_project.
            summary.unconverted_transactions counts rows left out of the
            converted totals because their currency has no exchange rate.

        Raises:
            ReportingError: If the transactions cannot be loaded
        """
        try:
            transactions = await self.store.find_transactions_between(start, end, status)
            projects = await self.store.find_projects_by_ids(
                {transaction.project_id for transaction in transactions}
            )
        except Exception as e:
            logger.error("report_generation_failed", start=str(start), end=str(end), error=str(e))
            raise ReportingError(f"Failed to generate report: {e}") from e

        total_amount = Decimal("0")
        successful = 0
        unconverted = 0
        by_currency: Dict[str, Dict[str, Any]] = {}
        by_provider: Dict[str, Dict[str, Any]] = {}
        by_project: Dict[int, Dict[str, Any]] = {}

        for transaction in transactions:
            is_success = transaction.status == COMPLETED
            successful += is_success

            native = by_currency.setdefault(transaction.currency, _bucket())
            native["count"] += 1
            native["amount"] += transaction.amount
            native["successful"] += is_success

            converted = self._in_report_currency(transaction)
            if converted is None:
                unconverted += 1
            else:
                total_amount += converted
            for buckets, key in (
                (by_provider, transaction.provider),
                (by_project, transaction.project_id),
            ):
                bucket = buckets.setdefault(key, _bucket())
                bucket["count"] += 1
                bucket["amount"] += converted or 0
                bucket["successful"] += is_success

        count = len(transactions)
        success_rate = round(successful / count * 100, 2) if count else 0.0

        project_rows: List[Dict[str, Any]] = []
        for project_id, bucket in by_project.items():
            project = projects.get(project_id)
            project_rows.append(
                {
                    "project_id": project_id,
                    "title": project.title if project else f"Project #{project_id}",
                    **bucket,
                }
            )

        logger.info(
            "report_generated",
            start=str(start),
            end=str(end),
            status=status,
            total_transactions=count,
        )

        return {
            "period": {"start": start, "end": end},
            "summary": {
                "total_transactions": count,
                "total_amount": total_amount,
                "currency": self.report_currency,
                "successful_transactions": successful,
                "success_rate": success_rate,
                "unconverted_transactions": unconverted,
            },
            "by_currency": by_currency,
            "by_provider": by_provider,
            "by_project": project_rows,
        }
