"""
Reconciliation engine: the payment transaction state machine.

States: pending -> completed | failed | cancelled. Terminal states are final.

Three independent triggers resolve pending transactions:
- Provider webhooks (handle_callback)
- On-demand status checks (check_status)
- The periodic sweep of stale transactions (reconcile_pending)

All of them end in TransactionStore.resolve_transaction, whose conditional
update makes sure a payment is credited to its project exactly once.
"""
import asyncio
import secrets
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import structlog

from crowdpay.config import ProviderRegistry, Settings
from crowdpay.core.currency import MAX_AMOUNT, CurrencyConverter
from crowdpay.core.notifications import (
    CONTRIBUTION_FAILED,
    CONTRIBUTION_SUCCESS,
    NEW_CONTRIBUTION,
    TRANSACTION_CANCELLED,
    LoggingNotificationSink,
    NotificationSink,
    emit_safely,
)
from crowdpay.core.phone_resolver import PhoneResolver
from crowdpay.database.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    Contribution,
    PaymentTransaction,
    Project,
    utcnow,
)
from crowdpay.database.store import ResolutionResult, TransactionStore
from crowdpay.exceptions import (
    AlreadyCompleted,
    InvalidAmount,
    InvalidCallbackPayload,
    InvalidPayer,
    PaymentError,
    ProviderRejected,
    ProviderUnreachable,
    TransactionNotFound,
    UnsupportedCurrency,
    UnsupportedProvider,
)
from crowdpay.integrations.base import PaymentRequest, ProviderAdapter, ProviderStatus
from crowdpay.integrations.callbacks import CallbackNormalizer
from crowdpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CANCEL_REASON = "Cancelled by the contributor or an administrator"


def generate_transaction_id() -> str:
    """Unique transaction id, also used as the provider idempotency key."""
    return f"TX-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def serialize_transaction(transaction: PaymentTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "transaction_id": transaction.transaction_id,
        "status": transaction.status,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "requested_amount": transaction.requested_amount,
        "requested_currency": transaction.requested_currency,
        "method": transaction.method,
        "provider": transaction.provider,
        "phone_number": transaction.phone_number,
        "provider_reference": transaction.provider_reference,
        "error_message": transaction.error_message,
        "user_id": transaction.user_id,
        "project_id": transaction.project_id,
        "created_at": transaction.created_at,
        "updated_at": transaction.updated_at,
    }


def serialize_contribution(contribution: Contribution) -> Dict[str, Any]:
    return {
        "id": contribution.id,
        "amount": contribution.amount,
        "status": contribution.status,
        "payment_method": contribution.payment_method,
        "created_at": contribution.created_at,
    }


def serialize_project(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "title": project.title,
        "currency": project.currency,
        "current_amount": project.current_amount,
        "target_amount": project.target_amount,
        "progress": project.progress,
    }


class ReconciliationEngine:
    """
    Orchestrates payments across providers and resolves their outcomes.

    Collaborators are injected so tests can swap the store, adapters and
    notification sink for doubles.
    """

    def __init__(
        self,
        store: TransactionStore,
        registry: ProviderRegistry,
        adapters: Mapping[str, ProviderAdapter],
        settings: Settings,
        notifications: Optional[NotificationSink] = None,
        normalizer: Optional[CallbackNormalizer] = None,
        resolver: Optional[PhoneResolver] = None,
        converter: Optional[CurrencyConverter] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            store: Transaction store gateway
            registry: Provider static configuration
            adapters: Provider adapters keyed by provider id
            settings: Application settings
            notifications: Notification sink (defaults to logging only)
            normalizer: Callback normalizer
            resolver: Phone number resolver
            converter: Currency converter for gateway currencies
        """
        self.store = store
        self.registry = registry
        self.adapters = dict(adapters)
        self.settings = settings
        self.notifications = notifications or LoggingNotificationSink()
        self.normalizer = normalizer or CallbackNormalizer()
        self.resolver = resolver or PhoneResolver(
            settings.default_country_code, registry.mobile_money_ids()
        )
        self.converter = converter or CurrencyConverter(settings.exchange_rates)

        logger.info("reconciliation_engine_initialized", providers=list(self.adapters))

    def _adapter(self, provider: str) -> ProviderAdapter:
        self.registry.get(provider)
        try:
            return self.adapters[provider]
        except KeyError:
            raise UnsupportedProvider(provider) from None

    async def _get_transaction(self, transaction_id: str) -> PaymentTransaction:
        transaction = await self.store.find_transaction_by_id(transaction_id)
        if transaction is None:
            logger.warning("transaction_not_found", transaction_id=transaction_id)
            raise TransactionNotFound(transaction_id)
        return transaction

    # ------------------------------------------------------------------
    # Provider catalogue
    # ------------------------------------------------------------------

    def list_providers(self) -> Dict[str, Any]:
        """Describe the registered providers."""
        return {
            "providers": [
                {
                    "id": config.provider_id,
                    "name": config.name,
                    "kind": config.kind,
                    "method": config.method,
                    "countries": list(config.countries),
                    "currencies": list(config.currencies),
                }
                for config in self.registry
            ]
        }

    def identify_provider(self, phone_number: str) -> Dict[str, Any]:
        """Normalize a phone number and guess its mobile-money operator."""
        normalized = self.resolver.normalize(phone_number)
        provider = self.resolver.identify_provider(normalized) if normalized else None
        return {
            "phone_number": normalized,
            "provider": provider,
            "provider_name": self.registry.get(provider).name if provider else None,
        }

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        provider: str,
        payer: Optional[str],
        amount: Any,
        project_id: int,
        user_id: int,
        description: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a payment with a provider.

        The transaction is persisted as pending before the provider is called.
        If the provider call fails the transaction stays pending with the error
        attached: the provider may have accepted the request even though we
        never saw its answer, so the outcome is left to status checks and the
        sweep.

        Args:
            provider: Provider id
            payer: Payer phone number (mobile money) or payer reference (gateways)
            amount: Amount in the contribution currency
            project_id: Project receiving the contribution
            user_id: Contributor
            description: Payment description shown to the payer
            currency: Contribution currency (defaults to settings.default_currency)

        Returns:
            Dict[str, Any]: Transaction id, provider reference and redirect URL

        Raises:
            UnsupportedProvider: Unknown provider id
            InvalidAmount: Amount is not a positive number
            InvalidPayer: Phone number fails the operator's numbering rules
            UnsupportedCurrency: No exchange rate for a gateway conversion
            ProviderRejected: Provider declined the request
            ProviderUnreachable: Provider could not be reached
        """
        config = self.registry.get(provider)
        adapter = self._adapter(provider)

        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise InvalidAmount(f"Invalid amount: {amount}", amount=str(amount)) from None
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmount("Amount must be positive", amount=str(amount))
        if amount > MAX_AMOUNT:
            raise InvalidAmount("Amount is too large", amount=str(amount))
        amount = self.converter.quantize(amount)
        if amount <= 0:
            raise InvalidAmount("Amount rounds to zero", amount=str(amount))
        currency = (currency or self.settings.default_currency).upper()

        phone_number = None
        if config.is_mobile_money:
            phone_number = self.resolver.normalize(payer or "")
            if not phone_number or not self.resolver.is_valid_for_provider(
                phone_number, provider
            ):
                raise InvalidPayer(
                    f"The number {payer} is not valid for {config.name}",
                    provider=provider,
                    payer=payer,
                )

        provider_amount, provider_currency = self.converter.for_provider(amount, currency, config)
        if provider_amount <= 0:
            raise InvalidAmount(
                f"{amount} {currency} is below the smallest {provider_currency} amount",
                amount=str(amount),
                currency=currency,
                provider=provider,
            )
        transaction_id = generate_transaction_id()

        await self.store.create_transaction(
            transaction_id=transaction_id,
            user_id=user_id,
            project_id=project_id,
            amount=provider_amount,
            currency=provider_currency,
            requested_amount=amount,
            requested_currency=currency,
            method=config.method,
            provider=provider,
            phone_number=phone_number,
        )

        request = PaymentRequest(
            transaction_id=transaction_id,
            amount=provider_amount,
            currency=provider_currency,
            description=description or "",
            callback_url=config.callback_url,
            phone_number=phone_number,
            metadata={"project_id": str(project_id), "user_id": str(user_id)},
        )

        try:
            result = await adapter.initiate(request)
        except (ProviderRejected, ProviderUnreachable) as e:
            metrics.record_payment_initiated(
                provider, "rejected" if isinstance(e, ProviderRejected) else "unreachable"
            )
            logger.error(
                "payment_initiation_failed",
                transaction_id=transaction_id,
                provider=provider,
                error_code=e.error_code,
                error=e.message,
            )
            await self.store.record_provider_response(transaction_id, error_message=e.message)
            e.context.update(transaction_id=transaction_id, provider=provider)
            raise

        await self.store.record_provider_response(
            transaction_id, provider_reference=result.provider_reference
        )
        metrics.record_payment_initiated(provider, "accepted")
        logger.info(
            "payment_initiated",
            transaction_id=transaction_id,
            provider=provider,
            amount=str(provider_amount),
            currency=provider_currency,
            provider_reference=result.provider_reference,
        )

        if config.is_mobile_money:
            message = (
                f"Payment request sent to {payer}. "
                "Please confirm the transaction on your phone."
            )
        else:
            message = f"Continue to {config.name} to complete the payment."

        return {
            "success": True,
            "transaction_id": transaction_id,
            "provider": provider,
            "provider_name": config.name,
            "status": PENDING,
            "amount": provider_amount,
            "currency": provider_currency,
            "requested_amount": amount,
            "requested_currency": currency,
            "provider_reference": result.provider_reference,
            "redirect_url": result.redirect_url,
            "message": message,
        }

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _credit_amount(self, transaction: PaymentTransaction) -> Decimal:
        """Amount to add to the project, in the project's currency."""
        amount = transaction.requested_amount or transaction.amount
        currency = transaction.requested_currency or transaction.currency
        project = await self.store.find_project_by_id(transaction.project_id)
        if project is None or project.currency.upper() == currency.upper():
            return amount
        try:
            return self.converter.convert(amount, currency, project.currency)
        except UnsupportedCurrency as e:
            logger.warning(
                "contribution_conversion_failed",
                transaction_id=transaction.transaction_id,
                currency=currency,
                project_currency=project.currency,
                error=e.message,
            )
            return amount

    async def handle_callback(self, provider: str, raw_payload: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Apply a provider callback.

        Repeated or late callbacks for a terminal transaction return the stored
        record unchanged. Otherwise the outcome is applied with one conditional
        update; on completion the contribution is created and the project
        credited in the same database transaction.

        Args:
            provider: Provider the callback came from
            raw_payload: Provider payload, stored verbatim on resolution

        Returns:
            Dict[str, Any]: Transaction state and whether this call changed it

        Raises:
            UnsupportedProvider: Unknown provider id
            InvalidCallbackPayload: Payload cannot be mapped to a transaction
            TransactionNotFound: No transaction with the referenced id
        """
        start = time.perf_counter()
        try:
            event = self.normalizer.normalize(provider, raw_payload)
        except (UnsupportedProvider, InvalidCallbackPayload) as e:
            metrics.record_callback(provider, "invalid", time.perf_counter() - start)
            logger.warning("callback_rejected", provider=provider, error=e.message)
            raise

        log = logger.bind(transaction_id=event.transaction_id, provider=provider)
        transaction = await self.store.find_transaction_by_id(event.transaction_id)
        if transaction is None:
            metrics.record_callback(provider, "not_found", time.perf_counter() - start)
            log.warning("callback_transaction_not_found")
            raise TransactionNotFound(event.transaction_id)

        if transaction.provider != provider:
            metrics.record_callback(provider, "invalid", time.perf_counter() - start)
            log.warning("callback_provider_mismatch", transaction_provider=transaction.provider)
            raise InvalidCallbackPayload(
                f"Transaction {event.transaction_id} was not initiated with {provider}",
                provider=provider,
                transaction_id=event.transaction_id,
            )

        if transaction.is_terminal:
            metrics.record_callback(provider, "duplicate", time.perf_counter() - start)
            log.info("callback_for_resolved_transaction", status=transaction.status)
            return self._callback_result(transaction, applied=False, message="Transaction already processed")

        if event.outcome is ProviderStatus.PENDING:
            metrics.record_callback(provider, "pending", time.perf_counter() - start)
            log.info("callback_still_pending")
            return self._callback_result(transaction, applied=False, message="Payment still pending")

        outcome = COMPLETED if event.outcome is ProviderStatus.COMPLETED else FAILED
        credit_amount = await self._credit_amount(transaction) if outcome == COMPLETED else None

        resolution = await self.store.resolve_transaction(
            event.transaction_id,
            outcome,
            raw_payload=dict(raw_payload),
            error_message=event.reason,
            credit_amount=credit_amount,
        )

        if resolution.applied:
            metrics.record_callback(provider, "applied", time.perf_counter() - start)
            metrics.record_transaction_resolved(provider, outcome)
            await self._notify_resolution(resolution)
            message = "Payment processed successfully" if outcome == COMPLETED else "Payment not completed"
        else:
            metrics.record_callback(provider, "duplicate", time.perf_counter() - start)
            message = "Transaction already processed"

        return self._callback_result(resolution.transaction, applied=resolution.applied, message=message)

    @staticmethod
    def _callback_result(
        transaction: PaymentTransaction, applied: bool, message: str
    ) -> Dict[str, Any]:
        return {
            "success": True,
            "transaction_id": transaction.transaction_id,
            "status": transaction.status,
            "applied": applied,
            "message": message,
            "transaction": serialize_transaction(transaction),
        }

    async def _notify_resolution(self, resolution: ResolutionResult) -> None:
        transaction = resolution.transaction
        amount = f"{transaction.amount} {transaction.currency}"

        if transaction.status == FAILED:
            await emit_safely(
                self.notifications,
                transaction.user_id,
                CONTRIBUTION_FAILED,
                f"Your payment of {amount} could not be processed. "
                f"Reason: {transaction.error_message or 'unknown error'}",
                transaction.transaction_id,
            )
            return

        metrics.record_contribution_credited(transaction.provider)
        project = resolution.project
        title = project.title if project else f"Project #{transaction.project_id}"
        await emit_safely(
            self.notifications,
            transaction.user_id,
            CONTRIBUTION_SUCCESS,
            f'Your contribution of {amount} to the project "{title}" was received.',
            transaction.transaction_id,
        )
        if project is not None:
            await emit_safely(
                self.notifications,
                project.creator_id,
                NEW_CONTRIBUTION,
                f'A new contribution of {amount} was received for your project "{title}".',
                transaction.transaction_id,
            )

    async def check_status(self, transaction_id: str) -> Dict[str, Any]:
        """
        Get a transaction's state, polling the provider if it is still pending.

        A terminal outcome reported by the provider is turned into a synthetic
        callback so crediting always goes through handle_callback. Provider
        errors are logged and reported in provider_error; the last known
        local state is returned.

        Raises:
            TransactionNotFound: No transaction with this id
        """
        transaction = await self._get_transaction(transaction_id)
        provider_error = None

        if transaction.status == PENDING:
            adapter = self._adapter(transaction.provider)
            try:
                provider_status = await adapter.check_status(transaction)
            except PaymentError as e:
                provider_error = e.message
                logger.warning(
                    "provider_status_check_failed",
                    transaction_id=transaction_id,
                    provider=transaction.provider,
                    error_code=e.error_code,
                    error=e.message,
                )
            else:
                if provider_status is not ProviderStatus.PENDING:
                    payload = self.normalizer.synthesize(
                        transaction.provider, transaction_id, provider_status
                    )
                    await self.handle_callback(transaction.provider, payload)
                    transaction = await self._get_transaction(transaction_id)

        contribution = None
        if transaction.status == COMPLETED:
            contribution = await self.store.find_contribution_by_transaction_id(transaction_id)
        project = await self.store.find_project_by_id(transaction.project_id)

        return {
            "success": True,
            "transaction": serialize_transaction(transaction),
            "contribution": serialize_contribution(contribution) if contribution else None,
            "project": serialize_project(project) if project else None,
            "provider_error": provider_error,
        }

    async def cancel_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """
        Cancel a pending transaction.

        Provider-side cancellation is best effort and bounded by
        provider_cancel_timeout_seconds; the local transition happens even
        if the provider cannot be reached.

        Raises:
            TransactionNotFound: No transaction with this id
            AlreadyCompleted: The transaction has been credited
        """
        transaction = await self._get_transaction(transaction_id)

        if transaction.status == COMPLETED:
            raise AlreadyCompleted(transaction_id)
        if transaction.status in (CANCELLED, FAILED):
            return self._cancel_result(
                transaction,
                applied=False,
                provider_cancelled=False,
                message=f"Transaction already {transaction.status}",
            )

        adapter = self._adapter(transaction.provider)
        provider_cancelled = False
        try:
            provider_cancelled = await asyncio.wait_for(
                adapter.cancel(transaction),
                timeout=self.settings.provider_cancel_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "provider_cancel_timeout",
                transaction_id=transaction_id,
                provider=transaction.provider,
            )
        except Exception as e:
            logger.warning(
                "provider_cancel_failed",
                transaction_id=transaction_id,
                provider=transaction.provider,
                error=str(e),
            )

        resolution = await self.store.cancel_transaction(transaction_id, CANCEL_REASON)
        if not resolution.applied:
            if resolution.transaction.status == COMPLETED:
                raise AlreadyCompleted(transaction_id)
            return self._cancel_result(
                resolution.transaction,
                applied=False,
                provider_cancelled=provider_cancelled,
                message=f"Transaction already {resolution.transaction.status}",
            )

        cancelled = resolution.transaction
        metrics.record_transaction_resolved(cancelled.provider, CANCELLED)
        await emit_safely(
            self.notifications,
            cancelled.user_id,
            TRANSACTION_CANCELLED,
            f"Your transaction of {cancelled.amount} {cancelled.currency} was cancelled.",
            cancelled.transaction_id,
        )
        return self._cancel_result(
            cancelled,
            applied=True,
            provider_cancelled=provider_cancelled,
            message="Transaction cancelled",
        )

    @staticmethod
    def _cancel_result(
        transaction: PaymentTransaction, applied: bool, provider_cancelled: bool, message: str
    ) -> Dict[str, Any]:
        return {
            "success": True,
            "transaction_id": transaction.transaction_id,
            "status": transaction.status,
            "applied": applied,
            "provider_cancelled": provider_cancelled,
            "message": message,
            "transaction": serialize_transaction(transaction),
        }

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def reconcile_pending(
        self, older_than: timedelta = timedelta(hours=24)
    ) -> Dict[str, Any]:
        """
        Poll providers for pending transactions created before now - older_than.

        Transactions are checked concurrently (at most sweep_concurrency at a
        time), each bounded by sweep_item_timeout_seconds. A failure on one
        transaction is counted and never stops the others.

        Returns:
            Dict[str, Any]: Counters {processed, completed, failed,
            remained_pending, errors}
        """
        start = time.perf_counter()
        cutoff = utcnow() - older_than
        pending = await self.store.find_pending_older_than(cutoff)

        logger.info(
            "reconciliation_started",
            pending_count=len(pending),
            cutoff=cutoff.isoformat(),
        )

        semaphore = asyncio.Semaphore(max(self.settings.sweep_concurrency, 1))

        async def reconcile_one(transaction: PaymentTransaction) -> Dict[str, Any]:
            async with semaphore:
                return await asyncio.wait_for(
                    self.check_status(transaction.transaction_id),
                    timeout=self.settings.sweep_item_timeout_seconds,
                )

        outcomes = await asyncio.gather(
            *(reconcile_one(transaction) for transaction in pending),
            return_exceptions=True,
        )

        results = {
            "processed": 0,
            "completed": 0,
            "failed": 0,
            "remained_pending": 0,
            "errors": 0,
        }
        for transaction, outcome in zip(pending, outcomes):
            results["processed"] += 1
            if isinstance(outcome, BaseException):
                results["errors"] += 1
                logger.error(
                    "reconciliation_item_failed",
                    transaction_id=transaction.transaction_id,
                    provider=transaction.provider,
                    error_type=type(outcome).__name__,
                    error=str(outcome),
                )
                continue
            if outcome["provider_error"]:
                results["errors"] += 1
                continue

            status = outcome["transaction"]["status"]
            if status == COMPLETED:
                results["completed"] += 1
            elif status == FAILED:
                results["failed"] += 1
            elif status == PENDING:
                results["remained_pending"] += 1

        duration = time.perf_counter() - start
        metrics.record_reconciliation(results, duration)
        logger.info("reconciliation_completed", duration_seconds=round(duration, 3), **results)

        return {
            "success": True,
            "timestamp": utcnow(),
            "older_than_hours": older_than.total_seconds() / 3600,
            "results": results,
        }
