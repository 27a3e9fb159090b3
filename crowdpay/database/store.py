"""
Transaction store gateway.

The only component that mutates transaction, contribution and project rows.

Resolution of a pending transaction is one conditional update:

    UPDATE payment_transactions SET status = :outcome
    WHERE transaction_id = :id AND status = 'pending'

Only the caller whose update touched a row goes on to create the
Contribution and increment the project, inside the same database
transaction. Racing resolvers (webhook, status poll, sweep) therefore
credit a payment at most once without any application-level lock.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crowdpay.database.models import (
    CANCELLED,
    COMPLETED,
    PENDING,
    Contribution,
    PaymentTransaction,
    Project,
)

logger = structlog.get_logger(__name__)


class _ResolutionConflict(Exception):
    """Internal signal that rolls back a resolution which lost a race."""


@dataclass
class ResolutionResult:
    """Outcome of a conditional status transition."""

    transaction: PaymentTransaction
    applied: bool
    contribution: Optional[Contribution] = None
    project: Optional[Project] = None


class TransactionStore:
    """
    Gateway over the payment tables.

    Each public coroutine opens its own short-lived session, so no database
    transaction is ever held open across a provider API call.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the store.

        Args:
            session_factory: SQLAlchemy async session factory
        """
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Session-scoped primitives
    # ------------------------------------------------------------------

    @staticmethod
    async def update_transaction_status(
        db: AsyncSession,
        transaction_id: str,
        new_status: str,
        expected_status: str = PENDING,
        **values: Any,
    ) -> bool:
        """
        Atomically move a transaction to new_status if it is still expected_status.

        Args:
            db: Database session (caller owns the transaction)
            transaction_id: Transaction identifier
            new_status: Target status
            expected_status: Status the row must currently have
            **values: Extra columns to set alongside the status

        Returns:
            bool: True if this call performed the transition
        """
        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status == expected_status,
            )
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def create_contribution_if_absent(
        db: AsyncSession,
        transaction: PaymentTransaction,
        amount: Decimal,
    ) -> Optional[Contribution]:
        """
        Create the Contribution for a transaction unless one already exists.

        Returns:
            Optional[Contribution]: The new contribution, or None if one existed
        """
        existing = await db.scalar(
            select(Contribution.id).where(
                Contribution.transaction_id == transaction.transaction_id
            )
        )
        if existing is not None:
            return None

        contribution = Contribution(
            user_id=transaction.user_id,
            project_id=transaction.project_id,
            amount=amount,
            payment_method=transaction.method,
            transaction_id=transaction.transaction_id,
            status=COMPLETED,
        )
        db.add(contribution)
        await db.flush()
        return contribution

    @staticmethod
    async def increment_project_amount(
        db: AsyncSession, project_id: int, amount: Decimal
    ) -> bool:
        """
        Add amount to a project's raised total with a single UPDATE.

        Returns:
            bool: False if the project does not exist
        """
        stmt = (
            update(Project)
            .where(Project.id == project_id)
            .values(current_amount=Project.current_amount + amount)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_transaction(self, **fields: Any) -> PaymentTransaction:
        """
        Persist a new pending transaction.

        Args:
            **fields: PaymentTransaction column values

        Returns:
            PaymentTransaction: The created record
        """
        fields.setdefault("status", PENDING)
        async with self.session_factory() as db:
            transaction = PaymentTransaction(**fields)
            db.add(transaction)
            await db.commit()

        logger.info(
            "transaction_created",
            transaction_id=transaction.transaction_id,
            provider=transaction.provider,
            amount=str(transaction.amount),
            currency=transaction.currency,
        )
        return transaction

    async def record_provider_response(
        self,
        transaction_id: str,
        provider_reference: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """
        Attach the provider acknowledgement (or initiation error) to a transaction.

        The provider reference is set once and never overwritten. The error
        message is only attached while the transaction is still pending.
        """
        async with self.session_factory() as db:
            async with db.begin():
                if provider_reference:
                    await db.execute(
                        update(PaymentTransaction)
                        .where(
                            PaymentTransaction.transaction_id == transaction_id,
                            PaymentTransaction.provider_reference.is_(None),
                        )
                        .values(provider_reference=provider_reference)
                        .execution_options(synchronize_session=False)
                    )
                if error_message:
                    await db.execute(
                        update(PaymentTransaction)
                        .where(
                            PaymentTransaction.transaction_id == transaction_id,
                            PaymentTransaction.status == PENDING,
                        )
                        .values(error_message=error_message)
                        .execution_options(synchronize_session=False)
                    )

    async def resolve_transaction(
        self,
        transaction_id: str,
        outcome: str,
        raw_payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        credit_amount: Optional[Decimal] = None,
    ) -> ResolutionResult:
        """
        Move a pending transaction to a terminal outcome.

        For a completed outcome the contribution is created and the project
        total incremented in the same database transaction as the status
        change. If another resolver got there first nothing is written.

        Args:
            transaction_id: Transaction identifier
            outcome: 'completed' or 'failed'
            raw_payload: Provider payload, stored verbatim
            error_message: Failure reason (failed outcome only)
            credit_amount: Amount to credit in the project's currency

        Returns:
            ResolutionResult: applied is False if the transaction was already resolved
        """
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    won = await self.update_transaction_status(
                        db,
                        transaction_id,
                        outcome,
                        expected_status=PENDING,
                        raw_callback=raw_payload,
                        error_message=error_message if outcome != COMPLETED else None,
                    )
                    if not won:
                        raise _ResolutionConflict()

                    transaction = await self._get_transaction(db, transaction_id)
                    contribution = None
                    if outcome == COMPLETED:
                        amount = credit_amount if credit_amount is not None else transaction.amount
                        contribution = await self.create_contribution_if_absent(
                            db, transaction, amount
                        )
                        if contribution is None:
                            raise _ResolutionConflict()
                        if not await self.increment_project_amount(
                            db, transaction.project_id, amount
                        ):
                            logger.warning(
                                "project_not_found_for_contribution",
                                transaction_id=transaction_id,
                                project_id=transaction.project_id,
                            )

            except (_ResolutionConflict, IntegrityError) as e:
                if isinstance(e, IntegrityError):
                    logger.warning(
                        "contribution_unique_violation",
                        transaction_id=transaction_id,
                        error=str(e.orig),
                    )
                current = await self._get_transaction(db, transaction_id)
                await db.commit()
                logger.info(
                    "transaction_already_resolved",
                    transaction_id=transaction_id,
                    requested_outcome=outcome,
                    status=current.status,
                )
                return ResolutionResult(transaction=current, applied=False)

            project = await db.get(Project, transaction.project_id)
            await db.commit()

        logger.info(
            "transaction_resolved",
            transaction_id=transaction_id,
            status=outcome,
            contribution_id=contribution.id if contribution else None,
        )
        return ResolutionResult(
            transaction=transaction,
            applied=True,
            contribution=contribution,
            project=project,
        )

    async def cancel_transaction(
        self, transaction_id: str, reason: str
    ) -> ResolutionResult:
        """
        Move a pending transaction to cancelled.

        Returns:
            ResolutionResult: applied is False if the transaction was no longer pending
        """
        async with self.session_factory() as db:
            async with db.begin():
                won = await self.update_transaction_status(
                    db,
                    transaction_id,
                    CANCELLED,
                    expected_status=PENDING,
                    error_message=reason,
                )
                transaction = await self._get_transaction(db, transaction_id)

        logger.info(
            "transaction_cancel_attempted",
            transaction_id=transaction_id,
            applied=won,
            status=transaction.status,
        )
        return ResolutionResult(transaction=transaction, applied=won)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_transaction(db: AsyncSession, transaction_id: str) -> PaymentTransaction:
        result = await db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def find_transaction_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        """Get a transaction by its public transaction id."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentTransaction).where(
                    PaymentTransaction.transaction_id == transaction_id
                )
            )
            return result.scalar_one_or_none()

    async def find_contribution_by_transaction_id(
        self, transaction_id: str
    ) -> Optional[Contribution]:
        """Get the contribution credited for a transaction, if any."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Contribution).where(Contribution.transaction_id == transaction_id)
            )
            return result.scalar_one_or_none()

    async def find_project_by_id(self, project_id: int) -> Optional[Project]:
        """Get a project by id."""
        async with self.session_factory() as db:
            return await db.get(Project, project_id)

    async def find_projects_by_ids(self, project_ids: Iterable[int]) -> Dict[int, Project]:
        """Get several projects at once, keyed by id."""
        ids = set(project_ids)
        if not ids:
            return {}
        async with self.session_factory() as db:
            result = await db.execute(select(Project).where(Project.id.in_(ids)))
            return {project.id: project for project in result.scalars().all()}

    async def find_pending_older_than(
        self, cutoff: datetime, limit: Optional[int] = None
    ) -> List[PaymentTransaction]:
        """
        Get pending transactions created before cutoff, oldest first.

        Args:
            cutoff: Creation time upper bound (exclusive)
            limit: Optional maximum number of rows
        """
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status == PENDING,
                PaymentTransaction.created_at < cutoff,
            )
            .order_by(PaymentTransaction.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def find_transactions_between(
        self, start: datetime, end: datetime, status: Optional[str] = None
    ) -> List[PaymentTransaction]:
        """Get transactions created in [start, end], optionally filtered by status."""
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.created_at >= start,
            PaymentTransaction.created_at <= end,
        )
        if status:
            stmt = stmt.where(PaymentTransaction.status == status)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(PaymentTransaction.created_at))
            return list(result.scalars().all())

