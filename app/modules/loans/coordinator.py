"""
Serialized funding/repayment against a single loan.

Each operation re-reads the loan row (``SELECT ... FOR UPDATE`` where the
backend supports it), runs the state machine guard, appends the ledger entry
and commits in one transaction. The ``version`` column is SQLAlchemy's
``version_id_col``, so a concurrent writer that slipped in between the read
and the commit makes the UPDATE match zero rows and raises StaleDataError.
That attempt is rolled back and retried from a fresh read, up to
``LOAN_CONFLICT_RETRIES`` times, after which Conflict is raised.
"""
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.modules.loans import calculator
from app.modules.loans.exceptions import LoanError, LoanNotFound, Conflict, StorageFailure
from app.modules.loans.models import Loan, LoanLedgerEntry, LedgerEntryType, LoanStatus
from app.modules.loans.state_machine import LoanStateMachine

logger = logging.getLogger(__name__)


class LoanCoordinator:
    """The only writer of loan ledger fields and lifecycle status"""

    def __init__(self, db: AsyncSession, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries if max_retries is not None else settings.LOAN_CONFLICT_RETRIES

    async def _load_for_update(self, loan_id: str) -> Loan:
        query = (
            select(Loan)
            .where(Loan.id == loan_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        loan = result.scalar_one_or_none()
        if loan is None:
            raise LoanNotFound("Loan not found", {"loan_id": loan_id})
        return loan

    async def _run_atomic(self, action: str, loan_id: str, apply: Callable[[Loan], None]) -> Loan:
        for attempt in range(1, self.max_retries + 1):
            try:
                loan = await self._load_for_update(loan_id)
                apply(loan)
                # Once the commit starts it finishes even if the caller is cancelled.
                await asyncio.shield(self.db.commit())
                return loan
            except StaleDataError:
                await self.db.rollback()
                logger.warning(f"Version conflict on {action} for loan {loan_id} (attempt {attempt}/{self.max_retries})")
            except LoanError:
                await self.db.rollback()
                raise
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Storage failure during {action} for loan {loan_id}: {str(e)}")
                raise StorageFailure(f"Failed to {action} loan") from e

        raise Conflict(
            f"Loan {loan_id} was modified concurrently; retry the {action}",
            {"loan_id": loan_id, "attempts": self.max_retries},
        )

    def _append_entry(
        self,
        loan: Loan,
        entry_type: LedgerEntryType,
        actor_identity: str,
        amount: Decimal,
        transaction_hash: Optional[str],
        now: datetime,
    ) -> None:
        self.db.add(LoanLedgerEntry(
            loan_id=loan.id,
            entry_type=entry_type,
            actor_identity=actor_identity,
            amount=amount,
            transaction_hash=transaction_hash,
            created_at=now,
        ))

    async def create(self, loan: Loan) -> Loan:
        """Persist a validated loan in the listed state"""
        try:
            self.db.add(loan)
            await asyncio.shield(self.db.commit())
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Storage failure creating loan for {loan.borrower_identity}: {str(e)}")
            raise StorageFailure("Failed to create loan") from e
        logger.info(f"Loan {loan.id} listed by {loan.borrower_identity} for {loan.requested_amount}")
        return loan

    async def fund(
        self,
        loan_id: str,
        lender_identity: str,
        amount: Decimal,
        transaction_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        now = now or calculator.utcnow()

        def apply(loan: Loan) -> None:
            LoanStateMachine.fund(loan, lender_identity, amount, now)
            self._append_entry(loan, LedgerEntryType.FUNDING, lender_identity, loan.funded_amount, transaction_hash, now)

        loan = await self._run_atomic("fund", loan_id, apply)
        logger.info(f"Loan {loan_id} funded by {lender_identity} for {loan.funded_amount}, due {loan.due_at}")
        return loan

    async def repay(
        self,
        loan_id: str,
        payer_identity: str,
        amount: Decimal,
        transaction_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        now = now or calculator.utcnow()
        payment = calculator.to_amount(amount) if amount is not None else amount

        def apply(loan: Loan) -> None:
            LoanStateMachine.apply_repayment(loan, payer_identity, payment, now)
            self._append_entry(loan, LedgerEntryType.REPAYMENT, payer_identity, payment, transaction_hash, now)

        loan = await self._run_atomic("repay", loan_id, apply)
        if loan.status == LoanStatus.REPAID:
            logger.info(f"Loan {loan_id} fully repaid by {payer_identity}")
        else:
            logger.info(f"Partial repayment of {payment} on loan {loan_id} by {payer_identity}")
        return loan

    async def cancel(self, loan_id: str, borrower_identity: str, now: Optional[datetime] = None) -> Loan:
        now = now or calculator.utcnow()

        def apply(loan: Loan) -> None:
            LoanStateMachine.cancel(loan, borrower_identity, now)

        loan = await self._run_atomic("cancel", loan_id, apply)
        logger.info(f"Loan {loan_id} cancelled by {borrower_identity}")
        return loan

    async def mark_defaulted(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """
        Promote an overdue funded loan to defaulted.

        A loan that was repaid or already defaulted by a concurrent request is
        returned unchanged rather than raising, since the caller only asked for
        the overdue rule to be applied.
        """
        now = now or calculator.utcnow()
        transitioned = False

        def apply(loan: Loan) -> None:
            nonlocal transitioned
            transitioned = False
            if loan.status == LoanStatus.FUNDED and calculator.is_overdue(loan, now):
                LoanStateMachine.mark_defaulted(loan, now)
                transitioned = True

        loan = await self._run_atomic("default", loan_id, apply)
        if transitioned:
            logger.info(f"Loan {loan_id} defaulted, {calculator.remaining_owed(loan)} outstanding past {loan.due_at}")
        return loan
