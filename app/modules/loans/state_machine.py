"""
Loan lifecycle transitions.

    listed --> funded --> repaid
       |          \\
       |           --> defaulted
       --> cancelled

repaid, defaulted and cancelled are terminal. Each method checks its guard
before touching the row, so a raised error always leaves the loan as it was.
Only LoanCoordinator calls these, inside its atomic unit.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet

from app.modules.loans import calculator
from app.modules.loans.exceptions import (
    InvalidTransition, LoanNotListed, LoanNotFunded,
    AmountNotPositive, AmountExceedsRequested, AmountExceedsOwed, NotPermitted,
)
from app.modules.loans.models import Loan, LoanStatus

TERMINAL_STATUSES: FrozenSet[LoanStatus] = frozenset(
    {LoanStatus.REPAID, LoanStatus.DEFAULTED, LoanStatus.CANCELLED}
)


class LoanStateMachine:
    TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
        LoanStatus.LISTED: frozenset({LoanStatus.FUNDED, LoanStatus.CANCELLED}),
        LoanStatus.FUNDED: frozenset({LoanStatus.REPAID, LoanStatus.DEFAULTED}),
        LoanStatus.REPAID: frozenset(),
        LoanStatus.DEFAULTED: frozenset(),
        LoanStatus.CANCELLED: frozenset(),
    }

    @classmethod
    def can_transition(cls, current: LoanStatus, target: LoanStatus) -> bool:
        return target in cls.TRANSITIONS.get(LoanStatus(current), frozenset())

    @staticmethod
    def is_terminal(status: LoanStatus) -> bool:
        return LoanStatus(status) in TERMINAL_STATUSES

    @staticmethod
    def _check_positive(amount: Decimal) -> None:
        if amount is None or amount <= 0:
            raise AmountNotPositive("Amount must be greater than zero")

    @classmethod
    def fund(cls, loan: Loan, lender_identity: str, amount: Decimal, now: datetime) -> None:
        """listed -> funded. The first funder takes the loan, even for less than requested."""
        if loan.status != LoanStatus.LISTED:
            raise LoanNotListed(
                "Loan is not available for funding",
                {"loan_id": loan.id, "status": LoanStatus(loan.status).value},
            )
        if lender_identity == loan.borrower_identity:
            raise NotPermitted("Cannot fund your own loan", {"loan_id": loan.id})
        amount = calculator.to_amount(amount) if amount is not None else amount
        cls._check_positive(amount)
        requested = calculator.to_amount(loan.requested_amount)
        if amount > requested:
            raise AmountExceedsRequested(
                f"Funding of {amount} exceeds requested amount {requested}",
                {"requested_amount": str(requested)},
            )

        loan.lender_identity = lender_identity
        loan.funded_amount = amount
        loan.funded_at = now
        loan.due_at = calculator.due_date(now, loan.term_days)
        loan.status = LoanStatus.FUNDED
        loan.updated_at = now

    @classmethod
    def apply_repayment(cls, loan: Loan, payer_identity: str, amount: Decimal, now: datetime) -> bool:
        """Add a payment; funded -> repaid once the total owed is covered. Returns True on payoff."""
        if loan.status != LoanStatus.FUNDED:
            raise LoanNotFunded(
                "Loan is not in a repayable state",
                {"loan_id": loan.id, "status": LoanStatus(loan.status).value},
            )
        if payer_identity != loan.borrower_identity:
            raise NotPermitted("Only the borrower can repay this loan", {"loan_id": loan.id})
        amount = calculator.to_amount(amount) if amount is not None else amount
        cls._check_positive(amount)
        remaining = calculator.remaining_owed(loan)
        if amount > remaining:
            raise AmountExceedsOwed(
                f"Repayment of {amount} exceeds remaining debt {remaining}",
                {"remaining_owed": str(remaining)},
            )

        loan.repaid_amount = calculator.to_amount(loan.repaid_amount or 0) + amount
        loan.updated_at = now
        if loan.repaid_amount >= calculator.total_owed(loan):
            loan.status = LoanStatus.REPAID
            loan.repaid_at = now
            return True
        return False

    @classmethod
    def mark_defaulted(cls, loan: Loan, now: datetime) -> None:
        """funded -> defaulted, only once past due with a balance outstanding"""
        if not cls.can_transition(loan.status, LoanStatus.DEFAULTED):
            raise InvalidTransition(
                "Only funded loans can default",
                {"loan_id": loan.id, "status": LoanStatus(loan.status).value},
            )
        if not calculator.is_overdue(loan, now):
            raise InvalidTransition("Loan is not overdue", {"loan_id": loan.id})

        loan.status = LoanStatus.DEFAULTED
        loan.defaulted_at = now
        loan.updated_at = now

    @classmethod
    def cancel(cls, loan: Loan, borrower_identity: str, now: datetime) -> None:
        """listed -> cancelled, borrower only"""
        if loan.status != LoanStatus.LISTED:
            raise LoanNotListed(
                "Only listed loans can be cancelled",
                {"loan_id": loan.id, "status": LoanStatus(loan.status).value},
            )
        if borrower_identity != loan.borrower_identity:
            raise NotPermitted("Only the borrower can cancel this loan", {"loan_id": loan.id})

        loan.status = LoanStatus.CANCELLED
        loan.cancelled_at = now
        loan.updated_at = now
