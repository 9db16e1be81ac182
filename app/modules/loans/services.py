from sqlalchemy import select, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional, Sequence
from datetime import datetime
from decimal import Decimal
import logging

from app.core.config import settings
from app.modules.loans import calculator
from app.modules.loans.coordinator import LoanCoordinator
from app.modules.loans.exceptions import LoanNotFound, StorageFailure
from app.modules.loans.models import Loan, LoanLedgerEntry, LoanStatus
from app.modules.loans.schemas import (
    LoanCreate, LoanFundRequest, LoanRepayRequest,
    LoanResponse, LoanDetailResponse, LedgerEntryResponse, CollateralDetails,
    LoanStatsResponse,
)
from app.modules.loans.validator import validate_creation

logger = logging.getLogger(__name__)


class LoanService:
    """Request-facing lending operations; every write goes through LoanCoordinator"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.coordinator = LoanCoordinator(db)

    # ============ Helpers ============

    async def _fetch(self, query) -> List[Loan]:
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Loan query failed: {str(e)}")
            raise StorageFailure("Failed to read loans") from e
        return list(result.scalars().all())

    async def _settle_overdue(self, loans: Sequence[Loan], now: datetime) -> List[Loan]:
        """Apply the lazy funded -> defaulted rule to anything read past its due date"""
        settled = []
        for loan in loans:
            if loan.status == LoanStatus.FUNDED and calculator.is_overdue(loan, now):
                loan = await self.coordinator.mark_defaulted(loan.id, now)
            settled.append(loan)
        return settled

    @staticmethod
    def _clamp_limit(limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return settings.LOAN_LIST_DEFAULT_LIMIT
        return min(limit, settings.LOAN_LIST_MAX_LIMIT)

    @staticmethod
    def to_response(loan: Loan, now: Optional[datetime] = None) -> LoanResponse:
        """Snapshot a loan with its owed/due figures computed at ``now``"""
        now = now or calculator.utcnow()
        return LoanResponse(
            id=loan.id,
            borrower_identity=loan.borrower_identity,
            lender_identity=loan.lender_identity,
            requested_amount=calculator.to_amount(loan.requested_amount),
            interest_rate=Decimal(str(loan.interest_rate)),
            term_days=loan.term_days,
            purpose=loan.purpose,
            principal_token=loan.principal_token,
            collateral_type=loan.collateral_type.value,
            collateral_details=CollateralDetails(
                chain=loan.collateral_chain,
                contract=loan.collateral_contract,
                token_id=loan.collateral_token_id,
                estimated_value=calculator.to_amount(loan.collateral_estimated_value),
            ),
            risk_score=loan.risk_score,
            funded_amount=calculator.to_amount(loan.funded_amount) if loan.funded_amount is not None else None,
            repaid_amount=calculator.to_amount(loan.repaid_amount or 0),
            status=LoanStatus(loan.status).value,
            created_at=calculator.ensure_utc(loan.created_at),
            listed_at=calculator.ensure_utc(loan.listed_at),
            funded_at=calculator.ensure_utc(loan.funded_at),
            due_at=calculator.ensure_utc(loan.due_at),
            repaid_at=calculator.ensure_utc(loan.repaid_at),
            defaulted_at=calculator.ensure_utc(loan.defaulted_at),
            cancelled_at=calculator.ensure_utc(loan.cancelled_at),
            updated_at=calculator.ensure_utc(loan.updated_at),
            total_owed=calculator.total_owed(loan),
            remaining_owed=calculator.remaining_owed(loan),
            days_until_due=calculator.days_until_due(loan, now),
            is_overdue=calculator.is_overdue(loan, now),
        )

    # ============ Commands ============

    async def create_loan(self, borrower_identity: str, request: LoanCreate, now: Optional[datetime] = None) -> LoanResponse:
        """Validate and list a new loan request"""
        now = now or calculator.utcnow()
        terms = validate_creation(request)

        loan = Loan(
            borrower_identity=borrower_identity,
            requested_amount=terms.requested_amount,
            interest_rate=terms.interest_rate,
            term_days=terms.term_days,
            purpose=terms.purpose,
            principal_token=terms.principal_token,
            collateral_type=terms.collateral_type,
            collateral_chain=terms.collateral_chain,
            collateral_contract=terms.collateral_contract,
            collateral_token_id=terms.collateral_token_id,
            collateral_estimated_value=terms.collateral_estimated_value,
            risk_score=terms.risk_score,
            repaid_amount=Decimal("0"),
            status=LoanStatus.LISTED,
            created_at=now,
            listed_at=now,
            updated_at=now,
        )
        loan = await self.coordinator.create(loan)
        return self.to_response(loan, now)

    async def fund_loan(self, lender_identity: str, loan_id: str, request: LoanFundRequest,
                        now: Optional[datetime] = None) -> LoanResponse:
        now = now or calculator.utcnow()
        loan = await self.coordinator.fund(loan_id, lender_identity, request.amount, request.transaction_hash, now)
        return self.to_response(loan, now)

    async def repay_loan(self, payer_identity: str, loan_id: str, request: LoanRepayRequest,
                         now: Optional[datetime] = None) -> LoanResponse:
        now = now or calculator.utcnow()
        loan = await self.coordinator.repay(loan_id, payer_identity, request.amount, request.transaction_hash, now)
        return self.to_response(loan, now)

    async def cancel_loan(self, borrower_identity: str, loan_id: str, now: Optional[datetime] = None) -> LoanResponse:
        now = now or calculator.utcnow()
        loan = await self.coordinator.cancel(loan_id, borrower_identity, now)
        return self.to_response(loan, now)

    async def sweep_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """Default every funded loan that is past due with a balance outstanding"""
        now = now or calculator.utcnow()
        candidates = await self._fetch(
            select(Loan).where(Loan.status == LoanStatus.FUNDED, Loan.due_at < now)
        )
        defaulted = []
        for loan in candidates:
            if not calculator.is_overdue(loan, now):
                continue
            loan = await self.coordinator.mark_defaulted(loan.id, now)
            if loan.status == LoanStatus.DEFAULTED:
                defaulted.append(loan.id)
        if defaulted:
            logger.info(f"Overdue sweep defaulted {len(defaulted)} loan(s)")
        return defaulted

    # ============ Queries ============

    async def get_loan(self, loan_id: str, now: Optional[datetime] = None) -> LoanDetailResponse:
        """Loan with its ledger history, newest entry first"""
        now = now or calculator.utcnow()
        loans = await self._fetch(select(Loan).where(Loan.id == loan_id))
        if not loans:
            raise LoanNotFound("Loan not found", {"loan_id": loan_id})
        loan = (await self._settle_overdue(loans, now))[0]

        entries = await self.get_ledger(loan_id)
        response = self.to_response(loan, now)
        return LoanDetailResponse(
            **response.model_dump(),
            ledger=[LedgerEntryResponse.model_validate(entry) for entry in entries],
        )

    async def get_ledger(self, loan_id: str) -> List[LoanLedgerEntry]:
        query = (
            select(LoanLedgerEntry)
            .where(LoanLedgerEntry.loan_id == loan_id)
            .order_by(LoanLedgerEntry.created_at.desc())
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Ledger query failed for loan {loan_id}: {str(e)}")
            raise StorageFailure("Failed to read loan ledger") from e
        return list(result.scalars().all())

    async def list_available_loans(
        self,
        status: Optional[LoanStatus] = None,
        chain: Optional[str] = None,
        borrower: Optional[str] = None,
        lender: Optional[str] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[LoanResponse]:
        """Marketplace listing, newest first. Defaults to loans open for funding."""
        now = now or calculator.utcnow()
        status = LoanStatus(status) if status is not None else LoanStatus.LISTED
        logger.debug(f"Fetching loans: status={status.value} chain={chain} borrower={borrower} lender={lender}")

        query = select(Loan).where(Loan.status == status)
        if chain:
            query = query.where(Loan.collateral_chain == chain)
        if borrower:
            query = query.where(Loan.borrower_identity == borrower)
        if lender:
            query = query.where(Loan.lender_identity == lender)
        query = query.order_by(Loan.created_at.desc()).limit(self._clamp_limit(limit))

        loans = await self._settle_overdue(await self._fetch(query), now)
        return [self.to_response(loan, now) for loan in loans if loan.status == status]

    async def list_loans_for_identity(self, identity: str, now: Optional[datetime] = None) -> List[LoanResponse]:
        """Every loan the identity borrowed or lent, newest first"""
        now = now or calculator.utcnow()
        query = (
            select(Loan)
            .where(or_(Loan.borrower_identity == identity, Loan.lender_identity == identity))
            .order_by(Loan.created_at.desc())
        )
        loans = await self._settle_overdue(await self._fetch(query), now)
        return [self.to_response(loan, now) for loan in loans]

    async def get_marketplace_stats(self, now: Optional[datetime] = None) -> LoanStatsResponse:
        now = now or calculator.utcnow()
        await self.sweep_overdue(now)

        try:
            status_rows = (await self.db.execute(
                select(Loan.status, func.count(Loan.id)).group_by(Loan.status)
            )).all()
            totals = (await self.db.execute(
                select(
                    func.count(Loan.id),
                    func.coalesce(func.sum(Loan.requested_amount), 0),
                    func.coalesce(func.sum(Loan.funded_amount), 0),
                    func.avg(Loan.interest_rate),
                )
            )).one()
        except SQLAlchemyError as e:
            logger.error(f"Loan stats query failed: {str(e)}")
            raise StorageFailure("Failed to read loan statistics") from e

        breakdown = {LoanStatus(row[0]).value: int(row[1]) for row in status_rows}
        total_loans, requested_volume, funded_volume, average_rate = totals

        return LoanStatsResponse(
            total_loans=int(total_loans or 0),
            status_breakdown=breakdown,
            listed_loans=breakdown.get(LoanStatus.LISTED.value, 0),
            funded_loans=breakdown.get(LoanStatus.FUNDED.value, 0),
            defaulted_loans=breakdown.get(LoanStatus.DEFAULTED.value, 0),
            total_requested_volume=calculator.to_amount(requested_volume or 0),
            total_funded_volume=calculator.to_amount(funded_volume or 0),
            average_interest_rate=calculator.to_rate(average_rate or 0),
        )
