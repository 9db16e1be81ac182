"""
Integration tests for the loan service
"""
import pytest
from decimal import Decimal
from datetime import timedelta

from app.modules.loans.exceptions import (
    InsufficientCollateral, LoanNotListed, LoanNotFound, AmountExceedsOwed,
    AmountExceedsRequested, AmountNotPositive, NotPermitted,
)
from app.modules.loans.models import LoanStatus, LedgerEntryType
from app.modules.loans.schemas import LoanFundRequest, LoanRepayRequest
from app.modules.loans.services import LoanService

from tests.conftest import BORROWER, LENDER, OTHER_LENDER, T0


class TestLoanCreation:

    @pytest.mark.integration
    async def test_create_loan_success(self, db_session, loan_request):
        """1600 of collateral covers a 1000 request"""
        service = LoanService(db_session)

        loan = await service.create_loan(BORROWER, loan_request(), now=T0)

        assert loan.status == LoanStatus.LISTED
        assert loan.borrower_identity == BORROWER
        assert loan.lender_identity is None
        assert loan.funded_amount is None
        assert loan.repaid_amount == Decimal("0")
        assert loan.created_at == T0
        assert loan.listed_at == T0
        assert loan.total_owed is None
        assert loan.collateral_details.estimated_value == Decimal("1600")

    @pytest.mark.integration
    async def test_create_loan_insufficient_collateral(self, db_session, loan_request):
        service = LoanService(db_session)

        with pytest.raises(InsufficientCollateral):
            await service.create_loan(
                BORROWER, loan_request(collateral_details={"estimated_value": Decimal("1400")}), now=T0
            )

        assert await service.list_available_loans(now=T0) == []

    @pytest.mark.integration
    async def test_rate_is_stable_between_create_and_fund(self, db_session, loan_request):
        """A rate finer than the stored 4dp is fixed at creation, not changed on re-read"""
        service = LoanService(db_session)

        created = await service.create_loan(BORROWER, loan_request(interest_rate=Decimal("5.123456")), now=T0)
        funded = await service.fund_loan(LENDER, created.id, LoanFundRequest(amount=Decimal("1000")), now=T0)

        assert created.interest_rate == Decimal("5.1235")
        assert funded.interest_rate == created.interest_rate
        assert funded.total_owed == Decimal("1051.235")


class TestFunding:

    @pytest.mark.integration
    async def test_fund_full_amount(self, db_session, listed_loan):
        service = LoanService(db_session)

        loan = await service.fund_loan(LENDER, listed_loan.id, LoanFundRequest(amount=Decimal("1000")), now=T0)

        assert loan.status == LoanStatus.FUNDED
        assert loan.lender_identity == LENDER
        assert loan.funded_at == T0
        assert loan.due_at == T0 + timedelta(days=30)
        assert loan.total_owed == Decimal("1050")
        assert loan.remaining_owed == Decimal("1050")
        assert loan.days_until_due == 30

    @pytest.mark.integration
    async def test_fund_already_funded_loan(self, db_session, funded_loan):
        service = LoanService(db_session)

        with pytest.raises(LoanNotListed):
            await service.fund_loan(OTHER_LENDER, funded_loan.id, LoanFundRequest(amount=Decimal("1000")), now=T0)

        loan = await service.get_loan(funded_loan.id, now=T0)
        assert loan.lender_identity == LENDER
        assert loan.funded_amount == Decimal("1000")
        assert loan.updated_at == funded_loan.updated_at
        assert len(loan.ledger) == 1

    @pytest.mark.integration
    async def test_partial_funding_closes_listing(self, db_session, listed_loan):
        service = LoanService(db_session)

        loan = await service.fund_loan(LENDER, listed_loan.id, LoanFundRequest(amount=Decimal("600")), now=T0)

        assert loan.status == LoanStatus.FUNDED
        assert loan.total_owed == Decimal("630")
        with pytest.raises(LoanNotListed):
            await service.fund_loan(OTHER_LENDER, listed_loan.id, LoanFundRequest(amount=Decimal("400")), now=T0)

    @pytest.mark.integration
    async def test_fund_more_than_requested(self, db_session, listed_loan):
        service = LoanService(db_session)

        with pytest.raises(AmountExceedsRequested):
            await service.fund_loan(LENDER, listed_loan.id, LoanFundRequest(amount=Decimal("1000.5")), now=T0)

        loan = await service.get_loan(listed_loan.id, now=T0)
        assert loan.status == LoanStatus.LISTED
        assert loan.ledger == []

    @pytest.mark.integration
    async def test_fund_below_smallest_unit_rejected(self, db_session, listed_loan):
        service = LoanService(db_session)

        with pytest.raises(AmountNotPositive):
            await service.fund_loan(LENDER, listed_loan.id, LoanFundRequest(amount=Decimal("0.000000001")), now=T0)

        loan = await service.get_loan(listed_loan.id, now=T0)
        assert loan.status == LoanStatus.LISTED
        assert loan.funded_amount is None
        assert loan.ledger == []

    @pytest.mark.integration
    async def test_fund_unknown_loan(self, db_session):
        with pytest.raises(LoanNotFound):
            await LoanService(db_session).fund_loan(LENDER, "missing", LoanFundRequest(amount=Decimal("1")), now=T0)

    @pytest.mark.integration
    async def test_borrower_cannot_fund_own_loan(self, db_session, listed_loan):
        with pytest.raises(NotPermitted):
            await LoanService(db_session).fund_loan(
                BORROWER, listed_loan.id, LoanFundRequest(amount=Decimal("1000")), now=T0
            )


class TestRepayment:

    @pytest.mark.integration
    async def test_full_repayment(self, db_session, funded_loan):
        service = LoanService(db_session)
        paid_at = T0 + timedelta(days=5)

        loan = await service.repay_loan(BORROWER, funded_loan.id, LoanRepayRequest(amount=Decimal("1050")), now=paid_at)

        assert loan.status == LoanStatus.REPAID
        assert loan.repaid_at == paid_at
        assert loan.remaining_owed == Decimal("0")
        assert loan.is_overdue is False

    @pytest.mark.integration
    async def test_partial_repayments_accumulate(self, db_session, funded_loan):
        service = LoanService(db_session)

        await service.repay_loan(BORROWER, funded_loan.id, LoanRepayRequest(amount=Decimal("500")), now=T0 + timedelta(days=1))
        loan = await service.repay_loan(BORROWER, funded_loan.id, LoanRepayRequest(amount=Decimal("250")), now=T0 + timedelta(days=2))

        assert loan.status == LoanStatus.FUNDED
        assert loan.repaid_amount == Decimal("750")
        assert loan.remaining_owed == Decimal("300")

        detail = await service.get_loan(funded_loan.id, now=T0 + timedelta(days=2))
        repayments = [e for e in detail.ledger if e.entry_type == LedgerEntryType.REPAYMENT.value]
        assert sum(e.amount for e in repayments) == detail.repaid_amount

    @pytest.mark.integration
    async def test_over_repayment_rejected(self, db_session, funded_loan):
        service = LoanService(db_session)

        with pytest.raises(AmountExceedsOwed):
            await service.repay_loan(BORROWER, funded_loan.id, LoanRepayRequest(amount=Decimal("1050.01")), now=T0)

        loan = await service.get_loan(funded_loan.id, now=T0)
        assert loan.repaid_amount == Decimal("0")
        assert loan.status == LoanStatus.FUNDED

    @pytest.mark.integration
    async def test_repayment_records_transaction_hash(self, db_session, funded_loan):
        service = LoanService(db_session)

        await service.repay_loan(
            BORROWER, funded_loan.id,
            LoanRepayRequest(amount=Decimal("10"), transaction_hash="E3FE6EA3D48F0C2B639448020EA4F03D4F4F8FFDB243A852A0F59177921B4879"),
            now=T0 + timedelta(hours=1),
        )

        entries = await service.get_ledger(funded_loan.id)
        assert entries[0].entry_type == LedgerEntryType.REPAYMENT
        assert entries[0].transaction_hash.startswith("E3FE6EA3")


class TestOverdue:

    @pytest.mark.integration
    async def test_read_after_due_defaults_loan(self, db_session, funded_loan):
        service = LoanService(db_session)
        late = T0 + timedelta(days=31)

        loan = await service.get_loan(funded_loan.id, now=late)

        assert loan.status == LoanStatus.DEFAULTED
        assert loan.defaulted_at == late
        assert loan.is_overdue is True
        assert loan.days_until_due == -1

    @pytest.mark.integration
    async def test_read_before_due_leaves_loan_funded(self, db_session, funded_loan):
        loan = await LoanService(db_session).get_loan(funded_loan.id, now=T0 + timedelta(days=29))

        assert loan.status == LoanStatus.FUNDED
        assert loan.is_overdue is False

    @pytest.mark.integration
    async def test_repaid_loan_never_defaults(self, db_session, funded_loan):
        service = LoanService(db_session)
        await service.repay_loan(BORROWER, funded_loan.id, LoanRepayRequest(amount=Decimal("1050")), now=T0)

        loan = await service.get_loan(funded_loan.id, now=T0 + timedelta(days=400))
        assert loan.status == LoanStatus.REPAID

    @pytest.mark.integration
    async def test_defaulted_loan_rejects_repayment(self, db_session, funded_loan):
        from app.modules.loans.exceptions import LoanNotFunded

        service = LoanService(db_session)
        late = T0 + timedelta(days=45)
        await service.get_loan(funded_loan.id, now=late)

        with pytest.raises(LoanNotFunded):
            await service.repay_loan(BORROWER, funded_loan.id, LoanRepayRequest(amount=Decimal("1050")), now=late)

    @pytest.mark.integration
    async def test_sweep_defaults_only_overdue(self, db_session, loan_request, funded_loan):
        service = LoanService(db_session)
        fresh = await service.create_loan(BORROWER, loan_request(term_days=90), now=T0)
        await service.fund_loan(LENDER, fresh.id, LoanFundRequest(amount=Decimal("1000")), now=T0)

        defaulted = await service.sweep_overdue(now=T0 + timedelta(days=31))

        assert defaulted == [funded_loan.id]
        assert (await service.get_loan(fresh.id, now=T0 + timedelta(days=31))).status == LoanStatus.FUNDED


class TestCancellation:

    @pytest.mark.integration
    async def test_borrower_cancels_listing(self, db_session, listed_loan):
        service = LoanService(db_session)

        loan = await service.cancel_loan(BORROWER, listed_loan.id, now=T0)

        assert loan.status == LoanStatus.CANCELLED
        assert loan.cancelled_at == T0
        assert await service.list_available_loans(now=T0) == []

    @pytest.mark.integration
    async def test_cancel_funded_loan_rejected(self, db_session, funded_loan):
        with pytest.raises(LoanNotListed):
            await LoanService(db_session).cancel_loan(BORROWER, funded_loan.id, now=T0)

    @pytest.mark.integration
    async def test_lender_cannot_cancel(self, db_session, listed_loan):
        with pytest.raises(NotPermitted):
            await LoanService(db_session).cancel_loan(LENDER, listed_loan.id, now=T0)


class TestListings:

    @pytest.mark.integration
    async def test_available_loans_default_to_listed(self, db_session, loan_request, funded_loan):
        service = LoanService(db_session)
        open_loan = await service.create_loan(BORROWER, loan_request(), now=T0 + timedelta(minutes=1))

        listed = await service.list_available_loans(now=T0)
        funded = await service.list_available_loans(status=LoanStatus.FUNDED, now=T0)

        assert [loan.id for loan in listed] == [open_loan.id]
        assert [loan.id for loan in funded] == [funded_loan.id]

    @pytest.mark.integration
    async def test_filters_and_newest_first(self, db_session, loan_request):
        service = LoanService(db_session)
        first = await service.create_loan(BORROWER, loan_request(), now=T0)
        second = await service.create_loan(BORROWER, loan_request(), now=T0 + timedelta(hours=1))
        await service.create_loan(
            "someone.else",
            loan_request(collateral_type="crypto", collateral_details={"chain": "ethereum", "token_id": None}),
            now=T0 + timedelta(hours=2),
        )

        mine = await service.list_available_loans(borrower=BORROWER, now=T0)
        xrpl = await service.list_available_loans(chain="xrpl", now=T0)
        limited = await service.list_available_loans(limit=1, now=T0)

        assert [loan.id for loan in mine] == [second.id, first.id]
        assert {loan.id for loan in xrpl} == {first.id, second.id}
        assert len(limited) == 1

    @pytest.mark.integration
    async def test_funded_listing_drops_loans_defaulted_on_read(self, db_session, funded_loan):
        service = LoanService(db_session)

        funded = await service.list_available_loans(status=LoanStatus.FUNDED, now=T0 + timedelta(days=60))

        assert funded == []
        defaulted = await service.list_available_loans(status=LoanStatus.DEFAULTED, now=T0 + timedelta(days=60))
        assert [loan.id for loan in defaulted] == [funded_loan.id]

    @pytest.mark.integration
    async def test_loans_for_identity(self, db_session, loan_request, funded_loan):
        service = LoanService(db_session)
        await service.create_loan("someone.else", loan_request(), now=T0)

        as_borrower = await service.list_loans_for_identity(BORROWER, now=T0)
        as_lender = await service.list_loans_for_identity(LENDER, now=T0)
        stranger = await service.list_loans_for_identity("nobody", now=T0)

        assert [loan.id for loan in as_borrower] == [funded_loan.id]
        assert [loan.id for loan in as_lender] == [funded_loan.id]
        assert stranger == []


class TestMarketplaceStats:

    @pytest.mark.integration
    async def test_stats_empty(self, db_session):
        stats = await LoanService(db_session).get_marketplace_stats(now=T0)

        assert stats.total_loans == 0
        assert stats.status_breakdown == {}
        assert stats.total_requested_volume == Decimal("0")

    @pytest.mark.integration
    async def test_stats_counts_by_status(self, db_session, loan_request, funded_loan):
        service = LoanService(db_session)
        await service.create_loan(BORROWER, loan_request(requested_amount=Decimal("500"), interest_rate=Decimal("15")), now=T0)

        stats = await service.get_marketplace_stats(now=T0 + timedelta(days=1))

        assert stats.total_loans == 2
        assert stats.listed_loans == 1
        assert stats.funded_loans == 1
        assert stats.defaulted_loans == 0
        assert stats.total_requested_volume == Decimal("1500")
        assert stats.total_funded_volume == Decimal("1000")
        assert stats.average_interest_rate == Decimal("10.0000")

    @pytest.mark.integration
    async def test_stats_reflect_overdue_defaults(self, db_session, funded_loan):
        stats = await LoanService(db_session).get_marketplace_stats(now=T0 + timedelta(days=31))

        assert stats.funded_loans == 0
        assert stats.defaulted_loans == 1
