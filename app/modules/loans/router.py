from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.database import get_db
from app.core.dependencies import get_current_identity
from app.modules.loans import schemas
from app.modules.loans.exceptions import LoanError, StorageFailure
from app.modules.loans.models import LoanStatus
from app.modules.loans.services import LoanService

router = APIRouter(prefix="/api/v1/loans", tags=["loans"])


def _http_error(exc: LoanError) -> HTTPException:
    """Translate a lending error into an HTTP response"""
    if isinstance(exc, StorageFailure):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": exc.code, "message": "Internal error, please retry later", "details": {}},
        )
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


# ============ Marketplace ============

@router.post("/", response_model=schemas.LoanResponse, status_code=status.HTTP_201_CREATED)
async def create_loan(
    data: schemas.LoanCreate,
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """
    List a new collateralized loan request.

    - Collateral must be appraised at 1.5x the requested amount or more
    - The loan starts in the `listed` state
    """
    try:
        return await LoanService(db).create_loan(identity, data)
    except LoanError as e:
        raise _http_error(e)


@router.get("/", response_model=List[schemas.LoanResponse])
async def list_loans(
    status_filter: Optional[schemas.LoanStatusEnum] = Query(None, alias="status", description="Defaults to listed"),
    chain: Optional[str] = Query(None, description="Collateral chain"),
    borrower: Optional[str] = Query(None),
    lender: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Browse loans, newest first"""
    try:
        return await LoanService(db).list_available_loans(
            status=LoanStatus(status_filter.value) if status_filter else None,
            chain=chain,
            borrower=borrower,
            lender=lender,
            limit=limit,
        )
    except LoanError as e:
        raise _http_error(e)


@router.get("/mine", response_model=List[schemas.LoanResponse])
async def list_my_loans(
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Loans the caller borrowed or funded"""
    try:
        return await LoanService(db).list_loans_for_identity(identity)
    except LoanError as e:
        raise _http_error(e)


@router.get("/stats", response_model=schemas.LoanStatsResponse)
async def get_stats(
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Marketplace totals by status and volume"""
    try:
        return await LoanService(db).get_marketplace_stats()
    except LoanError as e:
        raise _http_error(e)


@router.post("/sweep", response_model=schemas.SweepResponse)
async def sweep_overdue(
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Default every overdue funded loan now instead of waiting for it to be read"""
    try:
        defaulted = await LoanService(db).sweep_overdue()
    except LoanError as e:
        raise _http_error(e)
    return {"defaulted_count": len(defaulted), "defaulted_loan_ids": defaulted}


# ============ Single Loan ============

@router.get("/{loan_id}", response_model=schemas.LoanDetailResponse)
async def get_loan(
    loan_id: str,
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Loan details with funding and repayment history"""
    try:
        return await LoanService(db).get_loan(loan_id)
    except LoanError as e:
        raise _http_error(e)


@router.post("/{loan_id}/fund", response_model=schemas.LoanResponse)
async def fund_loan(
    loan_id: str,
    data: schemas.LoanFundRequest,
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """
    Fund a listed loan.

    - The first funder takes the loan; any shortfall is not offered to others
    - The due date is set to funding time plus the loan term
    """
    try:
        return await LoanService(db).fund_loan(identity, loan_id, data)
    except LoanError as e:
        raise _http_error(e)


@router.post("/{loan_id}/repay", response_model=schemas.LoanResponse)
async def repay_loan(
    loan_id: str,
    data: schemas.LoanRepayRequest,
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Record a borrower payment; the loan is repaid once the total owed is covered"""
    try:
        return await LoanService(db).repay_loan(identity, loan_id, data)
    except LoanError as e:
        raise _http_error(e)


@router.post("/{loan_id}/cancel", response_model=schemas.LoanResponse)
async def cancel_loan(
    loan_id: str,
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(get_current_identity)
):
    """Withdraw a listing that nobody has funded yet"""
    try:
        return await LoanService(db).cancel_loan(identity, loan_id)
    except LoanError as e:
        raise _http_error(e)
