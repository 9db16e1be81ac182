from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict
from enum import Enum


class LoanStatusEnum(str, Enum):
    LISTED = "listed"
    FUNDED = "funded"
    REPAID = "repaid"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


class CollateralTypeEnum(str, Enum):
    NFT = "nft"
    CRYPTO = "crypto"


class LedgerEntryTypeEnum(str, Enum):
    FUNDING = "funding"
    REPAYMENT = "repayment"


# ============ Loan Creation ============
# Ranges are enforced by the validator so callers get typed lending errors.

class CollateralDetails(BaseModel):
    chain: str = Field(..., max_length=30)
    contract: str = Field(..., max_length=255, description="Contract address or token issuer")
    token_id: Optional[str] = Field(None, max_length=255)
    estimated_value: Decimal


class LoanCreate(BaseModel):
    requested_amount: Decimal
    interest_rate: Decimal = Field(..., description="Percent charged over the full term")
    term_days: int
    purpose: str
    principal_token: Optional[str] = Field(None, max_length=20)
    collateral_type: CollateralTypeEnum
    collateral_details: CollateralDetails
    risk_score: Optional[Decimal] = None


# ============ Funding / Repayment ============

class LoanFundRequest(BaseModel):
    amount: Decimal
    transaction_hash: Optional[str] = Field(None, max_length=255)


class LoanRepayRequest(BaseModel):
    amount: Decimal
    transaction_hash: Optional[str] = Field(None, max_length=255)


# ============ Responses ============

class LoanResponse(BaseModel):
    id: str
    borrower_identity: str
    lender_identity: Optional[str] = None

    requested_amount: Decimal
    interest_rate: Decimal
    term_days: int
    purpose: str
    principal_token: Optional[str] = None
    collateral_type: CollateralTypeEnum
    collateral_details: CollateralDetails
    risk_score: Optional[Decimal] = None

    funded_amount: Optional[Decimal] = None
    repaid_amount: Decimal
    status: LoanStatusEnum

    created_at: datetime
    listed_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    repaid_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime

    # Computed by the engine so clients never redo the math
    total_owed: Optional[Decimal] = None
    remaining_owed: Optional[Decimal] = None
    days_until_due: Optional[int] = None
    is_overdue: bool = False


class LedgerEntryResponse(BaseModel):
    id: str
    loan_id: str
    entry_type: LedgerEntryTypeEnum
    actor_identity: str
    amount: Decimal
    transaction_hash: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LoanDetailResponse(LoanResponse):
    ledger: List[LedgerEntryResponse] = []


class LoanStatsResponse(BaseModel):
    total_loans: int
    status_breakdown: Dict[str, int]
    listed_loans: int
    funded_loans: int
    defaulted_loans: int
    total_requested_volume: Decimal
    total_funded_volume: Decimal
    average_interest_rate: Decimal


class SweepResponse(BaseModel):
    defaulted_count: int
    defaulted_loan_ids: List[str]
