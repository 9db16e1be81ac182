from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, Enum as SQLEnum, ForeignKey, Index, CheckConstraint
from app.core.database import Base
from datetime import datetime, timezone
import enum
import uuid

# Amounts are token quantities; 8 decimal places covers XRP drops and most ERC-20 display precision.
AMOUNT = Numeric(precision=36, scale=8)


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class LoanStatus(str, enum.Enum):
    """Loan lifecycle status"""
    LISTED = "listed"
    FUNDED = "funded"
    REPAID = "repaid"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


class CollateralType(str, enum.Enum):
    """Kind of asset pledged as collateral"""
    NFT = "nft"
    CRYPTO = "crypto"


class LedgerEntryType(str, enum.Enum):
    """Money movements recorded against a loan"""
    FUNDING = "funding"
    REPAYMENT = "repayment"


class Loan(Base):
    """
    Peer-to-peer loan listing.
    Terms are fixed at creation; only the funding/repayment fields and
    lifecycle timestamps change afterwards, and only through LoanCoordinator.
    """
    __tablename__ = "p2p_loans"

    id = Column(String(36), primary_key=True, default=_new_id)

    # Parties
    borrower_identity = Column(String(100), nullable=False, index=True)
    lender_identity = Column(String(100), nullable=True, index=True)

    # Terms
    requested_amount = Column(AMOUNT, nullable=False)
    interest_rate = Column(Numeric(precision=9, scale=4), nullable=False)  # percent over the full term
    term_days = Column(Integer, nullable=False)
    purpose = Column(Text, nullable=False)
    principal_token = Column(String(20), nullable=True)

    # Collateral (appraised externally)
    collateral_type = Column(SQLEnum(CollateralType, name="collateral_type", values_callable=_enum_values), nullable=False)
    collateral_chain = Column(String(30), nullable=False, index=True)
    collateral_contract = Column(String(255), nullable=False)
    collateral_token_id = Column(String(255), nullable=True)
    collateral_estimated_value = Column(AMOUNT, nullable=False)
    risk_score = Column(Numeric(precision=5, scale=2), nullable=True)

    # Ledger aggregates
    funded_amount = Column(AMOUNT, nullable=True)
    repaid_amount = Column(AMOUNT, nullable=False, default=0)
    status = Column(SQLEnum(LoanStatus, name="p2p_loan_status", values_callable=_enum_values),
                    nullable=False, default=LoanStatus.LISTED, index=True)

    # Lifecycle
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    listed_at = Column(DateTime(timezone=True), nullable=True)
    funded_at = Column(DateTime(timezone=True), nullable=True)
    due_at = Column(DateTime(timezone=True), nullable=True)
    repaid_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Compare-and-set counter, bumped by SQLAlchemy on every UPDATE
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("funded_amount IS NULL OR (funded_amount >= 0 AND funded_amount <= requested_amount)",
                        name="ck_p2p_loans_funded_range"),
        CheckConstraint("repaid_amount >= 0", name="ck_p2p_loans_repaid_non_negative"),
    )

    def __repr__(self):
        return f"<Loan(id={self.id}, borrower={self.borrower_identity}, status={self.status})>"


class LoanLedgerEntry(Base):
    """
    Append-only funding/repayment record.
    Loan.funded_amount and Loan.repaid_amount are the running sums of these rows.
    """
    __tablename__ = "p2p_loan_ledger"

    id = Column(String(36), primary_key=True, default=_new_id)
    loan_id = Column(String(36), ForeignKey("p2p_loans.id"), nullable=False)
    entry_type = Column(SQLEnum(LedgerEntryType, name="p2p_ledger_entry_type", values_callable=_enum_values), nullable=False)
    actor_identity = Column(String(100), nullable=False)
    amount = Column(AMOUNT, nullable=False)
    transaction_hash = Column(String(255), nullable=True)  # external settlement reference, not verified here
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_p2p_loan_ledger_loan_created", "loan_id", "created_at"),
        CheckConstraint("amount > 0", name="ck_p2p_loan_ledger_amount_positive"),
    )

    def __repr__(self):
        return f"<LoanLedgerEntry(loan_id={self.loan_id}, type={self.entry_type}, amount={self.amount})>"
