# Loans module
from app.modules.loans.models import (
    Loan, LoanLedgerEntry,
    LoanStatus, CollateralType, LedgerEntryType
)
from app.modules.loans.coordinator import LoanCoordinator
from app.modules.loans.services import LoanService
from app.modules.loans.router import router

__all__ = [
    "Loan", "LoanLedgerEntry",
    "LoanStatus", "CollateralType", "LedgerEntryType",
    "LoanCoordinator", "LoanService", "router"
]
