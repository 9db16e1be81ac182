"""Error taxonomy for the lending engine.

Every business-rule failure is raised as a ``LoanError`` subclass so callers
can branch on the type (or on ``code``) instead of parsing messages. Routers
map ``status_code`` straight onto the HTTP response.
"""
from typing import Any, Dict, Optional


class LoanError(Exception):
    """Base class for lending engine failures."""

    code = "loan_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# ============ Creation-time validation ============

class ValidationError(LoanError):
    """Loan request failed creation-time validation."""

    code = "validation_error"
    status_code = 422


class InvalidTerms(ValidationError):
    code = "invalid_terms"


class InsufficientCollateral(ValidationError):
    code = "insufficient_collateral"


# ============ Lookup ============

class LoanNotFound(LoanError):
    code = "loan_not_found"
    status_code = 404


# ============ State machine guards ============

class InvalidTransition(LoanError):
    """Transition not allowed from the loan's current status."""

    code = "invalid_transition"
    status_code = 409


class LoanNotListed(InvalidTransition):
    code = "loan_not_listed"


class LoanNotFunded(InvalidTransition):
    code = "loan_not_funded"


# ============ Amount ranges ============

class AmountNotPositive(LoanError):
    code = "amount_not_positive"


class AmountExceedsRequested(LoanError):
    code = "amount_exceeds_requested"


class AmountExceedsOwed(LoanError):
    code = "amount_exceeds_owed"


# ============ Authorization ============

class NotPermitted(LoanError):
    """Caller's identity may not perform this action on the loan."""

    code = "not_permitted"
    status_code = 403


# ============ Infrastructure ============

class Conflict(LoanError):
    """Optimistic concurrency retries exhausted; retry the whole operation."""

    code = "conflict"
    status_code = 409


class StorageFailure(LoanError):
    """Underlying datastore failed. Not user-correctable."""

    code = "storage_failure"
    status_code = 500
