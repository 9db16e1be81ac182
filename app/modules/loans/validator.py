"""Creation-time checks on a loan request: numeric ranges and collateral coverage."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from app.core.config import settings
from app.modules.loans.calculator import to_amount, to_rate, to_score
from app.modules.loans.exceptions import InvalidTerms, InsufficientCollateral
from app.modules.loans.models import CollateralType
from app.modules.loans.schemas import LoanCreate


@dataclass(frozen=True)
class ValidatedTerms:
    requested_amount: Decimal
    interest_rate: Decimal
    term_days: int
    purpose: str
    principal_token: Optional[str]
    collateral_type: CollateralType
    collateral_chain: str
    collateral_contract: str
    collateral_token_id: Optional[str]
    collateral_estimated_value: Decimal
    risk_score: Optional[Decimal]


def validate_creation(
    request: LoanCreate,
    collateral_ratio: Optional[float] = None,
    allowed_term_days: Optional[Iterable[int]] = None,
) -> ValidatedTerms:
    """
    Validate a loan request without touching storage.

    Raises InvalidTerms for any out-of-range field and InsufficientCollateral
    when the appraised collateral is below ``collateral_ratio`` times the
    requested amount. ``allowed_term_days`` is an optional policy set; when it
    is None any positive term is accepted.
    """
    if collateral_ratio is None:
        collateral_ratio = settings.LOAN_COLLATERAL_RATIO
    if allowed_term_days is None:
        allowed_term_days = settings.allowed_term_days

    collateral = request.collateral_details

    # Range checks apply to the values at storage scale.
    requested_amount = to_amount(request.requested_amount) if request.requested_amount is not None else None
    interest_rate = to_rate(request.interest_rate) if request.interest_rate is not None else None
    estimated_value = to_amount(collateral.estimated_value) if collateral.estimated_value is not None else None
    risk_score = to_score(request.risk_score) if request.risk_score is not None else None

    if requested_amount is None or requested_amount <= 0:
        raise InvalidTerms("Requested amount must be positive", {"field": "requested_amount"})
    if interest_rate is None or interest_rate < 0:
        raise InvalidTerms("Interest rate cannot be negative", {"field": "interest_rate"})
    if request.term_days is None or request.term_days <= 0:
        raise InvalidTerms("Term must be a positive number of days", {"field": "term_days"})
    if allowed_term_days is not None and request.term_days not in set(allowed_term_days):
        raise InvalidTerms(
            f"Term of {request.term_days} days is not offered",
            {"field": "term_days", "allowed": sorted(allowed_term_days)},
        )
    if not request.purpose or not request.purpose.strip():
        raise InvalidTerms("Purpose is required", {"field": "purpose"})
    if estimated_value is None or estimated_value <= 0:
        raise InvalidTerms("Collateral estimated value must be positive", {"field": "collateral_details.estimated_value"})
    if not collateral.chain.strip() or not collateral.contract.strip():
        raise InvalidTerms("Collateral chain and contract are required", {"field": "collateral_details"})
    if risk_score is not None and not (0 <= risk_score <= 100):
        raise InvalidTerms("Risk score must be between 0 and 100", {"field": "risk_score"})

    required = to_amount(requested_amount * Decimal(str(collateral_ratio)))
    if estimated_value < required:
        raise InsufficientCollateral(
            f"Collateral worth {estimated_value} does not cover {collateral_ratio}x the requested {requested_amount}",
            {"estimated_value": str(estimated_value), "required_value": str(required)},
        )

    return ValidatedTerms(
        requested_amount=requested_amount,
        interest_rate=interest_rate,
        term_days=request.term_days,
        purpose=request.purpose.strip(),
        principal_token=request.principal_token,
        collateral_type=CollateralType(request.collateral_type.value),
        collateral_chain=collateral.chain.strip(),
        collateral_contract=collateral.contract.strip(),
        collateral_token_id=collateral.token_id,
        collateral_estimated_value=estimated_value,
        risk_score=risk_score,
    )
