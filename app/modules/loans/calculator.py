"""
Interest and schedule math for P2P loans.

All functions are pure: they read a loan snapshot (ORM row or any object with
the same attributes) plus an explicit ``now`` and never write to it. Interest
is simple and charged for the full term, so early repayment does not reduce it.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import math

AMOUNT_QUANTUM = Decimal("0.00000001")
RATE_QUANTUM = Decimal("0.0001")
SCORE_QUANTUM = Decimal("0.01")
ONE_DAY = timedelta(days=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _quantize(value, quantum: Decimal) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def to_amount(value) -> Decimal:
    """Normalize a stored or supplied amount to an 8dp Decimal"""
    return _quantize(value, AMOUNT_QUANTUM)


def to_rate(value) -> Decimal:
    """Interest rate percent at the 4dp the ledger stores"""
    return _quantize(value, RATE_QUANTUM)


def to_score(value) -> Decimal:
    return _quantize(value, SCORE_QUANTUM)


def due_date(funded_at: datetime, term_days: int) -> datetime:
    return ensure_utc(funded_at) + timedelta(days=term_days)


def total_owed(loan) -> Optional[Decimal]:
    """Principal funded plus full-term simple interest; None until funded"""
    if loan.funded_amount is None:
        return None
    rate = Decimal(str(loan.interest_rate)) / Decimal(100)
    return to_amount(to_amount(loan.funded_amount) * (Decimal(1) + rate))


def remaining_owed(loan) -> Optional[Decimal]:
    owed = total_owed(loan)
    if owed is None:
        return None
    return owed - to_amount(loan.repaid_amount or 0)


def days_until_due(loan, now: datetime) -> Optional[int]:
    """Whole days until due, rounded up; negative means overdue by that many days"""
    if loan.due_at is None:
        return None
    return math.ceil((ensure_utc(loan.due_at) - ensure_utc(now)) / ONE_DAY)


def is_overdue(loan, now: datetime) -> bool:
    if loan.due_at is None:
        return False
    if ensure_utc(now) <= ensure_utc(loan.due_at):
        return False
    remaining = remaining_owed(loan)
    return remaining is not None and remaining > 0
