"""
Test configuration and fixtures for the lending engine tests.
"""
import pytest
from typing import AsyncGenerator, Callable
from decimal import Decimal
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from app.core.database import Base, get_db
from app.core.security import create_access_token
from app.modules.loans.schemas import LoanCreate
from app.modules.loans.services import LoanService
from main import app


# ============================================================
# Database Fixtures
# ============================================================

# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BORROWER = "joey.borrower"
LENDER = "riddle.lender"
OTHER_LENDER = "second.lender"

# Fixed clock so due dates and overdue checks are deterministic
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for each test"""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def file_session_factory(tmp_path):
    """Session factory over a file-backed SQLite database so sessions get separate connections"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'lending.db'}",
        connect_args={"timeout": 15},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================
# Identity Fixtures
# ============================================================

def _headers_for(handle: str) -> dict:
    token = create_access_token(data={"sub": handle})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def borrower_headers():
    return _headers_for(BORROWER)


@pytest.fixture
def lender_headers():
    return _headers_for(LENDER)


@pytest.fixture
def other_lender_headers():
    return _headers_for(OTHER_LENDER)


# ============================================================
# Loan Fixtures
# ============================================================

@pytest.fixture
def loan_request() -> Callable[..., LoanCreate]:
    """Build a loan request; defaults are 1000 at 5% for 30 days against 1600 of NFT collateral"""

    def _build(**overrides) -> LoanCreate:
        collateral = {
            "chain": "xrpl",
            "contract": "rBithomp3UNknnjo8HKNfyS5MN4kdPTZpW",
            "token_id": "00081388A47691FB124F91B5FF0F5246AED2B5275385689F0000099E00000000",
            "estimated_value": Decimal("1600"),
        }
        collateral.update(overrides.pop("collateral_details", {}))
        data = {
            "requested_amount": Decimal("1000"),
            "interest_rate": Decimal("5"),
            "term_days": 30,
            "purpose": "Buy land plot in the Inquisition game",
            "principal_token": "XRP",
            "collateral_type": "nft",
            "collateral_details": collateral,
        }
        data.update(overrides)
        return LoanCreate(**data)

    return _build


@pytest.fixture
async def listed_loan(db_session, loan_request):
    """A listed loan created by BORROWER at T0"""
    service = LoanService(db_session)
    return await service.create_loan(BORROWER, loan_request(), now=T0)


@pytest.fixture
async def funded_loan(db_session, listed_loan):
    """The listed loan fully funded by LENDER at T0"""
    from app.modules.loans.schemas import LoanFundRequest

    service = LoanService(db_session)
    return await service.fund_loan(LENDER, listed_loan.id, LoanFundRequest(amount=Decimal("1000")), now=T0)
