from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from app.core.database import Base, async_engine, AsyncSessionLocal
from app.core.config import settings
from app.modules.loans.exceptions import LoanError
from app.modules.loans.router import router as loans_router
from app.modules.loans.services import LoanService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


async def run_overdue_sweeper(interval_seconds: int):
    """Periodically default overdue loans (reads already do this lazily)"""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with AsyncSessionLocal() as session:
                await LoanService(session).sweep_overdue()
        except LoanError as e:
            logger.error(f"Overdue sweep failed: {e.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    async with async_engine.begin() as conn:
        # Create all tables (for development - use Alembic in production)
        await conn.run_sync(Base.metadata.create_all)

    sweeper = None
    if settings.LOAN_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(run_overdue_sweeper(settings.LOAN_SWEEP_INTERVAL_SECONDS))
        logger.info(f"Overdue sweep every {settings.LOAN_SWEEP_INTERVAL_SECONDS}s")

    yield

    # Shutdown
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    await async_engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Peer-to-peer collateralized lending marketplace",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(loans_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to the {settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "docs": "/docs"
    }
