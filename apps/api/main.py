"""
MysticOracle Credits API - FastAPI Backend
Credit ledger, checkout, spending limits and self-exclusion for the reading app.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, billing, health, readings, spending, users, webhooks
from services.errors import AccountNotFoundError, LedgerWriteError
from services.messages import normalize_locale, translate
from services.pricing import seed_default_packages

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("mysticoracle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting MysticOracle Credits API")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified")
        except Exception as exc:
            logger.warning("Database bootstrap skipped: %s", exc)
    if settings.SEED_CREDIT_PACKAGES:
        try:
            async with async_session_maker() as session:
                created = await seed_default_packages(session)
            if created:
                logger.info("Seeded %s credit packages", created)
        except Exception as exc:
            logger.warning("Credit package seeding skipped: %s", exc)
    yield
    await engine.dispose()
    logger.info("Shutting down API")


app = FastAPI(
    title="MysticOracle Credits API",
    description="Credits, payments and responsible spending controls",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerWriteError)
async def ledger_write_error_handler(request: Request, exc: LedgerWriteError):
    locale = normalize_locale(request.headers.get("accept-language"))
    return JSONResponse(status_code=503, content={"detail": translate("internal_error", locale)})


@app.exception_handler(AccountNotFoundError)
async def account_not_found_handler(request: Request, exc: AccountNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Account not found."})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(spending.router, prefix="/spending", tags=["Spending"])
app.include_router(readings.router, prefix="/readings", tags=["Readings"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "MysticOracle Credits API",
        "version": "0.1.0",
        "status": "running"
    }
