"""
Tutor Ledger - FastAPI Backend
Credit ledger, evaluation spend, and payment fulfillment API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    billing,
    trainer,
)
from services.errors import LedgerError


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Tutor Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.STRIPE_WEBHOOK_SECRET:
        print("⚠️ STRIPE_WEBHOOK_SECRET is not set. Stripe webhooks will be rejected.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Tutor Ledger API",
    description="Credit purchases, evaluation spend, and an auditable per-student ledger",
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


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.code},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(trainer.router, prefix="/trainer", tags=["Trainer"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Tutor Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
