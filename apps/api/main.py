"""
Jyoti Ledger - FastAPI Backend
Entitlement checks, credit ledger and payment reconciliation.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, entitlement, billing, admin_credits
from services.credit_errors import LedgerError, TransientStorageConflictError
from services.feature_policy import list_policies, validate_policies


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Jyoti Ledger API...")
    validate_security_settings()
    validate_policies()
    print(f"🎟️ Loaded {len(list_policies())} feature access policies.")
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.PAYMENTS_ENABLED:
        print("⚠️ Payments disabled; webhook deliveries will be rejected.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Jyoti Ledger API",
    description="Feature entitlements, usage credits and payment reconciliation",
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
    headers = {"Retry-After": "1"} if isinstance(exc, TransientStorageConflictError) else None
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()}, headers=headers)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(entitlement.router, prefix="/entitlement", tags=["Entitlement"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin_credits.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Jyoti Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
