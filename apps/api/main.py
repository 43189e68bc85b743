"""
Playable Studio - FastAPI Backend
Credit-metered AI game generation: studio sessions, versions, billing and the games feed.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    studio,
    billing,
    games,
)
from services.reconciliation import recover_pending_reconciliations
from services.studio_sessions import cleanup_stale_sessions

SESSION_SWEEP_INTERVAL_SECONDS = 6 * 3600


async def _periodic_session_sweep() -> None:
    while True:
        await asyncio.sleep(SESSION_SWEEP_INTERVAL_SECONDS)
        try:
            async with async_session_maker() as db:
                removed = await cleanup_stale_sessions(db)
            if removed:
                print(f"🧹 Removed {removed} stale studio sessions.")
        except Exception as exc:
            print(f"⚠️ Studio session sweep failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Playable Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        requeued = await recover_pending_reconciliations()
        if requeued:
            print(f"♻️ Re-queued {requeued} pending ledger reconciliations after startup.")
    except Exception as exc:
        print(f"⚠️ Ledger reconciliation recovery skipped: {exc}")
    sweep_task = asyncio.create_task(_periodic_session_sweep())
    yield
    # Shutdown
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Playable Studio API",
    description="Generate, iterate and publish single-file HTML5 games with metered credits",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(studio.router, prefix="/studio", tags=["Studio"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(games.router, prefix="/games", tags=["Games"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Playable Studio API",
        "version": "0.1.0",
        "status": "running"
    }
