"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings
from services.generator import get_openai_client

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "generator": "openai" if get_openai_client(settings.OPENAI_API_KEY) else "fallback",
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
    }

    # Check database connection and the unreconciled debit backlog
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            backlog = await conn.execute(
                text("SELECT COUNT(*) FROM ledger_reconciliations WHERE status = :status"),
                {"status": "pending"},
            )
            health_status["pending_reconciliations"] = int(backlog.scalar() or 0)
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis backs rate limits and the reconciliation queue
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not get_openai_client(settings.OPENAI_API_KEY):
        missing.append("OPENAI_API_KEY")
    if settings.BILLING_ENABLED:
        if not settings.STRIPE_SECRET_KEY:
            missing.append("STRIPE_SECRET_KEY")
        if not settings.STRIPE_WEBHOOK_SECRET:
            missing.append("STRIPE_WEBHOOK_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
