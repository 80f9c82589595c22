"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from config import settings
from database import get_db

router = APIRouter()


def _payment_settings_missing() -> list:
    return [
        name
        for name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
        if not (getattr(settings, name) or "").strip()
    ]


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Ledger writes need only the database. Redis backs rate limits and the
    AI evaluation queue, so losing it degrades the service without stopping
    purchases or spends.
    """
    missing = _payment_settings_missing()
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
        "payments": "configured" if not missing else "incomplete",
        "ai_queue": settings.AI_EVALUATION_QUEUE_NAME if settings.AI_EVALUATION_ENABLED else "disabled",
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "unhealthy"

    client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
    try:
        await client.ping()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"
    finally:
        await client.aclose()

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once both Stripe secrets are present."""
    missing = _payment_settings_missing()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
