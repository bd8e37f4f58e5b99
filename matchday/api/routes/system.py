"""System health endpoints.

- /health: liveness probe, no dependency checks
- /ready: readiness probe, checks the database
"""

import asyncio
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from matchday import __version__
from matchday.api.deps import get_webhook_cache
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.settings import get_settings
from matchday.storage import get_session

logger = logging.getLogger(__name__)

router = APIRouter()

_READY_TIMEOUT_S = 5.0


@router.get("/health", summary="Health Check (Liveness)")
async def health_check(cache: WebhookUrlCache = Depends(get_webhook_cache)) -> dict:
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "version": __version__,
        "environment": settings.environment,
        "engineConfigured": settings.engine_configured,
        "cachedWebhooks": len(cache),
    }


@router.get("/ready", summary="Readiness Probe")
async def readiness_check() -> JSONResponse:
    """Returns 503 until the database answers."""

    async def _ping() -> None:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping(), timeout=_READY_TIMEOUT_S)
    except (TimeoutError, SQLAlchemyError, OSError) as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "unreachable"})
    return JSONResponse(status_code=200, content={"status": "ready", "database": "ok"})
