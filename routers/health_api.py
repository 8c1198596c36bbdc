"""
Health check route for the Entitlement Registry.
"""

import asyncio
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api_models import HealthResponse

logger = logging.getLogger(__name__)

health_router = APIRouter(tags=["General"])


@health_router.get("/health", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
async def health_check(request: Request):
    """Check API and database health."""
    db_health = await asyncio.to_thread(request.app.state.db.health_check)
    body = {
        "status": "healthy" if db_health.get("status") == "healthy" else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_health,
    }
    if body["status"] != "healthy":
        logger.warning("Health check failed: %s", db_health.get("error"))
        return JSONResponse(status_code=503, content=body)
    return body
