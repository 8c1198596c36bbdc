"""
Scheduler routes: manual admin sync trigger and inspection.
"""

import asyncio
import logging
from fastapi import APIRouter, Request

from api_models import TriggerResponse, SchedulerStatusResponse, LocksResponse, APIErrorResponse
from errors import ErrorCode, raise_api_error, raise_for_domain_error
from scheduler import ADMIN_USER_SYNC_TASK

logger = logging.getLogger(__name__)

scheduler_router = APIRouter(tags=["Scheduler"])


@scheduler_router.post(
    "/scheduler/sync-admin-users",
    response_model=TriggerResponse,
    responses={500: {"model": APIErrorResponse}},
)
async def trigger_admin_sync(request: Request):
    """Manually trigger admin user sync from Azure AD."""
    scheduler = getattr(request.app.state, "scheduler", None)

    if scheduler is None:
        logger.error("[SchedulerRoute] Failed to trigger admin user sync: scheduler not available")
        raise_api_error(ErrorCode.SCHEDULER_UNAVAILABLE)

    logger.info("[SchedulerRoute] Manually triggering admin user sync")

    success = await scheduler.trigger_task(ADMIN_USER_SYNC_TASK)
    if not success:
        logger.error("[SchedulerRoute] Failed to trigger admin user sync")
        raise_api_error(ErrorCode.TASK_TRIGGER_FAILED)

    logger.info("[SchedulerRoute] Successfully triggered admin user sync")
    return {"status": "success", "message": "Admin user sync triggered successfully"}


@scheduler_router.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def scheduler_status(request: Request):
    """Registered tasks with their cron, next and last run."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"enabled": False}
    return {"enabled": True, **scheduler.get_status()}


@scheduler_router.get("/scheduler/locks", response_model=LocksResponse)
async def list_locks(request: Request):
    """Current leases, including expired ones not yet swept."""
    try:
        locks = await asyncio.to_thread(request.app.state.lock_store.list_locks)
    except Exception as e:
        raise_for_domain_error(e)
    return {"locks": locks, "count": len(locks)}
