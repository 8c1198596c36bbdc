"""
FastAPI REST API for the Entitlement Registry.

The lifespan is the composition root: it builds the database pool, the
stores, the services and the scheduler, publishes them on ``app.state``
for the routers, and tears them down at shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_config
from database import get_db_manager, close_db_manager
from entitlement_store import EntitlementStore
from entitlements import EntitlementService
from lock_store import PostgresLockStore
from admin_sync import AdminUserSync
from scheduler import SchedulerService, initialise_admin_user_sync
from errors import ErrorCode
from version import __version__
from routers.health_api import health_router
from routers.users_api import users_router
from routers.migration_api import migration_router
from routers.scheduler_api import scheduler_router

config = get_config()

# Configure logging
logging.basicConfig(
    level=config.api.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

EXPIRED_LOCK_SWEEP_TASK = "expired-lock-sweep"


def build_scheduler(admin_sync: AdminUserSync, lock_store: PostgresLockStore, app_config=None):
    """
    Register the background tasks.

    Returns:
        The scheduler, or None when no task is enabled

    Raises:
        SchedulerConfigurationError: If the admin sync cannot be scheduled
    """
    app_config = app_config or get_config()
    scheduler = SchedulerService()

    initialise_admin_user_sync(scheduler, admin_sync.sync_admin_users_from_group, app_config)

    if app_config.lock.sweep_enabled:
        scheduler.schedule_task(
            EXPIRED_LOCK_SWEEP_TASK,
            app_config.lock.sweep_cron_schedule,
            lambda: asyncio.to_thread(lock_store.purge_expired),
        )

    if not scheduler.tasks:
        return None
    return scheduler


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    logger.info("Starting Entitlement Registry API...")
    try:
        db = get_db_manager()
        if config.database.run_migrations:
            from migrate import run_migrations
            if not await asyncio.to_thread(run_migrations):
                raise RuntimeError("Database migrations failed")

        store = EntitlementStore(db)
        lock_store = PostgresLockStore(db)
        admin_sync = AdminUserSync(store=store, db=db, lock=lock_store, config=config)

        app.state.db = db
        app.state.lock_store = lock_store
        app.state.entitlements = EntitlementService(store=store, db=db)
        app.state.admin_sync = admin_sync

        scheduler = build_scheduler(admin_sync, lock_store, config)
        if scheduler is not None:
            await scheduler.start()
        else:
            logger.info("[SchedulerPlugin] Scheduler disabled via configuration")
        app.state.scheduler = scheduler
        logger.info("Services initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize services: %s", e)
        close_db_manager()
        raise

    yield

    logger.info("Shutting down Entitlement Registry API...")
    if app.state.scheduler is not None:
        logger.info("[SchedulerPlugin] Stopping scheduler due to server shutdown")
        await app.state.scheduler.stop()
    close_db_manager()
    logger.info("Cleanup complete")


def create_app() -> FastAPI:
    """Create the FastAPI application with routers and middleware."""
    application = FastAPI(
        title="Entitlement Registry API",
        description="Maps directory users to roles and permission scopes",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(health_router)
    application.include_router(migration_router)
    application.include_router(users_router)
    application.include_router(scheduler_router)

    @application.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler."""
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        error_code = ErrorCode.INTERNAL_SERVER_ERROR
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": {
                    "error_code": error_code.code,
                    "message": error_code.message,
                    "details": None,
                }
            },
        )

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api:app",
        host=config.api.host,
        port=config.api.port,
        log_level=config.api.log_level,
    )
