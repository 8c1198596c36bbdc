"""
Scheduler service for recurring background tasks.

An in-process registry of named cron tasks. Each started task runs as an
asyncio background task on the application's event loop: it computes the
next UTC fire time with croniter, sleeps until then and awaits the task
function. Task failures are logged and never stop the scheduler.

The FastAPI lifespan owns the instance (``app.state.scheduler``) and
starts and stops it with the application.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from croniter import croniter

logger = logging.getLogger(__name__)

ADMIN_USER_SYNC_TASK = "admin-user-sync"


class SchedulerConfigurationError(Exception):
    """A required task could not be registered at startup."""
    pass


@dataclass
class ScheduledTask:
    """Registry entry for one named task."""
    name: str
    cron_expression: str
    wrapped_function: Callable[[], Awaitable[None]]
    is_running: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    loop_task: Optional[asyncio.Task] = field(default=None, repr=False)
    run_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class SchedulerService:
    """Named cron tasks with start/stop and manual trigger."""

    def __init__(self, shutdown_timeout: Optional[float] = None):
        self.shutdown_timeout = shutdown_timeout
        self.tasks: Dict[str, ScheduledTask] = {}
        self.is_started = False
        self._background: Set[asyncio.Task] = set()
        self._deferred: List[str] = []

    # -----------------------------------------------------------------------
    # Registration
    # -----------------------------------------------------------------------

    def schedule_task(
        self,
        name: str,
        cron_expression: str,
        task_function: Callable[[], Any],
        run_immediately: bool = False,
    ) -> bool:
        """
        Register a recurring task in the stopped state.

        Args:
            name: Unique task name
            cron_expression: Five-field cron expression, evaluated in UTC
            task_function: Zero-argument callable; may be a coroutine function
            run_immediately: Fire the task once now, without waiting for it

        Returns:
            False if the name is taken or the cron expression is invalid
        """
        if name in self.tasks:
            logger.warning("[SchedulerService] Task '%s' already exists, skipping", name)
            return False

        if not croniter.is_valid(cron_expression):
            logger.error(
                "[SchedulerService] Invalid cron expression for task '%s': %s",
                name, cron_expression,
            )
            return False

        async def execute_scheduled_task() -> None:
            try:
                result = task_function()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("[SchedulerService] Task '%s' failed: %s", name, e, exc_info=True)

        self.tasks[name] = ScheduledTask(
            name=name,
            cron_expression=cron_expression,
            wrapped_function=execute_scheduled_task,
        )
        logger.info("[SchedulerService] Scheduled task '%s' (%s)", name, cron_expression)

        if run_immediately:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                # No loop yet; start() picks it up
                self._deferred.append(name)
            else:
                self._spawn(self._execute(self.tasks[name]))

        return True

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Start every registered task's trigger loop."""
        if self.is_started:
            logger.warning("[SchedulerService] Scheduler already started")
            return

        logger.info("[SchedulerService] Starting scheduler with %d tasks", len(self.tasks))

        for name, task in self.tasks.items():
            try:
                task.loop_task = self._spawn(self._trigger_loop(task))
                task.is_running = True
            except Exception as e:
                logger.error("[SchedulerService] Failed to start task '%s': %s", name, e)

        deferred, self._deferred = self._deferred, []
        for name in deferred:
            self._spawn(self._execute(self.tasks[name]))

        self.is_started = True

    async def stop(self) -> None:
        """
        Stop every trigger loop, then wait for runs already in flight.

        Runs are not cancelled, so a lease taken by a run is held until
        its work is done. With a ``shutdown_timeout``, runs still going
        when it expires are logged and left to finish on their own.
        """
        if not self.is_started:
            logger.warning("[SchedulerService] Scheduler not running")
            return

        logger.info("[SchedulerService] Stopping scheduler with %d tasks", len(self.tasks))

        loops = []
        for name, task in self.tasks.items():
            try:
                if task.loop_task is not None:
                    task.loop_task.cancel()
                    loops.append(task.loop_task)
                task.is_running = False
                task.next_run_at = None
            except Exception as e:
                logger.error("[SchedulerService] Failed to stop task '%s': %s", name, e)

        if loops:
            results = await asyncio.gather(*loops, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("[SchedulerService] Trigger loop ended with error during stop: %s", result)

        runs = [t for t in self._background if t not in loops]
        if runs:
            logger.info("[SchedulerService] Waiting for %d in-flight run(s) to finish", len(runs))
            _, pending = await asyncio.wait(runs, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(
                    "[SchedulerService] %d run(s) still in flight after %ss; not cancelled",
                    len(pending), self.shutdown_timeout,
                )

        for task in self.tasks.values():
            task.loop_task = None

        self.is_started = False

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    async def _execute(self, task: ScheduledTask) -> None:
        # Runs of the same task are serialized within this process
        async with task.run_lock:
            task.last_run_at = datetime.now(timezone.utc)
            await task.wrapped_function()

    async def _trigger_loop(self, task: ScheduledTask) -> None:
        while True:
            now = datetime.now(timezone.utc)
            next_run = croniter(task.cron_expression, now).get_next(datetime)
            task.next_run_at = next_run
            await asyncio.sleep(max((next_run - now).total_seconds(), 0))
            logger.debug("[SchedulerService] Firing task '%s'", task.name)
            # Cancelling the loop leaves the run to finish; stop() waits for it
            await asyncio.shield(self._spawn(self._execute(task)))

    async def trigger_task(self, name: str) -> bool:
        """
        Run a task once, outside its schedule, and wait for it.

        Returns:
            False if the task is unknown or the run raised
        """
        task = self.tasks.get(name)
        if task is None:
            logger.error("[SchedulerService] Task '%s' not found", name)
            return False

        try:
            await self._execute(task)
            return True
        except Exception as e:
            logger.error("[SchedulerService] Failed to trigger task '%s': %s", name, e)
            return False

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the registry for the admin API."""
        return {
            "started": self.is_started,
            "tasks": {
                name: {
                    "cron_expression": task.cron_expression,
                    "is_running": task.is_running,
                    "next_run_at": task.next_run_at.isoformat() if task.next_run_at else None,
                    "last_run_at": task.last_run_at.isoformat() if task.last_run_at else None,
                }
                for name, task in self.tasks.items()
            },
        }


def initialise_admin_user_sync(
    scheduler: SchedulerService,
    sync_function: Callable[[], Any],
    config=None,
) -> Optional[SchedulerService]:
    """
    Register the admin user sync task if it is enabled.

    Returns:
        The scheduler, or None when the sync is disabled

    Raises:
        SchedulerConfigurationError: If the task cannot be registered
    """
    if config is None:
        from config import get_config
        config = get_config()

    sync_config = config.admin_user_sync
    if not sync_config.enabled:
        return None

    success = scheduler.schedule_task(
        ADMIN_USER_SYNC_TASK,
        sync_config.cron_schedule,
        sync_function,
        run_immediately=True,
    )

    if not success:
        logger.error("[SchedulerService] Failed to schedule admin user sync task")
        raise SchedulerConfigurationError("Failed to initialize admin user sync scheduler")

    return scheduler
