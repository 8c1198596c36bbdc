"""
Distributed lock protocol.

``with_lock()`` runs an async action while holding a named lease so that
only one replica of the service executes it at a time. Acquisition never
blocks or retries: if the lease is held elsewhere the action is skipped
and ``None`` is returned, and the caller's own schedule is the retry.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MINUTES = 30


class DistributedLock(ABC):
    """Minimal lease operations a backing store must provide.

    Both methods are blocking; ``with_lock`` calls them in a worker thread.
    """

    @abstractmethod
    def acquire(self, lock_name: str, lock_id: str, timeout_minutes: int) -> bool:
        """Create the lease. Return False if it is already held."""

    @abstractmethod
    def release(self, lock_name: str, lock_id: str) -> bool:
        """Delete the lease if ``lock_id`` still holds it."""


async def with_lock(
    lock_name: str,
    attempt_id: str,
    action: Callable[[], Awaitable[Any]],
    timeout_minutes: int = DEFAULT_LOCK_TIMEOUT_MINUTES,
    lock: Optional[DistributedLock] = None,
) -> Any:
    """Execute ``action`` while holding the lease ``lock_name``.

    Args:
        lock_name: Name of the protected resource.
        attempt_id: Token identifying this acquisition.
        action: Zero-argument coroutine function to run under the lease.
        timeout_minutes: Lease duration recorded in ``expires_at``.
        lock: Lease backend; defaults to the PostgreSQL lock store.

    Returns:
        The action's result, or None if the lease was not acquired.

    Raises:
        ValueError: On an empty lock name or non-positive timeout.
        Exception: Whatever ``action`` raised, after the lease is released.
        asyncio.CancelledError: Once the running action has finished and the
            lease is released; the action itself is not cancelled.
    """
    if not lock_name:
        raise ValueError("lock_name must not be empty")
    if timeout_minutes <= 0:
        raise ValueError("timeout_minutes must be positive")

    if lock is None:
        from lock_store import PostgresLockStore
        lock = PostgresLockStore()

    # The worker thread finishes the acquire even if we are cancelled
    acquiring = asyncio.ensure_future(
        asyncio.to_thread(lock.acquire, lock_name, attempt_id, timeout_minutes)
    )
    try:
        acquired = await asyncio.shield(acquiring)
    except asyncio.CancelledError:
        await asyncio.wait([acquiring])
        if not acquiring.cancelled() and acquiring.exception() is None and acquiring.result():
            await _release(lock, lock_name, attempt_id)
        raise
    if not acquired:
        return None

    # The lease is held until the action has finished, even when cancelled
    running = asyncio.ensure_future(action())
    try:
        return await asyncio.shield(running)
    except asyncio.CancelledError:
        logger.warning(
            "Cancelled while holding lock '%s' (%s), waiting for the action to finish",
            lock_name, attempt_id,
        )
        await asyncio.wait([running])
        if not running.cancelled() and running.exception() is not None:
            logger.error("Action under lock '%s' failed: %s", lock_name, running.exception())
        raise
    finally:
        await _release(lock, lock_name, attempt_id)


async def _release(lock: DistributedLock, lock_name: str, attempt_id: str) -> None:
    try:
        await asyncio.to_thread(lock.release, lock_name, attempt_id)
    except Exception as e:
        logger.warning("Failed to release lock '%s' (%s): %s", lock_name, attempt_id, e)
