"""Async utilities: task tracking, per-key locks and bounded retry."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Optional,
    Set,
    Coroutine,
    Tuple,
    Type,
    TypeVar,
)

from .exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BackoffFn = Callable[[int], float]


class TaskManager:
    """
    Tracks background tasks and cancels them on shutdown.

    Example:
        >>> manager = TaskManager()
        >>> task = await manager.create_task(my_coro(), name="session-15551230000")
        >>> await manager.cancel_all()
    """

    def __init__(self) -> None:
        """Initialize task manager."""
        self._tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._is_shutting_down = False

    async def create_task(
        self,
        coro: Coroutine,
        name: Optional[str] = None,
    ) -> asyncio.Task:
        """
        Create and track a background task.

        Args:
            coro: Coroutine to run
            name: Optional task name for debugging

        Returns:
            Created task object

        Raises:
            RuntimeError: If manager is shutting down
        """
        if self._is_shutting_down:
            coro.close()
            raise RuntimeError("Task manager is shutting down")

        async with self._lock:
            task = asyncio.create_task(coro, name=name)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

            logger.debug(f"Created task: {name or task.get_name()}")
            return task

    async def cancel_all(self) -> None:
        """Cancel all tracked tasks and wait for them to finish."""
        self._is_shutting_down = True

        async with self._lock:
            current = asyncio.current_task()
            tasks = [t for t in self._tasks if t is not current]
            if not tasks:
                logger.debug("No tasks to cancel")
                return

            logger.info(f"Cancelling {len(tasks)} task(s)")

            for task in tasks:
                if not task.done():
                    task.cancel()

            await asyncio.gather(*tasks, return_exceptions=True)

            self._tasks.clear()
            logger.info("All tasks cancelled")

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """
        Wait for all tasks to complete.

        Raises:
            asyncio.TimeoutError: If timeout exceeded
        """
        tasks = list(self._tasks)
        if not tasks:
            return

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Timeout waiting for {len(tasks)} task(s)")
            raise

    def get_task_count(self) -> int:
        """Get number of active tasks."""
        return len(self._tasks)

    def is_shutting_down(self) -> bool:
        """Check if manager is shutting down."""
        return self._is_shutting_down


class KeyedLock:
    """
    One ``asyncio.Lock`` per key, kept only while it is held or awaited.

    Example:
        >>> locks = KeyedLock()
        >>> async with locks.hold("15551230000"):
        ...     await save()
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


def exponential_backoff(base: float, cap: Optional[float] = None) -> BackoffFn:
    """Delay ``base * 2**(attempt - 1)``, optionally capped."""

    def delay(attempt: int) -> float:
        value = base * (2 ** max(attempt - 1, 0))
        return min(value, cap) if cap is not None else value

    return delay


def linear_backoff(step: float) -> BackoffFn:
    """Delay ``step * attempt``."""

    def delay(attempt: int) -> float:
        return step * max(attempt, 0)

    return delay


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    backoff: BackoffFn,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    should_abort: Optional[Callable[[], bool]] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    After failed attempt ``n`` the call sleeps ``backoff(n)`` seconds.
    Exceptions listed in ``give_up_on`` propagate immediately; anything else
    outside ``retry_on`` propagates too. ``should_abort`` is checked before
    each attempt and, when true, stops retrying with ``asyncio.CancelledError``.

    Raises:
        RetryExhaustedError: If every attempt failed
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        if should_abort is not None and should_abort():
            raise asyncio.CancelledError(f"{description} aborted")

        try:
            return await operation()
        except give_up_on:
            raise
        except retry_on as e:
            last_error = e
            remaining = max_attempts - attempt
            logger.warning(
                f"{description} failed (attempt {attempt}/{max_attempts}): {e}"
            )
            if remaining == 0:
                break
            await sleep(backoff(attempt))

    raise RetryExhaustedError(
        f"{description} failed after {max_attempts} attempt(s): {last_error}",
        attempts=max_attempts,
        last_error=last_error,
    )
