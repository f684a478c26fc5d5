"""
Task Scheduler.

Maps a task key (a forward ID) to at most one pending asyncio timer.
Scheduling a key whose timer is still pending is a no-op; the entry is
removed when the timer fires. Running callbacks are tracked separately so
the recovery sweep can skip keys that are mid-flight.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Optional

logger = logging.getLogger(__name__)

CoroutineFactory = Callable[[], Awaitable[Any]]


class TaskScheduler:
    """Deduplicating delayed-task scheduler on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: dict[Hashable, asyncio.TimerHandle] = {}
        self._running: dict[Hashable, asyncio.Task] = {}
        self._fired_count = 0
        self._failed_count = 0

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, key: Hashable, delay: float, factory: CoroutineFactory) -> bool:
        """
        Run ``factory()`` after ``delay`` seconds.

        Returns False, scheduling nothing, when ``key`` already has a
        pending timer.
        """
        if key in self._handles:
            logger.debug(f"Task {key} already scheduled")
            return False

        handle = self._get_loop().call_later(max(0.0, delay), self._fire, key, factory)
        self._handles[key] = handle
        return True

    def _fire(self, key: Hashable, factory: CoroutineFactory) -> None:
        self._handles.pop(key, None)
        self._fired_count += 1
        task = self._get_loop().create_task(self._run(key, factory))
        self._running[key] = task

    async def _run(self, key: Hashable, factory: CoroutineFactory) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._failed_count += 1
            logger.exception(f"Scheduled task {key} failed")
        finally:
            if self._running.get(key) is asyncio.current_task():
                self._running.pop(key, None)

    def is_scheduled(self, key: Hashable) -> bool:
        """True while ``key`` has a pending timer."""
        return key in self._handles

    def is_running(self, key: Hashable) -> bool:
        return key in self._running

    def is_busy(self, key: Hashable) -> bool:
        """True while ``key`` is pending or its callback is running."""
        return key in self._handles or key in self._running

    def cancel(self, key: Hashable) -> bool:
        """Cancel a pending timer. Running callbacks are not interrupted."""
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending timer and return how many were cancelled."""
        count = len(self._handles)
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if count:
            logger.info(f"Cancelled {count} pending tasks")
        return count

    def pending_keys(self) -> list[Hashable]:
        return list(self._handles)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for callbacks that are already running."""
        tasks = list(self._running.values())
        if not tasks:
            return
        await asyncio.wait(tasks, timeout=timeout)

    def stats(self) -> dict[str, int]:
        return {
            "pending": len(self._handles),
            "running": len(self._running),
            "fired": self._fired_count,
            "failed": self._failed_count,
        }
