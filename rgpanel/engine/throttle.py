"""Coalescing throttle for async actions."""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger


class Throttle:
    """
    Rate-limits an async no-argument action.

    The first ``invoke()`` after an idle period runs the action after
    ``initial_delay`` seconds. Calls made while the action is pending,
    running or cooling down collapse into a single trailing run, which
    starts ``interval`` seconds after the previous run finished. The
    action never runs concurrently with itself.
    """

    def __init__(
        self,
        action: Callable[[], Awaitable[None]],
        interval: float = 0.2,
        initial_delay: float = 0.01
    ):
        self._action = action
        self.interval = interval
        self.initial_delay = initial_delay

        self._running = False
        self._run_again = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def invoke(self) -> None:
        """Request a run of the action; ignored once closed."""
        if self._closed:
            return
        if self._running:
            self._run_again = True
            return

        self._running = True
        self._run_again = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.initial_delay)
            while True:
                self._run_again = False
                try:
                    await self._action()
                except Exception as e:
                    logger.exception(f"Throttled action failed: {e}")
                finally:
                    self.runs += 1
                    # Cooldown always fires, even after a failed run
                    await asyncio.sleep(self.interval)
                if not self._run_again:
                    break
        finally:
            self._running = False

    async def wait_idle(self) -> None:
        """Wait until no run is pending or in progress."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def close(self) -> None:
        """Cancel any pending run and refuse further invocations."""
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._running = False
        self._run_again = False
