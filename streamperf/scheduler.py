"""Periodic tick scheduling on the running asyncio event loop."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTimer:
    """Runs a callback every ``interval`` seconds.

    A tick that is still running when the timer fires again is skipped
    rather than run concurrently with itself. Exceptions raised by the
    callback are logged and never stop the timer.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = False,
    ):
        """Initialize timer.

        Args:
            name: Label used in logs
            interval: Seconds between ticks
            callback: Sync or async callable invoked on each tick
            run_immediately: Fire the first tick without waiting one interval
        """
        if interval <= 0:
            raise ValueError(f"Interval must be > 0, got {interval}")

        self.name = name
        self.interval = interval
        self.callback = callback
        self.run_immediately = run_immediately

        self._task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking on the running event loop.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        if self.is_active:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"timer:{self.name}"
        )
        logger.debug(f"Timer {self.name} started (interval={self.interval}s)")

    def stop(self) -> None:
        """Cancel the timer and any tick still in flight."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
        self._tick_task = None
        logger.debug(f"Timer {self.name} stopped after {self.ticks} ticks")

    async def _run(self) -> None:
        if self.run_immediately:
            self._fire()
        while True:
            await asyncio.sleep(self.interval)
            self._fire()

    def _fire(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self.skipped_ticks += 1
            logger.debug(f"Timer {self.name}: previous tick still running, skipping")
            return
        self._tick_task = asyncio.get_running_loop().create_task(
            self._invoke(), name=f"tick:{self.name}"
        )

    async def _invoke(self) -> None:
        self.ticks += 1
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failed_ticks += 1
            logger.exception(f"Tick {self.name} failed")
