"""
Drift-Corrected Periodic Loop
Runs a task every interval, subtracting the task's own execution time
"""

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


def next_delay(interval_s: float, elapsed_s: float) -> float:
    """Delay until the next firing: max(0, interval - elapsed)"""
    return max(0.0, interval_s - elapsed_s)


class AsyncLoop:
    """
    Cooperative periodic task.

    - First firing happens one interval after start()
    - Each later firing is scheduled interval - elapsed after the previous one began
    - The active flag is checked before work and before rescheduling, so stop()
      takes effect before the next firing
    - Exceptions from the task are logged and the loop keeps running
    """

    def __init__(self, interval_ms: float,
                 task: Callable[[], Union[None, Awaitable[None]]],
                 name: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.interval_s = max(0.0, interval_ms) / 1000.0
        self.task = task
        self.name = name or getattr(task, "__name__", "loop")
        self._clock = clock
        self._sleep = sleep
        self._active = False
        self._runner: Optional[asyncio.Task] = None
        self.iterations = 0

    @property
    def active(self) -> bool:
        return self._active

    def start(self):
        """Start the loop (no-op if already running)"""
        if self._active:
            return
        self._active = True
        self._runner = asyncio.create_task(self._run(), name=f"loop:{self.name}")

    def stop(self):
        """Stop the loop; safe to call from inside the task itself"""
        self._active = False
        runner, self._runner = self._runner, None
        if runner is not None and runner is not asyncio.current_task():
            runner.cancel()

    async def _run(self):
        try:
            await self._sleep(self.interval_s)
            while self._active:
                started_at = self._clock()
                try:
                    result = self.task()
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(f"Periodic task {self.name} failed")

                self.iterations += 1
                if not self._active:
                    break

                elapsed = self._clock() - started_at
                await self._sleep(next_delay(self.interval_s, elapsed))

        except asyncio.CancelledError:
            logger.debug(f"Loop {self.name} cancelled")
