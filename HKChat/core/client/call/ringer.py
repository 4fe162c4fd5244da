"""
Repeating ring callback.

The call session only decides *when* to ring; what a ring sounds like is
up to the callback a presentation layer attaches.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class Ringer:
    """Calls ``callback`` immediately and then every ``interval`` seconds until stopped."""

    def __init__(self, callback: Callable[[], Any], interval: float):
        self._callback = callback
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Ring callback failed: %s", e)
            await asyncio.sleep(self._interval)
