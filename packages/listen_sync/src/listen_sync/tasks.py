"""Cancellable periodic tasks owned by a coordinator."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds until stopped.

    A failing cycle is logged and the next tick runs as scheduled.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._interval = interval
        self._func = func
        self._task: asyncio.Task[None] | None = None
        self._stop_requested = False
        self.cycles = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_requested = False
        self._task = asyncio.create_task(self._loop(), name=self._name)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        self._stop_requested = True
        if task is asyncio.current_task():
            # Stopped from inside its own cycle; the loop exits once the cycle returns.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        try:
            while not self._stop_requested:
                await asyncio.sleep(self._interval)
                try:
                    await self._func()
                except asyncio.CancelledError:
                    raise
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Periodic task %s failed; retrying next tick", self._name)
                self.cycles += 1
        except asyncio.CancelledError:
            logger.debug("Periodic task %s cancelled", self._name)
            raise
