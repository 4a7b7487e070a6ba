"""Cancellable scheduled tasks used for periodic drains and token checks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

_LOGGER = logging.getLogger(__name__)

TaskCallback = Callable[[], Awaitable[object]]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped.

    Errors raised by the callback are logged and the loop keeps running.
    """

    def __init__(self, name: str, interval: float, callback: TaskCallback) -> None:
        self.name = name
        self.interval = float(interval)
        self._callback = callback
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with suppress(asyncio.CancelledError):
            await task

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.exception("Scheduled task %s failed: %s", self.name, err)
            self.runs += 1


class DeferredTask:
    """Run ``callback`` once, ``delay`` seconds after the first request.

    Requests made while a run is pending coalesce into that run.
    """

    def __init__(self, name: str, delay: float, callback: TaskCallback) -> None:
        self.name = name
        self.delay = float(delay)
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._waiting = False

    @property
    def pending(self) -> bool:
        return self._waiting and self._task is not None and not self._task.done()

    def schedule(self) -> bool:
        if self.pending:
            return False
        self._waiting = True
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return True

    async def cancel(self) -> None:
        task, self._task = self._task, None
        self._waiting = False
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def wait(self) -> None:
        """Wait for the pending run, if any, to finish."""

        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await asyncio.shield(self._task)

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        # Requests arriving from here on get a run of their own
        self._waiting = False
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as err:  # pragma: no cover - defensive log
            _LOGGER.exception("Deferred task %s failed: %s", self.name, err)


__all__ = ["DeferredTask", "PeriodicTask"]
