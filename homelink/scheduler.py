from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

_LOGGER = logging.getLogger("homelink.scheduler")


class PollingScheduler:
    """Fallback full refresh, only when the push channel has gone quiet."""

    def __init__(
        self,
        poll: Callable[[], Awaitable[None]],
        last_push: Callable[[], float | None],
        *,
        interval_s: float = 30.0,
        silence_threshold_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._poll = poll
        self._last_push = last_push
        self._interval_s = float(interval_s)
        self._silence_threshold_s = float(silence_threshold_s)
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def should_poll(self, now: float | None = None) -> bool:
        last = self._last_push()
        if last is None:
            return True
        t = self._clock() if now is None else now
        return t - last > self._silence_threshold_s

    async def tick(self) -> bool:
        if not self.should_poll():
            _LOGGER.debug("Push channel active; skipping poll")
            return False
        try:
            await self._poll()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Next tick retries; existing state stays as it is.
            _LOGGER.warning("Fallback poll failed: %s", e)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            await self.tick()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
