"""Fixed-rate cooperative scheduler driving layout ticks on the event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from env_validation import get_env_float

logger = logging.getLogger(__name__)

DEFAULT_FPS = 60.0


def _default_interval() -> float:
    fps = get_env_float("LAYOUT_FPS", DEFAULT_FPS)
    if fps <= 0:
        fps = DEFAULT_FPS
    return 1.0 / fps


class LayoutLoop:
    """Call ``step`` once per frame until stopped.

    Ticks run on the owning event loop, so drag events and graph merges that
    are applied from coroutines on the same loop always land between ticks.
    The loop runs until :meth:`stop` is called; it never
    ends on its own.
    """

    def __init__(
        self,
        step: Callable[[], Any],
        *,
        interval: Optional[float] = None,
        name: str = "layout-loop",
    ) -> None:
        self.step = step
        self.interval = interval if interval is not None else _default_interval()
        self.name = name
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop (idempotent)."""

        if self._task is not None and not self._task.done():
            return self._task
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self.name)
        logger.debug("Started %s at %.1f fps", self.name, 1.0 / self.interval if self.interval else 0.0)
        return self._task

    def run_ticks(self, count: int) -> None:
        """Advance ``count`` frames synchronously, without a scheduler."""

        for _ in range(max(0, count)):
            self.step()
            self.ticks += 1

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_frame = loop.time()
        while True:
            try:
                self.step()
            except Exception:
                logger.exception("Layout tick failed in %s", self.name)
            self.ticks += 1

            next_frame += self.interval
            delay = next_frame - loop.time()
            if delay < 0:
                # fell behind; drop the missed frames
                next_frame = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped %s after %d ticks", self.name, self.ticks)
