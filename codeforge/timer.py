"""Elapsed-time tracker for a practice session.

A two-state clock (idle/running) that ticks once per ``interval`` on the
running event loop and reports the formatted elapsed time through a callback.
"""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0  # seconds
ZERO_TIME = "00:00"


def format_elapsed(seconds: int) -> str:
    """Format seconds as MM:SS. Minutes grow past two digits when needed."""
    mins, secs = divmod(seconds, 60)
    return f"{mins:02d}:{secs:02d}"


class PracticeTimer:
    def __init__(self, on_tick: Callable[[str], None], *, interval: float = TICK_INTERVAL):
        self._on_tick = on_tick
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False
        self.seconds = 0

    def format_time(self) -> str:
        return format_elapsed(self.seconds)

    def _tick(self) -> None:
        self.seconds += 1
        self._on_tick(self.format_time())

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._tick()

    def _cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def start(self) -> None:
        """Begin ticking. Must be called from inside a running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.debug("Timer started at %s", self.format_time())

    def pause(self) -> None:
        if not self._running or self._task is None:
            return
        self._cancel()
        self._running = False

    def resume(self) -> None:
        self.start()

    def reset(self) -> None:
        self._cancel()
        self.seconds = 0
        self._running = False
        self._on_tick(ZERO_TIME)

    def stop(self) -> str:
        """Stop the clock and return the elapsed time it showed."""
        self._cancel()
        final_time = self.format_time()
        self.seconds = 0
        self._running = False
        self._on_tick(ZERO_TIME)
        return final_time

    def is_active(self) -> bool:
        return self._running
