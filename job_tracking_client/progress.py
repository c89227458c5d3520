import asyncio
import math
from typing import Any, Callable, Optional

from loguru import logger


def clamp_progress(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(100.0, value))


class ProgressEstimator:
    """Optimistic progress that crawls between server updates.

    The visible value is the larger of the local estimate and the last
    server-reported progress, and it never goes down for the lifetime of
    the estimator. The local estimate stops at `ceiling` so only the server
    can report a finished job.
    """

    def __init__(
        self,
        tick: float = 0.4,
        step: float = 2.0,
        start_value: float = 0.0,
        ceiling: float = 95.0,
        on_change: Optional[Callable[[float], Any]] = None,
    ):
        if ceiling >= 100:
            raise ValueError("ceiling must stay below 100")
        self.tick = tick
        self.step = step
        self.start_value = start_value
        self.ceiling = ceiling
        self.on_change = on_change
        self.logger = logger
        self.optimistic = 0.0
        self.server: Optional[float] = None
        self._published = 0.0
        self._ticker: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def value(self) -> float:
        fused = clamp_progress(max(self.optimistic, self.server or 0.0))
        self._published = max(self._published, fused)
        return self._published

    def start(self) -> None:
        self.stop()
        self.optimistic = min(self.start_value, self.ceiling)
        self._ticker = asyncio.create_task(self._run())

    def stop(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()

    def observe(self, server_progress: Optional[float]) -> float:
        if server_progress is not None:
            self.server = clamp_progress(server_progress)
        return self._changed()

    def advance(self) -> float:
        """Moves the optimistic estimate one step towards the ceiling"""
        self.optimistic = min(self.optimistic + self.step, self.ceiling)
        return self._changed()

    def _changed(self) -> float:
        value = self.value
        if self.on_change is not None:
            self.on_change(value)
        return value

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick)
            self.advance()
