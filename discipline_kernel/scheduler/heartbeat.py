"""
Heartbeat — drives DisciplineEngine.tick at a fixed cadence.

The engine is not thread-safe. Every beat takes the same threading.Lock the
API holds around its engine calls, so a tick never interleaves with a
request; overlapping beats wait instead of failing.
"""

import asyncio
import threading
from datetime import datetime
from typing import List, Optional

from discipline_kernel.models.events import EngineEvent
from discipline_kernel.scheduler.driver import DisciplineEngine


class Heartbeat:
    """Serialised, periodic tick driver."""

    def __init__(
        self,
        engine: DisciplineEngine,
        interval_seconds: Optional[float] = None,
        guard: Optional[threading.Lock] = None,
    ):
        self.engine = engine
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else engine.config.display_tick_seconds
        )
        self.guard = guard or threading.Lock()
        self._running = False
        self.beats = 0

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def _locked_tick(self, now: Optional[datetime]) -> List[EngineEvent]:
        with self.guard:
            events = self.engine.tick(now)
            self.beats += 1
            return events

    async def beat(self, now: Optional[datetime] = None) -> List[EngineEvent]:
        """One serialised tick, run off the event loop while it waits for the guard."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._locked_tick, now)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick until ``stop_event`` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await self.beat()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
