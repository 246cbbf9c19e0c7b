"""
Timer functions for the delivery pipeline
All components take a Timers instance so tests can drive time by hand
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable


class TimerHandle(ABC):
    """A scheduled callback that can be cancelled"""

    @abstractmethod
    def cancel(self) -> None:
        pass


class Timers(ABC):
    """Clock, scheduler and sleep, all in milliseconds"""

    @abstractmethod
    def now(self) -> float:
        """Current time in milliseconds"""
        pass

    @abstractmethod
    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay_ms"""
        pass

    @abstractmethod
    async def sleep(self, delay_ms: float) -> None:
        pass


class _LoopTimerHandle(TimerHandle):

    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class LoopTimers(Timers):
    """Timers backed by the running asyncio event loop and a monotonic clock"""

    def now(self) -> float:
        return time.monotonic() * 1000

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return _LoopTimerHandle(loop.call_later(max(0.0, delay_ms) / 1000, callback))

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000)
