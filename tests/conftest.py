"""Shared fixtures: a hand-driven clock and an in-memory delivery channel."""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import pytest

from delivery_backends import ChannelKind, DeliveryChannel, ProxyMode
from personality_manager import Personality
from timers import TimerHandle, Timers


class FakeTimerHandle(TimerHandle):

    def __init__(self, due: float, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers(Timers):
    """Clock that only moves when advance() or sleep() is called."""

    def __init__(self, start: float = 0):
        self.current = start
        self.sleeps: List[float] = []
        self._scheduled: List[FakeTimerHandle] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self.current

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = FakeTimerHandle(self.current + max(0, delay_ms), next(self._seq), callback)
        self._scheduled.append(handle)
        return handle

    async def sleep(self, delay_ms: float) -> None:
        self.sleeps.append(delay_ms)
        self.advance(delay_ms)
        await asyncio.sleep(0)

    def advance(self, delay_ms: float) -> None:
        """Move the clock forward, running due callbacks in order, including ones they schedule."""
        target = self.current + delay_ms
        while True:
            due = [h for h in self._scheduled if not h.cancelled and h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.due, h.seq))
            self._scheduled.remove(handle)
            self.current = max(self.current, handle.due)
            handle.callback()
        self.current = target
        self._scheduled = [h for h in self._scheduled if not h.cancelled]

    @property
    def scheduled_count(self) -> int:
        return sum(1 for h in self._scheduled if not h.cancelled)


@dataclass
class FakeMessage:
    id: str
    content: str


@dataclass
class SendCall:
    method: str
    content: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    thread_id: Optional[str] = None
    files: Optional[List[Any]] = None
    embeds: Optional[List[Any]] = None
    mode: Optional[ProxyMode] = None


class FakeChannel(DeliveryChannel):
    """Records every send; failures are configured per method or per content."""

    def __init__(self, kind: ChannelKind = ChannelKind.TEXT, channel_id: str = "chan-1"):
        self._id = channel_id
        self._kind = kind
        self.calls: List[SendCall] = []
        self.fail_proxy_modes = set()
        self.fail_direct = False
        self.fail_when: Optional[Callable[[str], bool]] = None
        self._ids = itertools.count(1)

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> ChannelKind:
        return self._kind

    @property
    def proxy_calls(self) -> List[SendCall]:
        return [c for c in self.calls if c.method == "proxy"]

    @property
    def direct_calls(self) -> List[SendCall]:
        return [c for c in self.calls if c.method == "direct"]

    def _message(self, content: str) -> FakeMessage:
        return FakeMessage(id=f"msg-{next(self._ids)}", content=content)

    async def send_proxy_identity(self, content, display_name, avatar_url, thread_id=None,
                                  files=None, embeds=None, mode=ProxyMode.STANDARD):
        self.calls.append(SendCall("proxy", content, display_name, avatar_url, thread_id, files, embeds, mode))
        if mode in self.fail_proxy_modes or (self.fail_when and self.fail_when(content)):
            raise RuntimeError(f"proxy send failed ({mode.value})")
        return self._message(content)

    async def send_direct(self, content, files=None, embeds=None):
        self.calls.append(SendCall("direct", content, files=files, embeds=embeds))
        if self.fail_direct or (self.fail_when and self.fail_when(content)):
            raise RuntimeError("direct send failed")
        return self._message(content)


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def personality():
    return Personality(
        full_name="albert-einstein",
        display_name="Albert",
        avatar_url="https://example.com/albert.png",
        system_prompt="You are Albert Einstein.",
        aliases=["albert", "ae"],
    )
