"""Deterministic stand-ins for time and timers."""

import asyncio
from typing import Callable, List, Optional


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records timers instead of arming them; tests fire them explicitly."""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self, callback: Optional[Callable[[], None]] = None) -> List[FakeTimer]:
        return [
            t
            for t in self.timers
            if not t.cancelled and not t.fired and (callback is None or t.callback == callback)
        ]

    def fire(self, timer: FakeTimer) -> None:
        assert not timer.cancelled, "fired a cancelled timer"
        timer.fired = True
        timer.callback()


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)
