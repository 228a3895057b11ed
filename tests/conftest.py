"""Shared fixtures: a manual millisecond clock with one-shot timers.

Replay scheduling, reconnection backoff and scoreboard expiry all take
an injectable ``clock`` and ``timer_factory``. :class:`ManualClock`
provides both, so tests advance time explicitly and never sleep.
"""

import itertools
from typing import Callable

import pytest


class ManualTimer:
    """Timer handle returned by :meth:`ManualClock.timer`."""

    def __init__(self, due_ms: float, seq: int, callback: Callable[[], None]) -> None:
        self.due_ms: float = due_ms
        self.seq: int = seq
        self.callback: Callable[[], None] = callback
        self.delay_ms: float = 0.0
        self.cancelled: bool = False
        self.fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Deterministic clock. Timers fire only inside :meth:`advance`."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self.now: float = start_ms
        self.timers: list[ManualTimer] = []
        self._seq: itertools.count = itertools.count()

    def __call__(self) -> float:
        return self.now

    def timer(self, delay_ms: float, callback: Callable[[], None]) -> ManualTimer:
        handle: ManualTimer = ManualTimer(
            self.now + max(0.0, delay_ms), next(self._seq), callback
        )
        handle.delay_ms = delay_ms
        self.timers.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualTimer]:
        """Timers neither fired nor cancelled, in firing order."""
        return sorted(
            (t for t in self.timers if not t.cancelled and not t.fired),
            key=lambda t: (t.due_ms, t.seq),
        )

    def advance(self, ms: float) -> None:
        """Move time forward, firing due timers in (due, creation) order.

        Timers created while advancing fire too if they fall due before
        the target time.
        """
        target: float = self.now + ms
        while True:
            due: list[ManualTimer] = [t for t in self.pending if t.due_ms <= target]
            if not due:
                break
            handle: ManualTimer = due[0]
            self.now = max(self.now, handle.due_ms)
            handle.fired = True
            handle.callback()
        self.now = target

    def run_pending(self) -> None:
        """Fire the next pending timer, jumping the clock to its due time."""
        pending: list[ManualTimer] = self.pending
        if pending:
            self.advance(max(0.0, pending[0].due_ms - self.now))


@pytest.fixture()
def clock() -> ManualClock:
    """Return a manual clock starting at t=0 ms."""
    return ManualClock()
