"""Injectable clock and one-shot timers.

Timers (reconnection backoff, replay scheduling, highlight/departing
expiry) are the only asynchronous primitives in the system. Every
component that needs one takes a :data:`TimerFactory` and a
:data:`Clock` so tests can substitute a manual clock and drive time
deterministically.

Units:
    Both the clock and timer delays are in **milliseconds**.

Thread ownership:
    The default factory runs callbacks on a daemon ``threading.Timer``
    thread. Callers are responsible for their own locking and for
    rejecting stale callbacks (see the generation counters in
    :mod:`core.reconnect` and :mod:`infra.replay`).
"""

import threading
import time
from typing import Callable, Protocol


class TimerHandle(Protocol):
    """Handle to a scheduled one-shot callback."""

    def cancel(self) -> None:
        """Cancel the callback. No-op if it already ran."""
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
"""Signature: ``(delay_ms, callback) -> TimerHandle``."""

Clock = Callable[[], float]
"""Signature: ``() -> milliseconds``."""


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds. Never goes backwards."""
    return time.monotonic() * 1000.0


def wall_ms() -> float:
    """Wall clock in milliseconds since the epoch."""
    return time.time() * 1000.0


def threading_timer(delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule ``callback`` on a daemon ``threading.Timer``.

    Args:
        delay_ms: Delay in milliseconds. Negative values fire immediately.
        callback: Zero-argument callable.

    Returns:
        The started timer, which satisfies :class:`TimerHandle`.
    """
    timer: threading.Timer = threading.Timer(max(0.0, delay_ms) / 1000.0, callback)
    timer.daemon = True
    timer.start()
    return timer
