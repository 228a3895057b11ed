"""Connection lifecycle with exponential-backoff reconnection.

:class:`ReconnectController` owns the connection status of a
network-backed provider and schedules automatic reconnection attempts.
Both live adapters (:mod:`infra.line_feed`, :mod:`infra.xml_feed`)
share it, which keeps their reconnection semantics identical.

State transitions::

    DISCONNECTED --begin()--> CONNECTING --opened()--> CONNECTED
    CONNECTED --lost()--> RECONNECTING --(timer)--> CONNECTING --> ...
    any --stop()--> DISCONNECTED   (suppresses future attempts)

Backoff:
    The first attempt waits ``initial_delay_ms``; every scheduled
    attempt doubles the delay for the next one, capped at
    ``max_delay_ms``. With defaults: 1000, 2000, 4000, 8000, 16000,
    30000, 30000, ... The delay resets to the initial value on every
    successful connection.

Single pending attempt:
    At most one attempt is scheduled at a time. Scheduling always
    cancels the previous pending attempt. Timer callbacks carry a
    generation number; a callback whose generation is stale (because it
    was cancelled, or ``stop()`` ran) is ignored even if its thread had
    already started.

Operator disconnect:
    ``stop()`` marks the session as operator-terminated. Until the next
    explicit ``begin()``, transport loss never schedules an attempt.
"""

import logging
import threading
from typing import Callable

from pydantic import BaseModel, Field, model_validator

from core.events import ConnectionStatus
from core.timers import TimerFactory, TimerHandle, threading_timer

logger: logging.Logger = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionStatus], None]
"""Called with the new status on every transition."""

ReconnectAttempt = Callable[[], None]
"""Opens a new transport. Reports back via ``opened()`` / ``lost()``."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ReconnectConfig(BaseModel):
    """Configuration for :class:`ReconnectController`.

    Attributes:
        auto_reconnect: Schedule attempts after unexpected transport loss.
        initial_delay_ms: Delay before the first attempt.
        max_delay_ms: Upper bound for the doubled delay.

    Example:
        >>> ReconnectConfig().max_delay_ms
        30000
    """

    auto_reconnect: bool = Field(
        default=True,
        description="Reconnect automatically after unexpected transport loss",
    )
    initial_delay_ms: int = Field(
        default=1000,
        ge=1,
        description="Delay before the first reconnection attempt (ms)",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=1,
        description="Maximum reconnection delay (ms)",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "ReconnectConfig":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"initial_delay_ms ({self.initial_delay_ms})"
            )
        return self


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class ReconnectController:
    """Connection state machine plus backoff scheduling.

    Thread safety:
        All methods are safe to call from any thread, including from
        inside a status listener or a transport callback (the internal
        lock is re-entrant). Listeners are invoked outside the lock.

    Args:
        config: Backoff configuration.
        attempt: Called (from the timer thread) to open a new transport.
        on_status: Called with every new status.
        timer_factory: Injectable timer; defaults to ``threading.Timer``.
    """

    def __init__(
        self,
        config: ReconnectConfig,
        attempt: ReconnectAttempt,
        on_status: StatusListener,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self._config: ReconnectConfig = config
        self._attempt: ReconnectAttempt = attempt
        self._on_status: StatusListener = on_status
        self._timer_factory: TimerFactory = timer_factory or threading_timer

        self._status: ConnectionStatus = ConnectionStatus.DISCONNECTED
        self._next_delay_ms: int = config.initial_delay_ms
        self._stopped: bool = True
        self._timer: TimerHandle | None = None
        self._generation: int = 0
        self._attempts: int = 0
        self._lock: threading.RLock = threading.RLock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        with self._lock:
            return self._status

    @property
    def next_delay_ms(self) -> int:
        """Delay the next scheduled attempt will use."""
        with self._lock:
            return self._next_delay_ms

    @property
    def stopped(self) -> bool:
        """Whether the session was ended by ``stop()`` (or never begun)."""
        with self._lock:
            return self._stopped

    @property
    def pending(self) -> bool:
        """Whether an attempt is currently scheduled."""
        with self._lock:
            return self._timer is not None

    @property
    def attempts(self) -> int:
        """Number of reconnection attempts fired since creation."""
        with self._lock:
            return self._attempts

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin(self) -> bool:
        """Start an operator-requested connection.

        Returns:
            ``False`` if already connected or connecting (the caller
            should treat ``connect()`` as a no-op), ``True`` otherwise.
        """
        with self._lock:
            if self._status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
                return False
            self._stopped = False
            self._cancel_locked()
        self._set_status(ConnectionStatus.CONNECTING)
        return True

    def opened(self) -> None:
        """Report a successful connection. Resets the backoff delay."""
        with self._lock:
            if self._stopped:
                return
            self._next_delay_ms = self._config.initial_delay_ms
            self._cancel_locked()
        self._set_status(ConnectionStatus.CONNECTED)

    def lost(self) -> bool:
        """Report transport loss or a failed attempt.

        Returns:
            ``True`` if an automatic attempt was scheduled.
        """
        with self._lock:
            if self._stopped:
                return False
            if not self._config.auto_reconnect:
                self._stopped = True
                schedule: bool = False
            else:
                schedule = True
        if not schedule:
            self._set_status(ConnectionStatus.DISCONNECTED)
            return False
        self._set_status(ConnectionStatus.RECONNECTING)
        self.schedule()
        return True

    def stop(self) -> None:
        """Operator disconnect: cancel pending work, suppress attempts.

        Idempotent. Emits ``DISCONNECTED`` only on an actual transition.
        """
        with self._lock:
            self._stopped = True
            self._cancel_locked()
            changed: bool = self._status != ConnectionStatus.DISCONNECTED
        if changed:
            self._set_status(ConnectionStatus.DISCONNECTED)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self) -> int | None:
        """Schedule one reconnection attempt, cancelling any pending one.

        Returns:
            The delay used in milliseconds, or ``None`` if suppressed.
        """
        with self._lock:
            if self._stopped:
                return None
            self._cancel_locked()
            delay_ms: int = self._next_delay_ms
            self._next_delay_ms = min(delay_ms * 2, self._config.max_delay_ms)
            generation: int = self._generation
            self._timer = self._timer_factory(
                delay_ms,
                lambda: self._fire(generation),
            )
        logger.info("Reconnect attempt scheduled in %d ms", delay_ms)
        return delay_ms

    def cancel(self) -> None:
        """Cancel a pending attempt without changing status."""
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._stopped:
                return
            self._timer = None
            self._attempts += 1
            attempt_no: int = self._attempts
            changed: bool = self._status != ConnectionStatus.CONNECTING
            self._status = ConnectionStatus.CONNECTING
        logger.info("Reconnect attempt #%d", attempt_no)
        if changed:
            self._on_status(ConnectionStatus.CONNECTING)
        try:
            self._attempt()
        except Exception:
            logger.exception("Reconnect attempt #%d failed", attempt_no)
            self.lost()

    def _set_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            if self._status == status:
                return
            self._status = status
        logger.debug("Connection status -> %s", status.value)
        self._on_status(status)
