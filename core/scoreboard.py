"""Scoreboard store: live owner of the correlator state.

:class:`ScoreboardStore` subscribes to every channel of one provider,
folds each event through :func:`core.correlator.reduce` and publishes
the resulting :class:`~core.correlator.ScoreboardState` snapshots to
its listeners. Each provider instance should get its own store; stores
never share state.

Ordering:
    Events are reduced one at a time under a re-entrant lock and
    listeners are notified before the next event is applied, so every
    listener sees every state in order. Listeners may call back into
    the store.

Expiry:
    After every transition the store arms one timer for the earliest
    departing / highlight / pending / grace deadline. When it fires an
    :class:`~core.correlator.Expire` event is reduced. The timer is only
    a state-transition trigger; liveness queries
    (:meth:`ScoreboardStore.is_highlight_active` and friends) compare
    against the clock directly and do not depend on it firing on time.

Example:
    >>> store = ScoreboardStore(ReplayProvider("recording.jsonl"))
    >>> unsubscribe = store.subscribe(lambda state: print(state.current))
    >>> store.start()
"""

import logging
import threading
from typing import TYPE_CHECKING, Callable

from core.callbacks import CallbackRegistry, Unsubscribe
from core.correlator import (
    ClearProviderErrors,
    Expire,
    ResetRace,
    ScoreboardConfig,
    ScoreboardEvent,
    ScoreboardState,
    SetError,
    departing_progress,
    departing_remaining_ms,
    highlight_progress,
    highlight_remaining_ms,
    initial_state,
    is_departing_active,
    is_highlight_active,
    next_expiry_ms,
    reduce,
)
from core.errors import FeedError
from core.events import OnCourseData, ResultsData
from core.runs import RunMerger
from core.timers import Clock, TimerFactory, TimerHandle, monotonic_ms, threading_timer

if TYPE_CHECKING:
    from infra.provider import DataProvider

logger: logging.Logger = logging.getLogger(__name__)

StateListener = Callable[[ScoreboardState], None]

_STATE_CHANNEL: str = "state"


class ScoreboardStore:
    """Folds provider events into scoreboard state.

    Args:
        provider: Source of events (any :class:`~infra.provider.DataProvider`).
        config: Correlator timing windows.
        clock: Millisecond clock for transition timestamps.
        timer_factory: One-shot timer for expiry transitions.
        run_merger: Optional best-run merger applied to results before
            they are reduced. Its fetch results re-publish the last
            snapshot.
    """

    def __init__(
        self,
        provider: "DataProvider",
        config: ScoreboardConfig | None = None,
        clock: Clock | None = None,
        timer_factory: TimerFactory | None = None,
        run_merger: RunMerger | None = None,
    ) -> None:
        self._provider: DataProvider = provider
        self._config: ScoreboardConfig = config or ScoreboardConfig()
        self._clock: Clock = clock or monotonic_ms
        self._timer_factory: TimerFactory = timer_factory or threading_timer
        self._run_merger: RunMerger | None = run_merger

        self._state: ScoreboardState = initial_state(provider.status)
        self._listeners: CallbackRegistry = CallbackRegistry()
        self._unsubscribes: list[Unsubscribe] = []
        self._lock: threading.RLock = threading.RLock()
        self._last_results: ResultsData | None = None

        self._expiry_timer: TimerHandle | None = None
        self._expiry_deadline: float | None = None
        self._expiry_generation: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to the provider and connect it.

        A connection failure is recorded in ``state.error`` instead of
        being raised; the provider's reconnection policy takes over.
        """
        with self._lock:
            if not self._unsubscribes:
                self._attach()
        self._connect()

    def close(self) -> None:
        """Unsubscribe, cancel the expiry timer and disconnect the provider."""
        with self._lock:
            for unsubscribe in self._unsubscribes:
                unsubscribe()
            self._unsubscribes.clear()
            self._cancel_expiry_locked()
            self._last_results = None
        if self._run_merger is not None:
            self._run_merger.close()
        self._provider.disconnect()

    def reconnect(self) -> None:
        """Operator-requested reconnect: clear errors, disconnect, connect.

        Race state is dropped after the disconnect so that no snapshot
        from the old session is correlated with the new one.
        """
        self.dispatch(SetError(message=None))
        self.dispatch(ClearProviderErrors())
        self._provider.disconnect()
        with self._lock:
            self._last_results = None
            self.dispatch(ResetRace())
        self._connect()

    def clear_provider_errors(self) -> None:
        self.dispatch(ClearProviderErrors())

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> ScoreboardState:
        """Latest snapshot. Immutable; safe to keep."""
        with self._lock:
            return self._state

    def subscribe(self, listener: StateListener) -> Unsubscribe:
        """Call ``listener`` with every new state. No initial replay."""
        return self._listeners.subscribe(_STATE_CHANNEL, listener)

    def dispatch(self, event: ScoreboardEvent) -> ScoreboardState:
        """Reduce one event and notify listeners if the state changed.

        Returns:
            The state after the event.
        """
        with self._lock:
            previous: ScoreboardState = self._state
            now_ms: float = self._clock()
            state: ScoreboardState = reduce(previous, event, now_ms, self._config)
            if state is previous:
                return state
            self._state = state
            self._arm_expiry_locked(state)
            self._listeners.emit(_STATE_CHANNEL, state)
            return state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_highlight_active(self) -> bool:
        return is_highlight_active(self.state, self._clock(), self._config)

    def highlight_remaining_ms(self) -> float:
        return highlight_remaining_ms(self.state, self._clock(), self._config)

    def highlight_progress(self) -> float:
        return highlight_progress(self.state, self._clock(), self._config)

    def is_departing_active(self) -> bool:
        return is_departing_active(self.state, self._clock(), self._config)

    def departing_remaining_ms(self) -> float:
        return departing_remaining_ms(self.state, self._clock(), self._config)

    def departing_progress(self) -> float:
        return departing_progress(self.state, self._clock(), self._config)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _attach(self) -> None:
        provider: DataProvider = self._provider
        self._unsubscribes = [
            provider.on_results(self._on_results),
            provider.on_on_course(self._on_on_course),
            provider.on_visibility(self.dispatch),
            provider.on_event_info(self.dispatch),
            provider.on_config(self.dispatch),
            provider.on_connection_change(self.dispatch),
            provider.on_error(self.dispatch),
        ]
        if self._run_merger is not None:
            self._unsubscribes.append(self._run_merger.on_runs_updated(self._on_runs_updated))

    def _on_results(self, data: ResultsData) -> None:
        with self._lock:
            self._last_results = data
            if self._run_merger is not None:
                data = self._run_merger.process(data)
            self.dispatch(data)

    def _on_on_course(self, data: OnCourseData) -> None:
        if self._run_merger is not None:
            self._run_merger.update_on_course(data.competitors, full=data.full)
        self.dispatch(data)

    def _on_runs_updated(self, race_id: str) -> None:
        with self._lock:
            last: ResultsData | None = self._last_results
            if self._run_merger is None or last is None or last.race_id != race_id:
                return
            self.dispatch(self._run_merger.merge(last))

    def _connect(self) -> None:
        try:
            self._provider.connect()
        except FeedError as exc:
            logger.warning("Connection failed: %s", exc.message)
            self.dispatch(SetError(message=exc.message or "Connection failed"))

    def _arm_expiry_locked(self, state: ScoreboardState) -> None:
        deadline: float | None = next_expiry_ms(state, self._config)
        if deadline == self._expiry_deadline:
            return
        self._cancel_expiry_locked()
        if deadline is None:
            return
        self._expiry_deadline = deadline
        generation: int = self._expiry_generation
        delay_ms: float = max(0.0, deadline - self._clock())
        self._expiry_timer = self._timer_factory(
            delay_ms,
            lambda: self._on_expiry(generation),
        )

    def _cancel_expiry_locked(self) -> None:
        self._expiry_generation += 1
        self._expiry_deadline = None
        if self._expiry_timer is not None:
            self._expiry_timer.cancel()
            self._expiry_timer = None

    def _on_expiry(self, generation: int) -> None:
        with self._lock:
            if generation != self._expiry_generation:
                return
            self._expiry_timer = None
            self._expiry_deadline = None
        state: ScoreboardState = self.dispatch(Expire())
        with self._lock:
            # Re-arm when Expire was a no-op (timer fired early).
            if self._expiry_timer is None and state is self._state:
                self._arm_expiry_locked(state)
