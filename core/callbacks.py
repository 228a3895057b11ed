"""Per-channel subscriber registry with isolated dispatch.

This module provides the :class:`CallbackRegistry` used by every
provider (and by the scoreboard store for its state listeners) to fan
out events to subscribers.

Registration semantics:
    Each ``subscribe()`` call creates a distinct registration, even if
    the same function is registered twice. The returned unsubscribe
    handle removes exactly that registration and is safe to call any
    number of times.

Dispatch semantics:
    ``emit()`` takes a snapshot of the subscribers under the lock and
    invokes them in registration order *outside* the lock, so a
    subscriber may subscribe, unsubscribe or disconnect the provider
    from inside its callback. Subscribing after an event was emitted
    never replays it.

Error isolation:
    - Default mode: a failing subscriber is logged (rate-limited),
      counted, and reported on the ``on_callback_error`` side channel.
      Remaining subscribers still run and the emitter never sees the
      exception.
    - Strict mode: every subscriber still runs, then the first failure
      is raised as :class:`~core.errors.CallbackError` so the provider
      can surface it as a provider error.
    - The ``ERROR`` channel is always dispatched in default mode to
      keep error reporting from recursing.

Example:
    >>> from core.callbacks import CallbackRegistry
    >>> from core.events import EventKind
    >>> registry = CallbackRegistry()
    >>> seen = []
    >>> unsubscribe = registry.subscribe(EventKind.RESULTS, seen.append)
    >>> registry.emit(EventKind.RESULTS, "payload")
    1
    >>> unsubscribe()
    >>> registry.emit(EventKind.RESULTS, "again")
    0
    >>> seen
    ['payload']
"""

import itertools
import logging
import threading
from typing import Any, Callable, Hashable

from core.errors import CallbackError
from core.events import EventKind

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

Callback = Callable[[Any], None]
"""Subscriber signature: ``(payload) -> None``."""

Unsubscribe = Callable[[], None]
"""Handle returned by ``subscribe()``. Idempotent."""

CallbackErrorHook = Callable[[Hashable, Exception], None]
"""Side channel signature: ``(kind, exception) -> None``."""

# ---------------------------------------------------------------------------
# Rate-limited logging thresholds
# ---------------------------------------------------------------------------

_LOG_FIRST_N: int = 10
"""Log full stack trace for the first N callback errors."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


class CallbackRegistry:
    """Ordered, identity-based subscriber lists keyed by channel.

    Args:
        strict: Raise :class:`CallbackError` after dispatch when a
            subscriber failed, instead of swallowing the failure.
        on_callback_error: Optional side channel invoked with
            ``(kind, exception)`` for every subscriber failure in
            default mode.
    """

    def __init__(
        self,
        strict: bool = False,
        on_callback_error: CallbackErrorHook | None = None,
    ) -> None:
        self._strict: bool = strict
        self._on_callback_error: CallbackErrorHook | None = on_callback_error
        # Channels are created on first use; any hashable key works, which
        # lets the scoreboard store reuse the registry for state listeners.
        self._subscribers: dict[Hashable, dict[int, Callback]] = {}
        self._tokens: itertools.count = itertools.count(1)
        self._lock: threading.Lock = threading.Lock()

        # Counters (emit runs on IO and timer threads)
        self._counter_lock: threading.Lock = threading.Lock()
        self._callback_errors: int = 0

    @property
    def strict(self) -> bool:
        """Whether subscriber failures are raised after dispatch."""
        return self._strict

    @property
    def callback_errors(self) -> int:
        """Total subscriber failures observed."""
        with self._counter_lock:
            return self._callback_errors

    def subscribe(self, kind: Hashable, callback: Callback) -> Unsubscribe:
        """Register ``callback`` on channel ``kind``.

        Args:
            kind: Channel to subscribe to (normally an :class:`EventKind`).
            callback: Called with the payload of every later emit.

        Returns:
            Handle that removes exactly this registration.
        """
        with self._lock:
            token: int = next(self._tokens)
            self._subscribers.setdefault(kind, {})[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.get(kind, {}).pop(token, None)

        return unsubscribe

    def subscriber_count(self, kind: Hashable) -> int:
        """Number of active registrations on ``kind``."""
        with self._lock:
            return len(self._subscribers.get(kind, {}))

    def clear(self) -> None:
        """Drop every registration on every channel."""
        with self._lock:
            for subscribers in self._subscribers.values():
                subscribers.clear()

    def emit(self, kind: Hashable, payload: Any) -> int:
        """Invoke every subscriber of ``kind`` with ``payload``.

        Args:
            kind: Channel to dispatch on.
            payload: Value passed to each subscriber.

        Returns:
            Number of subscribers invoked.

        Raises:
            CallbackError: Strict mode only, after all subscribers ran,
                if at least one of them raised.
        """
        with self._lock:
            callbacks: list[Callback] = list(self._subscribers.get(kind, {}).values())

        first_failure: Exception | None = None
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as exc:
                with self._counter_lock:
                    self._callback_errors += 1
                    count: int = self._callback_errors
                if first_failure is None:
                    first_failure = exc
                if self._strict and kind is not EventKind.ERROR:
                    continue
                self._log_callback_error(kind, count)
                self._report(kind, exc)

        if first_failure is not None and self._strict and kind is not EventKind.ERROR:
            raise CallbackError(
                f"Subscriber for {_channel_name(kind)} failed: {first_failure}",
                cause=first_failure,
            )
        return len(callbacks)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _report(self, kind: Hashable, exc: Exception) -> None:
        if self._on_callback_error is None:
            return
        try:
            self._on_callback_error(kind, exc)
        except Exception:
            logger.exception("Callback error hook failed for %s", _channel_name(kind))

    def _log_callback_error(self, kind: Hashable, count: int) -> None:
        """Log a subscriber failure with rate limiting.

        Must be called from inside the ``except`` block so that
        ``logger.exception`` picks up the active traceback.
        """
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Subscriber error on %s (%d/%d)",
                _channel_name(kind),
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error(
                "Subscriber errors ongoing: %d total (channel=%s)",
                count,
                _channel_name(kind),
            )


def _channel_name(kind: Hashable) -> str:
    return str(getattr(kind, "value", kind))
