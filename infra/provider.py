"""Provider contract shared by every scoreboard data source.

Every source (live line feed, live XML feed, recorded-session replay)
satisfies :class:`DataProvider`. Consumers such as
:class:`core.scoreboard.ScoreboardStore` depend only on this contract,
never on transport identity.

Contract:
    - ``connect()`` opens the source. Idempotent while connected or
      connecting. Raises :class:`~core.errors.FeedConnectionError` when
      the transport cannot be opened.
    - ``disconnect()`` is idempotent, cancels all pending work,
      suppresses reconnection and moves ``status`` to ``disconnected``.
      Safe to call from inside one of the provider's own callbacks.
    - ``on_*`` subscription methods return an unsubscribe handle.
      Subscribing never replays events emitted earlier.

:class:`BaseProvider` implements the subscription half of the contract
on top of :class:`~core.callbacks.CallbackRegistry` and the error
accounting every concrete provider shares.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Protocol

from core.callbacks import CallbackRegistry, Unsubscribe
from core.errors import CallbackError, FeedError, ProviderError
from core.events import (
    ConnectionStatus,
    Envelope,
    EventInfoData,
    EventKind,
    OnCourseData,
    RaceConfig,
    ResultsData,
    VisibilityState,
)

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate-limited logging thresholds
# ---------------------------------------------------------------------------

_LOG_FIRST_N: int = 10
"""Log the first N feed errors individually."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class DataProvider(Protocol):
    """Uniform interface over every scoreboard data source."""

    @property
    def status(self) -> ConnectionStatus: ...

    @property
    def connected(self) -> bool: ...

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def on_results(self, callback: Callable[[ResultsData], None]) -> Unsubscribe: ...

    def on_on_course(self, callback: Callable[[OnCourseData], None]) -> Unsubscribe: ...

    def on_visibility(
        self, callback: Callable[[VisibilityState], None]
    ) -> Unsubscribe: ...

    def on_event_info(self, callback: Callable[[EventInfoData], None]) -> Unsubscribe: ...

    def on_config(self, callback: Callable[[RaceConfig], None]) -> Unsubscribe: ...

    def on_connection_change(
        self, callback: Callable[[ConnectionStatus], None]
    ) -> Unsubscribe: ...

    def on_error(self, callback: Callable[[ProviderError], None]) -> Unsubscribe: ...


# ---------------------------------------------------------------------------
# Shared implementation
# ---------------------------------------------------------------------------


class BaseProvider(ABC):
    """Subscription methods, dispatch and error accounting.

    Subclasses implement ``status``, ``connect()`` and ``disconnect()``
    and call :meth:`_dispatch`, :meth:`_report_feed_error` and
    :meth:`_emit_status` from their transport callbacks.

    Args:
        strict: Use a strict callback registry. A failing subscriber is
            then reported as a provider error on the error channel
            instead of only being logged.
    """

    def __init__(self, strict: bool = False) -> None:
        self._callbacks: CallbackRegistry = CallbackRegistry(strict=strict)

        # Counters (guarded by _counter_lock)
        self._messages_parsed: int = 0
        self._parse_errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def status(self) -> ConnectionStatus:
        """Current connection status."""

    @property
    def connected(self) -> bool:
        """Whether ``status`` is ``connected``."""
        return self.status == ConnectionStatus.CONNECTED

    @abstractmethod
    def connect(self) -> None:
        """Open the source."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the source and cancel pending work."""

    def on_results(self, callback: Callable[[ResultsData], None]) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.RESULTS, callback)

    def on_on_course(self, callback: Callable[[OnCourseData], None]) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.ON_COURSE, callback)

    def on_visibility(self, callback: Callable[[VisibilityState], None]) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.VISIBILITY, callback)

    def on_event_info(self, callback: Callable[[EventInfoData], None]) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.EVENT_INFO, callback)

    def on_config(self, callback: Callable[[RaceConfig], None]) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.CONFIG, callback)

    def on_connection_change(
        self, callback: Callable[[ConnectionStatus], None]
    ) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.CONNECTION, callback)

    def on_error(self, callback: Callable[[ProviderError], None]) -> Unsubscribe:
        return self._callbacks.subscribe(EventKind.ERROR, callback)

    def stats(self) -> dict[str, object]:
        """Return provider statistics. Thread-safe.

        Returns:
            Dictionary with status and counter values.

        Example:
            >>> provider.stats()["parse_errors"]
            0
        """
        with self._counter_lock:
            messages_parsed: int = self._messages_parsed
            parse_errors: int = self._parse_errors
        return {
            "status": self.status.value,
            "messages_parsed": messages_parsed,
            "parse_errors": parse_errors,
            "callback_errors": self._callbacks.callback_errors,
        }

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _dispatch(self, envelope: Envelope) -> None:
        """Deliver one envelope on its channel.

        In strict mode a failing subscriber is surfaced as a provider
        error. Subscribers of other channels are unaffected either way.
        """
        with self._counter_lock:
            self._messages_parsed += 1
        try:
            self._callbacks.emit(envelope.channel, envelope.payload)
        except CallbackError as exc:
            self._emit_error(exc.to_provider_error())

    def _emit_status(self, status: ConnectionStatus) -> None:
        self._callbacks.emit(EventKind.CONNECTION, status)

    def _emit_error(self, error: ProviderError) -> None:
        self._callbacks.emit(EventKind.ERROR, error)

    def _report_feed_error(self, exc: FeedError, unit: str) -> None:
        """Count, log (rate-limited) and emit a skipped-unit error.

        Args:
            exc: Parse or validation failure for one unit.
            unit: Short description of the unit for the log line.
        """
        with self._counter_lock:
            self._parse_errors += 1
            count: int = self._parse_errors
        if count <= _LOG_FIRST_N:
            logger.warning(
                "Skipping %s: %s [%s] (%d/%d)",
                unit,
                exc.message,
                exc.code.value,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error("Feed errors ongoing: %d total (last=%s)", count, unit)
        self._emit_error(exc.to_provider_error())
