"""WebSocket transport shared by the live feed adapters.

Both live adapters (:mod:`infra.line_feed`, :mod:`infra.xml_feed`)
receive their messages over a WebSocket and differ only in how one
message is decoded. :class:`WebSocketFeed` owns the transport, the
connection status (through :class:`~core.reconnect.ReconnectController`)
and the ``connect()`` / ``disconnect()`` half of the provider contract.
Subclasses implement :meth:`WebSocketFeed._handle_message`.

Architecture note:
    The transport uses synchronous ``websocket-client`` with one daemon
    IO thread per connection attempt, matching the threaded transport
    model of the rest of the package. Message callbacks run inline in
    that IO thread.

Stale transports:
    Every attempt gets a generation number. ``disconnect()`` and each
    new attempt bump it, and callbacks from an older transport are
    dropped, so a socket that closes late can never schedule a
    reconnection or deliver data after teardown.
"""

import logging
import threading
from abc import abstractmethod
from typing import Any

import websocket
from pydantic import BaseModel, Field, field_validator

from core.errors import ErrorCode, FeedConnectionError, ProviderError
from core.events import ConnectionStatus
from core.reconnect import ReconnectConfig, ReconnectController
from core.timers import TimerFactory
from infra.provider import BaseProvider

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class FeedConfig(BaseModel):
    """Connection settings for a live WebSocket feed.

    A bare ``host:port`` target is normalized to ``ws://host:port``.

    Attributes:
        url: WebSocket URL (``ws://`` or ``wss://``) or ``host:port``.
        connect_timeout_s: Maximum time ``connect()`` waits for the
            transport to open.
        reconnect: Backoff settings for automatic reconnection.

    Example:
        >>> FeedConfig(url="192.168.1.5:8081").url
        'ws://192.168.1.5:8081'
    """

    url: str = Field(description="WebSocket URL or host:port")
    connect_timeout_s: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for the initial connection (seconds)",
    )
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, v: str) -> str:
        url: str = v.strip()
        if not url:
            raise ValueError("url must not be empty")
        if "://" not in url:
            url = f"ws://{url}"
        scheme, _, rest = url.partition("://")
        if scheme not in ("ws", "wss") or not rest or rest.startswith("/"):
            raise ValueError(f"Invalid WebSocket URL: {v}")
        return url


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class _Attempt:
    """Outcome of one transport open, awaited by ``connect()``."""

    __slots__ = ("done", "ok", "error")

    def __init__(self) -> None:
        self.done: threading.Event = threading.Event()
        self.ok: bool = False
        self.error: Any = None

    def finish(self, ok: bool, error: Any = None) -> None:
        if self.done.is_set():
            return
        self.ok = ok
        self.error = error
        self.done.set()


class WebSocketFeed(BaseProvider):
    """Live provider over a WebSocket with automatic reconnection.

    Args:
        config: Connection settings.
        strict: Use the strict callback registry (see
            :class:`~infra.provider.BaseProvider`).
        timer_factory: Injectable timer for reconnection backoff.
    """

    def __init__(
        self,
        config: FeedConfig,
        strict: bool = False,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        super().__init__(strict=strict)
        self._config: FeedConfig = config
        self._reconnect: ReconnectController = ReconnectController(
            config=config.reconnect,
            attempt=self._open_transport,
            on_status=self._emit_status,
            timer_factory=timer_factory,
        )

        self._ws: websocket.WebSocketApp | None = None
        self._attempt: _Attempt | None = None
        self._generation: int = 0
        self._lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def status(self) -> ConnectionStatus:
        return self._reconnect.status

    def connect(self) -> None:
        """Open the WebSocket and wait until it is connected.

        No-op while already connected or connecting. On failure the
        status follows the reconnection policy (an automatic attempt is
        scheduled when ``auto_reconnect`` is enabled).

        Raises:
            FeedConnectionError: The transport failed to open, did not
                open within ``connect_timeout_s``, or ``disconnect()``
                was called while waiting.
        """
        if not self._reconnect.begin():
            logger.debug("connect() ignored: already %s", self.status.value)
            return

        logger.info("Connecting to %s", self._config.url)
        attempt: _Attempt = self._open_transport()
        if not attempt.done.wait(self._config.connect_timeout_s):
            logger.warning(
                "Timed out after %.1fs connecting to %s",
                self._config.connect_timeout_s,
                self._config.url,
            )
            attempt.finish(False, "timeout")
            self._close_socket()
            raise FeedConnectionError(f"Timed out connecting to {self._config.url}")
        if not attempt.ok:
            raise FeedConnectionError(
                f"WebSocket connection failed to {self._config.url}",
                cause=attempt.error,
            )

    def disconnect(self) -> None:
        """Close the transport and suppress reconnection. Idempotent."""
        with self._lock:
            self._generation += 1
            ws: websocket.WebSocketApp | None = self._ws
            attempt: _Attempt | None = self._attempt
            self._ws = None
            self._attempt = None

        self._reconnect.stop()
        if attempt is not None:
            attempt.finish(False, "disconnected")
        if ws is not None:
            logger.info("Disconnecting from %s", self._config.url)
            try:
                ws.close()
            except Exception:
                logger.debug("Exception during close", exc_info=True)

    def stats(self) -> dict[str, object]:
        result: dict[str, object] = super().stats()
        result["url"] = self._config.url
        result["reconnect_attempts"] = self._reconnect.attempts
        result["next_reconnect_delay_ms"] = self._reconnect.next_delay_ms
        return result

    # ------------------------------------------------------------------
    # Subclass hook
    # ------------------------------------------------------------------

    @abstractmethod
    def _handle_message(self, message: str | bytes) -> None:
        """Decode and dispatch one transport message."""

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------

    def _open_transport(self) -> _Attempt:
        """Create a WebSocketApp and run it on a daemon IO thread."""
        attempt: _Attempt = _Attempt()
        with self._lock:
            self._generation += 1
            generation: int = self._generation
            ws: websocket.WebSocketApp = websocket.WebSocketApp(
                self._config.url,
                on_open=lambda _ws: self._on_open(generation, attempt),
                on_message=lambda _ws, message: self._on_message(generation, message),
                on_error=lambda _ws, error: self._on_error(generation, attempt, error),
            )
            self._ws = ws
            self._attempt = attempt

        thread: threading.Thread = threading.Thread(
            target=self._run,
            args=(ws, generation, attempt),
            name=f"feed-io-{generation}",
            daemon=True,
        )
        thread.start()
        return attempt

    def _run(self, ws: websocket.WebSocketApp, generation: int, attempt: _Attempt) -> None:
        try:
            ws.run_forever()
        except Exception as exc:
            logger.exception("WebSocket loop failed for %s", self._config.url)
            attempt.finish(False, exc)
        self._on_closed(generation, attempt)

    def _close_socket(self) -> None:
        with self._lock:
            ws: websocket.WebSocketApp | None = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception:
                logger.debug("Exception during close", exc_info=True)

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    # ------------------------------------------------------------------
    # Transport callbacks (IO thread)
    # ------------------------------------------------------------------

    def _on_open(self, generation: int, attempt: _Attempt) -> None:
        if not self._is_current(generation):
            return
        logger.info("Connected to %s", self._config.url)
        # Status first: connect() returns as soon as the attempt finishes.
        self._reconnect.opened()
        attempt.finish(True)

    def _on_message(self, generation: int, message: str | bytes) -> None:
        if not self._is_current(generation):
            return
        try:
            self._handle_message(message)
        except Exception as exc:
            logger.exception("Unhandled error processing message from %s", self._config.url)
            self._emit_error(
                ProviderError(
                    code=ErrorCode.UNKNOWN_ERROR,
                    message="Failed to process message",
                    cause=exc,
                )
            )

    def _on_error(self, generation: int, attempt: _Attempt, error: Any) -> None:
        if not self._is_current(generation):
            return
        logger.warning("Transport error on %s: %s", self._config.url, error)
        attempt.finish(False, error)
        self._emit_error(
            ProviderError(
                code=ErrorCode.CONNECTION_ERROR,
                message=f"WebSocket error on {self._config.url}",
                cause=error,
            )
        )

    def _on_closed(self, generation: int, attempt: _Attempt) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._ws = None
            self._attempt = None
        attempt.finish(False, attempt.error or "closed")

        if self._reconnect.status == ConnectionStatus.CONNECTED:
            logger.warning("Connection to %s lost", self._config.url)
        self._reconnect.lost()
