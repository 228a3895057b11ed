"""Replay provider: deterministic playback of a recorded session.

:class:`ReplayProvider` turns a static JSONL recording (see
:mod:`core.recording`) into a live-like stream behind the same provider
contract as the live adapters.

Virtual clock:
    Positions are milliseconds relative to the first message. While
    playing, the position advances with the injected clock scaled by
    ``speed``::

        position = origin + (clock() - play_started) * speed

    The next message fires when ``position`` reaches its relative
    timestamp. ``pause()`` freezes ``origin`` at the current position;
    ``set_speed()`` re-bases ``origin`` and reschedules the pending
    timer, so delivered history is unaffected.

Playback states::

    IDLE --play()--> PLAYING --pause()--> PAUSED --play()--> PLAYING
    PLAYING --(end, loop off)--> FINISHED   (terminal until stop()/seek())
    PLAYING --(end, loop on)--> PLAYING from the first message

Seek:
    ``seek(p)`` treats every message with relative timestamp <= ``p``
    as delivered and continues from the first message after ``p``.
    Dispatch order is non-decreasing only within one forward run.

Teardown:
    ``disconnect()`` bumps a generation counter and cancels the timer;
    a timer callback from an older generation is ignored. The internal
    lock is re-entrant, so subscribers may call ``pause()``, ``seek()``
    or ``disconnect()`` from inside a callback.

Example:
    >>> provider = ReplayProvider("recording.jsonl", ReplayConfig(speed=10.0))
    >>> unsubscribe = provider.on_on_course(print)
    >>> provider.connect()   # loads and starts playing (auto_play)
"""

import bisect
import logging
import threading
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from core.errors import FeedConnectionError, FeedError
from core.events import ConnectionStatus, Envelope
from core.recording import (
    RecordedMessage,
    Recording,
    decode_message,
    parse_recording,
    read_recording_source,
)
from core.timers import Clock, TimerFactory, TimerHandle, monotonic_ms, threading_timer
from infra.provider import BaseProvider

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums / configuration
# ---------------------------------------------------------------------------


class PlaybackState(str, Enum):
    """Replay scheduler state.

    States:
        IDLE: Loaded (or stopped) and positioned, not playing.
        PLAYING: Virtual clock running, next message scheduled.
        PAUSED: Virtual clock frozen at the current position.
        FINISHED: Last message delivered with looping disabled.
    """

    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    FINISHED = "finished"


class ReplayConfig(BaseModel):
    """Configuration for :class:`ReplayProvider`.

    Attributes:
        speed: Virtual-clock multiplier (1.0 = real time).
        sources: Capture channels to play. Empty plays every channel.
        auto_play: Start playing as soon as ``connect()`` has loaded the
            recording.
        loop: Restart from the first message after the last one.
        pause_after: Pause automatically once this many messages have
            been dispatched.
        fetch_timeout_s: HTTP timeout when the source is a URL.
    """

    speed: float = Field(default=1.0, gt=0, description="Playback speed multiplier")
    sources: tuple[str, ...] = Field(
        default=("ws",),
        description="Recorded sources to replay",
    )
    auto_play: bool = Field(default=True, description="Play on connect")
    loop: bool = Field(default=False, description="Loop at end of recording")
    pause_after: int | None = Field(
        default=None,
        ge=1,
        description="Auto-pause after N dispatched messages",
    )
    fetch_timeout_s: float = Field(default=10.0, gt=0)

    @field_validator("sources", mode="before")
    @classmethod
    def _coerce_sources(cls, v: object) -> object:
        if isinstance(v, str):
            return tuple(s.strip() for s in v.split(",") if s.strip())
        return v


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ReplayProvider(BaseProvider):
    """Replays a recorded session with original timing.

    Args:
        source: Recording file path, ``http(s)`` URL or inline JSONL.
        config: Playback options.
        clock: Millisecond clock driving the virtual clock.
        timer_factory: One-shot timer used to schedule dispatch.
    """

    def __init__(
        self,
        source: str,
        config: ReplayConfig | None = None,
        clock: Clock | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        super().__init__(strict=False)
        self._source: str = source
        self._config: ReplayConfig = config or ReplayConfig()
        self._clock: Clock = clock or monotonic_ms
        self._timer_factory: TimerFactory = timer_factory or threading_timer

        self._status: ConnectionStatus = ConnectionStatus.DISCONNECTED
        self._state: PlaybackState = PlaybackState.IDLE
        self._messages: tuple[RecordedMessage, ...] = ()
        self._offsets: list[int] = []
        self._index: int = 0
        self._speed: float = self._config.speed
        self._origin_ms: float = 0.0
        self._play_started_ms: float = 0.0
        self._dispatched: int = 0
        self._loops: int = 0

        self._timer: TimerHandle | None = None
        self._generation: int = 0
        self._lock: threading.RLock = threading.RLock()

    # ------------------------------------------------------------------
    # Provider contract
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        with self._lock:
            return self._status

    def connect(self) -> None:
        """Load the recording and (with ``auto_play``) start playback.

        No-op unless disconnected.

        Raises:
            FeedConnectionError: The recording could not be read.
        """
        with self._lock:
            if self._status != ConnectionStatus.DISCONNECTED:
                return
        self._set_status(ConnectionStatus.CONNECTING)

        try:
            content: str = read_recording_source(
                self._source, timeout_s=self._config.fetch_timeout_s
            )
        except FeedConnectionError:
            logger.exception("Failed to load recording")
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise
        recording: Recording = parse_recording(content, self._config.sources)

        with self._lock:
            if self._status != ConnectionStatus.CONNECTING:
                # disconnect() ran while loading
                return
            self._messages = recording.messages
            base: int = recording.messages[0].ts if recording.messages else 0
            self._offsets = [m.ts - base for m in recording.messages]
            self._rewind_locked()
            self._state = PlaybackState.IDLE
            self._dispatched = 0

        logger.info(
            "Loaded recording: %d messages, %d filtered, %d invalid, duration=%d ms",
            len(recording.messages),
            recording.skipped,
            len(recording.errors),
            recording.duration_ms,
        )
        for error in recording.errors:
            self._report_feed_error(error, unit="recording line")

        self._set_status(ConnectionStatus.CONNECTED)
        if self._config.auto_play and self.message_count > 0:
            self.play()

    def disconnect(self) -> None:
        """Stop playback. No further dispatch happens. Idempotent."""
        with self._lock:
            self._cancel_locked()
            self._rewind_locked()
            self._state = PlaybackState.IDLE
        self._set_status(ConnectionStatus.DISCONNECTED)

    # ------------------------------------------------------------------
    # Playback controls
    # ------------------------------------------------------------------

    def play(self) -> None:
        """Start or continue playback from the current position.

        No-op while playing, when finished, or when not connected.
        """
        with self._lock:
            if self._status != ConnectionStatus.CONNECTED:
                logger.warning("play() ignored: replay is %s", self._status.value)
                return
            if self._state in (PlaybackState.PLAYING, PlaybackState.FINISHED):
                return
            self._state = PlaybackState.PLAYING
            self._play_started_ms = self._clock()
            logger.info("Playback started at %.0f ms (speed=%.2f)", self._origin_ms, self._speed)
            self._schedule_next_locked()

    def pause(self) -> None:
        """Freeze the virtual clock, keeping the position."""
        with self._lock:
            self._pause_locked()

    def resume(self) -> None:
        """Continue after ``pause()``. No-op in any other state."""
        with self._lock:
            if self._state != PlaybackState.PAUSED:
                return
            self.play()

    def stop(self) -> None:
        """Stop playback and rewind to the first message."""
        with self._lock:
            self._cancel_locked()
            self._rewind_locked()
            self._state = PlaybackState.IDLE

    def seek(self, position_ms: float) -> None:
        """Move the virtual clock to ``position_ms``.

        Messages at or before the position count as delivered.

        Raises:
            ValueError: ``position_ms`` is negative.
        """
        if position_ms < 0:
            raise ValueError(f"Seek position must be >= 0, got {position_ms}")
        with self._lock:
            was_playing: bool = self._state == PlaybackState.PLAYING
            self._cancel_locked()
            self._index = bisect.bisect_right(self._offsets, position_ms)
            self._origin_ms = min(float(position_ms), float(self.duration))
            self._play_started_ms = self._clock()
            logger.debug("Seek to %.0f ms (next message #%d)", position_ms, self._index)

            if was_playing:
                self._schedule_next_locked()
            elif self._index >= len(self._messages):
                self._state = PlaybackState.FINISHED
            elif self._state == PlaybackState.FINISHED:
                self._state = PlaybackState.PAUSED

    def set_speed(self, multiplier: float) -> None:
        """Change the speed; the pending timer is rescheduled.

        Raises:
            ValueError: ``multiplier`` is not positive.
        """
        if multiplier <= 0:
            raise ValueError(f"Speed multiplier must be positive, got {multiplier}")
        with self._lock:
            if self._state == PlaybackState.PLAYING:
                self._origin_ms = self._position_locked()
                self._play_started_ms = self._clock()
                self._speed = multiplier
                self._cancel_locked()
                self._schedule_next_locked()
            else:
                self._speed = multiplier
        logger.info("Playback speed set to %.2f", multiplier)

    # ------------------------------------------------------------------
    # Read-only properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> PlaybackState:
        with self._lock:
            return self._state

    @property
    def speed(self) -> float:
        with self._lock:
            return self._speed

    @property
    def position(self) -> float:
        """Virtual position in ms relative to the first message."""
        with self._lock:
            return self._position_locked()

    @property
    def duration(self) -> int:
        """Virtual-time span of the loaded recording in ms."""
        with self._lock:
            return self._offsets[-1] if self._offsets else 0

    @property
    def message_count(self) -> int:
        with self._lock:
            return len(self._messages)

    @property
    def dispatched_count(self) -> int:
        """Messages dispatched since ``connect()``, across loops and seeks."""
        with self._lock:
            return self._dispatched

    def stats(self) -> dict[str, object]:
        result: dict[str, object] = super().stats()
        with self._lock:
            result.update(
                state=self._state.value,
                position_ms=self._position_locked(),
                duration_ms=self._offsets[-1] if self._offsets else 0,
                message_count=len(self._messages),
                dispatched_count=self._dispatched,
                loops=self._loops,
                speed=self._speed,
            )
        return result

    # ------------------------------------------------------------------
    # Scheduling (lock held)
    # ------------------------------------------------------------------

    def _position_locked(self) -> float:
        if self._state != PlaybackState.PLAYING:
            return self._origin_ms
        elapsed: float = (self._clock() - self._play_started_ms) * self._speed
        return min(self._origin_ms + elapsed, float(self._offsets[-1] if self._offsets else 0))

    def _schedule_next_locked(self) -> None:
        if self._state != PlaybackState.PLAYING:
            return
        if self._index >= len(self._messages):
            self._handle_end_locked()
            return

        ahead_ms: float = self._offsets[self._index] - self._position_locked()
        delay_ms: float = max(0.0, ahead_ms / self._speed)
        generation: int = self._generation
        self._timer = self._timer_factory(delay_ms, lambda: self._fire(generation))

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state != PlaybackState.PLAYING:
                return
            self._timer = None

            message: RecordedMessage = self._messages[self._index]
            self._index += 1
            self._dispatched += 1
            self._dispatch_message(message)

            if generation != self._generation or self._state != PlaybackState.PLAYING:
                # A subscriber paused, seeked or disconnected.
                return
            if self._config.pause_after is not None and self._dispatched == self._config.pause_after:
                logger.info("Auto-paused after %d messages", self._dispatched)
                self._pause_locked()
                return
            self._schedule_next_locked()

    def _handle_end_locked(self) -> None:
        if self._config.loop and self._messages:
            self._loops += 1
            logger.info("Replay reached the end; looping (#%d)", self._loops)
            self._rewind_locked()
            self._play_started_ms = self._clock()
            self._schedule_next_locked()
            return
        self._state = PlaybackState.FINISHED
        self._origin_ms = float(self._offsets[-1] if self._offsets else 0)
        logger.info("Replay finished after %d messages", self._dispatched)

    def _pause_locked(self) -> None:
        if self._state != PlaybackState.PLAYING:
            return
        self._origin_ms = self._position_locked()
        self._cancel_locked()
        self._state = PlaybackState.PAUSED

    def _cancel_locked(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _rewind_locked(self) -> None:
        self._index = 0
        self._origin_ms = 0.0

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch_message(self, message: RecordedMessage) -> None:
        def on_error(exc: FeedError) -> None:
            self._report_feed_error(exc, unit=f"recorded {message.src}/{message.type} message")

        envelopes: list[Envelope] = decode_message(message, on_error)
        for envelope in envelopes:
            self._dispatch(envelope)

    def _set_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            if self._status == status:
                return
            self._status = status
        logger.debug("Replay status -> %s", status.value)
        self._emit_status(status)
