"""Scoreboard correlation state machine.

This module derives the UI-facing scoreboard state (results, on-course
set, current competitor, departing and highlight) from the stream of
normalized provider events.

Architecture note:
    The correlator is a pure transition function::

        reduce(state, event, now_ms, config) -> state'

    ``ScoreboardState`` is a frozen Pydantic model; every transition
    returns a new snapshot (or the same object when nothing changed), so
    consumers never observe a partially applied event. Time enters only
    through ``now_ms``, which keeps every rule testable with a fixed
    clock. :class:`core.scoreboard.ScoreboardStore` owns the live state
    and serializes calls.

Finish correlation:
    1. An on-course event in which a competitor's ``finish_ts`` goes
       from absent to present, for a competitor previously seen without
       one, sets the *pending highlight* (first transition per event
       wins). A competitor that arrives already finished never does.
    2. A later results snapshot containing the pending bib, within
       ``pending_highlight_window_ms`` of the transition, activates the
       *highlight*. Results alone never activate a highlight.

Departing:
    Whenever the current competitor changes, the previous one becomes
    *departing*. It is cleared when its timeout elapses or when the
    highlight activates for the same bib.

Expiry:
    Highlight, departing and pending highlight store only an activation
    time. The ``is_*_active`` / ``*_remaining_ms`` / ``*_progress``
    helpers compute liveness against any clock reading; an :class:`Expire`
    event removes expired entries from the state itself.

Example:
    >>> state = initial_state()
    >>> on = OnCourseData(competitors=(Competitor(bib="7", start_ts="10:00"),))
    >>> state = reduce(state, on, now_ms=0)
    >>> state.current.bib
    '7'
"""

import logging

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ProviderError
from core.events import (
    Competitor,
    ConnectionStatus,
    EventInfoData,
    OnCourseData,
    RaceConfig,
    ResultRow,
    ResultsData,
    VisibilityState,
)

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ScoreboardConfig(BaseModel):
    """Timing windows for the correlator.

    Attributes:
        finished_grace_ms: How long a finished competitor stays in the
            on-course set after its finish was first observed.
        departing_timeout_ms: Lifetime of the departing entry.
        highlight_duration_ms: Lifetime of an activated highlight.
        pending_highlight_window_ms: Maximum age of a pending highlight
            for a results snapshot to activate it.
        error_history_size: Provider errors retained in the state.
    """

    model_config = ConfigDict(frozen=True)

    finished_grace_ms: int = Field(default=5000, ge=0)
    departing_timeout_ms: int = Field(default=3000, ge=0)
    highlight_duration_ms: int = Field(default=5000, ge=0)
    pending_highlight_window_ms: int = Field(default=10000, ge=0)
    error_history_size: int = Field(default=10, ge=1)


DEFAULT_CONFIG: ScoreboardConfig = ScoreboardConfig()


# ---------------------------------------------------------------------------
# Correlator-only events
# ---------------------------------------------------------------------------


class Expire(BaseModel):
    """Drop every entry whose window has elapsed at ``now_ms``."""

    model_config = ConfigDict(frozen=True)


class ClearProviderErrors(BaseModel):
    """Empty the provider error history."""

    model_config = ConfigDict(frozen=True)


class SetError(BaseModel):
    """Set or clear the consumer-facing connection error message."""

    model_config = ConfigDict(frozen=True)

    message: str | None = None


class ResetRace(BaseModel):
    """Drop all race state, as a reconnecting transport does.

    Connection status, errors and venue-level fields are kept.
    """

    model_config = ConfigDict(frozen=True)


ScoreboardEvent = (
    ResultsData
    | OnCourseData
    | VisibilityState
    | EventInfoData
    | RaceConfig
    | ConnectionStatus
    | ProviderError
    | Expire
    | ClearProviderErrors
    | SetError
    | ResetRace
)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class ScoreboardState(BaseModel):
    """Immutable scoreboard snapshot.

    Timestamps (``*_at_ms``) are readings of the clock passed to
    :func:`reduce`, not timing-system values.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    # Connection
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error: str | None = None
    provider_errors: tuple[ProviderError, ...] = ()
    initial_data_received: bool = False

    # Race
    results: tuple[ResultRow, ...] = ()
    race_name: str = ""
    race_status: str = ""
    race_id: str = ""
    active_race_id: str = ""
    race_config: RaceConfig | None = None

    # On course
    on_course: tuple[Competitor, ...] = ()
    current: Competitor | None = None
    finished_seen_ms: dict[str, float] = Field(default_factory=dict)

    # Transient
    departing: Competitor | None = None
    departed_at_ms: float | None = None
    highlight_bib: str | None = None
    highlight_at_ms: float | None = None
    pending_highlight_bib: str | None = None
    pending_highlight_at_ms: float | None = None

    # Venue
    visibility: VisibilityState = Field(default_factory=VisibilityState)
    title: str = ""
    info_text: str = ""
    day_time: str = ""


def initial_state(
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED,
) -> ScoreboardState:
    return ScoreboardState(status=status)


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def reduce(
    state: ScoreboardState,
    event: ScoreboardEvent,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> ScoreboardState:
    """Apply one event and return the next state.

    Args:
        state: Current snapshot. Never modified.
        event: Provider payload or correlator event.
        now_ms: Clock reading used for every timestamp set by this event.
        config: Timing windows.

    Returns:
        The new snapshot, or ``state`` itself if the event is ignored.
    """
    if isinstance(event, ResultsData):
        return _apply_results(state, event, now_ms, config)
    if isinstance(event, OnCourseData):
        return _apply_on_course(state, event, now_ms, config)
    if isinstance(event, VisibilityState):
        return _apply_visibility(state, event)
    if isinstance(event, EventInfoData):
        return _apply_event_info(state, event)
    if isinstance(event, RaceConfig):
        return state.model_copy(update={"race_config": event})
    if isinstance(event, ConnectionStatus):
        return _apply_status(state, event)
    if isinstance(event, ProviderError):
        errors: tuple[ProviderError, ...] = state.provider_errors + (event,)
        return state.model_copy(
            update={"provider_errors": errors[-config.error_history_size :]}
        )
    if isinstance(event, Expire):
        return _expire(state, now_ms, config)
    if isinstance(event, ClearProviderErrors):
        if not state.provider_errors:
            return state
        return state.model_copy(update={"provider_errors": ()})
    if isinstance(event, SetError):
        if state.error == event.message:
            return state
        return state.model_copy(update={"error": event.message})
    if isinstance(event, ResetRace):
        logger.info("Race state reset")
        return _reset_race(state, state.status)

    logger.debug("Ignoring unsupported event %r", type(event).__name__)
    return state


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def _apply_results(
    state: ScoreboardState,
    data: ResultsData,
    now_ms: float,
    config: ScoreboardConfig,
) -> ScoreboardState:
    if data.race_id and state.active_race_id and data.race_id != state.active_race_id:
        # Results for a race nobody is running: clear instead of showing them.
        logger.debug(
            "Results for race %s do not match active race %s; clearing",
            data.race_id,
            state.active_race_id,
        )
        data = ResultsData()

    update: dict[str, object] = {
        "initial_data_received": True,
        "results": data.results,
        "race_name": data.race_name,
        "race_status": data.race_status,
        "race_id": data.race_id,
    }

    pending: str | None = state.pending_highlight_bib
    if pending is not None:
        pending_at: float | None = state.pending_highlight_at_ms
        if pending_at is not None and now_ms - pending_at > config.pending_highlight_window_ms:
            logger.debug("Pending highlight for bib %s expired", pending)
            update.update(pending_highlight_bib=None, pending_highlight_at_ms=None)
        elif any(row.bib == pending for row in data.results):
            logger.info("Highlight activated for bib %s", pending)
            update.update(
                highlight_bib=pending,
                highlight_at_ms=now_ms,
                pending_highlight_bib=None,
                pending_highlight_at_ms=None,
            )
            if state.departing is not None and state.departing.bib == pending:
                update.update(departing=None, departed_at_ms=None)

    return state.model_copy(update=update)


# ---------------------------------------------------------------------------
# On course
# ---------------------------------------------------------------------------


def _merge_competitor(existing: Competitor, incoming: Competitor) -> Competitor:
    """Take ``incoming`` but keep start/finish timestamps it omits."""
    return incoming.model_copy(
        update={
            "start_ts": incoming.start_ts or existing.start_ts,
            "finish_ts": incoming.finish_ts or existing.finish_ts,
        }
    )


def select_current(competitors: tuple[Competitor, ...]) -> Competitor | None:
    """Earliest start among non-finished competitors.

    Competitors without a start timestamp sort last; ties are broken by
    bib so selection is stable under concurrent starts.
    """
    active: list[Competitor] = [c for c in competitors if not c.has_finished()]
    if not active:
        return None
    return min(active, key=lambda c: (c.start_ts is None, c.start_ts or "", c.bib))


def _apply_on_course(
    state: ScoreboardState,
    data: OnCourseData,
    now_ms: float,
    config: ScoreboardConfig,
) -> ScoreboardState:
    previous: dict[str, Competitor] = {c.bib: c for c in state.on_course}

    merged: dict[str, Competitor] = {}
    if data.full:
        for competitor in data.competitors:
            merged[competitor.bib] = competitor
        # Keep recently finished competitors the snapshot no longer lists.
        for bib, competitor in previous.items():
            if bib not in merged and competitor.has_finished():
                merged[bib] = competitor
        seen: dict[str, float] = {
            bib: state.finished_seen_ms.get(bib, now_ms)
            for bib, c in merged.items()
            if c.has_finished()
        }
    else:
        merged = dict(previous)
        for competitor in data.competitors:
            existing: Competitor | None = merged.get(competitor.bib)
            merged[competitor.bib] = (
                _merge_competitor(existing, competitor) if existing else competitor
            )
        seen = dict(state.finished_seen_ms)
        for bib, c in merged.items():
            if c.has_finished():
                seen.setdefault(bib, now_ms)

    on_course: tuple[Competitor, ...] = tuple(
        c
        for c in merged.values()
        if not (c.has_finished() and now_ms - seen[c.bib] >= config.finished_grace_ms)
    )
    current: Competitor | None = select_current(on_course)

    update: dict[str, object] = {
        "on_course": on_course,
        "current": current,
        "finished_seen_ms": seen,
        "active_race_id": _active_race_id(state, on_course, current),
    }

    prev_current: Competitor | None = state.current
    if prev_current is not None and (current is None or current.bib != prev_current.bib):
        update.update(departing=prev_current, departed_at_ms=now_ms)

    for competitor in merged.values():
        before: Competitor | None = previous.get(competitor.bib)
        if before is not None and not before.has_finished() and competitor.has_finished():
            logger.info("Finish observed for bib %s", competitor.bib)
            update.update(
                pending_highlight_bib=competitor.bib,
                pending_highlight_at_ms=now_ms,
            )
            if state.departing is not None and state.departing.bib == competitor.bib:
                update.update(departing=None, departed_at_ms=None)
            break

    return state.model_copy(update=update)


def _active_race_id(
    state: ScoreboardState,
    on_course: tuple[Competitor, ...],
    current: Competitor | None,
) -> str:
    if current is not None and current.race_id:
        return current.race_id
    for competitor in on_course:
        if competitor.race_id:
            return competitor.race_id
    return state.active_race_id


# ---------------------------------------------------------------------------
# Venue-level events
# ---------------------------------------------------------------------------


def _apply_visibility(state: ScoreboardState, data: VisibilityState) -> ScoreboardState:
    # Upstream only controls the auxiliary flags.
    visibility: VisibilityState = data.model_copy(
        update={
            "display_current": True,
            "display_top": True,
            "display_title": True,
            "display_top_bar": True,
            "display_footer": True,
            "display_on_course": True,
        }
    )
    return state.model_copy(update={"visibility": visibility})


def _apply_event_info(state: ScoreboardState, data: EventInfoData) -> ScoreboardState:
    update: dict[str, object] = {}
    if data.title:
        update["title"] = data.title
    if data.info_text:
        update["info_text"] = data.info_text
    if data.day_time:
        update["day_time"] = data.day_time
    if not update:
        return state
    return state.model_copy(update=update)


def _reset_race(state: ScoreboardState, status: ConnectionStatus) -> ScoreboardState:
    return ScoreboardState(
        status=status,
        error=state.error,
        provider_errors=state.provider_errors,
        visibility=state.visibility,
        title=state.title,
        info_text=state.info_text,
        day_time=state.day_time,
    )


def _apply_status(state: ScoreboardState, status: ConnectionStatus) -> ScoreboardState:
    if status == ConnectionStatus.RECONNECTING:
        logger.info("Reconnecting; clearing race state")
        return _reset_race(state, status)
    update: dict[str, object] = {"status": status}
    if status == ConnectionStatus.CONNECTED:
        update["error"] = None
    return state.model_copy(update=update)


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


def _elapsed(started_ms: float | None, duration_ms: int, now_ms: float) -> bool:
    return started_ms is not None and now_ms - started_ms >= duration_ms


def _expire(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig,
) -> ScoreboardState:
    update: dict[str, object] = {}
    if state.departing is not None and _elapsed(
        state.departed_at_ms, config.departing_timeout_ms, now_ms
    ):
        update.update(departing=None, departed_at_ms=None)
    if state.highlight_bib is not None and _elapsed(
        state.highlight_at_ms, config.highlight_duration_ms, now_ms
    ):
        update.update(highlight_bib=None, highlight_at_ms=None)
    if state.pending_highlight_bib is not None and (
        state.pending_highlight_at_ms is not None
        and now_ms - state.pending_highlight_at_ms > config.pending_highlight_window_ms
    ):
        update.update(pending_highlight_bib=None, pending_highlight_at_ms=None)

    kept: tuple[Competitor, ...] = tuple(
        c
        for c in state.on_course
        if not (
            c.has_finished()
            and _elapsed(state.finished_seen_ms.get(c.bib), config.finished_grace_ms, now_ms)
        )
    )
    if len(kept) != len(state.on_course):
        update["on_course"] = kept

    if not update:
        return state
    return state.model_copy(update=update)


def next_expiry_ms(
    state: ScoreboardState,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> float | None:
    """Earliest clock reading at which :class:`Expire` would change ``state``."""
    deadlines: list[float] = []
    if state.departing is not None and state.departed_at_ms is not None:
        deadlines.append(state.departed_at_ms + config.departing_timeout_ms)
    if state.highlight_bib is not None and state.highlight_at_ms is not None:
        deadlines.append(state.highlight_at_ms + config.highlight_duration_ms)
    if state.pending_highlight_bib is not None and state.pending_highlight_at_ms is not None:
        # Strictly older than the window; 1 ms past the boundary.
        deadlines.append(
            state.pending_highlight_at_ms + config.pending_highlight_window_ms + 1
        )
    for competitor in state.on_course:
        seen_ms: float | None = state.finished_seen_ms.get(competitor.bib)
        if competitor.has_finished() and seen_ms is not None:
            deadlines.append(seen_ms + config.finished_grace_ms)
    return min(deadlines) if deadlines else None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _remaining(started_ms: float | None, duration_ms: int, now_ms: float) -> float:
    if started_ms is None:
        return 0.0
    return max(0.0, started_ms + duration_ms - now_ms)


def _progress(started_ms: float | None, duration_ms: int, now_ms: float) -> float:
    if started_ms is None:
        return 0.0
    if duration_ms <= 0:
        return 1.0
    return min(1.0, max(0.0, (now_ms - started_ms) / duration_ms))


def is_highlight_active(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> bool:
    """Whether the highlight is set and its duration has not elapsed."""
    return state.highlight_bib is not None and (
        _remaining(state.highlight_at_ms, config.highlight_duration_ms, now_ms) > 0
    )


def highlight_remaining_ms(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> float:
    if state.highlight_bib is None:
        return 0.0
    return _remaining(state.highlight_at_ms, config.highlight_duration_ms, now_ms)


def highlight_progress(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> float:
    """Elapsed fraction of the highlight duration, 0.0 to 1.0."""
    if state.highlight_bib is None:
        return 0.0
    return _progress(state.highlight_at_ms, config.highlight_duration_ms, now_ms)


def is_departing_active(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> bool:
    """Whether a departing competitor is set and its timeout has not elapsed."""
    return state.departing is not None and (
        _remaining(state.departed_at_ms, config.departing_timeout_ms, now_ms) > 0
    )


def departing_remaining_ms(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> float:
    if state.departing is None:
        return 0.0
    return _remaining(state.departed_at_ms, config.departing_timeout_ms, now_ms)


def departing_progress(
    state: ScoreboardState,
    now_ms: float,
    config: ScoreboardConfig = DEFAULT_CONFIG,
) -> float:
    if state.departing is None:
        return 0.0
    return _progress(state.departed_at_ms, config.departing_timeout_ms, now_ms)
