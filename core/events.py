"""Normalized event models for scoreboard timing feeds.

This module defines the domain types that providers produce and the
scoreboard correlator consumes. All models are Pydantic-based with
``frozen=True``: an event is created once per upstream message and
never mutated afterwards. Competitor and result snapshots are replaced
wholesale (or merged into a *new* instance) by the correlator.

Architecture note:
    Both live adapters and the replay provider normalize their
    protocol-specific payloads into the same :class:`MessageKind`
    envelopes, so the correlator never depends on transport identity.

Timestamp convention:
    ``Envelope.timestamp_ms`` is the recording / receive time in
    milliseconds and is the ordering key. Competitor ``start_ts`` and
    ``finish_ts`` are opaque timing-system strings
    (e.g. ``"16:14:00.000"``); only their presence and lexical order
    are used.

Example:
    >>> from core.events import Competitor
    >>> c = Competitor(bib="7", name="NOVAK Jan", start_ts="10:00:01.000")
    >>> c.is_on_course()
    True
    >>> c.has_finished()
    False
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ConnectionStatus(str, Enum):
    """Connection state shared by every provider.

    States:
        DISCONNECTED: Not connected; initial and post-``disconnect()`` state.
        CONNECTING: A connection attempt is in progress.
        CONNECTED: Transport open and delivering messages.
        RECONNECTING: Transport lost; an automatic attempt is scheduled.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class MessageKind(str, Enum):
    """Kind of a normalized :class:`Envelope`."""

    RESULTS = "results"
    COMPETITOR = "competitor"
    ON_COURSE_LIST = "onCourseList"
    VISIBILITY = "visibility"
    EVENT_INFO = "eventInfo"
    CONFIG = "config"


class EventKind(str, Enum):
    """Subscription channel exposed by the provider contract.

    ``COMPETITOR`` and ``ON_COURSE_LIST`` envelopes are both delivered
    on the ``ON_COURSE`` channel (see :data:`CHANNEL_FOR_KIND`).
    """

    RESULTS = "results"
    ON_COURSE = "on_course"
    VISIBILITY = "visibility"
    EVENT_INFO = "event_info"
    CONFIG = "config"
    CONNECTION = "connection"
    ERROR = "error"


CHANNEL_FOR_KIND: dict[MessageKind, EventKind] = {
    MessageKind.RESULTS: EventKind.RESULTS,
    MessageKind.COMPETITOR: EventKind.ON_COURSE,
    MessageKind.ON_COURSE_LIST: EventKind.ON_COURSE,
    MessageKind.VISIBILITY: EventKind.VISIBILITY,
    MessageKind.EVENT_INFO: EventKind.EVENT_INFO,
    MessageKind.CONFIG: EventKind.CONFIG,
}
"""Envelope kind -> subscription channel."""


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Competitor(BaseModel):
    """A competitor currently on course.

    ``bib`` uniquely identifies a competitor within one on-course
    snapshot. ``finish_ts`` changing from ``None`` to a value is the
    primary finish signal.

    Attributes:
        bib: Start number. Non-empty.
        name: Display name.
        club: Club name.
        nat: Nationality code.
        race_id: Race identifier (e.g. ``"K1M_ST_BR2_6"``). May be empty.
        time: Running or final time string.
        total: Time including penalties.
        penalty: Penalty seconds. Non-negative.
        gates: Raw gate penalty string (see :func:`core.gates.parse_gates`).
        start_ts: Start timestamp, ``None`` if not started.
        finish_ts: Finish timestamp, ``None`` while on course.
        ttb_diff: Difference to the time-to-beat.
        ttb_name: Name of the time-to-beat holder.
        rank: Current rank, 0 when unknown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bib: str = Field(min_length=1, description="Start number")
    name: str = ""
    club: str = ""
    nat: str = ""
    race_id: str = ""
    time: str = ""
    total: str = ""
    penalty: int = Field(default=0, ge=0, description="Penalty seconds")
    gates: str = ""
    start_ts: str | None = None
    finish_ts: str | None = None
    ttb_diff: str = ""
    ttb_name: str = ""
    rank: int = Field(default=0, ge=0, description="Rank, 0 when unknown")

    def has_finished(self) -> bool:
        """Whether a finish timestamp is present."""
        return bool(self.finish_ts)

    def is_on_course(self) -> bool:
        """Whether the competitor has started and not yet finished."""
        return bool(self.start_ts) and not self.finish_ts


class RunResult(BaseModel):
    """One run of a best-run race (see :mod:`core.runs`).

    Attributes:
        total: Run total in seconds (``"78.99"``), ``""`` when invalid.
        penalty: Penalty seconds of this run.
        rank: Rank of this run, 0 when unknown.
        status: ``"DNS"``, ``"DNF"``, ``"DSQ"`` or ``""``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    total: str = ""
    penalty: int = Field(default=0, ge=0)
    rank: int = Field(default=0, ge=0)
    status: str = ""


class ResultRow(BaseModel):
    """One row of a results snapshot.

    In a second-run race the feed's ``total`` is the better of both
    runs and ``time`` is the raw second-run time; ``run1``, ``run2`` and
    ``best_run`` are filled in by :class:`core.runs.RunMerger`.

    Attributes:
        rank: Rank within the race; 0 for unranked rows (DNS/DNF/DSQ).
        bib: Start number.
        name: Display name.
        family_name: Family name, when the feed provides it separately.
        given_name: Given name, when the feed provides it separately.
        club: Club name.
        nat: Nationality code.
        total: Total time including penalties.
        penalty: Penalty seconds.
        behind: Gap behind the leader (``""`` for the leader).
        status: ``"DNS"``, ``"DNF"``, ``"DSQ"`` or ``""``.
        time: Run time without penalties.
        run1: First run, best-run races only.
        run2: Second run, best-run races only.
        best_run: 1 or 2, whichever run is better; ``None`` if neither
            is valid or runs are unknown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rank: int = Field(default=0, ge=0)
    bib: str = Field(min_length=1)
    name: str = ""
    family_name: str = ""
    given_name: str = ""
    club: str = ""
    nat: str = ""
    total: str = ""
    penalty: int = Field(default=0, ge=0)
    behind: str = ""
    status: str = ""
    time: str = ""
    run1: RunResult | None = None
    run2: RunResult | None = None
    best_run: int | None = None


# ---------------------------------------------------------------------------
# Channel payloads
# ---------------------------------------------------------------------------


class ResultsData(BaseModel):
    """Results snapshot for one race.

    ``highlight_bib`` is whatever the upstream feed suggested; the
    correlator ignores it and derives highlights from finish transitions.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    results: tuple[ResultRow, ...] = ()
    race_name: str = ""
    race_status: str = ""
    race_id: str = ""
    highlight_bib: str | None = None


class OnCourseData(BaseModel):
    """On-course update.

    Attributes:
        competitors: Parsed competitors. Empty for a "nobody" update.
        full: ``True`` for a full on-course snapshot, ``False`` for a
            single-competitor partial update that must be merged.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    competitors: tuple[Competitor, ...] = ()
    full: bool = True


class VisibilityState(BaseModel):
    """Display flags from upstream control messages."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    display_current: bool = True
    display_top: bool = True
    display_title: bool = True
    display_top_bar: bool = True
    display_footer: bool = True
    display_day_time: bool = False
    display_on_course: bool = True


class EventInfoData(BaseModel):
    """Partial event info update. Empty strings mean "no update"."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = ""
    info_text: str = ""
    day_time: str = ""


class RaceConfig(BaseModel):
    """Course configuration announced by the timing system."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    gate_count: int = Field(default=0, ge=0)
    split_count: int = Field(default=0, ge=0)
    gate_config: str = ""


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """A typed, normalized message.

    Envelopes are transient: created per upstream message, consumed once.
    The ordering key is ``timestamp_ms``; ties are resolved by original
    sequence position (stable sort).

    Attributes:
        timestamp_ms: Message time in milliseconds.
        source_tag: Origin of the message (``"ws"``, ``"tcp"``, ...).
        kind: Payload kind.
        payload: One of the channel payload models above.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    timestamp_ms: int = Field(default=0, description="Ordering key in ms")
    source_tag: str = ""
    kind: MessageKind
    payload: Any = None

    @property
    def channel(self) -> EventKind:
        """Subscription channel this envelope is delivered on."""
        return CHANNEL_FOR_KIND[self.kind]
