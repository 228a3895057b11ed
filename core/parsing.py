"""Line-feed (JSON) message parsing and normalization.

The line feed delivers one JSON object per message. A ``msg``
discriminator (``type`` is accepted as a fallback) selects the payload
shape::

    {"msg": "top",      "data": {"list": [...], "RaceName": ..., ...}}
    {"msg": "comp",     "data": {"Bib": "7", "Name": ..., ...}}
    {"msg": "oncourse", "data": [{"Bib": ...}, ...]}
    {"msg": "control",  "data": {"displayCurrent": "1", ...}}
    {"msg": "title",    "data": {"text": "..."}}
    {"msg": "infotext", "data": {"text": "..."}}
    {"msg": "daytime",  "data": {"time": "10:34:08"}}

Parsing is split in two steps so the replay provider can reuse the
second one on recorded ``data`` wrappers:

1. :func:`decode_line` -- bytes/str to ``(msg_type, data)``. Raises
   :class:`~core.errors.MessageParseError` on malformed JSON or a
   missing discriminator.
2. :func:`normalize_message` -- ``(msg_type, data)`` to an
   :class:`~core.events.Envelope`, or ``None`` for unknown types.

No-op messages:
    A ``comp`` message without a bib is *not* dropped. It is dispatched
    as an empty partial on-course update because downstream correlation
    relies on receiving a message to detect transitions.

Example:
    >>> env = parse_line('{"msg": "daytime", "data": {"time": "10:34:08"}}')
    >>> env.payload.day_time
    '10:34:08'
"""

import json
import logging
import math
from typing import Any, Callable

from core.errors import MessageParseError, MessageValidationError
from core.events import (
    Competitor,
    Envelope,
    EventInfoData,
    MessageKind,
    OnCourseData,
    ResultRow,
    ResultsData,
    VisibilityState,
)

logger: logging.Logger = logging.getLogger(__name__)

_TRUNCATE: int = 100
"""Maximum characters of offending input attached to an error."""


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def safe_string(value: object, default: str = "") -> str:
    """Coerce a scalar to ``str``; anything else yields ``default``."""
    if value is None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return default


def safe_int(value: object, default: int = 0) -> int:
    """Coerce a number or numeric string to ``int``; otherwise ``default``."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return default if math.isnan(value) or math.isinf(value) else int(value)
    if isinstance(value, str) and value.strip():
        try:
            number: float = float(value)
        except ValueError:
            return default
        return default if math.isnan(number) or math.isinf(number) else int(number)
    return default


def _non_negative(value: object) -> int:
    return max(0, safe_int(value))


def _flag(value: object) -> bool:
    """Control flags arrive as ``"1"``/``"0"``; booleans are accepted too."""
    if isinstance(value, bool):
        return value
    return safe_string(value) == "1"


def _first(data: dict[str, Any], *keys: str) -> Any:
    """Value of the first key present with a truthy value."""
    for key in keys:
        value: Any = data.get(key)
        if value:
            return value
    return None


# ---------------------------------------------------------------------------
# Step 1: decode
# ---------------------------------------------------------------------------


def decode_line(raw: str | bytes) -> tuple[str, Any]:
    """Decode one raw line-feed message.

    Args:
        raw: JSON text (``bytes`` are decoded as UTF-8).

    Returns:
        ``(msg_type, data)``. ``data`` is ``None`` if absent.

    Raises:
        MessageParseError: Malformed JSON, non-object message, or
            missing/non-string discriminator.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MessageParseError("Message is not valid UTF-8", cause=exc) from exc

    try:
        message: Any = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MessageParseError(
            "Invalid JSON message",
            cause=raw[:_TRUNCATE] if isinstance(raw, str) else raw,
        ) from exc

    if not isinstance(message, dict):
        raise MessageParseError("Message must be a JSON object", cause=raw[:_TRUNCATE])

    msg_type: Any = message.get("msg") or message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MessageParseError("Missing message discriminator", cause=raw[:_TRUNCATE])

    return msg_type, message.get("data")


# ---------------------------------------------------------------------------
# Payload parsers
# ---------------------------------------------------------------------------


def parse_competitor(data: dict[str, Any]) -> Competitor | None:
    """Parse a ``comp``/``oncourse`` competitor object.

    Returns:
        The competitor, or ``None`` when the bib is missing or empty
        (meaning "nobody on course").
    """
    bib: str = safe_string(data.get("Bib")).strip()
    if not bib:
        return None

    start: Any = _first(data, "dtStart", "DTStart")
    finish: Any = _first(data, "dtFinish", "DTFinish")
    return Competitor(
        bib=bib,
        name=safe_string(data.get("Name")),
        club=safe_string(data.get("Club")),
        nat=safe_string(data.get("Nat")),
        race_id=safe_string(data.get("RaceId")),
        time=safe_string(data.get("Time")),
        total=safe_string(_first(data, "Total", "TotalTime")),
        penalty=_non_negative(data.get("Pen")),
        gates=safe_string(data.get("Gates")),
        start_ts=safe_string(start) or None,
        finish_ts=safe_string(finish) or None,
        ttb_diff=safe_string(data.get("TTBDiff")),
        ttb_name=safe_string(data.get("TTBName")),
        rank=_non_negative(data.get("Rank")),
    )


def parse_result_row(row: dict[str, Any]) -> ResultRow | None:
    """Parse one results row. Returns ``None`` if the bib is missing."""
    bib: str = safe_string(row.get("Bib")).strip()
    if not bib:
        return None

    family_name: str = safe_string(row.get("FamilyName"))
    given_name: str = safe_string(row.get("GivenName"))
    name: str = safe_string(row.get("Name")) or f"{family_name} {given_name}".strip()
    return ResultRow(
        rank=_non_negative(row.get("Rank")),
        bib=bib,
        name=name,
        family_name=family_name,
        given_name=given_name,
        club=safe_string(row.get("Club")),
        nat=safe_string(row.get("Nat")),
        total=safe_string(row.get("Total")),
        penalty=_non_negative(row.get("Pen")),
        behind=safe_string(row.get("Behind")).replace("&nbsp;", ""),
        status=safe_string(row.get("Status")),
        time=safe_string(row.get("Time")),
    )


def sort_by_rank(rows: list[ResultRow]) -> tuple[ResultRow, ...]:
    """Stable sort ascending by rank; unranked rows (rank 0) go last."""
    return tuple(sorted(rows, key=lambda r: (r.rank == 0, r.rank)))


def parse_results(data: dict[str, Any]) -> ResultsData:
    """Parse a ``top`` payload into :class:`ResultsData`."""
    rows_raw: Any = data.get("list", data.get("Rows"))
    rows: list[ResultRow] = []
    if isinstance(rows_raw, list):
        for index, raw_row in enumerate(rows_raw):
            row: ResultRow | None = (
                parse_result_row(raw_row) if isinstance(raw_row, dict) else None
            )
            if row is None:
                logger.warning("Skipping invalid result row #%d (no bib)", index)
                continue
            rows.append(row)
    elif rows_raw is not None:
        raise MessageValidationError("Results list must be an array", cause=rows_raw)

    highlight: Any = data.get("HighlightBib")
    return ResultsData(
        results=sort_by_rank(rows),
        race_name=safe_string(data.get("RaceName")),
        race_status=safe_string(data.get("RaceStatus")),
        race_id=safe_string(data.get("RaceId")),
        highlight_bib=safe_string(highlight) if highlight else None,
    )


def parse_visibility(data: dict[str, Any]) -> VisibilityState:
    """Parse a ``control`` payload. Missing flags read as hidden."""
    return VisibilityState(
        display_current=_flag(data.get("displayCurrent")),
        display_top=_flag(data.get("displayTop")),
        display_title=_flag(data.get("displayTitle")),
        display_top_bar=_flag(data.get("displayTopBar")),
        display_footer=_flag(data.get("displayFooter")),
        display_day_time=_flag(data.get("displayDayTime")),
        display_on_course=_flag(data.get("displayOnCourse")),
    )


# ---------------------------------------------------------------------------
# Step 2: normalize
# ---------------------------------------------------------------------------


def _as_dict(msg_type: str, data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise MessageValidationError(
            f"'{msg_type}' data must be an object",
            cause=type(data).__name__,
        )
    return data


def _as_list(msg_type: str, data: Any) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise MessageValidationError(
            f"'{msg_type}' data must be an array",
            cause=type(data).__name__,
        )
    return data


def _top(data: Any) -> tuple[MessageKind, Any]:
    return MessageKind.RESULTS, parse_results(_as_dict("top", data))


def _comp(data: Any) -> tuple[MessageKind, Any]:
    competitor: Competitor | None = parse_competitor(_as_dict("comp", data))
    competitors: tuple[Competitor, ...] = (competitor,) if competitor else ()
    return MessageKind.COMPETITOR, OnCourseData(competitors=competitors, full=False)


def _oncourse(data: Any) -> tuple[MessageKind, Any]:
    competitors: list[Competitor] = []
    for entry in _as_list("oncourse", data):
        if not isinstance(entry, dict):
            continue
        competitor: Competitor | None = parse_competitor(entry)
        if competitor is not None:
            competitors.append(competitor)
    return MessageKind.ON_COURSE_LIST, OnCourseData(
        competitors=tuple(competitors),
        full=True,
    )


def _control(data: Any) -> tuple[MessageKind, Any]:
    return MessageKind.VISIBILITY, parse_visibility(_as_dict("control", data))


def _title(data: Any) -> tuple[MessageKind, Any]:
    payload: dict[str, Any] = _as_dict("title", data)
    return MessageKind.EVENT_INFO, EventInfoData(
        title=safe_string(_first(payload, "text", "Title")),
    )


def _infotext(data: Any) -> tuple[MessageKind, Any]:
    payload: dict[str, Any] = _as_dict("infotext", data)
    return MessageKind.EVENT_INFO, EventInfoData(
        info_text=safe_string(_first(payload, "text", "Text")),
    )


def _daytime(data: Any) -> tuple[MessageKind, Any]:
    payload: dict[str, Any] = _as_dict("daytime", data)
    return MessageKind.EVENT_INFO, EventInfoData(
        day_time=safe_string(_first(payload, "time", "Time")),
    )


_HANDLERS: dict[str, Callable[[Any], tuple[MessageKind, Any]]] = {
    "top": _top,
    "comp": _comp,
    "oncourse": _oncourse,
    "control": _control,
    "title": _title,
    "infotext": _infotext,
    "daytime": _daytime,
}
"""Discriminator -> payload parser."""


def normalize_message(
    msg_type: str,
    data: Any,
    timestamp_ms: int = 0,
    source_tag: str = "ws",
) -> Envelope | None:
    """Normalize a decoded line-feed message into an :class:`Envelope`.

    Args:
        msg_type: Discriminator value.
        data: Message ``data`` field.
        timestamp_ms: Ordering timestamp for the envelope.
        source_tag: Origin tag for the envelope.

    Returns:
        The envelope, or ``None`` if the discriminator is unknown.

    Raises:
        MessageValidationError: ``data`` has the wrong structure.
    """
    handler: Callable[[Any], tuple[MessageKind, Any]] | None = _HANDLERS.get(msg_type)
    if handler is None:
        logger.debug("Ignoring unknown message type %r", msg_type)
        return None
    kind, payload = handler(data)
    return Envelope(
        timestamp_ms=timestamp_ms,
        source_tag=source_tag,
        kind=kind,
        payload=payload,
    )


def parse_line(
    raw: str | bytes,
    timestamp_ms: int = 0,
    source_tag: str = "ws",
) -> Envelope | None:
    """Decode and normalize one line-feed message.

    Raises:
        MessageParseError: See :func:`decode_line`.
        MessageValidationError: See :func:`normalize_message`.
    """
    msg_type, data = decode_line(raw)
    return normalize_message(msg_type, data, timestamp_ms, source_tag)
