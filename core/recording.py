"""Recorded-session loading and decoding.

A recording is newline-delimited JSON. An optional metadata line is
ignored for playback; every other line is one captured message::

    {"_meta": {"version": 1, "recorded": "2025-12-28T09:34:10Z"}}
    {"ts": 0,   "src": "ws",  "type": "top",  "data": {"msg": "top", "data": {...}}}
    {"ts": 120, "src": "tcp", "type": "TimeOfDay", "data": "<Canoe123>...</Canoe123>"}

``ts`` is milliseconds from the start of the recording. ``src`` names
the capture channel: ``ws`` lines carry line-feed messages, ``tcp``
lines carry XML-feed documents.

Loading rules:
    - Every line is parsed independently. An invalid line is collected
      as an error and loading continues.
    - Lines are filtered by ``src`` and then stably sorted by ``ts``:
      upstream recordings are not guaranteed to be monotonic, and equal
      timestamps keep their file order.
"""

import json
import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Callable, Iterable

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import (
    FeedConnectionError,
    FeedError,
    MessageParseError,
    MessageValidationError,
)
from core.events import Envelope
from core.parsing import normalize_message
from core.xml_parsing import parse_document, parse_element

logger: logging.Logger = logging.getLogger(__name__)

_TRUNCATE: int = 100

META_KEY: str = "_meta"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RecordedMessage(BaseModel):
    """One captured message.

    Attributes:
        ts: Milliseconds from the start of the recording.
        src: Capture channel (``"ws"``, ``"tcp"``, ...).
        type: Message type (line-feed discriminator or XML element).
        data: Captured payload: the line-feed message object for ``ws``,
            the XML document text for ``tcp``.
    """

    model_config = ConfigDict(frozen=True)

    ts: int
    src: str
    type: str
    data: Any = None


class Recording(BaseModel):
    """A loaded recording, sorted and filtered for playback.

    Attributes:
        messages: Playable messages in dispatch order.
        meta: Contents of the metadata line, if present.
        errors: One error per line that could not be loaded.
        skipped: Valid lines dropped by the source filter.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    messages: tuple[RecordedMessage, ...] = ()
    meta: dict[str, Any] = Field(default_factory=dict)
    errors: tuple[FeedError, ...] = ()
    skipped: int = 0

    @property
    def duration_ms(self) -> int:
        """Span between the first and the last message."""
        if not self.messages:
            return 0
        return self.messages[-1].ts - self.messages[0].ts


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_recording(content: str, sources: Iterable[str] = ("ws",)) -> Recording:
    """Parse JSONL recording text.

    Args:
        content: Recording text.
        sources: Capture channels to keep. Empty keeps every channel.

    Returns:
        The sorted recording. Invalid lines are reported in
        ``Recording.errors`` rather than raised.
    """
    wanted: frozenset[str] = frozenset(sources)
    messages: list[RecordedMessage] = []
    errors: list[FeedError] = []
    meta: dict[str, Any] = {}
    skipped: int = 0

    for line_no, line in enumerate(content.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            raw: Any = json.loads(line)
        except json.JSONDecodeError as exc:
            errors.append(
                MessageParseError(
                    f"Invalid JSONL line {line_no} in recording",
                    cause={"line": line[:_TRUNCATE], "error": str(exc)},
                )
            )
            continue
        if not isinstance(raw, dict):
            errors.append(
                MessageParseError(
                    f"Recording line {line_no} is not a JSON object",
                    cause={"line": line[:_TRUNCATE]},
                )
            )
            continue
        if META_KEY in raw:
            if isinstance(raw[META_KEY], dict):
                meta = raw[META_KEY]
            continue
        try:
            message: RecordedMessage = RecordedMessage.model_validate(raw)
        except ValidationError as exc:
            errors.append(
                MessageValidationError(
                    f"Recording line {line_no} is missing required fields",
                    cause={"line": line[:_TRUNCATE], "error": str(exc)},
                )
            )
            continue
        if wanted and message.src not in wanted:
            skipped += 1
            continue
        messages.append(message)

    messages.sort(key=lambda m: m.ts)
    return Recording(
        messages=tuple(messages),
        meta=meta,
        errors=tuple(errors),
        skipped=skipped,
    )


def read_recording_source(source: str, timeout_s: float = 10.0) -> str:
    """Return recording text from a URL, a file path or inline content.

    ``http://`` and ``https://`` sources are fetched with ``requests``.
    A source that starts with ``{`` or spans several lines is treated as
    inline JSONL. Anything else is a filesystem path.

    Raises:
        FeedConnectionError: The URL could not be fetched or the file
            could not be read.
    """
    stripped: str = source.strip()
    if stripped.startswith(("http://", "https://")):
        try:
            response: requests.Response = requests.get(stripped, timeout=timeout_s)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FeedConnectionError(
                f"Failed to fetch recording: {exc}",
                cause=exc,
            ) from exc
        return response.text

    if stripped.startswith("{") or "\n" in stripped:
        return source

    try:
        return Path(stripped).read_text(encoding="utf-8")
    except OSError as exc:
        raise FeedConnectionError(
            f"Failed to read recording {stripped}: {exc}",
            cause=exc,
        ) from exc


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode_ws(message: RecordedMessage) -> list[Envelope]:
    wrapper: Any = message.data
    if wrapper is None:
        wrapper = {}
    if not isinstance(wrapper, dict):
        raise MessageValidationError(
            f"Recorded '{message.type}' message must wrap an object",
            cause=type(wrapper).__name__,
        )
    msg_type: str = message.type or str(wrapper.get("msg") or "")
    envelope: Envelope | None = normalize_message(
        msg_type,
        wrapper.get("data"),
        timestamp_ms=message.ts,
        source_tag=message.src,
    )
    return [envelope] if envelope is not None else []


def _decode_tcp(
    message: RecordedMessage,
    on_error: Callable[[FeedError], None],
) -> list[Envelope]:
    if not isinstance(message.data, str):
        raise MessageValidationError(
            f"Recorded '{message.type}' message must carry XML text",
            cause=type(message.data).__name__,
        )
    root: ET.Element = parse_document(message.data)
    envelopes: list[Envelope] = []
    for child in root:
        try:
            envelope: Envelope | None = parse_element(
                child,
                timestamp_ms=message.ts,
                source_tag=message.src,
            )
        except FeedError as exc:
            on_error(exc)
            continue
        except ValidationError as exc:
            on_error(MessageParseError(f"Failed to process {child.tag} element", cause=exc))
            continue
        if envelope is not None:
            envelopes.append(envelope)
    return envelopes


def decode_message(
    message: RecordedMessage,
    on_error: Callable[[FeedError], None],
) -> list[Envelope]:
    """Normalize one recorded message into envelopes.

    A ``tcp`` document may yield several envelopes (one per child
    element). Failures are passed to ``on_error``; a failing XML child
    does not prevent its siblings from being returned.
    """
    try:
        if message.src == "ws":
            return _decode_ws(message)
        if message.src == "tcp":
            return _decode_tcp(message, on_error)
    except FeedError as exc:
        on_error(exc)
        return []
    logger.debug("Ignoring recorded message from source %r", message.src)
    return []
