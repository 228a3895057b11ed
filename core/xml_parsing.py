"""XML-feed document parsing and normalization.

The XML feed delivers one document per message with a ``Canoe123``
root element. Each child element is an independent unit::

    <Canoe123 System="Main">
      <OnCourse>
        <OnCourse>
          <Participant Bib="7" Name="NOVAK Jan" Club="..." RaceId="K1M_ST_BR1_6"/>
          <Result Type="C" Gates="0,2,0" dtStart="10:00:01.000" dtFinish=""/>
          <Result Type="T" Time="81.15" Total="83.15" Pen="2" Rank="3"/>
        </OnCourse>
      </OnCourse>
      <Results RaceId="K1M_ST_BR1_6" MainTitle="K1m" SubTitle="1st Run" Current="Y">
        <Row Number="1">
          <Participant Bib="7" .../>
          <Result Type="T" Rank="1" Total="83.15" Pen="2" Behind=""/>
        </Row>
      </Results>
      <TimeOfDay>10:34:08</TimeOfDay>
      <RaceConfig NrGates="24" NrSplits="2" GateConfig="NNRNN..."/>
    </Canoe123>

Error policy:
    - :func:`parse_document` raises ``MessageParseError`` for malformed
      XML and ``MessageValidationError`` for a missing root element.
    - :func:`parse_element` handles one child. Callers process children
      independently so a single bad element does not discard the rest.
    - Numeric attributes (penalty, rank, gate count) default to 0 when
      they cannot be parsed; they are display-only fields.
    - Results rows are always re-sorted by rank ascending.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Callable

from core.errors import MessageParseError, MessageValidationError
from core.events import (
    Competitor,
    Envelope,
    EventInfoData,
    MessageKind,
    OnCourseData,
    RaceConfig,
    ResultRow,
    ResultsData,
)
from core.parsing import safe_int, sort_by_rank

logger: logging.Logger = logging.getLogger(__name__)

ROOT_TAG: str = "Canoe123"
"""Tag of the required document root."""

_TRUNCATE: int = 100


# ---------------------------------------------------------------------------
# Attribute helpers
# ---------------------------------------------------------------------------


def _attr(element: ET.Element | None, name: str) -> str:
    if element is None:
        return ""
    return element.get(name) or ""


def _int_attr(element: ET.Element | None, name: str) -> int:
    """Non-negative integer attribute, 0 on absence or parse failure."""
    return max(0, safe_int(_attr(element, name)))


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


def parse_document(text: str | bytes) -> ET.Element:
    """Parse an XML-feed document and return its root.

    Raises:
        MessageParseError: Malformed XML.
        MessageValidationError: Root element is not ``Canoe123``.
    """
    try:
        root: ET.Element = ET.fromstring(text)
    except ET.ParseError as exc:
        raise MessageParseError(
            "Failed to parse XML message",
            cause=text[:_TRUNCATE],
        ) from exc

    if root.tag != ROOT_TAG:
        found: ET.Element | None = root.find(f".//{ROOT_TAG}")
        if found is None:
            raise MessageValidationError(
                f"Missing {ROOT_TAG} root element",
                cause=root.tag,
            )
        root = found
    return root


# ---------------------------------------------------------------------------
# Element parsers
# ---------------------------------------------------------------------------


def parse_on_course_entry(container: ET.Element) -> Competitor | None:
    """Parse one ``Participant`` + ``Result`` group. ``None`` without a bib."""
    participant: ET.Element | None = container.find("Participant")
    bib: str = _attr(participant, "Bib").strip()
    if not bib:
        return None

    result_c: ET.Element | None = container.find("Result[@Type='C']")
    result_t: ET.Element | None = container.find("Result[@Type='T']")
    return Competitor(
        bib=bib,
        name=_attr(participant, "Name"),
        club=_attr(participant, "Club"),
        nat=_attr(participant, "Nat"),
        race_id=_attr(participant, "RaceId"),
        time=_attr(result_t, "Time"),
        total=_attr(result_t, "Total"),
        penalty=_int_attr(result_t, "Pen"),
        gates=_attr(result_c, "Gates"),
        start_ts=_attr(result_c, "dtStart") or None,
        finish_ts=_attr(result_c, "dtFinish") or None,
        ttb_diff=_attr(result_t, "TTBDiff"),
        ttb_name=_attr(result_t, "TTBName"),
        rank=_int_attr(result_t, "Rank"),
    )


def parse_on_course(element: ET.Element) -> OnCourseData:
    """Parse an ``OnCourse`` element into a full on-course snapshot.

    Supports both the nested format (one ``OnCourse`` child per
    competitor) and the single-competitor format (``Participant``
    directly under the element).
    """
    competitors: list[Competitor] = []
    for child in element.findall("OnCourse"):
        competitor: Competitor | None = parse_on_course_entry(child)
        if competitor is not None:
            competitors.append(competitor)

    if not competitors and element.find("Participant") is not None:
        single: Competitor | None = parse_on_course_entry(element)
        if single is not None:
            competitors.append(single)

    return OnCourseData(competitors=tuple(competitors), full=True)


def parse_results(element: ET.Element) -> ResultsData:
    """Parse a ``Results`` element. Rows are sorted by rank."""
    rows: list[ResultRow] = []
    for row in element.iter("Row"):
        participant: ET.Element | None = row.find(".//Participant")
        bib: str = _attr(participant, "Bib").strip()
        if not bib:
            continue
        result: ET.Element | None = row.find(".//Result[@Type='T']")
        rank: int = _int_attr(result, "Rank") or _int_attr(row, "Number")
        rows.append(
            ResultRow(
                rank=rank,
                bib=bib,
                name=_attr(participant, "Name"),
                family_name=_attr(participant, "FamilyName"),
                given_name=_attr(participant, "GivenName"),
                club=_attr(participant, "Club"),
                nat=_attr(participant, "Nat"),
                total=_attr(result, "Total") or _attr(result, "Time"),
                time=_attr(result, "Time"),
                penalty=_int_attr(result, "Pen"),
                behind=_attr(result, "Behind"),
                status=_attr(result, "IRM") or _attr(result, "Status"),
            )
        )

    main_title: str = _attr(element, "MainTitle")
    sub_title: str = _attr(element, "SubTitle")
    race_name: str = f"{main_title} - {sub_title}" if sub_title else main_title
    return ResultsData(
        results=sort_by_rank(rows),
        race_name=race_name,
        race_status="3" if _attr(element, "Current") == "Y" else "5",
        race_id=_attr(element, "RaceId"),
    )


def parse_time_of_day(element: ET.Element) -> EventInfoData:
    return EventInfoData(day_time=(element.text or "").strip())


def parse_race_config(element: ET.Element) -> RaceConfig:
    return RaceConfig(
        gate_count=_int_attr(element, "NrGates"),
        split_count=_int_attr(element, "NrSplits"),
        gate_config=_attr(element, "GateConfig"),
    )


_HANDLERS: dict[str, tuple[MessageKind, Callable[[ET.Element], object]]] = {
    "OnCourse": (MessageKind.ON_COURSE_LIST, parse_on_course),
    "Results": (MessageKind.RESULTS, parse_results),
    "TimeOfDay": (MessageKind.EVENT_INFO, parse_time_of_day),
    "RaceConfig": (MessageKind.CONFIG, parse_race_config),
}
"""Child element tag -> (envelope kind, parser)."""


def parse_element(
    element: ET.Element,
    timestamp_ms: int = 0,
    source_tag: str = "tcp",
) -> Envelope | None:
    """Normalize one child of the root into an :class:`Envelope`.

    Returns:
        The envelope, or ``None`` for elements that are not consumed
        (``Schedule`` and unknown tags).
    """
    handler: tuple[MessageKind, Callable[[ET.Element], object]] | None = _HANDLERS.get(
        element.tag
    )
    if handler is None:
        logger.debug("Ignoring XML element <%s>", element.tag)
        return None
    kind, parse = handler
    return Envelope(
        timestamp_ms=timestamp_ms,
        source_tag=source_tag,
        kind=kind,
        payload=parse(element),
    )
