"""Unit tests for core.parsing module (line-feed JSON messages)."""

import json
from typing import Any

import pytest

from core.errors import MessageParseError, MessageValidationError
from core.events import (
    Competitor,
    Envelope,
    EventInfoData,
    EventKind,
    MessageKind,
    OnCourseData,
    ResultsData,
    VisibilityState,
)
from core.parsing import (
    decode_line,
    normalize_message,
    parse_competitor,
    parse_line,
    parse_result_row,
    safe_int,
    safe_string,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _line(msg: str, data: Any) -> str:
    return json.dumps({"msg": msg, "data": data})


def _comp_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "Bib": "7",
        "Name": "NOVAK Jan",
        "Club": "USK Praha",
        "Nat": "CZE",
        "RaceId": "K1M_ST_BR1_6",
        "Time": "81.15",
        "Total": "83.15",
        "Pen": "2",
        "Gates": "0,0,2",
        "dtStart": "10:00:01.000",
        "dtFinish": "",
        "TTBDiff": "+1.20",
        "TTBName": "SMITH",
        "Rank": "3",
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


class TestCoercion:
    """Tests for safe_string / safe_int."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, ""), ("a", "a"), (3, "3"), (1.5, "1.5"), (True, "true"), ({}, "")],
    )
    def test_safe_string(self, value: object, expected: str) -> None:
        assert safe_string(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("12", 12), ("12.7", 12), (3, 3), (2.9, 2), ("abc", 0), ("", 0), (None, 0)],
    )
    def test_safe_int(self, value: object, expected: int) -> None:
        assert safe_int(value) == expected

    def test_safe_int_rejects_nan(self) -> None:
        assert safe_int(float("nan")) == 0
        assert safe_int("inf") == 0


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


class TestDecodeLine:
    """Tests for step 1: raw text to (msg_type, data)."""

    def test_msg_discriminator(self) -> None:
        assert decode_line('{"msg": "top", "data": {"a": 1}}') == ("top", {"a": 1})

    def test_type_discriminator_fallback(self) -> None:
        assert decode_line('{"type": "comp", "data": {}}') == ("comp", {})

    def test_bytes_input(self) -> None:
        assert decode_line(b'{"msg": "title"}') == ("title", None)

    @pytest.mark.parametrize(
        "raw",
        ["not json", "[1, 2]", '{"data": {}}', '{"msg": 5}', '{"msg": ""}'],
    )
    def test_parse_errors(self, raw: str) -> None:
        with pytest.raises(MessageParseError):
            decode_line(raw)

    def test_invalid_utf8(self) -> None:
        with pytest.raises(MessageParseError):
            decode_line(b"\xff\xfe")


# ---------------------------------------------------------------------------
# Payload parsers
# ---------------------------------------------------------------------------


class TestParseCompetitor:
    """Tests for competitor field mapping."""

    def test_full_mapping(self) -> None:
        c: Competitor | None = parse_competitor(_comp_data())
        assert c is not None
        assert c.bib == "7"
        assert c.name == "NOVAK Jan"
        assert c.race_id == "K1M_ST_BR1_6"
        assert c.penalty == 2
        assert c.rank == 3
        assert c.start_ts == "10:00:01.000"
        assert c.finish_ts is None
        assert c.ttb_diff == "+1.20"

    def test_uppercase_timestamp_keys(self) -> None:
        data: dict[str, Any] = _comp_data(dtStart="", DTStart="10:00", DTFinish="10:02")
        c: Competitor | None = parse_competitor(data)
        assert c is not None
        assert c.start_ts == "10:00"
        assert c.finish_ts == "10:02"

    def test_total_time_alias(self) -> None:
        c: Competitor | None = parse_competitor(_comp_data(Total="", TotalTime="90.00"))
        assert c is not None and c.total == "90.00"

    def test_missing_bib(self) -> None:
        assert parse_competitor(_comp_data(Bib="")) is None
        assert parse_competitor({}) is None

    def test_bad_numbers_default_to_zero(self) -> None:
        c: Competitor | None = parse_competitor(_comp_data(Pen="x", Rank="-4"))
        assert c is not None
        assert c.penalty == 0
        assert c.rank == 0


class TestParseResultRow:
    """Tests for results row mapping."""

    def test_name_from_parts(self) -> None:
        row = parse_result_row({"Bib": "1", "FamilyName": "NOVAK", "GivenName": "Jan"})
        assert row is not None and row.name == "NOVAK Jan"

    def test_nbsp_stripped_from_behind(self) -> None:
        row = parse_result_row({"Bib": "1", "Behind": "&nbsp;+1.20"})
        assert row is not None and row.behind == "+1.20"

    def test_status(self) -> None:
        row = parse_result_row({"Bib": "1", "Rank": "", "Status": "DNF"})
        assert row is not None
        assert row.status == "DNF"
        assert row.rank == 0


# ---------------------------------------------------------------------------
# Normalize
# ---------------------------------------------------------------------------


class TestNormalize:
    """Tests for step 2: (msg_type, data) to Envelope."""

    def test_top(self) -> None:
        env: Envelope | None = parse_line(
            _line(
                "top",
                {
                    "RaceName": "K1m - 1st Run",
                    "RaceStatus": "3",
                    "RaceId": "K1M_ST_BR1_6",
                    "HighlightBib": "9",
                    "list": [
                        {"Rank": 2, "Bib": "9", "Name": "B", "Total": "85.00"},
                        {"Rank": 1, "Bib": "7", "Name": "A", "Total": "83.15"},
                        {"Rank": "", "Bib": "5", "Status": "DNS"},
                        {"Rank": 3, "Name": "no bib"},
                    ],
                },
            ),
            timestamp_ms=42,
        )
        assert env is not None
        assert env.kind is MessageKind.RESULTS
        assert env.channel is EventKind.RESULTS
        assert env.timestamp_ms == 42
        results: ResultsData = env.payload
        assert [r.bib for r in results.results] == ["7", "9", "5"]
        assert results.race_id == "K1M_ST_BR1_6"
        assert results.highlight_bib == "9"

    def test_top_list_must_be_array(self) -> None:
        with pytest.raises(MessageValidationError):
            parse_line(_line("top", {"list": "nope"}))

    def test_comp_is_partial(self) -> None:
        env: Envelope | None = parse_line(_line("comp", _comp_data()))
        assert env is not None
        assert env.kind is MessageKind.COMPETITOR
        payload: OnCourseData = env.payload
        assert payload.full is False
        assert [c.bib for c in payload.competitors] == ["7"]

    def test_comp_without_bib_is_dispatched_empty(self) -> None:
        env: Envelope | None = parse_line(_line("comp", {"Bib": ""}))
        assert env is not None
        assert env.payload == OnCourseData(competitors=(), full=False)

    def test_comp_with_null_data(self) -> None:
        env: Envelope | None = parse_line(_line("comp", None))
        assert env is not None
        assert env.payload.competitors == ()

    def test_oncourse_is_full(self) -> None:
        env: Envelope | None = parse_line(
            _line("oncourse", [_comp_data(), _comp_data(Bib="8"), "junk", {"Bib": ""}])
        )
        assert env is not None
        assert env.kind is MessageKind.ON_COURSE_LIST
        payload: OnCourseData = env.payload
        assert payload.full is True
        assert [c.bib for c in payload.competitors] == ["7", "8"]

    def test_oncourse_must_be_array(self) -> None:
        with pytest.raises(MessageValidationError):
            parse_line(_line("oncourse", {"Bib": "7"}))

    def test_control(self) -> None:
        env: Envelope | None = parse_line(
            _line("control", {"displayCurrent": "1", "displayTop": "0", "displayDayTime": "1"})
        )
        assert env is not None
        v: VisibilityState = env.payload
        assert v.display_current is True
        assert v.display_top is False
        assert v.display_day_time is True
        assert v.display_footer is False

    @pytest.mark.parametrize(
        ("msg", "data", "expected"),
        [
            ("title", {"text": "Czech Cup"}, EventInfoData(title="Czech Cup")),
            ("infotext", {"text": "Break"}, EventInfoData(info_text="Break")),
            ("daytime", {"time": "10:34:08"}, EventInfoData(day_time="10:34:08")),
        ],
    )
    def test_event_info(self, msg: str, data: dict[str, str], expected: EventInfoData) -> None:
        env: Envelope | None = parse_line(_line(msg, data))
        assert env is not None
        assert env.kind is MessageKind.EVENT_INFO
        assert env.payload == expected

    def test_unknown_type_is_ignored(self) -> None:
        assert normalize_message("schedule", {}) is None

    def test_wrong_data_shape(self) -> None:
        with pytest.raises(MessageValidationError):
            normalize_message("control", ["a"])
