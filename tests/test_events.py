"""Unit tests for core.events and core.errors modules."""

import pytest
from pydantic import ValidationError

from core.errors import (
    CallbackError,
    ErrorCode,
    FeedConnectionError,
    FeedError,
    MessageParseError,
    MessageValidationError,
    ProviderError,
)
from core.events import (
    CHANNEL_FOR_KIND,
    Competitor,
    ConnectionStatus,
    Envelope,
    EventKind,
    MessageKind,
    OnCourseData,
    ResultRow,
    VisibilityState,
)


# ---------------------------------------------------------------------------
# Competitor
# ---------------------------------------------------------------------------


class TestCompetitor:
    """Tests for the Competitor model."""

    def test_minimal(self) -> None:
        c: Competitor = Competitor(bib="7")
        assert c.bib == "7"
        assert c.start_ts is None
        assert c.finish_ts is None
        assert c.penalty == 0

    def test_empty_bib_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Competitor(bib="")

    def test_negative_penalty_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Competitor(bib="7", penalty=-2)

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Competitor(bib="7", unknown="x")  # type: ignore[call-arg]

    def test_frozen(self) -> None:
        c: Competitor = Competitor(bib="7")
        with pytest.raises(ValidationError):
            c.bib = "8"  # type: ignore[misc]

    def test_on_course_and_finished(self) -> None:
        running: Competitor = Competitor(bib="7", start_ts="10:00:00.000")
        finished: Competitor = Competitor(
            bib="7", start_ts="10:00:00.000", finish_ts="10:01:30.000"
        )
        not_started: Competitor = Competitor(bib="7")

        assert running.is_on_course() and not running.has_finished()
        assert finished.has_finished() and not finished.is_on_course()
        assert not not_started.is_on_course()


class TestResultRow:
    """Tests for the ResultRow model."""

    def test_defaults(self) -> None:
        row: ResultRow = ResultRow(bib="1")
        assert row.rank == 0
        assert row.status == ""

    def test_negative_rank_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ResultRow(bib="1", rank=-1)


class TestVisibilityState:
    """Tests for default visibility flags."""

    def test_defaults(self) -> None:
        v: VisibilityState = VisibilityState()
        assert v.display_current and v.display_top and v.display_on_course
        assert v.display_day_time is False


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class TestEnvelope:
    """Tests for Envelope and channel mapping."""

    def test_competitor_and_list_share_on_course_channel(self) -> None:
        assert CHANNEL_FOR_KIND[MessageKind.COMPETITOR] is EventKind.ON_COURSE
        assert CHANNEL_FOR_KIND[MessageKind.ON_COURSE_LIST] is EventKind.ON_COURSE

    def test_every_kind_has_a_channel(self) -> None:
        assert set(CHANNEL_FOR_KIND) == set(MessageKind)

    def test_channel_property(self) -> None:
        env: Envelope = Envelope(
            timestamp_ms=5,
            source_tag="ws",
            kind=MessageKind.COMPETITOR,
            payload=OnCourseData(full=False),
        )
        assert env.channel is EventKind.ON_COURSE

    def test_frozen(self) -> None:
        env: Envelope = Envelope(kind=MessageKind.RESULTS)
        with pytest.raises(ValidationError):
            env.timestamp_ms = 10  # type: ignore[misc]

    def test_connection_status_values(self) -> None:
        assert [s.value for s in ConnectionStatus] == [
            "disconnected",
            "connecting",
            "connected",
            "reconnecting",
        ]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize(
        ("exc_type", "code"),
        [
            (MessageParseError, ErrorCode.PARSE_ERROR),
            (MessageValidationError, ErrorCode.VALIDATION_ERROR),
            (FeedConnectionError, ErrorCode.CONNECTION_ERROR),
            (CallbackError, ErrorCode.PARSE_ERROR),
            (FeedError, ErrorCode.UNKNOWN_ERROR),
        ],
    )
    def test_codes(self, exc_type: type[FeedError], code: ErrorCode) -> None:
        exc: FeedError = exc_type("boom", cause="x")
        error: ProviderError = exc.to_provider_error()
        assert error.code is code
        assert error.message == "boom"
        assert error.cause == "x"

    def test_subclasses_are_feed_errors(self) -> None:
        assert issubclass(MessageParseError, FeedError)
        assert issubclass(FeedConnectionError, FeedError)

    def test_provider_error_timestamp_defaults_to_now(self) -> None:
        error: ProviderError = ProviderError(code=ErrorCode.PARSE_ERROR, message="m")
        assert error.timestamp_ms > 0

    def test_provider_error_frozen(self) -> None:
        error: ProviderError = ProviderError(code=ErrorCode.PARSE_ERROR, message="m")
        with pytest.raises(ValidationError):
            error.message = "other"  # type: ignore[misc]
