"""Unit tests for infra.xml_feed module (message handling)."""

import xml.etree.ElementTree as ET

import pytest

import infra.xml_feed as xml_feed
from core.errors import ErrorCode, ProviderError
from core.events import EventInfoData, OnCourseData, RaceConfig, ResultsData
from infra.xml_feed import XmlFeedConfig, XmlFeedProvider, parse_proxy_status

DOCUMENT: str = """
<Canoe123 System="Main">
  <OnCourse>
    <OnCourse>
      <Participant Bib="7" RaceId="K1M_ST_BR1_6"/>
      <Result Type="C" dtStart="10:00:01.000"/>
    </OnCourse>
  </OnCourse>
  <Results MainTitle="K1m" SubTitle="1st Run" Current="Y">
    <Row Number="1"><Participant Bib="3"/><Result Type="T" Rank="1"/></Row>
  </Results>
  <TimeOfDay>10:34:08</TimeOfDay>
  <RaceConfig NrGates="20"/>
  <Schedule/>
</Canoe123>
"""


@pytest.fixture()
def provider() -> XmlFeedProvider:
    return XmlFeedProvider(XmlFeedConfig(url="localhost:8082"))


@pytest.fixture()
def errors(provider: XmlFeedProvider) -> list[ProviderError]:
    seen: list[ProviderError] = []
    provider.on_error(seen.append)
    return seen


class TestParseProxyStatus:
    """Tests for proxy status frame detection."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ('{"type": "proxy_status", "status": "connected"}', "connected"),
            ('{"type": "proxy_status", "status": "disconnected"}', "disconnected"),
            ('{"type": "proxy_status"}', ""),
            ('{"type": "other"}', None),
            ("<Canoe123/>", None),
            ("{broken", None),
        ],
    )
    def test_detect(self, message: str, expected: str | None) -> None:
        assert parse_proxy_status(message) == expected


class TestDispatch:
    """Tests for per-element dispatch."""

    def test_document_fans_out_per_element(self, provider: XmlFeedProvider) -> None:
        on_course: list[OnCourseData] = []
        results: list[ResultsData] = []
        info: list[EventInfoData] = []
        config: list[RaceConfig] = []
        provider.on_on_course(on_course.append)
        provider.on_results(results.append)
        provider.on_event_info(info.append)
        provider.on_config(config.append)

        provider._handle_message(DOCUMENT)

        assert [c.bib for c in on_course[0].competitors] == ["7"]
        assert results[0].race_name == "K1m - 1st Run"
        assert info[0].day_time == "10:34:08"
        assert config[0].gate_count == 20
        assert provider.stats()["messages_parsed"] == 4

    def test_bytes_document(self, provider: XmlFeedProvider) -> None:
        info: list[EventInfoData] = []
        provider.on_event_info(info.append)
        provider._handle_message(b"<Canoe123><TimeOfDay>09:00</TimeOfDay></Canoe123>")
        assert info[0].day_time == "09:00"


class TestErrors:
    """Tests for error reporting and isolation."""

    def test_malformed_xml(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
    ) -> None:
        provider._handle_message("<Canoe123><OnCourse></Canoe123>")
        assert [e.code for e in errors] == [ErrorCode.PARSE_ERROR]

    def test_missing_root(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
    ) -> None:
        provider._handle_message("<Other/>")
        assert [e.code for e in errors] == [ErrorCode.VALIDATION_ERROR]

    def test_invalid_utf8(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
    ) -> None:
        provider._handle_message(b"\xff\xfe<Canoe123/>")
        assert [e.code for e in errors] == [ErrorCode.PARSE_ERROR]

    def test_failing_element_does_not_block_siblings(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = xml_feed.parse_element

        def flaky(element: ET.Element, timestamp_ms: int = 0, source_tag: str = "tcp") -> object:
            if element.tag == "OnCourse":
                raise ValueError("bad element")
            return original(element, timestamp_ms=timestamp_ms, source_tag=source_tag)

        monkeypatch.setattr(xml_feed, "parse_element", flaky)
        info: list[EventInfoData] = []
        provider.on_event_info(info.append)

        provider._handle_message(DOCUMENT)

        assert [e.code for e in errors] == [ErrorCode.PARSE_ERROR]
        assert "OnCourse" in errors[0].message
        assert info[0].day_time == "10:34:08"

    def test_subscriber_failure_becomes_provider_error(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
    ) -> None:
        received: list[EventInfoData] = []

        def boom(data: EventInfoData) -> None:
            raise RuntimeError("subscriber bug")

        provider.on_event_info(boom)
        provider.on_event_info(received.append)

        provider._handle_message("<Canoe123><TimeOfDay>1</TimeOfDay></Canoe123>")

        assert len(received) == 1
        assert [e.code for e in errors] == [ErrorCode.PARSE_ERROR]
        assert isinstance(errors[0].cause, RuntimeError)


class TestProxyStatus:
    """Tests for proxy status frames."""

    def test_disconnected_reports_connection_error(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
    ) -> None:
        provider._handle_message('{"type": "proxy_status", "status": "disconnected"}')
        assert [e.code for e in errors] == [ErrorCode.CONNECTION_ERROR]
        assert errors[0].message == "Proxy lost connection to the timing system"

    def test_connected_is_silent(
        self,
        provider: XmlFeedProvider,
        errors: list[ProviderError],
    ) -> None:
        provider._handle_message('{"type": "proxy_status", "status": "connected"}')
        assert errors == []
        assert provider.stats()["parse_errors"] == 0
