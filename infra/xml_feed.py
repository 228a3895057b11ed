"""XML-feed adapter: timing-system XML documents over a WebSocket proxy.

The timing system speaks XML over TCP; a bridging proxy forwards each
document as one WebSocket frame. The proxy also injects JSON status
frames of its own::

    {"type": "proxy_status", "status": "connected"}
    {"type": "proxy_status", "status": "disconnected"}

``disconnected`` means the proxy lost its upstream TCP connection and
is reported as ``CONNECTION_ERROR``. Other proxy frames are ignored.

Error handling:
    - Malformed XML -> ``PARSE_ERROR``; missing root -> ``VALIDATION_ERROR``.
    - Each child element is processed independently. A child that fails
      to parse emits ``PARSE_ERROR`` and the remaining children are
      still delivered.
    - This adapter uses the strict callback mode: a failing subscriber
      is surfaced as ``PARSE_ERROR`` on the error channel.
"""

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any

from pydantic import ValidationError

from core.errors import ErrorCode, FeedError, MessageParseError, ProviderError
from core.events import Envelope
from core.timers import TimerFactory, wall_ms
from core.xml_parsing import parse_document, parse_element
from infra.websocket_feed import FeedConfig, WebSocketFeed

logger: logging.Logger = logging.getLogger(__name__)

SOURCE_TAG: str = "tcp"

PROXY_STATUS_TYPE: str = "proxy_status"


class XmlFeedConfig(FeedConfig):
    """Configuration for :class:`XmlFeedProvider`."""


def parse_proxy_status(message: str) -> str | None:
    """Return the status of a proxy status frame, else ``None``.

    Any frame that is not a JSON ``proxy_status`` object (including
    every XML document) yields ``None``.
    """
    if not message.lstrip().startswith("{"):
        return None
    try:
        frame: Any = json.loads(message)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict) or frame.get("type") != PROXY_STATUS_TYPE:
        return None
    status: Any = frame.get("status")
    return status if isinstance(status, str) else ""


class XmlFeedProvider(WebSocketFeed):
    """Provider for the XML timing feed.

    Args:
        config: Connection settings.
        timer_factory: Injectable timer for reconnection backoff.
    """

    def __init__(
        self,
        config: XmlFeedConfig,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        super().__init__(config=config, strict=True, timer_factory=timer_factory)

    def _handle_message(self, message: str | bytes) -> None:
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError as exc:
                self._report_feed_error(
                    MessageParseError("Message is not valid UTF-8", cause=exc),
                    unit="XML message",
                )
                return

        proxy_status: str | None = parse_proxy_status(message)
        if proxy_status is not None:
            self._handle_proxy_status(proxy_status)
            return

        try:
            root: ET.Element = parse_document(message)
        except FeedError as exc:
            self._report_feed_error(exc, unit="XML message")
            return

        timestamp_ms: int = int(wall_ms())
        for child in root:
            self._process_element(child, timestamp_ms)

    def _process_element(self, element: ET.Element, timestamp_ms: int) -> None:
        try:
            envelope: Envelope | None = parse_element(
                element,
                timestamp_ms=timestamp_ms,
                source_tag=SOURCE_TAG,
            )
        except FeedError as exc:
            self._report_feed_error(exc, unit=f"<{element.tag}> element")
            return
        except (ValidationError, ValueError) as exc:
            self._report_feed_error(
                MessageParseError(f"Failed to process {element.tag} element", cause=exc),
                unit=f"<{element.tag}> element",
            )
            return
        if envelope is not None:
            self._dispatch(envelope)

    def _handle_proxy_status(self, status: str) -> None:
        logger.info("Proxy status: %s", status or "<empty>")
        if status == "disconnected":
            self._emit_error(
                ProviderError(
                    code=ErrorCode.CONNECTION_ERROR,
                    message="Proxy lost connection to the timing system",
                )
            )
