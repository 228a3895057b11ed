"""Line-feed adapter: JSON messages over a WebSocket.

Each WebSocket text frame carries one JSON object with a ``msg``
discriminator (see :mod:`core.parsing`). Malformed JSON or a missing
discriminator emits ``PARSE_ERROR`` and the frame is skipped; a frame
with the wrong ``data`` structure emits ``VALIDATION_ERROR``. Unknown
discriminators are ignored.

Subscriber failures are isolated (default callback mode): they are
logged and counted but never reach the error channel.

Example:
    >>> from infra.line_feed import LineFeedConfig, LineFeedProvider
    >>> provider = LineFeedProvider(LineFeedConfig(url="192.168.1.5:8081"))
    >>> unsubscribe = provider.on_results(lambda results: print(results.race_name))
    >>> provider.connect()
"""

import logging

from core.errors import FeedError
from core.events import Envelope
from core.parsing import parse_line
from core.timers import TimerFactory, wall_ms
from infra.websocket_feed import FeedConfig, WebSocketFeed

logger: logging.Logger = logging.getLogger(__name__)

SOURCE_TAG: str = "ws"


class LineFeedConfig(FeedConfig):
    """Configuration for :class:`LineFeedProvider`."""


class LineFeedProvider(WebSocketFeed):
    """Provider for the JSON line feed.

    Args:
        config: Connection settings.
        timer_factory: Injectable timer for reconnection backoff.
    """

    def __init__(
        self,
        config: LineFeedConfig,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        super().__init__(config=config, strict=False, timer_factory=timer_factory)

    def _handle_message(self, message: str | bytes) -> None:
        try:
            envelope: Envelope | None = parse_line(
                message,
                timestamp_ms=int(wall_ms()),
                source_tag=SOURCE_TAG,
            )
        except FeedError as exc:
            self._report_feed_error(exc, unit="line-feed message")
            return
        if envelope is not None:
            self._dispatch(envelope)
