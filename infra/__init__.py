"""Infrastructure layer for Scoreboard Feed Adapter.

This package provides the data providers behind the common provider
contract: the live line-feed and XML-feed adapters (WebSocket
transports with automatic reconnection) and the recorded-session
replay provider.
"""

from infra.line_feed import LineFeedConfig, LineFeedProvider
from infra.provider import BaseProvider, DataProvider
from infra.replay import PlaybackState, ReplayConfig, ReplayProvider
from infra.websocket_feed import FeedConfig, WebSocketFeed
from infra.xml_feed import XmlFeedConfig, XmlFeedProvider

__all__: list[str] = [
    "BaseProvider",
    "DataProvider",
    "FeedConfig",
    "LineFeedConfig",
    "LineFeedProvider",
    "PlaybackState",
    "ReplayConfig",
    "ReplayProvider",
    "WebSocketFeed",
    "XmlFeedConfig",
    "XmlFeedProvider",
]
