"""Core domain layer for Scoreboard Feed Adapter.

This package provides the normalized event models, the line-feed and
XML-feed parsers, the callback registry, the reconnection controller,
gate penalty parsing, best-run results merging and the scoreboard
correlator used throughout the system. All event models are
Pydantic-based with frozen configuration for immutability.
"""

from core.callbacks import CallbackRegistry
from core.correlator import ScoreboardConfig, ScoreboardState, reduce
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
    Competitor,
    ConnectionStatus,
    Envelope,
    EventInfoData,
    EventKind,
    MessageKind,
    OnCourseData,
    RaceConfig,
    ResultRow,
    ResultsData,
    RunResult,
    VisibilityState,
)
from core.gates import parse_gates, total_penalty
from core.reconnect import ReconnectConfig, ReconnectController
from core.runs import RunMergeConfig, RunMerger, is_second_run, merge_runs
from core.scoreboard import ScoreboardStore

__all__: list[str] = [
    "CallbackError",
    "CallbackRegistry",
    "Competitor",
    "ConnectionStatus",
    "Envelope",
    "ErrorCode",
    "EventInfoData",
    "EventKind",
    "FeedConnectionError",
    "FeedError",
    "MessageKind",
    "MessageParseError",
    "MessageValidationError",
    "OnCourseData",
    "ProviderError",
    "RaceConfig",
    "ReconnectConfig",
    "ReconnectController",
    "ResultRow",
    "ResultsData",
    "RunMergeConfig",
    "RunMerger",
    "RunResult",
    "ScoreboardConfig",
    "ScoreboardState",
    "ScoreboardStore",
    "VisibilityState",
    "is_second_run",
    "merge_runs",
    "parse_gates",
    "reduce",
    "total_penalty",
]
