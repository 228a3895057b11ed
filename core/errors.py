"""Error taxonomy for scoreboard feed providers.

Providers never raise parse or validation failures to their callers.
Parsers raise the exceptions defined here; the provider catches them
per unit (one line, one XML child element), converts them into a
:class:`ProviderError` and emits it on the error channel.

Taxonomy:
    - ``PARSE_ERROR``: malformed line or document.
    - ``VALIDATION_ERROR``: well-formed, but a required structural
      element is missing.
    - ``CONNECTION_ERROR``: transport-level failure. Drives the
      reconnection controller.
    - ``UNKNOWN_ERROR``: anything a provider could not classify.
"""

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    """Programmatic error code carried by every :class:`ProviderError`."""

    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ProviderError(BaseModel):
    """Immutable error event emitted on a provider's error channel.

    Attributes:
        code: Error classification.
        message: Human-readable description.
        cause: Original exception or offending data (truncated).
        timestamp_ms: Wall-clock time the error was created.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    code: ErrorCode = Field(description="Error classification")
    message: str = Field(description="Human-readable error message")
    cause: Any = Field(default=None, description="Original error or data")
    timestamp_ms: int = Field(
        default_factory=lambda: int(time.time() * 1000),
        ge=0,
        description="Wall-clock creation time in milliseconds",
    )


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class FeedError(Exception):
    """Base exception for all scoreboard feed errors."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, cause: Any = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)

    def to_provider_error(self) -> ProviderError:
        """Convert the exception into an error-channel event."""
        return ProviderError(code=self.code, message=self.message, cause=self.cause)


class MessageParseError(FeedError):
    """Raised when a line or document cannot be decoded."""

    code = ErrorCode.PARSE_ERROR


class MessageValidationError(FeedError):
    """Raised when a decoded message lacks a required element."""

    code = ErrorCode.VALIDATION_ERROR


class FeedConnectionError(FeedError):
    """Raised by ``connect()`` when the transport cannot be opened."""

    code = ErrorCode.CONNECTION_ERROR


class CallbackError(FeedError):
    """Raised by a strict callback registry after a subscriber failed.

    All subscribers of the emitted kind have been invoked by the time
    this is raised; ``cause`` holds the first failure.
    """

    code = ErrorCode.PARSE_ERROR
