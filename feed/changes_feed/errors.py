"""
Error types for the changes feed.

This module defines all exception types raised or emitted by the package:
- ChangesFeedError: Base exception
- UsageError: Caller violated the stream's calling contract
- ProtocolError: The feed body violated the wire format
- FeedHTTPError: The server answered the _changes request with an error

Invariants:
    - All errors inherit from ChangesFeedError
    - UsageError is raised synchronously to the caller
    - ProtocolError is delivered through the stream's "error" event
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ChangesFeedError(Exception):
    """Base exception for all changes feed errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CHANGES_FEED_ERROR"
        self.details = details or {}


class UsageError(ChangesFeedError):
    """Stream used in a way its contract does not allow.

    Raised when:
    - set_encoding/destroy/destroy_later called with no source attached
    - The feed mode is reassigned after it was set
    - write/end called after the stream ended or errored
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="USAGE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class ProtocolError(ChangesFeedError):
    """Feed body does not match the expected wire format.

    Always fatal. Delivered once through the "error" event, after which
    the stream is neither readable nor writable.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code="PROTOCOL_ERROR", details=details)


class FeedModeError(ProtocolError):
    """Data was written before the feed mode was chosen."""


class PrefixMismatchError(ProtocolError):
    """Body does not start with the preamble the feed mode requires.

    Attributes:
        expected: The part of the preamble that should have arrived
        received: What arrived instead
    """

    def __init__(self, expected: str, received: str) -> None:
        super().__init__(
            f"Prefix not expected {expected!r}: {received!r}",
            details={"expected": expected, "received": received},
        )
        self.expected = expected
        self.received = received


class NonObjectDataError(ProtocolError):
    """A continuous feed line is not a JSON object."""

    def __init__(self, line: str) -> None:
        super().__init__(f"Non-object JSON data: {line}", details={"line": line})
        self.line = line


class InvalidJsonError(ProtocolError):
    """A record or longpoll document failed to parse as JSON."""

    def __init__(self, text: str, cause: Exception) -> None:
        super().__init__(
            f"Invalid JSON in feed: {cause}",
            details={"text": text[:200]},
        )
        self.text = text
        self.cause = cause


class MissingResultsError(ProtocolError):
    """Longpoll document has no "results" array."""

    def __init__(self) -> None:
        super().__init__('No "results" field in feed')


class ChangesAlreadyQueuedError(ProtocolError):
    """Longpoll document completed while records were already queued."""

    def __init__(self, queued: list) -> None:
        super().__init__(
            f"Changes are already queued: {len(queued)} pending",
            details={"queued": list(queued)},
        )
        self.queued = list(queued)


class TrailingDataError(ProtocolError):
    """Continuous feed ended in the middle of a line."""

    def __init__(self, data: str) -> None:
        super().__init__(
            f"Unprocessed data after end received: {data!r}",
            details={"data": data},
        )
        self.data = data


class FeedHTTPError(ChangesFeedError):
    """The _changes request returned a non-success status.

    Attributes:
        status_code: HTTP status returned by the server
        url: Requested URL
    """

    def __init__(self, status_code: int, url: str, body: str = "") -> None:
        super().__init__(
            f"Changes request failed with HTTP {status_code}: {url}",
            code="HTTP_ERROR",
            details={"status_code": status_code, "url": url, "body": body[:500]},
        )
        self.status_code = status_code
        self.url = url
