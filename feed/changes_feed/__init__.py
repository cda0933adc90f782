"""
changes-feed - streaming parser for database changes feeds.

Turns the body of a CouchDB-style ``_changes`` response into discrete,
validated change records, delivered one at a time through a
flow-controlled stream:
- ChangesStream: body chunks in, "data"/"end"/"error" events out
- ChangesFollower: HTTP follower yielding records as an async iterator
- FollowerConfig: environment-driven configuration

Example:
    >>> from feed.changes_feed import ChangesStream
    >>>
    >>> stream = ChangesStream(feed="longpoll")
    >>> stream.on("data", handle_change)
    >>> stream.write('{"results":[{"seq":1},')
    >>> stream.end('{"seq":2}]}')

Invariants:
    - Records are delivered in feed order, exactly once
    - Protocol violations are fatal and reported once via "error"

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import CouchConfig, FeedConfig, FollowerConfig, ObservabilityConfig
from .errors import (
    ChangesAlreadyQueuedError,
    ChangesFeedError,
    FeedHTTPError,
    FeedModeError,
    InvalidJsonError,
    MissingResultsError,
    NonObjectDataError,
    PrefixMismatchError,
    ProtocolError,
    TrailingDataError,
    UsageError,
)
from .follow import ChangesFollower, ResponseSource
from .stream import (
    LONGPOLL_HEADER,
    ChangesStream,
    EventEmitter,
    FeedMode,
    FlowState,
    Source,
    StreamState,
)

__all__ = [
    # Version
    "__version__",
    # Stream
    "ChangesStream",
    "EventEmitter",
    "FeedMode",
    "FlowState",
    "StreamState",
    "Source",
    "LONGPOLL_HEADER",
    # Follower
    "ChangesFollower",
    "ResponseSource",
    # Configuration
    "CouchConfig",
    "FeedConfig",
    "FollowerConfig",
    "ObservabilityConfig",
    # Errors
    "ChangesFeedError",
    "UsageError",
    "ProtocolError",
    "FeedModeError",
    "PrefixMismatchError",
    "NonObjectDataError",
    "InvalidJsonError",
    "MissingResultsError",
    "ChangesAlreadyQueuedError",
    "TrailingDataError",
    "FeedHTTPError",
]
