"""
Feed stream abstraction.

This package provides the changes stream transform and the protocols it
plays on each side:
- ChangesStream: body chunks in, one "data" event per change record out
- Source: upstream flow-control contract (pause/resume/destroy)
- EventEmitter: synchronous event dispatch used by streams

Invariants:
    - Records are delivered in arrival order (continuous) or results
      order (longpoll)
    - Protocol violations are fatal and reported once via "error"
"""

from .base import (
    EventEmitter,
    ReadableStream,
    Source,
    WritableStream,
)
from .changes import (
    LONGPOLL_HEADER,
    ChangesStream,
    FeedMode,
    FlowState,
    StreamState,
)

__all__ = [
    # Protocols and events
    "EventEmitter",
    "ReadableStream",
    "WritableStream",
    "Source",
    # Changes stream
    "ChangesStream",
    "FeedMode",
    "FlowState",
    "StreamState",
    "LONGPOLL_HEADER",
]
