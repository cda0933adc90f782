"""
Changes stream: turns a _changes response body into discrete records.

The stream is written to by an upstream source (usually an HTTP response)
and emits one "data" event per change record, then "end" or "error".
Two wire encodings are supported:

- continuous: one JSON object per line, empty lines are heartbeats
- longpoll: a single JSON document ``{"results":[...], ...}`` that is only
  usable once the whole body has arrived

Invariants:
    - The feed mode is fixed before the first write and never changes
    - The longpoll preamble is matched exactly once, across any chunk split
    - Records leave the queue in the order they were parsed, and only
      from _emit_changes()
    - "end" never fires while records are queued or the consumer is paused
    - "end" and "error" are exclusive, and each fires at most once

How to change safely:
    - Keep every public call run-to-completion; nothing here may await
    - Any new fatal condition must go through _error()
    - Test chunk-boundary invariance for any framing change
"""

from __future__ import annotations

import codecs
import json
import logging
from collections import deque
from enum import Enum
from typing import Any, Deque, List, Optional, Union

from ..errors import (
    ChangesAlreadyQueuedError,
    FeedModeError,
    InvalidJsonError,
    MissingResultsError,
    NonObjectDataError,
    PrefixMismatchError,
    ProtocolError,
    TrailingDataError,
    UsageError,
)
from .base import EventEmitter, Listener, Source

logger = logging.getLogger(__name__)

LONGPOLL_HEADER = '{"results":['
DEFAULT_ENCODING = "utf-8"

Chunk = Union[str, bytes, bytearray, memoryview]


class FeedMode(Enum):
    """Wire encoding of a changes feed."""

    CONTINUOUS = "continuous"
    LONGPOLL = "longpoll"


class FlowState(Enum):
    """Whether the consumer is ready for "data" events."""

    FLOWING = "flowing"
    PAUSED = "paused"


class StreamState(Enum):
    """Lifecycle of a changes stream.

    OPEN -> ENDING -> ENDED, and ERRORED from any non-terminal state.
    """

    OPEN = "open"
    ENDING = "ending"
    ENDED = "ended"
    ERRORED = "errored"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Invalid JSON constant: {name}")


def _parse_json(text: str) -> Any:
    """Parse strict JSON; every failure, including runaway nesting, is a ValueError."""
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except RecursionError as e:
        raise ValueError(f"JSON nested too deeply: {e}") from e


def _serialize(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class ChangesStream:
    """Duplex stream from a changes feed body to change records.

    Attributes:
        feed: Active FeedMode (None until chosen)
        state: Current StreamState
        source: Attached upstream source, if any

    Example:
        >>> stream = ChangesStream(feed="continuous")
        >>> _ = stream.on("data", print).on("end", lambda: print("done"))
        >>> stream.write('{"seq":1}\\n\\n{"seq":2}\\n')
        {"seq":1}
        {"seq":2}
        True
        >>> stream.end()
        done
    """

    def __init__(self, feed: Union[FeedMode, str, None] = None) -> None:
        """Initialize the stream.

        Args:
            feed: "continuous" or "longpoll"; may be set later via .feed
                  as long as nothing has been written yet
        """
        self._events = EventEmitter()
        self._feed: Optional[FeedMode] = FeedMode(feed) if feed is not None else None
        self._flow = FlowState.FLOWING
        self._state = StreamState.OPEN
        self._source: Optional[Source] = None

        self._expect: Optional[str] = None
        self._line_buffer = ""
        self._document_chunks: List[str] = []
        self._pending: Deque[str] = deque()
        self._decoder: Optional[codecs.IncrementalDecoder] = None
        self._decoder_encoding: Optional[str] = None

    # Properties

    @property
    def feed(self) -> Optional[FeedMode]:
        return self._feed

    @feed.setter
    def feed(self, value: Union[FeedMode, str]) -> None:
        mode = FeedMode(value)
        if self._feed is not None and self._feed is not mode:
            raise UsageError(
                f"Feed mode already set to {self._feed.value!r}", operation="feed"
            )
        self._feed = mode

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def source(self) -> Optional[Source]:
        return self._source

    @property
    def readable(self) -> bool:
        return self._state in (StreamState.OPEN, StreamState.ENDING)

    @property
    def writable(self) -> bool:
        return self._state is StreamState.OPEN

    @property
    def is_sending(self) -> bool:
        return self._flow is FlowState.FLOWING

    @property
    def is_ending(self) -> bool:
        return self._state is StreamState.ENDING

    @property
    def pending_count(self) -> int:
        """Records parsed but not yet delivered."""
        return len(self._pending)

    # Events

    def on(self, event: str, listener: Listener) -> ChangesStream:
        self._events.on(event, listener)
        return self

    def once(self, event: str, listener: Listener) -> ChangesStream:
        self._events.once(event, listener)
        return self

    def remove_listener(self, event: str, listener: Listener) -> ChangesStream:
        self._events.remove_listener(event, listener)
        return self

    # Source binding and flow control

    def attach(self, source: Source) -> None:
        """Bind the upstream source that flow-control calls are forwarded to."""
        if self._source is not None and self._source is not source:
            raise UsageError("A source is already attached", operation="attach")
        self._source = source

    def _require_source(self, operation: str) -> Source:
        if self._source is None:
            raise UsageError("No incoming request yet", operation=operation)
        return self._source

    def set_encoding(self, encoding: str) -> None:
        self._require_source("set_encoding").set_encoding(encoding)

    def pause(self) -> None:
        self._flow = FlowState.PAUSED
        if self._source is not None:
            self._source.pause()

    def resume(self) -> None:
        self._flow = FlowState.FLOWING
        if self._source is not None:
            self._source.resume()
        self._emit_changes()

    def destroy(self) -> None:
        self._require_source("destroy").destroy()

    def destroy_later(self) -> None:
        self._require_source("destroy_later").destroy_later()

    # Writable side

    def write(self, chunk: Chunk, encoding: Optional[str] = None) -> bool:
        """Feed a chunk of the response body.

        Args:
            chunk: Text, or bytes decoded with ``encoding`` (UTF-8 by default)
            encoding: Encoding of byte chunks; the first byte chunk fixes it
                for the rest of the body

        Returns:
            Whether the producer should keep writing. Continuous feeds
            return False while the consumer is paused or after an error.

        Raises:
            UsageError: If end() was already called, the stream errored, or
                a byte chunk names a different encoding than earlier ones
        """
        if self._state is not StreamState.OPEN:
            raise UsageError(
                f"write() after stream {self._state.value}", operation="write"
            )

        text = self._decode(chunk, encoding)
        if text is None:
            return False
        return self._write_text(text)

    def _write_text(self, text: str) -> bool:
        data = self._normalize_data(text)
        if data is None:
            return False

        if self._feed is FeedMode.LONGPOLL:
            return self._write_longpoll(data)
        return self._write_continuous(data)

    def _write_longpoll(self, data: str) -> bool:
        self._document_chunks.append(data)
        return True

    def _write_continuous(self, data: str) -> bool:
        *lines, rest = (self._line_buffer + data).split("\n")

        for line in lines:
            # Heartbeat
            if not line.strip():
                continue

            if line[0] != "{":
                self._error(NonObjectDataError(line))
                return False

            try:
                change = _parse_json(line)
            except ValueError as e:
                self._error(InvalidJsonError(line, e))
                return False

            self._pending.append(_serialize(change))

        self._line_buffer = rest
        self._emit_changes()
        return self.is_sending and self._state is not StreamState.ERRORED

    def end(self, chunk: Optional[Chunk] = None, encoding: Optional[str] = None) -> None:
        """Signal end of the response body.

        Args:
            chunk: Optional final chunk, written before ending
            encoding: Encoding of a final byte chunk

        Raises:
            UsageError: If end() was already called or the stream errored
        """
        if self._state is not StreamState.OPEN:
            raise UsageError(f"end() after stream {self._state.value}", operation="end")

        if chunk:
            self.write(chunk, encoding)
            if self._state is StreamState.ERRORED:
                return

        tail = self._flush_decoder()
        if tail is None:
            return
        if tail:
            self._write_text(tail)
            if self._state is StreamState.ERRORED:
                return

        # ENDING only once the final chunk is in, so a write error never precedes "end"
        self._state = StreamState.ENDING

        if self._feed is FeedMode.LONGPOLL:
            self._end_longpoll()
        elif self._feed is FeedMode.CONTINUOUS:
            if self._line_buffer:
                self._error(TrailingDataError(self._line_buffer))
                return
            self._emit_changes()
        else:
            self._error(FeedModeError(self._missing_feed_message()))

    def _end_longpoll(self) -> None:
        document = LONGPOLL_HEADER + "".join(self._document_chunks)
        self._document_chunks = []

        try:
            parsed = _parse_json(document)
        except ValueError as e:
            self._error(InvalidJsonError(document, e))
            return

        results = parsed.get("results") if isinstance(parsed, dict) else None
        if not isinstance(results, list):
            self._error(MissingResultsError())
            return
        if self._pending:
            self._error(ChangesAlreadyQueuedError(list(self._pending)))
            return

        self._pending.extend(_serialize(change) for change in results)
        logger.debug("Longpoll document parsed", extra={"results": len(results)})
        self._emit_changes()

    # Internal implementation

    def _emit_changes(self) -> None:
        while (
            self._flow is FlowState.FLOWING
            and self._pending
            and self._state is not StreamState.ERRORED
        ):
            self._events.emit("data", self._pending.popleft())

        if (
            self._flow is FlowState.FLOWING
            and self._state is StreamState.ENDING
            and not self._pending
        ):
            self._state = StreamState.ENDED
            logger.debug("Changes stream ended")
            self._events.emit("end")

    def _decode(self, chunk: Chunk, encoding: Optional[str]) -> Optional[str]:
        if isinstance(chunk, str):
            return chunk

        if self._decoder is None:
            self._decoder_encoding = codecs.lookup(encoding or DEFAULT_ENCODING).name
            self._decoder = codecs.getincrementaldecoder(self._decoder_encoding)()
        elif encoding and codecs.lookup(encoding).name != self._decoder_encoding:
            # Switching mid-body would split a multi-byte sequence
            raise UsageError(
                f"Encoding already set to {self._decoder_encoding!r}, got {encoding!r}",
                operation="write",
            )
        try:
            return self._decoder.decode(bytes(chunk))
        except UnicodeDecodeError as e:
            self._error(ProtocolError(f"Undecodable feed data: {e}"))
            return None

    def _flush_decoder(self) -> Optional[str]:
        if self._decoder is None:
            return ""
        try:
            return self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            self._error(ProtocolError(f"Truncated multi-byte sequence at end of feed: {e}"))
            return None

    def _normalize_data(self, text: str) -> Optional[str]:
        """Strip and validate the feed preamble.

        The preamble may arrive split across any number of chunks; each
        call consumes as much of it as the chunk covers.

        Returns:
            The payload after the preamble, or None if an error was emitted
        """
        if self._feed is None:
            self._error(FeedModeError(self._missing_feed_message()))
            return None

        if self._expect is None:
            self._expect = LONGPOLL_HEADER if self._feed is FeedMode.LONGPOLL else ""

        prefix = text[: len(self._expect)]
        data = text[len(prefix):]
        expected_part = self._expect[: len(prefix)]

        if prefix != expected_part:
            self._error(PrefixMismatchError(expected_part, prefix))
            return None

        self._expect = self._expect[len(expected_part):]
        return data

    @staticmethod
    def _missing_feed_message() -> str:
        modes = " or ".join(repr(m.value) for m in FeedMode)
        return f"Must set feed to {modes} before writing data"

    def _error(self, err: Exception) -> None:
        if self._state is StreamState.ERRORED:
            logger.debug("Suppressed error after stream errored", extra={"error": str(err)})
            return

        self._state = StreamState.ERRORED
        logger.warning(
            "Changes stream error",
            extra={"error": str(err), "feed": self._feed.value if self._feed else None},
        )
        self._events.emit("error", err)
