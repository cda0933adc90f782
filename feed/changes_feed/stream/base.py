"""
Base protocols and event dispatch for feed streams.

This module defines the capability protocols a feed stream plays on each
side, and the small event facility streams use to notify consumers:
- Source: upstream object that feeds body chunks and accepts flow control
- ReadableStream: what a downstream consumer may call
- WritableStream: what an upstream producer may call
- EventEmitter: synchronous listener registry ("data", "end", "error")

Invariants:
    - Listeners run synchronously, in registration order
    - An "error" event with no listener raises the error to the emitter's caller
    - Emitting never mutates the listener list seen by the current emit

How to change safely:
    - Protocol changes require updating ChangesStream and ResponseSource
    - Keep emit() synchronous; ordering guarantees depend on it
"""

from __future__ import annotations

from collections import defaultdict
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


@runtime_checkable
class Source(Protocol):
    """Upstream body producer, e.g. an HTTP response.

    The stream holds a non-owning reference to its source and only
    forwards flow-control calls to it.
    """

    def set_encoding(self, encoding: str) -> None:
        """Choose the text encoding of delivered chunks."""
        ...

    def pause(self) -> None:
        """Stop delivering chunks until resume()."""
        ...

    def resume(self) -> None:
        """Continue delivering chunks."""
        ...

    def destroy(self) -> None:
        """Abort delivery immediately."""
        ...

    def destroy_later(self) -> None:
        """Abort delivery once the chunk in flight is written."""
        ...


@runtime_checkable
class ReadableStream(Protocol):
    """Downstream side of a stream."""

    @property
    def readable(self) -> bool:
        ...

    def on(self, event: str, listener: Listener) -> Any:
        ...

    def set_encoding(self, encoding: str) -> None:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def destroy(self) -> None:
        ...

    def destroy_later(self) -> None:
        ...


@runtime_checkable
class WritableStream(Protocol):
    """Upstream side of a stream."""

    @property
    def writable(self) -> bool:
        ...

    def write(self, chunk: Any, encoding: Optional[str] = None) -> bool:
        ...

    def end(self, chunk: Any = None, encoding: Optional[str] = None) -> None:
        ...


class EventEmitter:
    """Minimal synchronous event dispatcher.

    Example:
        >>> events = EventEmitter()
        >>> events.on("data", print)
        >>> events.emit("data", '{"seq":1}')
        {"seq":1}
        True
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> EventEmitter:
        """Register a listener. Returns self for chaining."""
        self._listeners[event].append(listener)
        return self

    def once(self, event: str, listener: Listener) -> EventEmitter:
        """Register a listener that is removed after its first call."""

        def wrapper(*args: Any) -> Any:
            self.remove_listener(event, wrapper)
            return listener(*args)

        wrapper.listener = listener  # type: ignore[attr-defined]
        return self.on(event, wrapper)

    def remove_listener(self, event: str, listener: Listener) -> EventEmitter:
        """Remove one registration of a listener (plain or once())."""
        listeners = self._listeners.get(event, [])
        for i, registered in enumerate(listeners):
            if registered is listener or getattr(registered, "listener", None) is listener:
                del listeners[i]
                break
        return self

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener of an event.

        Returns:
            True if the event had listeners

        Raises:
            The error argument itself when "error" has no listener
        """
        listeners = list(self._listeners.get(event, []))
        if not listeners:
            if event == "error":
                err = args[0] if args else None
                if isinstance(err, BaseException):
                    raise err
                raise RuntimeError(f"Unhandled error event: {err!r}")
            return False

        for listener in listeners:
            listener(*args)
        return True
