"""
Changes feed follower.

The follower issues the _changes request, pumps the response body into a
ChangesStream and hands the resulting records to the caller as an async
iterator:

    async for change in ChangesFollower(config).changes():
        handle(change)

Invariants:
    - Records are yielded in the order the stream emits them
    - At most ``max_pending`` records are buffered outside the stream; past
      that the stream (and through it the response) is paused until the
      caller catches up
    - A stream error is raised to the caller; records after it are never
      yielded

How to change safely:
    - Keep the pump and the consumer in one task; the pause/resume handoff
      relies on it
    - Retry and reconnect belong in the caller, not here
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

import httpx

from ..config import CouchConfig, FeedConfig
from ..errors import FeedHTTPError
from ..stream import ChangesStream, FeedMode
from .source import ResponseSource

logger = logging.getLogger(__name__)


class ChangesFollower:
    """Follow one database's changes feed over HTTP.

    Attributes:
        couch: Server and database to follow
        feed: _changes request parameters
        last_seq: ``seq`` of the last record yielded, if any

    Example:
        >>> follower = ChangesFollower(CouchConfig(database="orders"))
        >>> async for change in follower.changes():
        ...     print(change["id"], change["seq"])
    """

    def __init__(
        self,
        couch: CouchConfig,
        feed: Optional[FeedConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the follower.

        Args:
            couch: Server and database configuration
            feed: Request parameters (defaults to a continuous feed from 0)
            client: Optional client to reuse; one is created per call otherwise
        """
        self.couch = couch
        self.feed = feed or FeedConfig()
        self._client = client
        self._stream: Optional[ChangesStream] = None
        self.last_seq: Any = None
        self.records_delivered = 0

    def build_params(self) -> Dict[str, str]:
        """Query parameters for the _changes request."""
        params = {
            "feed": self.feed.mode.value,
            "since": str(self.last_seq if self.last_seq is not None else self.feed.since),
        }
        if self.feed.mode is FeedMode.CONTINUOUS:
            params["heartbeat"] = str(self.feed.heartbeat_ms)
        if self.feed.include_docs:
            params["include_docs"] = "true"
        if self.feed.limit is not None:
            params["limit"] = str(self.feed.limit)
        if self.feed.timeout_ms is not None:
            params["timeout"] = str(self.feed.timeout_ms)
        if self.feed.filter:
            params["filter"] = self.feed.filter
        return params

    @contextlib.asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.couch.request_timeout)
        ) as client:
            yield client

    async def changes(self) -> AsyncIterator[Any]:
        """Yield change records until the feed ends.

        Yields:
            One decoded change record per feed entry (usually a dict)

        Raises:
            FeedHTTPError: If the server answers with an error status
            ProtocolError: If the body violates the feed format
            httpx.HTTPError: On transport failures
        """
        url = self.couch.changes_url
        params = self.build_params()
        logger.info(
            "Following changes feed",
            extra={"url": self.couch.redacted_url, "database": self.couch.database, **params},
        )

        async with self._client_context() as client:
            async with client.stream("GET", url, params=params) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise FeedHTTPError(
                        response.status_code,
                        str(response.url),
                        body.decode("utf-8", errors="replace"),
                    )

                source = ResponseSource(response)
                stream = ChangesStream(feed=self.feed.mode)
                stream.attach(source)
                stream.set_encoding(response.charset_encoding or "utf-8")
                self._stream = stream

                inbox: Deque[str] = deque()
                errors: List[Exception] = []

                def on_data(record: str) -> None:
                    inbox.append(record)
                    if len(inbox) >= self.feed.max_pending:
                        stream.pause()

                stream.on("data", on_data)
                stream.on("error", errors.append)
                stream.once("end", lambda: logger.info(
                    "Changes feed ended",
                    extra={"records": self.records_delivered, "last_seq": self.last_seq},
                ))

                try:
                    async for chunk in source.iter_chunks():
                        stream.write(chunk, source.encoding)
                        while inbox:
                            yield self._deliver(inbox.popleft())
                            if not inbox and not stream.is_sending and stream.readable:
                                stream.resume()
                        if errors:
                            raise errors[0]

                    if source.closed:
                        logger.info("Changes feed closed before end of body")
                        return

                    stream.end()
                    while inbox:
                        yield self._deliver(inbox.popleft())
                        if not inbox and not stream.is_sending and stream.readable:
                            stream.resume()
                    if errors:
                        raise errors[0]
                finally:
                    self._stream = None

    def close(self) -> None:
        """Stop following once the chunk being processed is written."""
        if self._stream is not None and self._stream.source is not None:
            self._stream.destroy_later()

    def _deliver(self, record: str) -> Any:
        # Longpoll results may hold any JSON value, not only objects
        change = json.loads(record)
        if isinstance(change, dict) and "seq" in change:
            self.last_seq = change["seq"]
        self.records_delivered += 1
        return change
