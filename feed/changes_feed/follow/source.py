"""
HTTP response source for changes streams.

ResponseSource adapts a streaming httpx response to the Source protocol,
so a ChangesStream can pause, resume and destroy the body it is fed from.

Invariants:
    - No chunk is delivered while paused
    - After destroy() no further chunk is delivered
    - After destroy_later() at most the chunk in flight is delivered

How to change safely:
    - The owner of the response (the follower's ``async with``) closes it;
      this class never closes the response itself
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import AsyncIterator, Optional

import httpx

logger = logging.getLogger(__name__)


class ResponseSource:
    """Flow-controlled view of a streaming httpx response.

    Attributes:
        response: The streaming response (opened with client.stream())
        encoding: Text encoding chunks should be decoded with
        chunk_size: Read size passed to httpx, None for whatever arrives

    Example:
        >>> async with client.stream("GET", url) as response:
        ...     source = ResponseSource(response)
        ...     async for chunk in source.iter_chunks():
        ...         stream.write(chunk, source.encoding)
    """

    def __init__(self, response: httpx.Response, chunk_size: Optional[int] = None) -> None:
        self.response = response
        self.chunk_size = chunk_size
        self.encoding: Optional[str] = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._destroyed = False
        self._closing = False
        self._chunks_delivered = 0

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def closed(self) -> bool:
        """Whether delivery was stopped by destroy() or destroy_later()."""
        return self._destroyed or self._closing

    @property
    def chunks_delivered(self) -> int:
        return self._chunks_delivered

    def set_encoding(self, encoding: str) -> None:
        """Set the text encoding of the body.

        Raises:
            LookupError: If the encoding is unknown
        """
        self.encoding = codecs.lookup(encoding).name

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    def destroy(self) -> None:
        self._destroyed = True
        self._resumed.set()
        logger.debug("Response source destroyed", extra={"url": str(self.response.url)})

    def destroy_later(self) -> None:
        self._closing = True
        self._resumed.set()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield body chunks, honoring pause and destroy."""
        async for chunk in self.response.aiter_bytes(self.chunk_size):
            await self._resumed.wait()
            if self._destroyed:
                break

            self._chunks_delivered += 1
            yield chunk

            if self._closing or self._destroyed:
                break
