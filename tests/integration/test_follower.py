"""
Integration tests for the HTTP follower against a mock transport.

Tests cover:
- Request parameters per feed mode
- Continuous and longpoll bodies delivered in arbitrary chunks
- HTTP and protocol errors
- High-water pausing and early close
"""

import json
from typing import AsyncIterator, List

import httpx
import pytest

from feed.changes_feed.config import CouchConfig, FeedConfig
from feed.changes_feed.errors import FeedHTTPError, NonObjectDataError, TrailingDataError
from feed.changes_feed.follow import ChangesFollower, ResponseSource
from feed.changes_feed.stream import FeedMode


async def chunked(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def split_bytes(body: bytes, size: int) -> List[bytes]:
    return [body[i:i + size] for i in range(0, len(body), size)]


def continuous_body(count: int) -> bytes:
    lines = []
    for seq in range(1, count + 1):
        lines.append(json.dumps({"seq": seq, "id": f"doc{seq}", "changes": [{"rev": "1-a"}]}))
        lines.append("")  # heartbeat
    return ("\n".join(lines) + "\n").encode("utf-8")


def longpoll_body(count: int) -> bytes:
    results = [{"seq": seq, "id": f"doc{seq}", "changes": [{"rev": "1-a"}]} for seq in range(1, count + 1)]
    return json.dumps({"results": results, "last_seq": count}, separators=(",", ":")).encode("utf-8")


class FakeCouch:
    """Mock transport handler recording requests."""

    def __init__(self, chunks: List[bytes], status_code: int = 200) -> None:
        self.chunks = chunks
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status_code,
            headers={"content-type": "application/json; charset=utf-8"},
            content=chunked(self.chunks),
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


COUCH = CouchConfig(url="http://couch.test:5984", database="orders")


async def collect(follower: ChangesFollower) -> list:
    return [change async for change in follower.changes()]


class TestContinuousFollower:
    """Tests for following continuous feeds."""

    @pytest.mark.asyncio
    async def test_yields_records_in_order(self):
        couch = FakeCouch(split_bytes(continuous_body(5), 7))
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, FeedConfig(), client=client)
            changes = await collect(follower)

        assert [c["seq"] for c in changes] == [1, 2, 3, 4, 5]
        assert follower.last_seq == 5
        assert follower.records_delivered == 5

    @pytest.mark.asyncio
    async def test_request_parameters(self):
        couch = FakeCouch([b""])
        feed = FeedConfig(
            since="42",
            heartbeat_ms=10000,
            include_docs=True,
            limit=10,
            filter="app/by_type",
        )
        async with couch.client() as client:
            await collect(ChangesFollower(COUCH, feed, client=client))

        request = couch.requests[0]
        assert request.url.path == "/orders/_changes"
        assert dict(request.url.params) == {
            "feed": "continuous",
            "since": "42",
            "heartbeat": "10000",
            "include_docs": "true",
            "limit": "10",
            "filter": "app/by_type",
        }

    @pytest.mark.asyncio
    async def test_since_resumes_from_last_seq(self):
        couch = FakeCouch([continuous_body(2)])
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, FeedConfig(), client=client)
            await collect(follower)
            couch.chunks = [b""]
            await collect(follower)

        assert couch.requests[1].url.params["since"] == "2"

    @pytest.mark.asyncio
    async def test_protocol_error_is_raised_after_good_records(self):
        couch = FakeCouch([b'{"seq":1}\n', b"<html>oops</html>\n", b'{"seq":2}\n'])
        received = []
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, FeedConfig(), client=client)
            with pytest.raises(NonObjectDataError):
                async for change in follower.changes():
                    received.append(change)

        assert received == [{"seq": 1}]

    @pytest.mark.asyncio
    async def test_truncated_body_is_raised(self):
        couch = FakeCouch([b'{"seq":1}\n{"seq":'])
        async with couch.client() as client:
            with pytest.raises(TrailingDataError):
                await collect(ChangesFollower(COUCH, FeedConfig(), client=client))

    @pytest.mark.asyncio
    async def test_high_water_mark_pauses_and_resumes(self):
        """With a tiny backlog limit every record still arrives in order."""
        couch = FakeCouch([continuous_body(20)])
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, FeedConfig(max_pending=3), client=client)
            changes = await collect(follower)

        assert [c["seq"] for c in changes] == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_close_stops_after_current_chunk(self):
        couch = FakeCouch([b'{"seq":1}\n', b'{"seq":2}\n', b'{"seq":3}\n'])
        received = []
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, FeedConfig(), client=client)
            async for change in follower.changes():
                received.append(change)
                follower.close()

        assert received == [{"seq": 1}]


class TestLongpollFollower:
    """Tests for following longpoll feeds."""

    @pytest.mark.asyncio
    async def test_yields_results_in_order(self):
        couch = FakeCouch(split_bytes(longpoll_body(4), 5))
        feed = FeedConfig(mode=FeedMode.LONGPOLL, timeout_ms=1000)
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, feed, client=client)
            changes = await collect(follower)

        assert [c["seq"] for c in changes] == [1, 2, 3, 4]
        params = couch.requests[0].url.params
        assert params["feed"] == "longpoll"
        assert params["timeout"] == "1000"
        assert "heartbeat" not in params

    @pytest.mark.asyncio
    async def test_high_water_mark(self):
        couch = FakeCouch([longpoll_body(10)])
        feed = FeedConfig(mode=FeedMode.LONGPOLL, max_pending=2)
        async with couch.client() as client:
            changes = await collect(ChangesFollower(COUCH, feed, client=client))

        assert [c["seq"] for c in changes] == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_non_object_results_are_yielded(self):
        """Results may be any JSON value; only objects carry a seq."""
        couch = FakeCouch(split_bytes(b'{"results":[{"seq":7},1,"x",null]}', 4))
        feed = FeedConfig(mode=FeedMode.LONGPOLL)
        async with couch.client() as client:
            follower = ChangesFollower(COUCH, feed, client=client)
            changes = await collect(follower)

        assert changes == [{"seq": 7}, 1, "x", None]
        assert follower.last_seq == 7
        assert follower.records_delivered == 4


class TestHttpErrors:
    """Tests for error statuses."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 404, 500])
    async def test_error_status_raises(self, status_code):
        couch = FakeCouch([b'{"error":"not_found","reason":"missing"}'], status_code=status_code)
        async with couch.client() as client:
            with pytest.raises(FeedHTTPError) as exc_info:
                await collect(ChangesFollower(COUCH, FeedConfig(), client=client))

        assert exc_info.value.status_code == status_code
        assert "not_found" in exc_info.value.details["body"]


class TestResponseSource:
    """Tests for ResponseSource flow control."""

    @pytest.fixture
    def response(self):
        return httpx.Response(
            200,
            content=chunked([b"a", b"b", b"c"]),
            request=httpx.Request("GET", "http://couch.test/db/_changes"),
        )

    @pytest.mark.asyncio
    async def test_delivers_all_chunks(self, response):
        source = ResponseSource(response)
        chunks = [chunk async for chunk in source.iter_chunks()]

        assert chunks == [b"a", b"b", b"c"]
        assert source.chunks_delivered == 3

    @pytest.mark.asyncio
    async def test_destroy_stops_delivery(self, response):
        source = ResponseSource(response)
        chunks = []
        async for chunk in source.iter_chunks():
            chunks.append(chunk)
            source.destroy()

        assert chunks == [b"a"]
        assert source.closed

    def test_pause_resume(self, response):
        source = ResponseSource(response)

        source.pause()
        assert source.paused
        source.resume()
        assert not source.paused

    def test_set_encoding_normalizes_name(self, response):
        source = ResponseSource(response)

        source.set_encoding("UTF8")

        assert source.encoding == "utf-8"

    def test_unknown_encoding(self, response):
        with pytest.raises(LookupError):
            ResponseSource(response).set_encoding("no-such-codec")
