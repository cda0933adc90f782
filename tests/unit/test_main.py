"""
Unit tests for the command line entry point.
"""

import io
import json
import logging

import httpx
import json_log_formatter
import pytest

from feed.changes_feed.config import CouchConfig, FeedConfig, ObservabilityConfig
from feed.changes_feed.follow import ChangesFollower
from feed.changes_feed.main import build_parser, follow, load_config, main, setup_logging
from feed.changes_feed.stream import FeedMode


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("COUCHDB_URL", "COUCHDB_DB", "FEED_MODE", "FEED_SINCE", "LOG_LEVEL", "LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestLoadConfig:
    """Tests for flag/environment merging."""

    def test_flags_override_env(self, monkeypatch):
        monkeypatch.setenv("COUCHDB_DB", "from_env")
        monkeypatch.setenv("FEED_MODE", "continuous")
        args = build_parser().parse_args(
            ["--db", "orders", "--feed", "longpoll", "--since", "now", "--limit", "5", "-v"]
        )

        config = load_config(args)

        assert config.couch.database == "orders"
        assert config.feed.mode is FeedMode.LONGPOLL
        assert config.feed.since == "now"
        assert config.feed.limit == 5
        assert config.observability.log_level == "DEBUG"

    def test_env_used_without_flags(self, monkeypatch):
        monkeypatch.setenv("COUCHDB_DB", "from_env")
        monkeypatch.setenv("FEED_SINCE", "17")

        config = load_config(build_parser().parse_args([]))

        assert config.couch.database == "from_env"
        assert config.feed.since == "17"

    def test_missing_database(self):
        with pytest.raises(ValueError):
            load_config(build_parser().parse_args([]))

    def test_main_exits_2_on_bad_config(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 2
        assert "COUCHDB_DB" in capsys.readouterr().err


class TestSetupLogging:
    """Tests for log formatter selection."""

    def test_json_format(self, restore_logging):
        setup_logging(ObservabilityConfig(log_level="DEBUG", log_format="json"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_text_format(self, restore_logging):
        setup_logging(ObservabilityConfig(log_level="warning", log_format="text"))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)


class TestFollow:
    """Tests for printing a feed."""

    @staticmethod
    def client(status_code: int, body: bytes) -> httpx.AsyncClient:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, content=body)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_prints_one_record_per_line(self):
        out = io.StringIO()
        body = b'{"seq":1,"id":"a"}\n\n{"seq":2,"id":"b"}\n'
        async with self.client(200, body) as client:
            follower = ChangesFollower(CouchConfig(database="orders"), FeedConfig(), client=client)
            code = await follow(follower, out)

        assert code == 0
        lines = out.getvalue().splitlines()
        assert [json.loads(line)["id"] for line in lines] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_http_error_exit_code(self):
        out = io.StringIO()
        async with self.client(404, b'{"error":"not_found"}') as client:
            follower = ChangesFollower(CouchConfig(database="orders"), FeedConfig(), client=client)
            code = await follow(follower, out)

        assert code == 1
        assert out.getvalue() == ""

    @pytest.mark.asyncio
    async def test_protocol_error_exit_code(self):
        out = io.StringIO()
        async with self.client(200, b"garbage\n") as client:
            follower = ChangesFollower(CouchConfig(database="orders"), FeedConfig(), client=client)
            code = await follow(follower, out)

        assert code == 1
