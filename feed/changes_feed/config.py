"""
Configuration management for the changes feed follower.

All configuration is done via environment variables; CLI flags may
override individual values. This module provides typed configuration
classes with validation.

Invariants:
    - All settings have sensible defaults for a local CouchDB
    - Credentials embedded in the server URL are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the CLI flags in main.py in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from .stream import FeedMode

logger = logging.getLogger(__name__)


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


@dataclass(frozen=True)
class CouchConfig:
    """Database server configuration.

    Attributes:
        url: Base URL of the server (may embed user:password)
        database: Database whose _changes feed is followed
        request_timeout: Connect/read timeout in seconds; None disables the
            read timeout, which continuous feeds without heartbeats need
    """

    url: str = "http://localhost:5984"
    database: str = ""
    request_timeout: Optional[float] = 60.0

    @classmethod
    def from_env(cls) -> CouchConfig:
        """Load configuration from environment variables."""
        timeout = os.getenv("FEED_REQUEST_TIMEOUT", "60")
        return cls(
            url=os.getenv("COUCHDB_URL", "http://localhost:5984"),
            database=os.getenv("COUCHDB_DB", ""),
            request_timeout=float(timeout) if timeout.lower() != "none" else None,
        )

    @property
    def changes_url(self) -> str:
        return f"{self.url.rstrip('/')}/{self.database}/_changes"

    @property
    def redacted_url(self) -> str:
        """Server URL with any password replaced."""
        parts = urlsplit(self.url)
        if parts.password is None:
            return self.url
        netloc = f"{parts.username}:***@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        return urlunsplit(parts._replace(netloc=netloc))


@dataclass(frozen=True)
class FeedConfig:
    """_changes request configuration.

    Attributes:
        mode: Wire encoding to request (continuous or longpoll)
        since: Sequence to start after ("now" for only new changes)
        heartbeat_ms: Heartbeat interval for continuous feeds
        include_docs: Whether records carry the full document
        limit: Maximum number of records the server should send
        timeout_ms: Server-side wait before closing an idle feed
        filter: Server-side filter function ("ddoc/name")
        max_pending: Undelivered records at which the stream is paused
    """

    mode: FeedMode = FeedMode.CONTINUOUS
    since: str = "0"
    heartbeat_ms: int = 30000
    include_docs: bool = False
    limit: Optional[int] = None
    timeout_ms: Optional[int] = None
    filter: Optional[str] = None
    max_pending: int = 1000

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        mode_str = os.getenv("FEED_MODE", "continuous").lower()
        try:
            mode = FeedMode(mode_str)
        except ValueError:
            raise ValueError(
                f"Invalid FEED_MODE '{mode_str}'. Must be one of: continuous, longpoll"
            )

        return cls(
            mode=mode,
            since=os.getenv("FEED_SINCE", "0"),
            heartbeat_ms=int(os.getenv("FEED_HEARTBEAT_MS", "30000")),
            include_docs=os.getenv("FEED_INCLUDE_DOCS", "false").lower() == "true",
            limit=_optional_int("FEED_LIMIT"),
            timeout_ms=_optional_int("FEED_TIMEOUT_MS"),
            filter=os.getenv("FEED_FILTER") or None,
            max_pending=int(os.getenv("FEED_MAX_PENDING", "1000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class FollowerConfig:
    """Complete follower configuration.

    Attributes:
        couch: Server and database
        feed: _changes request parameters
        observability: Logging configuration
    """

    couch: CouchConfig = field(default_factory=CouchConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls, validate: bool = True) -> FollowerConfig:
        """Load complete configuration from environment variables.

        Args:
            validate: Skip validation when the caller still applies overrides

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            couch=CouchConfig.from_env(),
            feed=FeedConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        if validate:
            config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.couch.url:
            raise ValueError("COUCHDB_URL is required")
        if not self.couch.database:
            raise ValueError("COUCHDB_DB is required")
        if self.feed.heartbeat_ms <= 0:
            raise ValueError("FEED_HEARTBEAT_MS must be positive")
        if self.feed.max_pending <= 0:
            raise ValueError("FEED_MAX_PENDING must be positive")
        if self.feed.limit is not None and self.feed.limit < 0:
            raise ValueError("FEED_LIMIT must be non-negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Follower configuration loaded",
            extra={
                "couchdb_url": self.couch.redacted_url,
                "database": self.couch.database,
                "feed": self.feed.mode.value,
                "since": self.feed.since,
                "include_docs": self.feed.include_docs,
                "max_pending": self.feed.max_pending,
                "log_level": self.observability.log_level,
            },
        )
