"""
changes-feed - command line follower.

Follows a database's _changes feed and prints one JSON record per line
to stdout. Configuration comes from environment variables (see
config.py); flags override them.

Usage:
    changes-feed --db orders --feed longpoll --since 0
    COUCHDB_URL=http://admin:pw@db:5984 changes-feed --db orders -v

Exit codes:
    0 - feed ended normally
    1 - HTTP, transport or feed format error
    2 - invalid configuration
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from typing import List, Optional, TextIO

import httpx
import json_log_formatter

from .config import FollowerConfig, ObservabilityConfig
from .errors import ChangesFeedError
from .follow import ChangesFollower
from .stream import FeedMode

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Logs go to stderr so stdout carries only records.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="changes-feed",
        description="Follow a database _changes feed and print one record per line",
    )
    parser.add_argument("--url", help="Server URL (env COUCHDB_URL)")
    parser.add_argument("--db", help="Database name (env COUCHDB_DB)")
    parser.add_argument(
        "--feed",
        choices=[mode.value for mode in FeedMode],
        help="Feed mode (env FEED_MODE)",
    )
    parser.add_argument("--since", help="Start after this sequence (env FEED_SINCE)")
    parser.add_argument("--include-docs", action="store_true", help="Include documents")
    parser.add_argument("--limit", type=int, help="Maximum number of records")
    parser.add_argument("--filter", help="Server-side filter, ddoc/name")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def load_config(args: argparse.Namespace) -> FollowerConfig:
    """Environment configuration with command line overrides applied.

    Raises:
        ValueError: If the resulting configuration is invalid
    """
    config = FollowerConfig.from_env(validate=False)
    config = FollowerConfig(
        couch=replace(
            config.couch,
            url=args.url or config.couch.url,
            database=args.db or config.couch.database,
        ),
        feed=replace(
            config.feed,
            mode=FeedMode(args.feed) if args.feed else config.feed.mode,
            since=args.since if args.since is not None else config.feed.since,
            include_docs=args.include_docs or config.feed.include_docs,
            limit=args.limit if args.limit is not None else config.feed.limit,
            filter=args.filter or config.feed.filter,
        ),
        observability=replace(
            config.observability,
            log_level="DEBUG" if args.verbose else config.observability.log_level,
        ),
    )
    config.validate()
    return config


async def follow(follower: ChangesFollower, out: TextIO) -> int:
    """Print every record of the feed; returns the process exit code."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, follower.close)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler unavailable", extra={"signal": sig.name})

    try:
        async for change in follower.changes():
            out.write(json.dumps(change, separators=(",", ":"), ensure_ascii=False) + "\n")
            out.flush()
    except ChangesFeedError as e:
        logger.error("Changes feed failed", extra={"error": e.message, "code": e.code})
        return 1
    except httpx.HTTPError as e:
        logger.error("Transport error", extra={"error": str(e)})
        return 1
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    logger.info(
        "Follower finished",
        extra={"records": follower.records_delivered, "last_seq": follower.last_seq},
    )
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.observability)
    config.log_config()

    follower = ChangesFollower(config.couch, config.feed)
    sys.exit(asyncio.run(follow(follower, sys.stdout)))


if __name__ == "__main__":
    main()
