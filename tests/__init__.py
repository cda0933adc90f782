"""
changes-feed Test Suite.

This package contains:
- unit/: Unit tests (stream, events, configuration, CLI)
- integration/: Follower tests against an httpx mock transport
"""
