"""
HTTP glue between a database server and a ChangesStream.

- ResponseSource: Source protocol over a streaming httpx response
- ChangesFollower: issues the _changes request and yields records

The stream itself never performs network I/O; everything that touches
the network lives in this package.
"""

from .follower import ChangesFollower
from .source import ResponseSource

__all__ = [
    "ChangesFollower",
    "ResponseSource",
]
