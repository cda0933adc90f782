#!/usr/bin/env python3
"""
changes-feed Demo - Shows both feed encodings and flow control.

This demo drives ChangesStream directly with canned response bodies,
so no database server is needed.
"""

from feed.changes_feed.errors import ProtocolError
from feed.changes_feed.stream import ChangesStream

CONTINUOUS_BODY = (
    '{"seq":1,"id":"task_1","changes":[{"rev":"1-a1"}]}\n'
    "\n"
    '{"seq":2,"id":"task_2","changes":[{"rev":"1-b2"}]}\n'
    "\n"
    '{"seq":3,"id":"task_1","changes":[{"rev":"2-c3"}],"deleted":true}\n'
)

LONGPOLL_BODY = (
    '{"results":[\n'
    '{"seq":4,"id":"user_7","changes":[{"rev":"1-d4"}]},\n'
    '{"seq":5,"id":"user_8","changes":[{"rev":"1-e5"}]}\n'
    '],\n"last_seq":5}\n'
)


def attach_printer(stream: ChangesStream, label: str) -> None:
    stream.on("data", lambda record: print(f"  [{label}] data  {record}"))
    stream.on("end", lambda: print(f"  [{label}] end"))
    stream.on("error", lambda err: print(f"  [{label}] error {err}"))


def main():
    print("=" * 60)
    print("changes-feed Demo - Continuous, Longpoll, Flow Control")
    print("=" * 60)

    # 1. Continuous feed in awkward chunks
    print("\n[Step 1] Continuous feed, 11-byte chunks...")
    stream = ChangesStream(feed="continuous")
    attach_printer(stream, "continuous")
    for i in range(0, len(CONTINUOUS_BODY), 11):
        stream.write(CONTINUOUS_BODY[i:i + 11].encode("utf-8"))
    stream.end()

    # 2. Longpoll feed: nothing is emitted until end()
    print("\n[Step 2] Longpoll feed, 3 chunks...")
    stream = ChangesStream(feed="longpoll")
    attach_printer(stream, "longpoll")
    third = len(LONGPOLL_BODY) // 3
    stream.write(LONGPOLL_BODY[:third])
    stream.write(LONGPOLL_BODY[third:2 * third])
    stream.write(LONGPOLL_BODY[2 * third:])
    print("  (body complete, calling end)")
    stream.end()

    # 3. Pausing holds records and the end event
    print("\n[Step 3] Paused consumer...")
    stream = ChangesStream(feed="continuous")
    attach_printer(stream, "paused")
    stream.pause()
    more = stream.write(CONTINUOUS_BODY)
    stream.end()
    print(f"  write() asked for more data: {more}, queued: {stream.pending_count}")
    print("  resuming...")
    stream.resume()

    # 4. A malformed body
    print("\n[Step 4] Malformed continuous feed...")
    stream = ChangesStream(feed="continuous")
    errors = []
    stream.on("error", errors.append)
    stream.write('{"seq":1}\n<html>502 Bad Gateway</html>\n')
    for err in errors:
        assert isinstance(err, ProtocolError)
        print(f"  {type(err).__name__} ({err.code}): {err}")
    print(f"  readable={stream.readable} writable={stream.writable}")

    print("\n" + "=" * 60)
    print("Demo complete")
    print("=" * 60)


if __name__ == "__main__":
    main()
