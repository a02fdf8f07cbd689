import json
import sqlite3
import threading
import time
from datetime import datetime, timedelta

import pytest

from drcv.feed import EVENT_HEARTBEAT, EVENT_UPDATES, ChangeFeed, format_sse

T0 = datetime(2026, 1, 1, 12, 0, 0)


def test_quiet_tick_is_a_heartbeat(store):
    feed = ChangeFeed(store)
    message, watermark = feed.poll(T0, now=T0 + timedelta(seconds=1))
    assert message["event"] == EVENT_HEARTBEAT
    assert watermark == T0 + timedelta(seconds=1)


def test_burst_between_ticks_is_coalesced(store):
    feed = ChangeFeed(store)
    a = store.resolve("a.bin", "c1", now=T0 + timedelta(milliseconds=100))
    b = store.resolve("b.bin", "c1", now=T0 + timedelta(milliseconds=200))
    store.record_chunk(a, 10, now=T0 + timedelta(milliseconds=300))
    store.record_chunk(a, 10, now=T0 + timedelta(milliseconds=400))

    message, watermark = feed.poll(T0, now=T0 + timedelta(seconds=1))
    assert message["event"] == EVENT_UPDATES
    rows = message["data"]
    assert [r["id"] for r in rows] == [b, a]
    assert rows[1]["size"] == 20
    assert rows[1]["status"] == "uploading"

    # nothing is delivered twice
    message, _ = feed.poll(watermark, now=watermark + timedelta(seconds=1))
    assert message["event"] == EVENT_HEARTBEAT


def test_rows_written_after_the_tick_wait_for_the_next_one(store):
    feed = ChangeFeed(store)
    tick = T0 + timedelta(seconds=1)
    sid = store.resolve("late.bin", "c1", now=tick + timedelta(milliseconds=1))

    message, watermark = feed.poll(T0, now=tick)
    assert message["event"] == EVENT_HEARTBEAT

    message, _ = feed.poll(watermark, now=tick + timedelta(seconds=1))
    assert [r["id"] for r in message["data"]] == [sid]


def test_format_sse():
    text = format_sse("updates", [{"id": 1}])
    assert text == 'event: updates\ndata: [{"id": 1}]\n\n'


@pytest.mark.anyio
async def test_stream_pushes_updates_then_stops_when_observer_leaves(store):
    feed = ChangeFeed(store, interval=0.01)
    seen = []
    gone = False

    async def is_disconnected():
        return gone

    async for chunk in feed.stream(is_disconnected):
        seen.append(chunk)
        if len(seen) == 1:
            store.resolve("live.bin", "c1")
        if any(c.startswith("event: updates") for c in seen):
            gone = True

    assert seen[0].startswith("event: heartbeat")
    update = next(c for c in seen if c.startswith("event: updates"))
    payload = json.loads(update.split("data: ", 1)[1])
    assert payload[0]["filename"] == "live.bin"


def test_write_blocked_across_a_tick_is_still_delivered(store, settings):
    feed = ChangeFeed(store)
    sid = store.resolve("slow.bin", "c1")
    store.record_chunk(sid, 10)
    _, watermark = feed.poll(T0)

    # another process holds the database write lock
    path = settings.DATABASE_URL[len("sqlite:///"):]
    blocker = sqlite3.connect(path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")

    writer = threading.Thread(target=store.record_chunk, args=(sid, 5))
    results = []
    poller = threading.Thread(target=lambda: results.append(feed.poll(watermark)))
    writer.start()
    poller.start()
    time.sleep(0.2)
    blocker.execute("COMMIT")
    blocker.close()
    writer.join()
    poller.join()

    first, watermark = results[0]
    second, _ = feed.poll(watermark)
    delivered = [row for message in (first, second) if message["event"] == EVENT_UPDATES for row in message["data"]]
    assert [(row["id"], row["size"]) for row in delivered] == [(sid, 15)]
