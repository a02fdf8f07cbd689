from datetime import datetime, timedelta

import pytest

from drcv.liveness import Reaper
from drcv.models import STATUS_COMPLETE, STATUS_DISCONNECTED, STATUS_INIT, STATUS_UPLOADING

T0 = datetime(2026, 1, 1, 12, 0, 0)
UPLOAD_STALE = 60
CLIENT_STALE = 120


@pytest.fixture
def reaper(store):
    return Reaper(store, interval=10, upload_stale_timeout=UPLOAD_STALE, client_stale_timeout=CLIENT_STALE)


def _uploading(store, filename="a.bin", client="c1", at=T0):
    sid = store.resolve(filename, client, now=at)
    store.record_chunk(sid, 100, now=at)
    return sid


def test_reap_boundary(store, reaper):
    sid = _uploading(store)

    assert reaper.tick(now=T0 + timedelta(seconds=UPLOAD_STALE)) == (0, 0)
    assert store.get(sid).status == STATUS_UPLOADING

    reaper.tick(now=T0 + timedelta(seconds=UPLOAD_STALE, microseconds=1))
    session = store.get(sid)
    assert session.status == STATUS_DISCONNECTED
    assert session.size == 100


def test_reap_reports_the_rows_it_demoted(store):
    stale = _uploading(store, "stale.bin")
    _uploading(store, "fresh.bin", at=T0 + timedelta(seconds=30))
    later = T0 + timedelta(seconds=61)

    demoted = store.reap_stale_uploads(UPLOAD_STALE, now=later)
    assert [(s.id, s.status, s.updated_at) for s in demoted] == [(stale, STATUS_DISCONNECTED, later)]
    assert store.reap_stale_uploads(UPLOAD_STALE, now=later) == []


def test_reaper_forwards_disconnects(store):
    sid = _uploading(store)
    forgotten = []
    reaper = Reaper(store, 10, UPLOAD_STALE, CLIENT_STALE, on_disconnect=forgotten.append)
    reaper.tick(now=T0 + timedelta(seconds=61))
    assert forgotten == [sid]


def test_reaper_only_demotes_uploading(store, reaper):
    init_id = store.resolve("init.bin", "c1", now=T0)
    done_id = _uploading(store, "done.bin")
    store.mark_complete(done_id, now=T0)

    reaper.tick(now=T0 + timedelta(hours=1))
    assert store.get(init_id).status == STATUS_INIT
    assert store.get(done_id).status == STATUS_COMPLETE


def test_client_reap_boundary(store, reaper):
    store.touch_client("c1", "curl/8", now=T0)

    reaper.tick(now=T0 + timedelta(seconds=CLIENT_STALE))
    assert [c.identity for c in store.list_clients()] == ["c1"]

    assert reaper.tick(now=T0 + timedelta(seconds=CLIENT_STALE + 1)) == (0, 1)
    assert store.list_clients() == []


def test_uploads_and_clients_are_reaped_independently(store, reaper):
    sid = _uploading(store, client="c1", at=T0)
    # the client keeps heartbeating without listing the upload
    store.touch_client("c1", now=T0 + timedelta(seconds=100))

    reaper.tick(now=T0 + timedelta(seconds=101))
    assert store.get(sid).status == STATUS_DISCONNECTED
    assert [c.identity for c in store.list_clients()] == ["c1"]

    # an active upload survives its client row being reaped
    other = _uploading(store, "b.bin", client="c2", at=T0 + timedelta(seconds=100))
    store.touch_client("c2", now=T0)
    reaper.tick(now=T0 + timedelta(seconds=121))
    assert "c2" not in [c.identity for c in store.list_clients()]
    assert store.get(other).status == STATUS_UPLOADING


def test_heartbeat_creates_and_refreshes_client(store):
    assert store.heartbeat("c1", "agent/1", [], now=T0) == 0
    client = store.list_clients()[0]
    assert (client.identity, client.user_agent, client.status) == ("c1", "agent/1", "connected")
    assert client.first_seen == client.last_seen == T0

    store.heartbeat("c1", "agent/2", [], now=T0 + timedelta(seconds=5))
    client = store.list_clients()[0]
    assert client.first_seen == T0
    assert client.last_seen == T0 + timedelta(seconds=5)
    assert client.user_agent == "agent/2"


def test_heartbeat_refreshes_only_owned_uploading_sessions(store):
    mine = _uploading(store, "mine.bin", "c1")
    theirs = _uploading(store, "theirs.bin", "c2")
    fresh = store.resolve("fresh.bin", "c1", now=T0)
    finished = _uploading(store, "finished.bin", "c1")
    store.mark_complete(finished, now=T0)
    lost = _uploading(store, "lost.bin", "c1")
    store.reap_stale_uploads(UPLOAD_STALE, now=T0 + timedelta(seconds=61))
    # a new chunk brings "mine" back to uploading
    store.record_chunk(mine, 0, now=T0)

    later = T0 + timedelta(seconds=30)
    count = store.heartbeat("c1", None, [mine, theirs, fresh, finished, lost, 9999, mine], now=later)
    assert count == 1
    assert store.get(mine).updated_at == later
    assert store.get(lost).status == STATUS_DISCONNECTED


def test_heartbeat_cannot_revive_disconnected(store, reaper):
    sid = _uploading(store)
    reaper.tick(now=T0 + timedelta(seconds=61))
    assert store.heartbeat("c1", None, [sid], now=T0 + timedelta(seconds=62)) == 0
    assert store.get(sid).status == STATUS_DISCONNECTED
