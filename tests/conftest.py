import os
os.environ.setdefault("DRCV_CLEANUP_INTERVAL", "3600")  # keep the reaper idle during tests

import pytest
from fastapi.testclient import TestClient

from drcv.admin import create_admin_app
from drcv.config import Settings
from drcv.database import init_db, make_engine, make_session_factory
from drcv.ingest import ChunkIngestor
from drcv.main import create_app
from drcv.store import SessionStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        UPLOAD_DIR=str(tmp_path / "uploads"),
        DATABASE_URL=f"sqlite:///{tmp_path / 'drcv-test.db'}",
        MAX_FILE_SIZE=1024 * 1024,
        CHUNK_SIZE=64 * 1024,
        CLEANUP_INTERVAL=3600,
        UPLOAD_STALE_TIMEOUT=60,
        CLIENT_STALE_TIMEOUT=120,
        FEED_INTERVAL=0.05,
        TRUSTED_PROXIES=["127.0.0.1", "::1"],
    )


@pytest.fixture
def store(settings):
    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    yield SessionStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def ingestor(store, settings):
    return ChunkIngestor(store, settings.UPLOAD_DIR, int(settings.MAX_FILE_SIZE))


@pytest.fixture
def client(store, settings):
    with TestClient(create_app(store, settings)) as c:
        yield c


@pytest.fixture
def admin_client(store, settings):
    with TestClient(create_admin_app(store, settings)) as c:
        yield c


@pytest.fixture
def anyio_backend():
    return "asyncio"
