import asyncio
from datetime import datetime
from typing import Callable, Optional

import structlog
from starlette.concurrency import run_in_threadpool

from .errors import StorageError
from .store import SessionStore

logger = structlog.get_logger(__name__)


class Reaper:
    """Periodically demotes silent uploads and forgets silent clients."""

    def __init__(
        self,
        store: SessionStore,
        interval: float,
        upload_stale_timeout: int,
        client_stale_timeout: int,
        on_disconnect: Optional[Callable[[int], None]] = None,
    ):
        self.store = store
        self.interval = interval
        self.upload_stale_timeout = upload_stale_timeout
        self.client_stale_timeout = client_stale_timeout
        self.on_disconnect = on_disconnect
        self._task: Optional[asyncio.Task] = None

    def tick(self, now: Optional[datetime] = None) -> tuple[int, int]:
        stale_uploads = self.store.reap_stale_uploads(self.upload_stale_timeout, now)
        for session in stale_uploads:
            logger.info(
                "upload_disconnected",
                session_id=session.id, filename=session.filename, client=session.client_identity, size=session.size,
            )
            if self.on_disconnect is not None:
                self.on_disconnect(session.id)

        stale_clients = self.store.reap_stale_clients(self.client_stale_timeout, now)
        for identity in stale_clients:
            logger.info("client_reaped", client=identity)

        return len(stale_uploads), len(stale_clients)

    async def run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await run_in_threadpool(self.tick)
            except StorageError as exc:
                logger.error("reaper_tick_failed", error=exc.message)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
