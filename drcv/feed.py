import asyncio
import json
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

import structlog
from starlette.concurrency import run_in_threadpool

from .errors import StorageError
from .models import utcnow
from .schemas import UploadSessionOut
from .store import SessionStore

logger = structlog.get_logger(__name__)

EVENT_UPDATES = "updates"
EVENT_HEARTBEAT = "heartbeat"


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class ChangeFeed:
    """
    Diff-based push of session changes to one observer.

    Each tick delivers the rows whose ``updated_at`` falls in
    (previous tick, this tick]; a quiet tick yields a heartbeat.
    """

    def __init__(self, store: SessionStore, interval: float = 1.0):
        self.store = store
        self.interval = interval

    def poll(self, watermark: datetime, now: Optional[datetime] = None) -> Tuple[dict, datetime]:
        rows, tick = self.store.changed_since(watermark, now)
        if rows:
            payload = [UploadSessionOut.model_validate(row).model_dump(mode="json") for row in rows]
            return {"event": EVENT_UPDATES, "data": payload}, tick
        return {"event": EVENT_HEARTBEAT, "data": {"ts": tick.isoformat()}}, tick

    async def stream(self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> AsyncIterator[str]:
        watermark = utcnow()
        while True:
            await asyncio.sleep(self.interval)
            if is_disconnected is not None and await is_disconnected():
                logger.debug("feed_observer_gone")
                return
            try:
                message, watermark = await run_in_threadpool(self.poll, watermark)
            except StorageError as exc:
                logger.error("feed_poll_failed", error=exc.message)
                continue
            yield format_sse(message["event"], message["data"])
