from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from .auth import AdminAuthHandler
from .config import Settings, settings as default_settings
from .errors import StorageError
from .feed import ChangeFeed
from .schemas import ClientOut, TunnelInfo, UploadSessionOut
from .store import SessionStore


def create_admin_app(
    store: SessionStore,
    settings: Settings = default_settings,
    tunnel_info: Optional[TunnelInfo] = None,
) -> FastAPI:
    require_admin = AdminAuthHandler(settings)
    app = FastAPI(title="drcv admin", dependencies=[Depends(require_admin)])
    app.state.tunnel_info = tunnel_info or TunnelInfo()

    @app.get("/data", response_model=List[UploadSessionOut])
    async def list_uploads(page: int = Query(default=1, ge=1), q: Optional[str] = None):
        try:
            rows = await run_in_threadpool(store.list_uploads, page, q, settings.DEFAULT_PAGE_SIZE)
        except StorageError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message)
        return [UploadSessionOut.model_validate(row) for row in rows]

    @app.get("/clients", response_model=List[ClientOut])
    async def list_clients():
        try:
            rows = await run_in_threadpool(store.list_clients)
        except StorageError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message)
        return [ClientOut.model_validate(row) for row in rows]

    @app.get("/tunnel", response_model=TunnelInfo)
    async def tunnel():
        return app.state.tunnel_info

    @app.get("/events")
    async def events(request: Request):
        feed = ChangeFeed(store, interval=settings.FEED_INTERVAL)
        return StreamingResponse(
            feed.stream(request.is_disconnected),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app
