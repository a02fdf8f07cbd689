import asyncio
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from .config import Settings, settings as default_settings
from .errors import PayloadTooLarge, UploadError, UploadTimeout, ValidationError
from .identity import request_identity
from .ingest import ChunkIngestor, safe_filename
from .liveness import Reaper
from .schemas import HeartbeatRequest
from .store import SessionStore

logger = structlog.get_logger(__name__)


def _form_value(form, *names):
    for name in names:
        value = form.get(name)
        if value is not None:
            return value
    return None


def _parse_uint(raw, field: str) -> int:
    if raw is None:
        raise ValidationError(f"missing field: {field}")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer")
    if value < 0:
        raise ValidationError(f"{field} must not be negative")
    return value


def _raise_http(exc: UploadError):
    raise HTTPException(status_code=exc.status_code, detail=exc.message)


def create_app(store: SessionStore, settings: Settings = default_settings) -> FastAPI:
    app = FastAPI(title="drcv uploader")

    ingestor = ChunkIngestor(store, settings.UPLOAD_DIR, int(settings.MAX_FILE_SIZE))
    reaper = Reaper(
        store,
        interval=settings.CLEANUP_INTERVAL,
        upload_stale_timeout=settings.UPLOAD_STALE_TIMEOUT,
        client_stale_timeout=settings.CLIENT_STALE_TIMEOUT,
        on_disconnect=ingestor.forget,
    )
    app.state.store = store
    app.state.ingestor = ingestor
    app.state.reaper = reaper

    async def accept_chunk(request: Request, identity: str) -> int:
        form = await request.form()
        filename = _form_value(form, "filename")
        if not filename or not isinstance(filename, str):
            raise ValidationError("missing field: filename")
        chunk_index = _parse_uint(_form_value(form, "chunkIndex", "chunk_index"), "chunkIndex")
        total_chunks = _parse_uint(_form_value(form, "totalChunks", "total_chunks"), "totalChunks")

        chunk = form.get("chunk")
        if isinstance(chunk, UploadFile):
            data = await chunk.read()
        elif chunk is None:
            data = b""
        else:
            data = chunk.encode()

        return await run_in_threadpool(
            ingestor.ingest, filename, identity, chunk_index, total_chunks, data, request.headers.get("user-agent")
        )

    @app.post("/upload", response_class=PlainTextResponse)
    async def upload_chunk(request: Request):
        identity = request_identity(request, settings.TRUSTED_PROXIES)

        content_length = request.headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > settings.max_request_size:
            _raise_http(PayloadTooLarge(f"request body exceeds {settings.max_request_size} bytes"))

        try:
            session_id = await asyncio.wait_for(accept_chunk(request, identity), timeout=settings.UPLOAD_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("upload_timeout", client=identity, timeout=settings.UPLOAD_TIMEOUT)
            _raise_http(UploadTimeout(f"upload timed out after {settings.UPLOAD_TIMEOUT}s"))
        except UploadError as exc:
            if exc.status_code >= 500:
                logger.error("upload_failed", client=identity, error=exc.message)
            _raise_http(exc)
        return str(session_id)

    @app.head("/upload")
    async def probe_upload(request: Request, filename: str):
        identity = request_identity(request, settings.TRUSTED_PROXIES)
        try:
            uploaded = await run_in_threadpool(store.probe, safe_filename(filename), identity)
        except UploadError as exc:
            _raise_http(exc)
        return Response(headers={"x-uploaded-bytes": str(uploaded)})

    @app.post("/heartbeat", response_class=PlainTextResponse)
    async def heartbeat(request: Request, body: Optional[HeartbeatRequest] = None):
        identity = request_identity(request, settings.TRUSTED_PROXIES)
        upload_ids = body.upload_ids if body is not None else []
        try:
            count = await run_in_threadpool(
                store.heartbeat, identity, request.headers.get("user-agent"), upload_ids
            )
        except UploadError as exc:
            logger.error("heartbeat_failed", client=identity, error=exc.message)
            _raise_http(exc)
        return f"heartbeat_ok:{count}"

    @app.on_event("startup")
    async def startup():
        reaper.start()

    @app.on_event("shutdown")
    async def shutdown():
        await reaper.stop()

    return app
