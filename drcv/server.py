import asyncio
from typing import Optional

import structlog
import uvicorn

from .admin import create_admin_app
from .config import Settings, settings as default_settings
from .database import init_db, make_engine, make_session_factory
from .logging_config import setup_logging
from .main import create_app
from .schemas import TunnelInfo
from .errors import StorageError
from .store import SessionStore
from .tunnels.base import TunnelConfig, TunnelError, TunnelRunner
from .tunnels.providers import create_tunnel_provider

logger = structlog.get_logger(__name__)


async def start_tunnel(store: SessionStore, settings: Settings, tunnel_info: TunnelInfo) -> Optional[TunnelRunner]:
    if not settings.TUNNEL_PROVIDER:
        return None
    try:
        provider = create_tunnel_provider(settings.TUNNEL_PROVIDER)
        manager = await provider.ensure(
            store, TunnelConfig(hostname_root=settings.CF_DOMAIN, local_port=settings.UPLOAD_PORT)
        )
        runner = await manager.run()
    except TunnelError as exc:
        logger.error("tunnel_unavailable", provider=settings.TUNNEL_PROVIDER, error=str(exc))
        return None
    except StorageError as exc:
        logger.error("tunnel_unavailable", provider=settings.TUNNEL_PROVIDER, error=exc.message)
        return None
    tunnel_info.hostname = manager.hostname
    logger.info("tunnel_ready", url=f"https://{manager.hostname}")
    return runner


async def serve_together(*servers: uvicorn.Server) -> None:
    # whichever server stops first takes the others down with it
    tasks = [asyncio.create_task(server.serve()) for server in servers]
    await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for server in servers:
        server.should_exit = True
    await asyncio.gather(*tasks)


async def serve(settings: Settings = default_settings) -> None:
    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    store = SessionStore(make_session_factory(engine))
    tunnel_info = TunnelInfo()

    upload_server = uvicorn.Server(uvicorn.Config(
        create_app(store, settings),
        host=settings.UPLOAD_HOST,
        port=settings.UPLOAD_PORT,
        timeout_graceful_shutdown=settings.SHUTDOWN_GRACE_PERIOD,
        log_config=None,
    ))
    admin_server = uvicorn.Server(uvicorn.Config(
        create_admin_app(store, settings, tunnel_info),
        host=settings.ADMIN_HOST,
        port=settings.ADMIN_PORT,
        timeout_graceful_shutdown=settings.SHUTDOWN_GRACE_PERIOD,
        log_config=None,
    ))

    logger.info(
        "drcv_starting",
        max_file_size=int(settings.MAX_FILE_SIZE),
        upload_dir=settings.UPLOAD_DIR,
        upload=f"http://{settings.UPLOAD_HOST}:{settings.UPLOAD_PORT}",
        admin=f"http://{settings.ADMIN_HOST}:{settings.ADMIN_PORT}",
    )

    runner = await start_tunnel(store, settings, tunnel_info)
    try:
        await serve_together(upload_server, admin_server)
    finally:
        if runner is not None:
            await runner.shutdown()
            logger.info("tunnel_stopped")
        engine.dispose()


def main():
    setup_logging(default_settings.LOG_LEVEL)
    try:
        asyncio.run(serve(default_settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
