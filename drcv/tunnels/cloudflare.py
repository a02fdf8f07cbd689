import asyncio
import re
import secrets
import string
from pathlib import Path
from typing import List, Optional, Tuple

import structlog
from starlette.concurrency import run_in_threadpool

from ..store import SessionStore
from .base import (
    NotInstalled,
    TunnelAuthError,
    TunnelConfig,
    TunnelConfigError,
    TunnelNetworkError,
)

logger = structlog.get_logger(__name__)

HASH_KEY = "cf_hash"
HASH_LENGTH = 6
UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


def rand_hash(length: int = HASH_LENGTH) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def extract_uuid(line: str) -> Optional[str]:
    match = UUID_RE.search(line)
    return match.group(0) if match else None


def render_config(uuid: str, credentials: Path, hostname: str, port: int) -> str:
    return (
        f"tunnel: {uuid}\n"
        f"credentials-file: {credentials}\n"
        "\n"
        "ingress:\n"
        f"  - hostname: {hostname}\n"
        f"    service: http://localhost:{port}\n"
        "  - service: http_status:404\n"
    )


def _is_auth_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return "not authenticated" in lowered or "login" in lowered


async def _cloudflared(*args: str) -> Tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            "cloudflared", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise NotInstalled("cloudflared not found in PATH")
    except OSError as exc:
        raise TunnelNetworkError(f"failed to exec cloudflared {' '.join(args)}: {exc}")
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def check_cloudflared() -> None:
    try:
        code, _, _ = await _cloudflared("--version")
    except NotInstalled:
        logger.error("cloudflared_missing", hint="install cloudflared and run `cloudflared tunnel login`")
        raise
    if code != 0:
        logger.error("cloudflared_broken", hint="reinstall cloudflared")
        raise NotInstalled("cloudflared --version failed")


async def get_tunnel_uuid(name: str) -> Optional[str]:
    code, stdout, stderr = await _cloudflared("tunnel", "list")
    if code != 0:
        if _is_auth_failure(stderr):
            raise TunnelAuthError("Not authenticated with Cloudflare, run `cloudflared tunnel login`")
        raise TunnelConfigError(f"tunnel list failed: {stderr.strip()}")
    for line in stdout.splitlines():
        if name in line:
            uuid = extract_uuid(line)
            if uuid:
                return uuid
    return None


async def create_tunnel(name: str) -> None:
    code, _, stderr = await _cloudflared("tunnel", "create", name)
    if code != 0:
        if _is_auth_failure(stderr):
            raise TunnelAuthError("Not authenticated with Cloudflare, run `cloudflared tunnel login`")
        raise TunnelConfigError(f"create tunnel failed: {stderr.strip()}")


async def route_dns(name: str, hostname: str) -> None:
    code, _, stderr = await _cloudflared("tunnel", "route", "dns", name, hostname)
    if code != 0:
        if _is_auth_failure(stderr):
            raise TunnelAuthError("Not authenticated with Cloudflare, run `cloudflared tunnel login`")
        if "already exists" not in stderr.lower():
            raise TunnelConfigError(f"route dns failed: {stderr.strip()}")


def write_config(uuid: str, hostname: str, port: int, config_dir: Optional[Path] = None) -> Path:
    config_dir = config_dir or Path.home() / ".cloudflared"
    config_path = config_dir / f"config-{hostname}.yml"
    credentials = config_dir / f"{uuid}.json"
    try:
        config_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(render_config(uuid, credentials, hostname, port))
    except OSError as exc:
        raise TunnelConfigError(str(exc))
    return config_path


class CloudflareTunnelRunner:
    def __init__(self, process: asyncio.subprocess.Process, log_task: asyncio.Task):
        self.process = process
        self._log_task = log_task

    async def shutdown(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        self._log_task.cancel()


class CloudflareTunnelManager:
    def __init__(self, hostname: str, config_path: Path):
        self._hostname = hostname
        self.config_path = config_path

    @property
    def hostname(self) -> str:
        return self._hostname

    def command(self) -> List[str]:
        return [
            "cloudflared", "--loglevel", "error", "--transport-loglevel", "error",
            "tunnel", "--config", str(self.config_path), "run",
        ]

    async def run(self) -> CloudflareTunnelRunner:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command(),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TunnelNetworkError(f"failed to start cloudflared: {exc}")
        log_task = asyncio.create_task(_relay_stderr(process))
        logger.info("tunnel_started", hostname=self.hostname, pid=process.pid)
        return CloudflareTunnelRunner(process, log_task)


async def _relay_stderr(process: asyncio.subprocess.Process) -> None:
    if process.stderr is None:
        return
    async for line in process.stderr:
        text = line.decode(errors="replace").rstrip()
        if text:
            logger.warning("cloudflared_output", pid=process.pid, line=text)


class CloudflareTunnelProvider:
    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir

    async def ensure(self, store: SessionStore, config: TunnelConfig) -> CloudflareTunnelManager:
        await check_cloudflared()

        tunnel_hash = await run_in_threadpool(store.kv_get, HASH_KEY)
        if tunnel_hash is None:
            tunnel_hash = rand_hash()
            await run_in_threadpool(store.kv_set, HASH_KEY, tunnel_hash)

        hostname = f"{tunnel_hash}.{config.hostname_root}"
        tunnel_name = f"drcv-{tunnel_hash}"

        uuid = await get_tunnel_uuid(tunnel_name)
        if uuid is None:
            await create_tunnel(tunnel_name)
            uuid = await get_tunnel_uuid(tunnel_name)
        if uuid is None:
            raise TunnelConfigError("Failed to obtain tunnel UUID")

        await route_dns(tunnel_name, hostname)
        config_path = write_config(uuid, hostname, config.local_port, self.config_dir)
        return CloudflareTunnelManager(hostname, config_path)
