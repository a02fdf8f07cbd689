"""
Boundary for exposing the upload port through a third-party tunnel.

A provider prepares the tunnel and yields a manager that knows the public
hostname; the manager starts the tunnel process and yields a runner that
can stop it again.
"""
from dataclasses import dataclass
from typing import Protocol

from ..store import SessionStore


class TunnelError(Exception):
    pass


class NotInstalled(TunnelError):
    pass


class TunnelConfigError(TunnelError):
    pass


class TunnelNetworkError(TunnelError):
    pass


class TunnelAuthError(TunnelError):
    pass


@dataclass
class TunnelConfig:
    hostname_root: str
    local_port: int


class TunnelRunner(Protocol):
    async def shutdown(self) -> None: ...


class TunnelManager(Protocol):
    @property
    def hostname(self) -> str: ...

    async def run(self) -> TunnelRunner: ...


class TunnelProvider(Protocol):
    async def ensure(self, store: SessionStore, config: TunnelConfig) -> TunnelManager: ...
