from .base import TunnelConfigError, TunnelProvider
from .cloudflare import CloudflareTunnelProvider


def create_tunnel_provider(provider_name: str) -> TunnelProvider:
    name = provider_name.strip().lower()
    if name == "cloudflare":
        return CloudflareTunnelProvider()
    raise TunnelConfigError(f"Unknown tunnel provider: {provider_name}")
