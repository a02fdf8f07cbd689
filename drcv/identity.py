import ipaddress
from typing import Iterable, Mapping, Optional

from fastapi import Request

# checked in this order when the peer is a trusted relay
FORWARDED_HEADERS = ("x-forwarded-for", "cf-connecting-ip", "x-real-ip")


def _is_trusted(peer: str, trusted_proxies: Iterable[str]) -> bool:
    try:
        peer_ip = ipaddress.ip_address(peer)
    except ValueError:
        return False
    for proxy in trusted_proxies:
        try:
            if peer_ip in ipaddress.ip_network(proxy, strict=False):
                return True
        except ValueError:
            continue
    return False


def client_identity(peer: Optional[str], headers: Mapping[str, str], trusted_proxies: Iterable[str]) -> str:
    if peer and _is_trusted(peer, trusted_proxies):
        for name in FORWARDED_HEADERS:
            value = headers.get(name)
            if not value:
                continue
            first = value.split(",")[0].strip()
            if first:
                return first
    return peer or "unknown"


def request_identity(request: Request, trusted_proxies: Iterable[str]) -> str:
    peer = request.client.host if request.client else None
    return client_identity(peer, request.headers, trusted_proxies)
