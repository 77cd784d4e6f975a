"""Client address helpers."""

from __future__ import annotations

import ipaddress
from typing import Iterable, Mapping, Optional


def resolve_client_ip(headers: Mapping[str, str], remote: Optional[str] = None) -> str:
    """
    Resolve the originating client IP.

    Cloudflare's ``cf-connecting-ip`` wins, then ``x-real-ip``, then the first
    hop of ``x-forwarded-for``, then the socket peer.
    """
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    return remote or "unknown"


def is_trusted_proxy(remote: Optional[str], trusted_proxies: Iterable[str]) -> bool:
    """Whether the socket peer falls inside one of the configured proxy addresses or networks."""
    if not remote:
        return False
    try:
        address = ipaddress.ip_address(remote)
    except ValueError:
        return False
    return any(address in ipaddress.ip_network(proxy, strict=False) for proxy in trusted_proxies)
