"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Iterable, Optional, Sequence, Union

from fastapi import HTTPException, Request, status

Network = Union[IPv4Network, IPv6Network]


def parse_trusted_proxies(cidrs: Iterable[str]) -> list[Network]:
    """Parse proxy CIDRs; raises ValueError on a malformed entry."""
    return [ip_network(cidr, strict=False) for cidr in cidrs]


def normalize_address(value: str) -> Optional[str]:
    """Canonical text form of an IP address, or None if ``value`` is not one."""
    try:
        address = ip_address(value.strip())
    except ValueError:
        return None
    if address.version == 6 and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return str(address)


def _is_trusted(address: str, trusted: Sequence[Network]) -> bool:
    parsed = ip_address(address)
    return any(parsed in network for network in trusted)


def resolve_client_identity(request: Request, trusted_proxies: Sequence[Network]) -> str:
    """
    Resolve the abuse-control identity for a request.

    ``X-Forwarded-For`` is only consulted when the direct peer is a trusted
    proxy; the right-most hop that is not itself a trusted proxy wins.
    """
    peer = request.client.host if request.client else "unknown"
    source = normalize_address(peer)
    if source is None:
        return peer

    if not trusted_proxies or not _is_trusted(source, trusted_proxies):
        return source

    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return source

    for hop in reversed(forwarded.split(",")):
        candidate = normalize_address(hop)
        if candidate is None:
            break
        if not _is_trusted(candidate, trusted_proxies):
            return candidate
        source = candidate
    return source


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Enforce metrics endpoint authentication via token or localhost constraint."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client = request.client
    client_host = client.host if client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")

    try:
        if not ip_address(client_host).is_loopback:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Metrics access restricted to localhost",
            )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc
