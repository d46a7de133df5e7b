"""Network-origin validation for token binding and verification requests."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)

_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "240.0.0.0/4",
        "255.255.255.255/32",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

# Header precedence for the caller's real address behind proxies.
_FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def _parse(addr: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(addr.strip())
    except (ValueError, AttributeError):
        return None


def is_private_origin(addr: str) -> bool:
    """True for parseable addresses in LAN, loopback, link-local, CGNAT or
    reserved ranges.

    Unparseable input is not "private"; it is invalid.
    """
    ip = _parse(addr)
    if ip is None:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_multicast or any(ip in net for net in _PRIVATE_NETWORKS)


def is_public_origin(addr: str) -> bool:
    """True if ``addr`` parses as an IP literal and is publicly routable."""
    return _parse(addr) is not None and not is_private_origin(addr)


def normalize_origin(addr: str) -> str:
    """Canonical textual form (compressed IPv6, no whitespace).

    Raises ValueError on input that is not an IP literal.
    """
    ip = _parse(addr)
    if ip is None:
        raise ValueError(f"not an IP address: {addr!r}")
    return str(ip)


def client_origin(headers: Mapping[str, str], peer: str | None) -> str | None:
    """Resolve the requester's address from proxy headers, then the socket peer.

    ``X-Forwarded-For`` contributes its first hop only.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in _FORWARDING_HEADERS:
        value = lowered.get(name, "")
        if value:
            candidate = value.split(",")[0].strip()
            if candidate:
                logger.debug("Client origin from %s: %s", name, candidate)
                return candidate
    return peer
