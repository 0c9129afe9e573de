"""Egress guard: refuse targets that resolve into internal networks."""
import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[List[str]]]

BLOCKED_NETWORKS = [
    ipaddress.ip_network(n)
    for n in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::1/128",
        "::/128",
        "fc00::/7",
        "fe80::/10",
    )
]


@dataclass(frozen=True)
class EgressDecision:
    allowed: bool
    reason: Optional[str] = None


async def resolve_host(host: str) -> List[str]:
    """Return every A/AAAA address for host."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    # getaddrinfo may append a scope id to link-local IPv6 ("fe80::1%eth0")
    return [info[4][0].split("%", 1)[0] for info in infos]


def is_private_address(address: str) -> bool:
    """True if address falls in a loopback/private/link-local/unspecified range.

    Anything that does not parse as an IP address is treated as private.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == net.version and ip in net for net in BLOCKED_NETWORKS)


def host_allowed(host: str, allowed_hosts: Iterable[str]) -> bool:
    """Match host against exact entries and "*.suffix" wildcard entries."""
    host = host.lower()
    for entry in allowed_hosts:
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry.startswith("*."):
            if host.endswith(entry[1:]):
                return True
        elif host == entry:
            return True
    return False


async def evaluate(
    url: str,
    allowed_hosts: Iterable[str] = (),
    resolver: Optional[Resolver] = None,
) -> EgressDecision:
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return EgressDecision(False, "Invalid URL")
    if not parts.scheme:
        return EgressDecision(False, "Invalid URL")
    if parts.scheme.lower() not in ("http", "https"):
        return EgressDecision(False, "Only http/https allowed")
    if not host:
        return EgressDecision(False, "Invalid URL")

    allowed_hosts = [h for h in allowed_hosts if h and h.strip()]
    if allowed_hosts and not host_allowed(host, allowed_hosts):
        return EgressDecision(False, "Host not allowed")

    resolver = resolver or resolve_host
    try:
        addresses = await resolver(host)
    except (OSError, UnicodeError) as e:
        logger.info(f"🚫 DNS lookup failed for {host}: {e}")
        return EgressDecision(False, "DNS lookup failed")
    if not addresses:
        return EgressDecision(False, "DNS lookup failed")

    for address in addresses:
        if is_private_address(address):
            logger.warning(f"🚫 {host} resolves to private address {address}")
            return EgressDecision(False, "Host resolves to private IP (blocked)")

    return EgressDecision(True)
