"""
RouteGuard Backend — Client Identity Resolution
=================================================

What:  Decides which IP address a request "comes from" and whether it
       arrived over HTTPS.
Why:   Rate-limit keys and usage records are per client. Behind a load
       balancer the socket peer is the balancer, so forwarded headers are
       needed; but honoring them from anyone lets a client pick its own
       rate-limit bucket by sending `X-Forwarded-For: <random>`.
How:   Forwarded headers are read ONLY when the socket peer is a trusted
       proxy. Trust comes from an explicit IP/CIDR allow-list; when that
       list is empty, private and loopback peers are trusted if
       `trust_private_networks` is on (logged as a warning at startup).

Header precedence (trusted peers only):
    1. X-Real-IP          single address set by nginx-style proxies
    2. CF-Connecting-IP   single address set by Cloudflare
    3. X-Forwarded-For    walked right to left, skipping trusted proxies;
                          the first untrusted hop is the client
"""

import ipaddress
import logging
from typing import Iterable, List, Mapping, Optional, Union

from starlette.requests import Request

from routeguard.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

UNKNOWN_CLIENT = "unknown"


def _parse_ip(value: Optional[str]) -> Optional[IPAddress]:
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


class ClientIdentityResolver:
    """
    Resolves the client address and transport security for a request.

    Stateless after construction; one instance is shared by the rate
    limiter, the authenticator and the usage recorder.
    """

    SINGLE_IP_HEADERS = ("x-real-ip", "cf-connecting-ip")

    def __init__(self, trusted_proxies: Iterable[str] = (), trust_private_networks: bool = True):
        self._networks: List[IPNetwork] = []
        for entry in trusted_proxies:
            try:
                self._networks.append(ipaddress.ip_network(entry.strip(), strict=False))
            except ValueError as e:
                raise ConfigurationError(f"Invalid trusted proxy '{entry}': {e}") from e
        self._trust_private = trust_private_networks and not self._networks
        if self._trust_private:
            logger.warning(
                "No TRUSTED_PROXIES configured; forwarded headers from private "
                "and loopback peers will be honored"
            )

    def is_trusted_proxy(self, address: Optional[str]) -> bool:
        ip = _parse_ip(address)
        if ip is None:
            return False
        if self._networks:
            return any(ip in network for network in self._networks)
        return self._trust_private and (ip.is_private or ip.is_loopback)

    def client_ip(self, peer: Optional[str], headers: Mapping[str, str]) -> str:
        """
        Return the client address for a request from `peer`.

        `headers` must support case-insensitive `.get()` (Starlette Headers)
        or use lowercase keys.
        """
        if not self.is_trusted_proxy(peer):
            return peer or UNKNOWN_CLIENT

        for header in self.SINGLE_IP_HEADERS:
            ip = _parse_ip(headers.get(header))
            if ip is not None:
                return str(ip)

        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            hops = [_parse_ip(hop) for hop in forwarded.split(",")]
            valid_hops = [hop for hop in hops if hop is not None]
            for hop in reversed(valid_hops):
                if not self.is_trusted_proxy(str(hop)):
                    return str(hop)
            if valid_hops:
                return str(valid_hops[0])

        return peer or UNKNOWN_CLIENT

    def is_https(self, scheme: str, peer: Optional[str], headers: Mapping[str, str]) -> bool:
        """HTTPS if the socket scheme says so, or a trusted proxy says it terminated TLS."""
        if scheme == "https":
            return True
        if not self.is_trusted_proxy(peer):
            return False
        return (headers.get("x-forwarded-proto") or "").split(",")[0].strip().lower() == "https"

    # ── Starlette convenience wrappers ───────────────────────────────────

    def resolve(self, request: Request) -> str:
        peer = request.client.host if request.client else None
        return self.client_ip(peer, request.headers)

    def request_is_https(self, request: Request) -> bool:
        peer = request.client.host if request.client else None
        return self.is_https(request.url.scheme, peer, request.headers)
