"""
RouteGuard Backend — Client Identity Unit Tests
==================================================

What:  Forwarded-header handling: only trusted proxies may name the client.
"""

import pytest

from routeguard.exceptions import ConfigurationError
from routeguard.services.client_identity import UNKNOWN_CLIENT, ClientIdentityResolver


class TestClientIp:
    def test_untrusted_peer_headers_ignored(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.1"])
        headers = {"x-forwarded-for": "6.6.6.6", "x-real-ip": "7.7.7.7"}
        assert resolver.client_ip("203.0.113.9", headers) == "203.0.113.9"

    def test_single_ip_header_from_trusted_proxy(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        assert resolver.client_ip("10.1.2.3", {"x-real-ip": "198.51.100.7"}) == "198.51.100.7"

    def test_invalid_single_ip_header_falls_through(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        headers = {"x-real-ip": "not-an-ip", "x-forwarded-for": "198.51.100.7"}
        assert resolver.client_ip("10.1.2.3", headers) == "198.51.100.7"

    def test_forwarded_for_walked_right_to_left(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        # Leftmost hop is client-supplied and may be forged
        headers = {"x-forwarded-for": "1.1.1.1, 198.51.100.7, 10.0.0.5"}
        assert resolver.client_ip("10.0.0.6", headers) == "198.51.100.7"

    def test_all_hops_trusted_returns_leftmost(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        assert resolver.client_ip("10.0.0.6", {"x-forwarded-for": "10.0.0.1, 10.0.0.2"}) == "10.0.0.1"

    def test_trusted_proxy_without_headers(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        assert resolver.client_ip("10.0.0.6", {}) == "10.0.0.6"

    def test_missing_peer(self):
        assert ClientIdentityResolver().client_ip(None, {}) == UNKNOWN_CLIENT

    def test_ipv6_proxy_range(self):
        resolver = ClientIdentityResolver(trusted_proxies=["fd00::/8"])
        assert resolver.client_ip("fd00::1", {"x-forwarded-for": "2001:db8::5"}) == "2001:db8::5"


class TestPrivateNetworkTrust:
    def test_private_peers_trusted_when_no_list(self):
        resolver = ClientIdentityResolver()
        assert resolver.is_trusted_proxy("192.168.1.10")
        assert resolver.is_trusted_proxy("127.0.0.1")
        assert not resolver.is_trusted_proxy("8.8.8.8")

    def test_explicit_list_disables_private_trust(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.1"])
        assert not resolver.is_trusted_proxy("192.168.1.10")

    def test_private_trust_can_be_turned_off(self):
        resolver = ClientIdentityResolver(trust_private_networks=False)
        assert not resolver.is_trusted_proxy("127.0.0.1")

    def test_invalid_proxy_entry(self):
        with pytest.raises(ConfigurationError, match="Invalid trusted proxy"):
            ClientIdentityResolver(trusted_proxies=["not-a-network"])


class TestHttps:
    def test_socket_scheme(self):
        assert ClientIdentityResolver().is_https("https", "8.8.8.8", {})

    def test_forwarded_proto_from_trusted_proxy(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        assert resolver.is_https("http", "10.0.0.1", {"x-forwarded-proto": "https"})

    def test_forwarded_proto_from_untrusted_peer(self):
        resolver = ClientIdentityResolver(trusted_proxies=["10.0.0.0/8"])
        assert not resolver.is_https("http", "8.8.8.8", {"x-forwarded-proto": "https"})
