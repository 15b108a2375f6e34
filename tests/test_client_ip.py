"""Tests for client_ip.py."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from client_ip import get_client_ip, is_ip_allowed


def _scope(headers=None, client=("192.0.2.200", 54321)):
    return {
        "type": "http",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }


# ---------------------------------------------------------------------------
# get_client_ip
# ---------------------------------------------------------------------------

class TestGetClientIp:
    def test_connection_address(self):
        assert get_client_ip(_scope()) == "192.0.2.200"

    def test_no_address(self):
        assert get_client_ip(_scope(client=None)) is None

    @pytest.mark.parametrize("header", [
        "CF-Connecting-IP", "True-Client-IP", "X-Real-IP", "X-Cluster-Client-IP",
    ])
    def test_single_value_headers(self, header):
        assert get_client_ip(_scope({header: "203.0.113.9"})) == "203.0.113.9"

    def test_cloudflare_wins(self):
        scope = _scope({
            "X-Forwarded-For": "198.51.100.1",
            "X-Real-IP": "198.51.100.2",
            "CF-Connecting-IP": "203.0.113.9",
        })
        assert get_client_ip(scope) == "203.0.113.9"

    def test_real_ip_before_forwarded_for(self):
        scope = _scope({"X-Forwarded-For": "198.51.100.1", "X-Real-IP": "198.51.100.2"})
        assert get_client_ip(scope) == "198.51.100.2"

    def test_forwarded_for_first_hop(self):
        scope = _scope({"X-Forwarded-For": "203.0.113.9, 10.0.0.1, 10.0.0.2"})
        assert get_client_ip(scope) == "203.0.113.9"

    def test_invalid_value_falls_through(self):
        scope = _scope({"CF-Connecting-IP": "not-an-ip", "X-Real-IP": "203.0.113.9"})
        assert get_client_ip(scope) == "203.0.113.9"

    def test_x_forwarded_for_param(self):
        assert get_client_ip(_scope({"X-Forwarded": "for=203.0.113.9"})) == "203.0.113.9"

    @pytest.mark.parametrize("value,expected", [
        ("for=203.0.113.9", "203.0.113.9"),
        ("for=203.0.113.9;proto=https, for=10.0.0.1", "203.0.113.9"),
        ('for="203.0.113.9:8080"', "203.0.113.9"),
        ('for="[2001:db8::1]:4711"', "2001:db8::1"),
        ("proto=https;for=203.0.113.9", "203.0.113.9"),
    ])
    def test_rfc7239_forwarded(self, value, expected):
        assert get_client_ip(_scope({"Forwarded": value})) == expected

    def test_obfuscated_forwarded_falls_back_to_connection(self):
        assert get_client_ip(_scope({"Forwarded": "for=_hidden"})) == "192.0.2.200"

    def test_ipv6_normalized(self):
        scope = _scope({"X-Real-IP": "2001:DB8:0:0::1"})
        assert get_client_ip(scope) == "2001:db8::1"


# ---------------------------------------------------------------------------
# is_ip_allowed
# ---------------------------------------------------------------------------

class TestIsIpAllowed:
    def test_empty_list_allows_all(self):
        assert is_ip_allowed("203.0.113.9", [])
        assert is_ip_allowed(None, [])

    def test_exact_match(self):
        assert is_ip_allowed("203.0.113.9", ["198.51.100.1", "203.0.113.9"])
        assert not is_ip_allowed("203.0.113.10", ["203.0.113.9"])

    def test_cidr(self):
        assert is_ip_allowed("10.20.30.40", ["10.0.0.0/8"])
        assert not is_ip_allowed("11.0.0.1", ["10.0.0.0/8"])

    def test_ipv6(self):
        assert is_ip_allowed("2001:db8::1", ["2001:db8::/32"])
        assert is_ip_allowed("2001:db8::1", ["2001:DB8::1"])

    def test_unknown_address_denied(self):
        assert not is_ip_allowed(None, ["203.0.113.9"])
        assert not is_ip_allowed("garbage", ["203.0.113.9"])

    def test_bad_entries_ignored(self):
        assert is_ip_allowed("203.0.113.9", ["not/a/net", "203.0.113.9"])
