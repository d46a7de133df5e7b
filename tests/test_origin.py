"""Tests for origin address validation and client address resolution."""

import pytest

from tokengate.origin import client_origin, is_private_origin, is_public_origin, normalize_origin


# ---------------------------------------------------------------------------
# Public / private classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        "addr",
        ["203.0.113.9", "8.8.8.8", "1.1.1.1", "172.32.0.1", "2001:4860:4860::8888", "198.51.100.7", "100.128.0.1"],
    )
    def test_public(self, addr: str) -> None:
        assert is_public_origin(addr)
        assert not is_private_origin(addr)

    @pytest.mark.parametrize(
        "addr",
        [
            "10.1.2.3",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.1.1",
            "127.0.0.1",
            "169.254.10.20",
            "0.0.0.0",
            "224.0.0.1",
            "::1",
            "::",
            "fc00::1",
            "fd12:3456::1",
            "fe80::1",
            "ff02::1",
            "::ffff:192.168.1.1",
        ],
    )
    def test_private(self, addr: str) -> None:
        assert is_private_origin(addr)
        assert not is_public_origin(addr)

    @pytest.mark.parametrize(
        "addr", ["100.64.0.1", "100.127.255.254", "240.0.0.1", "250.1.2.3", "255.255.255.255"]
    )
    def test_carrier_nat_reserved_and_broadcast_not_public(self, addr: str) -> None:
        assert is_private_origin(addr)
        assert not is_public_origin(addr)

    @pytest.mark.parametrize("addr", ["", "not-an-ip", "1.2.3.4.5", "203.0.113.9:80", "256.1.1.1"])
    def test_invalid_is_neither(self, addr: str) -> None:
        assert not is_public_origin(addr)
        assert not is_private_origin(addr)

    def test_surrounding_whitespace_tolerated(self) -> None:
        assert is_public_origin(" 203.0.113.9 ")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_strips_whitespace(self) -> None:
        assert normalize_origin(" 203.0.113.9\n") == "203.0.113.9"

    def test_compresses_ipv6(self) -> None:
        assert normalize_origin("2001:0db8:0000:0000:0000:0000:0000:0001") == "2001:db8::1"

    def test_lowercases_ipv6(self) -> None:
        assert normalize_origin("2001:DB8::A") == "2001:db8::a"

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError, match="not an IP"):
            normalize_origin("example.com")


# ---------------------------------------------------------------------------
# Client address resolution
# ---------------------------------------------------------------------------


class TestClientOrigin:
    def test_forwarded_for_first_hop(self) -> None:
        headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1, 10.0.0.2"}
        assert client_origin(headers, "10.0.0.2") == "203.0.113.9"

    def test_forwarded_for_wins_over_real_ip(self) -> None:
        headers = {"X-Real-IP": "198.51.100.7", "X-Forwarded-For": "203.0.113.9"}
        assert client_origin(headers, None) == "203.0.113.9"

    def test_real_ip(self) -> None:
        assert client_origin({"X-Real-IP": "198.51.100.7"}, "10.0.0.2") == "198.51.100.7"

    def test_cf_connecting_ip(self) -> None:
        assert client_origin({"CF-Connecting-IP": "198.51.100.8"}, "10.0.0.2") == "198.51.100.8"

    def test_header_names_case_insensitive(self) -> None:
        assert client_origin({"x-forwarded-for": "203.0.113.9"}, None) == "203.0.113.9"

    def test_falls_back_to_peer(self) -> None:
        assert client_origin({}, "203.0.113.9") == "203.0.113.9"

    def test_empty_header_ignored(self) -> None:
        assert client_origin({"X-Forwarded-For": " , 1.2.3.4"}, "203.0.113.9") == "203.0.113.9"

    def test_nothing_available(self) -> None:
        assert client_origin({}, None) is None
