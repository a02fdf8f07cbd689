import pytest

from drcv.identity import client_identity

TRUSTED = ["127.0.0.1", "::1"]


def test_untrusted_peer_uses_peer_address():
    headers = {"x-forwarded-for": "203.0.113.7"}
    assert client_identity("198.51.100.2", headers, TRUSTED) == "198.51.100.2"


@pytest.mark.parametrize("headers,expected", [
    ({"x-forwarded-for": "203.0.113.7, 10.0.0.1"}, "203.0.113.7"),
    ({"cf-connecting-ip": "203.0.113.8"}, "203.0.113.8"),
    ({"x-real-ip": "203.0.113.9"}, "203.0.113.9"),
    ({"x-forwarded-for": "203.0.113.7", "cf-connecting-ip": "203.0.113.8"}, "203.0.113.7"),
    ({"cf-connecting-ip": "203.0.113.8", "x-real-ip": "203.0.113.9"}, "203.0.113.8"),
    ({"x-forwarded-for": " , ", "x-real-ip": "203.0.113.9"}, "203.0.113.9"),
    ({}, "127.0.0.1"),
])
def test_trusted_relay_uses_forwarded_headers(headers, expected):
    assert client_identity("127.0.0.1", headers, TRUSTED) == expected


def test_ipv6_loopback_is_trusted():
    assert client_identity("::1", {"x-real-ip": "2001:db8::1"}, TRUSTED) == "2001:db8::1"


def test_trusted_networks():
    assert client_identity("10.1.2.3", {"x-real-ip": "203.0.113.9"}, ["10.0.0.0/8"]) == "203.0.113.9"


def test_missing_peer():
    assert client_identity(None, {"x-forwarded-for": "203.0.113.7"}, TRUSTED) == "unknown"
