"""Tests for email normalisation, redirect validation and client address lookup."""

import pytest

from agentcanvas.service.validation import (
    client_ip,
    is_valid_email,
    normalize_email,
    validate_email,
    validate_redirect_url,
)

BASE = "https://canvas.example.com"


class TestEmail:
    def test_normalization(self):
        assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
        # Fullwidth characters fold to ASCII
        assert normalize_email("ａｄａ@example.com") == "ada@example.com"

    @pytest.mark.parametrize(
        "value",
        ["ada@example.com", "first.last+tag@sub.example.co.uk", "o'brien@example.ie"],
    )
    def test_valid(self, value):
        assert is_valid_email(value)
        assert validate_email(value) == value.lower()

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "plainaddress",
            "@example.com",
            "ada@",
            "ada@localhost",
            "ada@-example.com",
            "a b@example.com",
            "x" * 65 + "@example.com",
            "ada@" + "a" * 250 + ".com",
            "a" * 400 + "@example.com",
        ],
    )
    def test_invalid(self, value):
        assert not is_valid_email(value)

    def test_validate_raises_value_error(self):
        with pytest.raises(ValueError):
            validate_email("not-an-email")


class TestRedirect:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("/boards", "/boards"),
            ("/boards?id=1#top", "/boards?id=1#top"),
            (f"{BASE}/boards?id=1", "/boards?id=1"),
            (f"{BASE}", "/"),
            ("https://CANVAS.example.com/x", "/x"),
        ],
    )
    def test_same_origin_accepted(self, url, expected):
        assert validate_redirect_url(url, BASE) == expected

    @pytest.mark.parametrize(
        "url",
        [
            None,
            "",
            "//evil.example.net/x",
            "/\\evil.example.net",
            "https://evil.example.net/boards",
            "http://canvas.example.com/boards",
            "https://canvas.example.com.evil.net/",
            "javascript:alert(1)",
            "boards",
            "/boards\nSet-Cookie: x=1",
            "/" + "a" * 2048,
        ],
    )
    def test_off_origin_rejected(self, url):
        assert validate_redirect_url(url, BASE) is None


class TestClientIp:
    def test_first_forwarded_hop(self):
        headers = {"x-forwarded-for": "203.0.113.1, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert client_ip(headers, "10.0.0.3") == "203.0.113.1"

    def test_real_ip_fallback(self):
        assert client_ip({"x-real-ip": " 203.0.113.2 "}, "10.0.0.3") == "203.0.113.2"

    def test_peer_then_default(self):
        assert client_ip({}, "10.0.0.3") == "10.0.0.3"
        assert client_ip({}, None) == "127.0.0.1"
        assert client_ip({"x-forwarded-for": " , "}, None) == "127.0.0.1"
