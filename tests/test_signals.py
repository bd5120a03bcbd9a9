"""Tests for request signal extraction."""

from __future__ import annotations

from crawlsense.signals import client_ip, extract_signals


class TestClientIp:
    """Tests for source IP resolution."""

    def test_first_forwarded_entry(self) -> None:
        headers = {"X-Forwarded-For": " 203.0.113.5 , 10.0.0.1"}
        assert client_ip(headers, "127.0.0.1") == "203.0.113.5"

    def test_falls_back_to_peer(self) -> None:
        assert client_ip({}, "127.0.0.1") == "127.0.0.1"

    def test_nothing_known(self) -> None:
        assert client_ip(None) == ""

    def test_empty_forwarded_header(self) -> None:
        assert client_ip({"x-forwarded-for": ""}, "192.0.2.1") == "192.0.2.1"


class TestExtractSignals:
    """Tests for extract_signals."""

    def test_headers_case_insensitive_and_lowercased(self) -> None:
        signals = extract_signals(
            {
                "User-Agent": "Mozilla/5.0 GPTBot/1.1",
                "ACCEPT-LANGUAGE": "en-US",
                "Referer": "https://Example.com/",
                "Sec-CH-UA": '"Chromium";v="120"',
                "Connection": "Close",
            },
            method="get",
            path="/About",
            peer_ip="192.0.2.1",
        )
        assert signals.user_agent == "mozilla/5.0 gptbot/1.1"
        assert signals.accept_language == "en-us"
        assert signals.referrer == "https://example.com/"
        assert signals.sec_ch_ua == '"chromium";v="120"'
        assert signals.connection == "close"
        assert signals.method == "GET"
        assert signals.path == "/About"
        assert signals.ip == "192.0.2.1"

    def test_missing_headers_are_empty(self) -> None:
        signals = extract_signals(None, method=None, path=None)
        assert signals.user_agent == ""
        assert signals.accept == ""
        assert signals.accept_encoding == ""
        assert signals.ip == ""
        assert signals.method == "GET"
        assert signals.path == "/"

    def test_none_header_value(self) -> None:
        signals = extract_signals({"user-agent": None})  # type: ignore[dict-item]
        assert signals.user_agent == ""
