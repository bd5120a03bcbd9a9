"""Tests for the crawler registry and CIDR matching."""

from __future__ import annotations

import pytest

from crawlsense.models import CrawlerPurpose
from crawlsense.registry import (
    AI_CRAWLERS,
    CrawlerRegistry,
    default_registry,
    format_search_engine_name,
    ip_in_cidr,
    ipv4_to_int,
    is_ipv6,
)

GPTBOT_UA = (
    "mozilla/5.0 applewebkit/537.36 (khtml, like gecko; compatible; gptbot/1.1; "
    "+https://openai.com/gptbot)"
)


class TestIpv4Parsing:
    """Tests for dotted-quad parsing."""

    def test_packs_address(self) -> None:
        assert ipv4_to_int("1.2.3.4") == 0x01020304

    def test_max_address(self) -> None:
        assert ipv4_to_int("255.255.255.255") == 0xFFFFFFFF

    @pytest.mark.parametrize("ip", ["", "1.2.3", "1.2.3.4.5", "1.2.3.256", "a.b.c.d", "1.2.-3.4"])
    def test_malformed_returns_none(self, ip: str) -> None:
        assert ipv4_to_int(ip) is None


class TestCidrMatching:
    """Tests for ip_in_cidr."""

    def test_inside_block(self) -> None:
        assert ip_in_cidr("20.15.240.70", "20.15.240.64/28") is True

    def test_block_boundaries(self) -> None:
        assert ip_in_cidr("20.15.240.64", "20.15.240.64/28") is True
        assert ip_in_cidr("20.15.240.79", "20.15.240.64/28") is True
        assert ip_in_cidr("20.15.240.80", "20.15.240.64/28") is False

    def test_slash_zero_matches_everything(self) -> None:
        assert ip_in_cidr("8.8.8.8", "0.0.0.0/0") is True

    def test_slash_32_is_exact(self) -> None:
        assert ip_in_cidr("10.0.0.1", "10.0.0.1/32") is True
        assert ip_in_cidr("10.0.0.2", "10.0.0.1/32") is False

    @pytest.mark.parametrize(
        ("ip", "cidr"),
        [
            ("", "10.0.0.0/8"),
            ("10.0.0.1", ""),
            ("10.0.0.1", "10.0.0.0"),
            ("10.0.0.1", "10.0.0.0/33"),
            ("10.0.0.1", "10.0.0.0/x"),
            ("not-an-ip", "10.0.0.0/8"),
            ("2001:db8::1", "10.0.0.0/8"),
        ],
    )
    def test_malformed_fails_closed(self, ip: str, cidr: str) -> None:
        assert ip_in_cidr(ip, cidr) is False

    def test_is_ipv6(self) -> None:
        assert is_ipv6("2001:db8::1") is True
        assert is_ipv6("10.0.0.1") is False


class TestRegistryLookups:
    """Tests for CrawlerRegistry matching."""

    def test_search_engine_pattern(self) -> None:
        ua = "mozilla/5.0 (compatible; googlebot/2.1; +http://www.google.com/bot.html)"
        assert default_registry.match_search_engine(ua) == "googlebot"

    def test_search_engine_empty_ua(self) -> None:
        assert default_registry.match_search_engine("") is None

    def test_lighthouse_is_not_ai(self) -> None:
        ua = "mozilla/5.0 chrome-lighthouse"
        assert default_registry.match_search_engine(ua) == "chrome-lighthouse"

    def test_match_user_agent(self) -> None:
        crawler = default_registry.match_user_agent(GPTBOT_UA)
        assert crawler is not None
        assert crawler.name == "GPTBot"
        assert crawler.purpose == CrawlerPurpose.TRAINING

    def test_match_user_agent_registry_order(self) -> None:
        # Both 'gptbot' and 'claudebot' present: first registered wins
        crawler = default_registry.match_user_agent("gptbot claudebot")
        assert crawler is not None
        assert crawler.name == "GPTBot"

    def test_chatgpt_plugin_ua_does_not_match(self) -> None:
        assert default_registry.match_user_agent("chatgpt-plugin-client") is None
        crawler = default_registry.match_user_agent("chatgpt/1.2 (macos)")
        assert crawler is not None
        assert crawler.name == "ChatGPT-User"

    def test_unknown_user_agent(self) -> None:
        assert default_registry.match_user_agent("curl/8.0") is None

    def test_match_ip(self) -> None:
        crawler = default_registry.match_ip("160.79.104.10")
        assert crawler is not None
        assert crawler.name == "Claude"

    def test_match_ip_skips_ipv6(self) -> None:
        assert default_registry.match_ip("2001:db8::1") is None

    def test_match_ip_unknown(self) -> None:
        assert default_registry.match_ip("10.0.0.1") is None

    def test_match_referrer(self) -> None:
        crawler = default_registry.match_referrer("https://www.perplexity.ai/search?q=x")
        assert crawler is not None
        assert crawler.name == "PerplexityBot"

    def test_match_referrer_empty(self) -> None:
        assert default_registry.match_referrer("") is None

    def test_get_by_name(self) -> None:
        assert default_registry.get("CCBot") is not None
        assert default_registry.get("NoSuchBot") is None

    def test_registry_order_preserved(self) -> None:
        names = [c.name for c in default_registry.crawlers]
        assert names == [c.name for c in AI_CRAWLERS]
        assert names[0] == "GPTBot"


class TestExtraRanges:
    """Tests for merging fetched IP ranges."""

    def test_with_extra_ranges_adds_cidrs(self) -> None:
        registry = default_registry.with_extra_ranges({"PerplexityBot": ["203.0.113.0/24"]})
        crawler = registry.match_ip("203.0.113.9")
        assert crawler is not None
        assert crawler.name == "PerplexityBot"

    def test_original_registry_unchanged(self) -> None:
        default_registry.with_extra_ranges({"PerplexityBot": ["203.0.113.0/24"]})
        assert default_registry.match_ip("203.0.113.9") is None

    def test_unknown_names_ignored(self) -> None:
        registry = default_registry.with_extra_ranges({"NoSuchBot": ["203.0.113.0/24"]})
        assert registry.match_ip("203.0.113.9") is None

    def test_duplicates_not_repeated(self) -> None:
        registry = default_registry.with_extra_ranges({"Claude": ["160.79.104.0/23"]})
        claude = registry.get("Claude")
        assert claude is not None
        assert claude.ipv4_ranges.count("160.79.104.0/23") == 1

    def test_custom_registry(self) -> None:
        registry = CrawlerRegistry(crawlers=(), search_engine_patterns=("MyBot",))
        assert registry.match_search_engine("hello mybot") == "mybot"
        assert registry.match_user_agent(GPTBOT_UA) is None


class TestSearchEngineNames:
    """Tests for display names of search-engine patterns."""

    def test_known_name(self) -> None:
        assert format_search_engine_name("googlebot") == "Googlebot"

    def test_fallback_capitalizes(self) -> None:
        assert format_search_engine_name("twitterbot") == "Twitterbot"
