"""Static crawler pattern tables and IPv4 CIDR matching.

Matching is plain substring containment on the lowercased User-Agent.
Crawler User-Agents are short vendor-controlled strings, so no regex or
tokenization is needed. IPv4 ranges are matched with a bitmask; IPv6
addresses are never range-checked.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from crawlsense.models import CrawlerDefinition, CrawlerPurpose

REGISTRY_VERSION = "5"

# ---------------------------------------------------------------------------
# Non-AI utility and search-engine bots (checked first, never counted as AI)
# ---------------------------------------------------------------------------

SEARCH_ENGINE_PATTERNS: tuple[str, ...] = (
    "duckduckbot",
    "bingbot",
    "msnbot",
    "bingpreview",
    "googlebot",
    "adsbot-google",
    "mediapartners-google",
    "chrome-lighthouse",
    "slurp",
    "yandexbot",
    "baiduspider",
    "ia_archiver",
    "facebookexternalhit",
    "twitterbot",
    "linkedinbot",
    "discordbot",
    "whatsapp",
    "telegrambot",
    "slackbot",
    "vercel-screenshot",
)

_SEARCH_ENGINE_NAMES = {
    "duckduckbot": "DuckDuckBot",
    "googlebot": "Googlebot",
    "bingbot": "Bingbot",
    "msnbot": "MSNBot",
    "bingpreview": "BingPreview",
    "yandexbot": "YandexBot",
    "baiduspider": "BaiduSpider",
    "slurp": "Yahoo Slurp",
    "adsbot-google": "AdsBot-Google",
    "mediapartners-google": "Mediapartners-Google",
    "chrome-lighthouse": "Lighthouse",
    "vercel-screenshot": "Vercel-Screenshot",
}

# ---------------------------------------------------------------------------
# AI crawler definitions (registry order decides ties)
# ---------------------------------------------------------------------------

AI_CRAWLERS: tuple[CrawlerDefinition, ...] = (
    CrawlerDefinition(
        name="GPTBot",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("gptbot",),
        official_domains=("openai.com",),
        ipv4_ranges=(
            "20.15.240.64/28",
            "20.15.240.80/28",
            "20.15.240.96/28",
            "20.15.240.176/28",
            "20.15.241.0/28",
            "20.15.243.128/28",
        ),
    ),
    CrawlerDefinition(
        name="ChatGPT-User",
        purpose=CrawlerPurpose.REALTIME,
        # 'chatgpt/1.' rather than 'chatgpt' so plugin UAs don't match
        ua_patterns=("chatgpt-user", "chatgpt/1."),
        official_domains=("openai.com",),
    ),
    CrawlerDefinition(
        name="SearchGPT",
        purpose=CrawlerPurpose.SEARCH_SUMMARY,
        ua_patterns=("oai-searchbot",),
        official_domains=("openai.com",),
    ),
    CrawlerDefinition(
        name="Claude",
        purpose=CrawlerPurpose.REALTIME,
        ua_patterns=("claudebot", "claude-web", "anthropic", "claude/"),
        official_domains=("anthropic.com",),
        ipv4_ranges=("160.79.104.0/23",),
    ),
    CrawlerDefinition(
        name="PerplexityBot",
        purpose=CrawlerPurpose.SEARCH_SUMMARY,
        ua_patterns=("perplexitybot", "perplexity"),
        official_domains=("perplexity.ai",),
    ),
    CrawlerDefinition(
        name="Gemini",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=(
            "google-extended",
            "googleother",
            "google-inspectiontool",
            "bard",
            "gemini",
        ),
        official_domains=("google.com",),
    ),
    CrawlerDefinition(
        name="Microsoft Copilot",
        purpose=CrawlerPurpose.SEARCH_SUMMARY,
        ua_patterns=("copilot",),
        official_domains=("microsoft.com",),
        ipv4_ranges=("40.77.167.0/24", "207.46.13.0/24"),
    ),
    CrawlerDefinition(
        name="Meta AI",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=(
            "meta-externalagent",
            "meta-externalfetcher",
            "facebookai",
            "metaai",
            "llama",
        ),
        official_domains=("meta.com", "facebook.com"),
    ),
    CrawlerDefinition(
        name="Grok",
        purpose=CrawlerPurpose.REALTIME,
        ua_patterns=("grok", "xai", "grokbot"),
        official_domains=("x.ai",),
    ),
    CrawlerDefinition(
        name="Mistral",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("mistral", "mistralbot", "le-chat"),
        official_domains=("mistral.ai",),
    ),
    CrawlerDefinition(
        name="DeepSeek",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("deepseek", "deepseekbot"),
        official_domains=("deepseek.com",),
    ),
    CrawlerDefinition(
        name="Cohere",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("cohere", "coherebot", "command-r"),
        official_domains=("cohere.com",),
    ),
    CrawlerDefinition(
        name="YouBot",
        purpose=CrawlerPurpose.SEARCH_SUMMARY,
        ua_patterns=("youbot",),
        official_domains=("you.com",),
    ),
    CrawlerDefinition(
        name="Phind",
        purpose=CrawlerPurpose.SEARCH_SUMMARY,
        ua_patterns=("phindbot", "phind"),
        official_domains=("phind.com",),
    ),
    CrawlerDefinition(
        name="HuggingFaceBot",
        purpose=CrawlerPurpose.ACADEMIC,
        ua_patterns=("huggingface", "transformersbot"),
        official_domains=("huggingface.co",),
    ),
    CrawlerDefinition(
        name="CCBot",
        purpose=CrawlerPurpose.ACADEMIC,
        ua_patterns=("ccbot", "commoncrawl"),
        official_domains=("commoncrawl.org",),
    ),
    CrawlerDefinition(
        name="AppleBot",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("applebot",),
        official_domains=("applebot.apple.com",),
    ),
    CrawlerDefinition(
        name="AmazonBot",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("amazonbot",),
        official_domains=("amazon.com",),
    ),
    CrawlerDefinition(
        name="ByteSpider",
        purpose=CrawlerPurpose.TRAINING,
        ua_patterns=("bytespider", "bytedance"),
        official_domains=("bytedance.com",),
    ),
)


# ---------------------------------------------------------------------------
# IPv4 CIDR matching
# ---------------------------------------------------------------------------


def ipv4_to_int(ip: str) -> int | None:
    """Pack a dotted-quad IPv4 address into a 32-bit integer.

    Args:
        ip: Address such as '20.15.240.70'.

    Returns:
        The packed integer, or None if the address is malformed.
    """
    parts = ip.strip().split(".")
    if len(parts) != 4:
        return None
    value = 0
    for part in parts:
        if not part.isdigit() or len(part) > 3:
            return None
        octet = int(part)
        if octet > 255:
            return None
        value = (value << 8) | octet
    return value


def ip_in_cidr(ip: str, cidr: str) -> bool:
    """Check whether an IPv4 address falls inside a CIDR block.

    Malformed addresses or blocks fail closed and return False.

    Args:
        ip: The IPv4 address to test.
        cidr: A block in 'a.b.c.d/bits' notation.

    Returns:
        True if ``ip & mask == range & mask``.
    """
    if not ip or not cidr or "/" not in cidr:
        return False
    base, _, bits_str = cidr.partition("/")
    if not bits_str.isdigit():
        return False
    bits = int(bits_str)
    if bits > 32:
        return False

    ip_num = ipv4_to_int(ip)
    base_num = ipv4_to_int(base)
    if ip_num is None or base_num is None:
        return False

    mask = (0xFFFFFFFF << (32 - bits)) & 0xFFFFFFFF
    return (ip_num & mask) == (base_num & mask)


def is_ipv6(ip: str) -> bool:
    """Return True for addresses that look like IPv6 (contain a colon)."""
    return ":" in ip


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class CrawlerRegistry:
    """Read-only lookup over search-engine patterns and AI crawler definitions."""

    def __init__(
        self,
        crawlers: Iterable[CrawlerDefinition] = AI_CRAWLERS,
        search_engine_patterns: Iterable[str] = SEARCH_ENGINE_PATTERNS,
        version: str = REGISTRY_VERSION,
    ) -> None:
        self._crawlers = tuple(crawlers)
        self._search_patterns = tuple(p.lower() for p in search_engine_patterns)
        self.version = version

    @property
    def crawlers(self) -> tuple[CrawlerDefinition, ...]:
        return self._crawlers

    @property
    def search_engine_patterns(self) -> tuple[str, ...]:
        return self._search_patterns

    def get(self, name: str) -> CrawlerDefinition | None:
        """Look up a crawler definition by its exact name."""
        for crawler in self._crawlers:
            if crawler.name == name:
                return crawler
        return None

    def match_search_engine(self, ua: str) -> str | None:
        """Return the first non-AI bot pattern contained in ``ua``.

        Args:
            ua: The lowercased User-Agent.

        Returns:
            The matching pattern, or None.
        """
        if not ua:
            return None
        for pattern in self._search_patterns:
            if pattern in ua:
                return pattern
        return None

    def match_user_agent(self, ua: str) -> CrawlerDefinition | None:
        """Return the first crawler (registry order) with a pattern in ``ua``."""
        if not ua:
            return None
        for crawler in self._crawlers:
            if any(pattern in ua for pattern in crawler.ua_patterns):
                return crawler
        return None

    def match_ip(self, ip: str) -> CrawlerDefinition | None:
        """Return the first crawler whose published ranges contain ``ip``.

        IPv6 and malformed addresses never match.
        """
        if not ip or is_ipv6(ip):
            return None
        for crawler in self._crawlers:
            if any(ip_in_cidr(ip, cidr) for cidr in crawler.ipv4_ranges):
                return crawler
        return None

    def match_referrer(self, referrer: str) -> CrawlerDefinition | None:
        """Return the first crawler whose official domain appears in ``referrer``."""
        if not referrer:
            return None
        for crawler in self._crawlers:
            if any(domain in referrer for domain in crawler.official_domains):
                return crawler
        return None

    def with_extra_ranges(self, extra: Mapping[str, Iterable[str]]) -> CrawlerRegistry:
        """Return a new registry with additional IPv4 ranges merged in.

        Unknown crawler names are ignored; this registry is left unchanged.

        Args:
            extra: Mapping of crawler name to CIDR strings.

        Returns:
            A new CrawlerRegistry.
        """
        merged = []
        for crawler in self._crawlers:
            additions = [c for c in extra.get(crawler.name, ()) if c not in crawler.ipv4_ranges]
            if additions:
                crawler = crawler.model_copy(
                    update={"ipv4_ranges": crawler.ipv4_ranges + tuple(additions)}
                )
            merged.append(crawler)
        return CrawlerRegistry(merged, self._search_patterns, version=self.version)


def format_search_engine_name(pattern: str) -> str:
    """Turn a matched search-engine pattern into a display name."""
    return _SEARCH_ENGINE_NAMES.get(pattern, pattern[:1].upper() + pattern[1:])


default_registry = CrawlerRegistry()
