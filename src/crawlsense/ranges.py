"""Published crawler IP ranges.

Vendors publish the address blocks their crawlers use as JSON documents
shaped like ``{"prefixes": [{"ipv4Prefix": "..."}]}``. This module
downloads them into a YAML overlay that the server merges into the
registry at startup. The request path never fetches anything.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
import yaml

logger = logging.getLogger(__name__)

RANGE_SOURCES: dict[str, str] = {
    "https://openai.com/gptbot.json": "GPTBot",
    "https://openai.com/chatgpt-user.json": "ChatGPT-User",
    "https://openai.com/searchbot.json": "SearchGPT",
    "https://www.perplexity.com/perplexitybot.json": "PerplexityBot",
}

FETCH_USER_AGENT = "crawlsense-range-fetcher/1.0"


def parse_prefixes(document: Any) -> list[str]:
    """Extract IPv4 CIDRs from a published range document.

    Accepts ``prefixes`` or ``ipRanges`` lists whose items carry
    ``ipv4Prefix`` or ``ip_prefix``. IPv6 entries are dropped.

    Args:
        document: Decoded JSON.

    Returns:
        The IPv4 CIDR strings in document order.
    """
    if not isinstance(document, dict):
        return []
    items = document.get("prefixes") or document.get("ipRanges") or []
    cidrs = []
    for item in items:
        if not isinstance(item, dict):
            continue
        cidr = item.get("ipv4Prefix") or item.get("ip_prefix")
        if isinstance(cidr, str) and "." in cidr:
            cidrs.append(cidr.strip())
    return cidrs


async def _fetch_source(client: httpx.AsyncClient, url: str) -> list[str]:
    response = await client.get(url, headers={"User-Agent": FETCH_USER_AGENT})
    response.raise_for_status()
    return parse_prefixes(response.json())


async def fetch_published_ranges(
    sources: dict[str, str] | None = None,
    timeout: float = 5.0,
    client: httpx.AsyncClient | None = None,
) -> dict[str, list[str]]:
    """Download published IPv4 ranges for the known crawlers.

    Sources are fetched concurrently. A source that times out, returns an
    error status or malformed JSON is logged and skipped.

    Args:
        sources: Mapping of URL to crawler name. Defaults to RANGE_SOURCES.
        timeout: Per-request timeout in seconds.
        client: Optional preconfigured client (used by tests).

    Returns:
        Mapping of crawler name to de-duplicated CIDR list.
    """
    sources = sources if sources is not None else RANGE_SOURCES
    own_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)

    try:
        urls = list(sources)
        results = await asyncio.gather(
            *(_fetch_source(client, url) for url in urls), return_exceptions=True
        )
    finally:
        if own_client:
            await client.aclose()

    ranges: dict[str, list[str]] = {}
    for url, result in zip(urls, results, strict=True):
        name = sources[url]
        if isinstance(result, BaseException):
            if not isinstance(result, httpx.HTTPError | ValueError):
                raise result
            logger.warning("Failed to fetch IP ranges from %s: %s", url, result)
            continue
        bucket = ranges.setdefault(name, [])
        for cidr in result:
            if cidr not in bucket:
                bucket.append(cidr)
        logger.info("Fetched %d IP ranges for %s from %s", len(result), name, url)
    return ranges


def save_range_overlay(ranges: dict[str, list[str]], path: str | Path) -> Path:
    """Save fetched ranges as a YAML overlay.

    Args:
        ranges: Mapping of crawler name to CIDR list.
        path: Destination file path.

    Returns:
        The resolved Path where the overlay was saved.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(ranges, f, default_flow_style=False, sort_keys=True)
    return path.resolve()


def load_range_overlay(path: str | Path) -> dict[str, list[str]]:
    """Load a YAML range overlay.

    Args:
        path: Path to the overlay file.

    Returns:
        Mapping of crawler name to CIDR list.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a mapping of names to lists.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Range overlay not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Range overlay must be a mapping: {path}")

    overlay: dict[str, list[str]] = {}
    for name, cidrs in raw.items():
        if not isinstance(cidrs, list):
            raise ValueError(f"Ranges for {name!r} must be a list")
        overlay[str(name)] = [str(c) for c in cidrs]
    return overlay
