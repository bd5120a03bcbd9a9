"""Session and site identifiers.

Both use a 32-bit rolling multiplicative hash (``h = h * 31 + unit``)
over UTF-16 code units, rendered in base 36. Collisions merge distinct
visitors into one session, which is acceptable for aggregate analytics.
"""

from __future__ import annotations

import re
import struct
import time

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def rolling_hash(text: str) -> int:
    """Return the signed 32-bit rolling hash of ``text``."""
    data = text.encode("utf-16-le")
    h = 0
    for (unit,) in struct.iter_unpack("<H", data):
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def to_base36(value: int) -> str:
    """Render a non-negative integer in lowercase base 36."""
    if value < 0:
        raise ValueError(f"value must be non-negative, got {value}")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def make_session_id(ip: str, user_agent: str) -> str:
    """Derive a stable session identifier from an (IP, User-Agent) pair.

    Args:
        ip: Source IP address.
        user_agent: The lowercased User-Agent.

    Returns:
        A short base-36 string; the same pair always yields the same ID.
    """
    return to_base36(abs(rolling_hash(f"{ip}::{user_agent}")))


def generate_site_id(url: str, now_ms: int | None = None) -> str:
    """Generate a 12-character identifier for a monitored site.

    The URL is lowercased and stripped of its scheme and trailing slash,
    hashed, and suffixed with the last six base-36 digits of the clock.

    Args:
        url: The site URL.
        now_ms: Millisecond timestamp; defaults to the current time.

    Returns:
        The site identifier.
    """
    normalized = re.sub(r"^https?://", "", url.strip().lower()).rstrip("/")
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    stamp = to_base36(now_ms)[-6:]
    return (to_base36(abs(rolling_hash(normalized))) + stamp)[:12]
