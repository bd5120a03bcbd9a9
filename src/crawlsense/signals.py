"""Request signal extraction.

Flattens raw request fields into a RequestSignals value. Header lookup is
case-insensitive and a missing header is an empty string, so nothing
downstream needs None checks.
"""

from __future__ import annotations

from collections.abc import Mapping

from crawlsense.models import RequestSignals


def _normalize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {str(k).lower(): "" if v is None else str(v) for k, v in headers.items()}


def client_ip(headers: Mapping[str, str] | None, fallback: str | None = None) -> str:
    """Resolve the source IP of a request.

    Uses the first entry of X-Forwarded-For, trimmed, falling back to the
    socket peer address.

    Args:
        headers: Request headers.
        fallback: Peer address to use when no forwarded chain is present.

    Returns:
        The IP string, or '' when nothing is known.
    """
    h = _normalize_headers(headers)
    forwarded = h.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return (fallback or "").strip()


def extract_signals(
    headers: Mapping[str, str] | None,
    method: str | None = "GET",
    path: str | None = "/",
    peer_ip: str | None = None,
) -> RequestSignals:
    """Build the RequestSignals for one request.

    Args:
        headers: Raw request headers in any key case.
        method: HTTP method.
        path: Request path being tracked.
        peer_ip: Socket peer address used when X-Forwarded-For is absent.

    Returns:
        A frozen RequestSignals instance.
    """
    h = _normalize_headers(headers)
    return RequestSignals(
        user_agent=h.get("user-agent", "").lower(),
        ip=client_ip(h, peer_ip),
        referrer=h.get("referer", "").strip().lower(),
        accept=h.get("accept", "").strip().lower(),
        accept_encoding=h.get("accept-encoding", "").strip().lower(),
        accept_language=h.get("accept-language", "").strip().lower(),
        sec_ch_ua=h.get("sec-ch-ua", "").strip().lower(),
        connection=h.get("connection", "").strip().lower(),
        method=(method or "GET").upper(),
        path=path or "/",
    )
