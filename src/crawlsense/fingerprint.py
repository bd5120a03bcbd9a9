"""Behavioral heuristics for spotting automated clients.

Scores a single request's headers plus two flags derived from the
behavior store. Every heuristic is evaluated independently; the sum is
capped. The fired reasons are returned for debugging and are not used
in the numeric decision.
"""

from __future__ import annotations

from crawlsense.models import BehaviorScore, RequestSignals

# Points per heuristic
_POINTS = {
    "no-accept-language": 4,
    "minimal-encoding": 4,
    "no-modern-encoding": 2,
    "head-method": 4,
    "no-browser-ua": 4,
    "short-ua": 2,
    "no-referer": 2,
    "robots-first": 3,
    "html-only": 3,
    "wildcard-accept": 3,
    "client-hints-spoofed": 4,
    "no-client-hints": 2,
    "connection-close": 2,
}

DEFAULT_BEHAVIOR_CAP = 28

_SHORT_UA_LENGTH = 50
_BROWSER_ENGINES = ("chrome", "firefox", "safari")
_MODERN_CODECS = ("br", "zstd")


def looks_like_browser(ua: str) -> bool:
    """Return True if the lowercased UA has 'mozilla' plus a browser engine token."""
    return "mozilla" in ua and any(engine in ua for engine in _BROWSER_ENGINES)


def claims_chromium(ua: str) -> bool:
    """Return True for UAs claiming Chrome that are not Edge or Opera.

    Chromium browsers send a Sec-CH-UA client hint; Edge and Opera are
    excluded because their hint support varies by channel.
    """
    if "chrome" not in ua:
        return False
    return not any(token in ua for token in ("edg/", "edge/", "opr/", "opera"))


def score_behavior(
    signals: RequestSignals,
    had_robots_access: bool = False,
    is_html_only: bool = False,
    cap: int = DEFAULT_BEHAVIOR_CAP,
) -> BehaviorScore:
    """Score header and behavior anomalies of one request.

    Args:
        signals: The normalized request signals.
        had_robots_access: This IP fetched /robots.txt moments ago.
        is_html_only: This IP almost never requests assets.
        cap: Ceiling for the returned score.

    Returns:
        A BehaviorScore with the capped score and the reasons that fired.
    """
    reasons: list[str] = []
    ua = signals.user_agent
    browser_like = looks_like_browser(ua)

    if not signals.accept_language:
        reasons.append("no-accept-language")

    encoding = signals.accept_encoding
    if not encoding or encoding == "identity":
        reasons.append("minimal-encoding")
    elif not any(codec in encoding for codec in _MODERN_CODECS):
        reasons.append("no-modern-encoding")

    if signals.method == "HEAD":
        reasons.append("head-method")

    if not browser_like:
        reasons.append("no-browser-ua")

    if len(ua) < _SHORT_UA_LENGTH:
        reasons.append("short-ua")

    if not signals.referrer:
        reasons.append("no-referer")

    if had_robots_access:
        reasons.append("robots-first")

    if is_html_only:
        reasons.append("html-only")

    if signals.accept == "*/*":
        reasons.append("wildcard-accept")

    if not signals.sec_ch_ua:
        if claims_chromium(ua):
            reasons.append("client-hints-spoofed")
        elif not browser_like:
            reasons.append("no-client-hints")

    if signals.connection == "close":
        reasons.append("connection-close")

    raw = sum(_POINTS[r] for r in reasons)
    return BehaviorScore(score=min(raw, cap), reasons=tuple(reasons))
