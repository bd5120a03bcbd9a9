"""Ephemeral per-IP behavior state.

Holds three independent maps keyed by source IP: last access time,
last robots.txt fetch time, and an HTML-vs-asset request counter. The
store is bounded and instance-local: several server processes each keep
their own copy, so rapid-access and robots-first detection are best
effort. A durable robots flag from storage must be OR'ed in by callers.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from crawlsense.config import BehaviorStoreConfig

logger = logging.getLogger(__name__)

_ASSET_PATH = re.compile(
    r"\.(css|js|png|jpe?g|webp|svg|woff2?|ico|gif|mp4|pdf)$", re.IGNORECASE
)


def is_asset_path(path: str) -> bool:
    """Return True for stylesheet, script, image, font and media paths."""
    return bool(_ASSET_PATH.search(path.split("?", 1)[0].split("#", 1)[0]))


@dataclass
class HtmlCounter:
    """HTML vs total request counts for one IP."""

    html: int = 0
    total: int = 0

    @property
    def html_ratio(self) -> float:
        return self.html / self.total if self.total else 0.0


class BehaviorStore:
    """Bounded, thread-safe store of per-IP behavior state.

    ``capacity`` bounds the three maps together. Once an insert pushes the
    total past it, time-keyed entries older than their age cutoff are
    dropped, then the largest map loses its oldest entries until the total
    fits. The counter map has no timestamp; when it is the largest it is
    trimmed least-recently-touched first to ``counter_prune_ratio`` of its
    size.
    """

    def __init__(
        self,
        config: BehaviorStoreConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty store.

        Args:
            config: Capacity and age bounds. Defaults to BehaviorStoreConfig().
            clock: Source of timestamps in seconds.
        """
        self.config = config or BehaviorStoreConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._access: OrderedDict[str, float] = OrderedDict()
        self._robots: OrderedDict[str, float] = OrderedDict()
        self._counters: OrderedDict[str, HtmlCounter] = OrderedDict()

    # -- access timestamps ---------------------------------------------------

    def record_access(self, ip: str) -> float | None:
        """Record a request from ``ip`` now.

        Returns:
            Seconds since the previous recorded request, or None if this IP
            was not known.
        """
        if not ip:
            return None
        with self._lock:
            now = self._clock()
            previous = self._access.pop(ip, None)
            self._access[ip] = now
            self._enforce_capacity(now)
        return None if previous is None else now - previous

    def last_access(self, ip: str) -> float | None:
        with self._lock:
            return self._access.get(ip)

    # -- robots.txt fetches --------------------------------------------------

    def mark_robots_access(self, ip: str) -> None:
        """Remember that ``ip`` fetched /robots.txt now."""
        if not ip:
            return
        with self._lock:
            now = self._clock()
            self._robots.pop(ip, None)
            self._robots[ip] = now
            self._enforce_capacity(now)

    def had_robots_access(self, ip: str, within_seconds: float) -> bool:
        """Return True if ``ip`` fetched /robots.txt within the last ``within_seconds``."""
        with self._lock:
            seen = self._robots.get(ip)
            if seen is None:
                return False
            return self._clock() - seen < within_seconds

    # -- HTML vs asset counters ----------------------------------------------

    def record_path(self, ip: str, path: str) -> None:
        """Count one request from ``ip``, as HTML unless the path is an asset."""
        if not ip:
            return
        with self._lock:
            counter = self._counters.pop(ip, None) or HtmlCounter()
            counter.total += 1
            if not is_asset_path(path):
                counter.html += 1
            self._counters[ip] = counter
            self._enforce_capacity(self._clock())

    def html_counts(self, ip: str) -> HtmlCounter | None:
        with self._lock:
            counter = self._counters.get(ip)
            return None if counter is None else HtmlCounter(counter.html, counter.total)

    def is_html_only(self, ip: str, min_requests: int, ratio: float) -> bool:
        """Return True if at least ``ratio`` of ``min_requests``+ requests were HTML."""
        counter = self.html_counts(ip)
        if counter is None or counter.total < min_requests:
            return False
        return counter.html_ratio >= ratio

    # -- maintenance ---------------------------------------------------------

    def sizes(self) -> dict[str, int]:
        """Return the entry count of each sub-map."""
        with self._lock:
            return {
                "access": len(self._access),
                "robots": len(self._robots),
                "counters": len(self._counters),
            }

    def __len__(self) -> int:
        return sum(self.sizes().values())

    def clear(self) -> None:
        with self._lock:
            self._access.clear()
            self._robots.clear()
            self._counters.clear()

    def _total(self) -> int:
        return len(self._access) + len(self._robots) + len(self._counters)

    def _enforce_capacity(self, now: float) -> None:
        """Keep the combined size of all three maps within ``capacity``."""
        capacity = self.config.capacity
        if self._total() <= capacity:
            return
        evicted = _drop_older(self._access, now - self.config.access_max_age_seconds)
        evicted += _drop_older(self._robots, now - self.config.robots_max_age_seconds)
        while self._total() > capacity:
            largest = max((self._access, self._robots, self._counters), key=len)
            if largest is self._counters:
                target = min(
                    len(self._counters) - 1,
                    int(len(self._counters) * self.config.counter_prune_ratio),
                )
                while len(self._counters) > target:
                    self._counters.popitem(last=False)
                    evicted += 1
            else:
                largest.popitem(last=False)
                evicted += 1
        logger.debug("Evicted %d behavior entries", evicted)


def _drop_older(entries: OrderedDict[str, float], cutoff: float) -> int:
    dropped = 0
    while entries and next(iter(entries.values())) < cutoff:
        entries.popitem(last=False)
        dropped += 1
    return dropped
