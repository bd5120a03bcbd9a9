"""Batch re-scoring of non-human visits for browser mimicry.

Looks back over a window of visits the real-time path already flagged
as non-human, clusters them by source IP, and scores each visit for
signs of an automated agent dressed up as a browser:

  - burst: >= 5 visits within 5 min (+40), else >= 10 within 30 min (+25)
  - visit hour (UTC) in the night window (+20)
  - browser-like UA on a non-human visit (+25)
  - HTML-only visitor (+10)
  - browser-like UA without a referrer (+10)

A total of 50 or more marks the visit as mimicry.
"""

from __future__ import annotations

import logging
import statistics
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from crawlsense.config import MimicConfig
from crawlsense.fingerprint import looks_like_browser
from crawlsense.models import MimicRunReport, MimicVerdict, Visit
from crawlsense.storage import StorageBackend

logger = logging.getLogger(__name__)

_POINTS = {
    "extreme-burst": 40,
    "fast-burst": 25,
    "night-hours": 20,
    "browser-ua-impersonation": 25,
    "html-only": 10,
    "no-referrer-browser-ua": 10,
}

MAX_MIMIC_SCORE = 100


class MimicDeadlineExceeded(RuntimeError):
    """Raised when a batch run cannot finish scoring before its deadline."""


@dataclass(frozen=True)
class IpCluster:
    """Visit statistics for one source IP within the window."""

    visit_count: int
    span_minutes: float


def cluster_by_ip(visits: Iterable[Visit]) -> dict[str, IpCluster]:
    """Group visits by IP and compute count and first-to-last span.

    Args:
        visits: Visits to group.

    Returns:
        Mapping of IP address to its IpCluster.
    """
    times: dict[str, list[datetime]] = defaultdict(list)
    for visit in visits:
        times[visit.ip_address].append(_as_utc(visit.visited_at))

    clusters = {}
    for ip, stamps in times.items():
        span = (max(stamps) - min(stamps)).total_seconds() / 60.0
        clusters[ip] = IpCluster(visit_count=len(stamps), span_minutes=span)
    return clusters


def score_visit(
    visit: Visit, cluster: IpCluster, config: MimicConfig | None = None
) -> tuple[int, list[str]]:
    """Compute the mimicry score of one visit.

    Args:
        visit: The stored visit.
        cluster: Statistics of all window visits from the same IP.
        config: Burst and night-window settings.

    Returns:
        A tuple of (score capped at 100, reasons that fired).
    """
    cfg = config or MimicConfig()
    reasons: list[str] = []

    if (
        cluster.visit_count >= cfg.extreme_burst_visits
        and cluster.span_minutes <= cfg.extreme_burst_minutes
    ):
        reasons.append("extreme-burst")
    elif (
        cluster.visit_count >= cfg.fast_burst_visits
        and cluster.span_minutes <= cfg.fast_burst_minutes
    ):
        reasons.append("fast-burst")

    start, end = cfg.night_hours_utc
    if start <= _as_utc(visit.visited_at).hour <= end:
        reasons.append("night-hours")

    browser_like = looks_like_browser(visit.user_agent.lower())
    if browser_like and not visit.is_human:
        reasons.append("browser-ua-impersonation")

    if visit.is_html_only:
        reasons.append("html-only")

    if browser_like and not visit.referrer:
        reasons.append("no-referrer-browser-ua")

    score = sum(_POINTS[r] for r in reasons)
    return min(score, MAX_MIMIC_SCORE), reasons


def find_periodic_ips(
    visit_times: Iterable[tuple[str, datetime]], min_intervals: int = 4
) -> list[dict[str, Any]]:
    """Detect IPs whose visits arrive at regular intervals.

    Uses the coefficient of variation (population stdev / mean) of the
    gaps between consecutive visits. Low CV means machine-like regularity.

    Args:
        visit_times: (ip, visited_at) pairs in any order.
        min_intervals: Minimum number of positive gaps to judge an IP.

    Returns:
        One entry per qualifying IP, most regular first.
    """
    by_ip: dict[str, list[datetime]] = defaultdict(list)
    for ip, stamp in visit_times:
        by_ip[ip].append(_as_utc(stamp))

    results = []
    for ip, stamps in by_ip.items():
        stamps.sort()
        gaps = [
            (b - a).total_seconds() for a, b in zip(stamps, stamps[1:], strict=False)
        ]
        gaps = [g for g in gaps if g > 0]
        if len(gaps) < min_intervals:
            continue

        mean = statistics.mean(gaps)
        stdev = statistics.pstdev(gaps)
        cv = stdev / mean * 100 if mean > 0 else 999.0

        if mean < 60:
            period_type = "rapid-periodic"
        elif mean < 3600:
            period_type = "medium-periodic"
        else:
            period_type = "slow-periodic"

        results.append(
            {
                "ip_address": ip,
                "visit_count": len(gaps),
                "avg_interval_sec": round(mean, 1),
                "stddev_sec": round(stdev, 1),
                "cv_percent": round(cv, 1),
                "is_periodic": cv <= 30,
                "is_periodic_weak": cv <= 50,
                "period_type": period_type,
            }
        )

    results.sort(key=lambda r: (r["cv_percent"], r["ip_address"]))
    return results


class MimicDetector:
    """Runs the batch mimicry pass and the read-only mimicry statistics."""

    def __init__(
        self,
        storage: StorageBackend,
        config: MimicConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.config = config or MimicConfig()
        self._clock = clock

    def run(
        self,
        site_id: str,
        dry_run: bool = False,
        visit_ids: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> MimicRunReport:
        """Re-score the window's non-human visits for one site.

        Args:
            site_id: The site to process.
            dry_run: Compute and report without writing.
            visit_ids: Only write verdicts for these rows, e.g. to retry
                IDs that failed in a previous run. Clustering still uses
                the whole window.
            now: End of the window; defaults to the current time.

        Returns:
            A MimicRunReport. Dry runs include the flagged rows.

        Raises:
            MimicDeadlineExceeded: Scoring ran past ``deadline_seconds``.
                Nothing is written in that case.
        """
        cfg = self.config
        deadline = self._clock() + cfg.deadline_seconds
        since = (now or datetime.now(UTC)) - timedelta(days=cfg.window_days)

        visits = self.storage.get_nonhuman_visits(site_id, since, limit=cfg.max_rows)
        if not visits:
            return MimicRunReport(dry_run=dry_run, details=[] if dry_run else None)

        clusters = cluster_by_ip(visits)
        verdicts: list[MimicVerdict] = []
        for visit in visits:
            if self._clock() > deadline:
                raise MimicDeadlineExceeded(
                    f"Mimic scoring for site {site_id} exceeded {cfg.deadline_seconds}s "
                    f"after {len(verdicts)} of {len(visits)} visits"
                )
            score, reasons = score_visit(visit, clusters[visit.ip_address], cfg)
            verdicts.append(
                MimicVerdict(
                    visit_id=visit.id,
                    ip_address=visit.ip_address,
                    user_agent=visit.user_agent,
                    score=score,
                    is_mimic=score >= cfg.threshold,
                    reasons=reasons,
                )
            )

        flagged = [v for v in verdicts if v.is_mimic]
        report = MimicRunReport(
            processed=len(verdicts),
            mimic_detected=len(flagged),
            normal=len(verdicts) - len(flagged),
            dry_run=dry_run,
        )

        if dry_run:
            report.details = flagged[: cfg.details_limit]
        else:
            targets = verdicts
            if visit_ids is not None:
                wanted = set(visit_ids)
                targets = [v for v in verdicts if v.visit_id in wanted]
            report.updated, report.failed_ids = self.storage.apply_mimic_verdicts(targets)

        logger.info(
            "Mimic run for site %s: processed=%d mimic=%d normal=%d updated=%d failed=%d%s",
            site_id,
            report.processed,
            report.mimic_detected,
            report.normal,
            report.updated,
            len(report.failed_ids),
            " (dry run)" if dry_run else "",
        )
        return report

    def stats(self, site_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Aggregate mimicry statistics for one site. Pure read.

        Args:
            site_id: The site to summarize.
            now: End of the window; defaults to the current time.

        Returns:
            A dict with summary counts, top IPs, daily trend, rotation
            anomalies and periodic IPs.
        """
        cfg = self.config
        since = (now or datetime.now(UTC)) - timedelta(days=cfg.window_days)
        periodic = find_periodic_ips(
            self.storage.get_visit_times(site_id, since), cfg.periodic_min_intervals
        )
        return {
            "stats": self.storage.mimic_summary(site_id, since),
            "byIP": self.storage.top_mimic_ips(site_id, since, limit=cfg.top_ips_limit),
            "trend": self.storage.mimic_trend(site_id, since),
            "rotation": {
                "ua_rotation": self.storage.ua_rotation(
                    site_id, since, cfg.rotation_min_distinct, cfg.top_ips_limit
                ),
                "ip_rotation": self.storage.ip_rotation(
                    site_id, since, cfg.rotation_min_distinct, cfg.top_ips_limit
                ),
            },
            "periodic": periodic[: cfg.top_ips_limit],
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
