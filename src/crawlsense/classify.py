"""Real-time request classification.

Combines four signals into a total score:
  - UA score        0 or ua_match_score (40)
  - IP score        0, ip_only_score (20) or ip_corroborated_score (30)
  - behavior score  0..behavior_cap (28)
  - rapid bonus     0 or rapid_bonus (10)

Verdicts, in order:
  - known non-AI bot UA           -> search engine (short-circuit)
  - crawler matched by UA or IP   -> that crawler
  - total >= ai_threshold         -> pattern-inferred AI
  - total >= suspicious_threshold -> suspicious AI
  - otherwise                     -> human
"""

from __future__ import annotations

from dataclasses import dataclass

from crawlsense.behavior_store import BehaviorStore
from crawlsense.config import ScoringConfig
from crawlsense.fingerprint import score_behavior
from crawlsense.models import (
    BehaviorScore,
    ClassificationResult,
    CrawlerDefinition,
    CrawlerPurpose,
    CrawlerType,
    DetectionMethod,
    RequestSignals,
)
from crawlsense.registry import CrawlerRegistry, default_registry, format_search_engine_name
from crawlsense.session import make_session_id

UNKNOWN_AI = "Unknown AI"
SUSPICIOUS_AI = "Unknown AI (Suspicious)"
HONEYPOT_CONFIDENCE = 99


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-signal scores for one request."""

    ua_score: int
    ip_score: int
    behavior: BehaviorScore
    rapid_score: int
    matched: CrawlerDefinition | None

    @property
    def total(self) -> int:
        return self.ua_score + self.ip_score + self.behavior.score + self.rapid_score

    @property
    def is_rapid(self) -> bool:
        return self.rapid_score > 0


class Classifier:
    """Scores requests and maps scores to verdicts.

    The behavior store is injected so tests can isolate state and a shared
    cache can replace the in-memory one without touching this class.
    """

    def __init__(
        self,
        registry: CrawlerRegistry | None = None,
        store: BehaviorStore | None = None,
        config: ScoringConfig | None = None,
    ) -> None:
        self.registry = registry or default_registry
        self.store = store if store is not None else BehaviorStore()
        self.config = config or ScoringConfig()

    def classify(
        self, signals: RequestSignals, durable_robots_access: bool = False
    ) -> ClassificationResult:
        """Classify one request and record it in the behavior store.

        Args:
            signals: Normalized request fields.
            durable_robots_access: Storage already knows this IP fetched
                /robots.txt recently; OR'ed into the in-memory flag.

        Returns:
            A frozen ClassificationResult. Never raises for any signals.
        """
        cfg = self.config
        ip = signals.ip

        # Read state before this request is recorded
        elapsed = self.store.record_access(ip)
        rapid = elapsed is not None and elapsed * 1000 < cfg.rapid_window_ms
        robots = durable_robots_access or self.store.had_robots_access(
            ip, cfg.robots_window_seconds
        )
        html_only = self.store.is_html_only(
            ip, cfg.html_only_min_requests, cfg.html_only_ratio
        )

        if signals.path == "/robots.txt":
            self.store.mark_robots_access(ip)
        self.store.record_path(ip, signals.path)

        base = {
            "is_rapid": rapid,
            "had_robots_access": robots,
            "is_html_only": html_only,
            "session_id": make_session_id(ip, signals.user_agent),
        }

        pattern = self.registry.match_search_engine(signals.user_agent)
        if pattern is not None:
            return ClassificationResult(
                is_search_engine=True,
                crawler_name=format_search_engine_name(pattern),
                crawler_type=CrawlerType.SEARCH_ENGINE,
                detection_method=DetectionMethod.SEARCH_ENGINE_UA,
                confidence=cfg.search_engine_confidence,
                total_score=cfg.search_engine_confidence,
                **base,
            )

        scores = self.score(signals, rapid=rapid, robots=robots, html_only=html_only)
        return self.verdict(scores, signals.referrer, **base)

    def score(
        self,
        signals: RequestSignals,
        rapid: bool = False,
        robots: bool = False,
        html_only: bool = False,
    ) -> ScoreBreakdown:
        """Compute the per-signal scores without touching the behavior store."""
        cfg = self.config
        ua_score = 0
        ip_score = 0

        matched = self.registry.match_user_agent(signals.user_agent)
        if matched is not None:
            ua_score = cfg.ua_match_score

        ip_match = self.registry.match_ip(signals.ip)
        if ip_match is not None:
            if matched is None:
                ip_score = cfg.ip_only_score
                matched = ip_match
            elif ip_match.name == matched.name:
                ip_score = cfg.ip_corroborated_score

        behavior = score_behavior(
            signals, had_robots_access=robots, is_html_only=html_only, cap=cfg.behavior_cap
        )
        return ScoreBreakdown(
            ua_score=ua_score,
            ip_score=ip_score,
            behavior=behavior,
            rapid_score=cfg.rapid_bonus if rapid else 0,
            matched=matched,
        )

    def verdict(
        self, scores: ScoreBreakdown, referrer: str = "", **base: object
    ) -> ClassificationResult:
        """Map a score breakdown to a classification.

        Args:
            scores: Output of :meth:`score`.
            referrer: Lowercased Referer, used to name inferred crawlers.
            **base: Extra ClassificationResult fields (flags, session ID).

        Returns:
            The ClassificationResult.
        """
        cfg = self.config
        total = scores.total
        reasons = scores.behavior.reasons

        if scores.matched is not None and (scores.ua_score or scores.ip_score):
            if scores.ua_score and scores.ip_score:
                method = DetectionMethod.USER_AGENT_IP_RANGE
            elif scores.ua_score:
                method = DetectionMethod.USER_AGENT
            else:
                method = DetectionMethod.IP_RANGE
            bonus = cfg.matched_rapid_confidence_bonus if scores.is_rapid else 0
            return ClassificationResult(
                is_ai=True,
                crawler_name=scores.matched.name,
                crawler_type=CrawlerType.AI,
                purpose=scores.matched.purpose,
                detection_method=method,
                confidence=min(scores.ua_score + scores.ip_score + bonus, cfg.confidence_ceiling),
                total_score=total,
                behavior_reasons=reasons,
                **base,
            )

        inferred = (
            cfg.inference_confidence_base
            + scores.behavior.score * cfg.inference_behavior_multiplier
            + (cfg.inference_rapid_bonus if scores.is_rapid else 0)
        )

        if total >= cfg.ai_threshold:
            hinted = self.registry.match_referrer(referrer)
            return ClassificationResult(
                is_ai=True,
                crawler_name=hinted.name if hinted else UNKNOWN_AI,
                crawler_type=CrawlerType.AI,
                purpose=hinted.purpose if hinted else CrawlerPurpose.UNKNOWN,
                detection_method=(
                    DetectionMethod.PATTERN_INFERENCE_RAPID
                    if scores.is_rapid
                    else DetectionMethod.PATTERN_INFERENCE
                ),
                confidence=min(inferred, cfg.inference_confidence_cap),
                total_score=total,
                behavior_reasons=reasons,
                **base,
            )

        if total >= cfg.suspicious_threshold:
            return ClassificationResult(
                is_ai=True,
                crawler_name=SUSPICIOUS_AI,
                crawler_type=CrawlerType.AI,
                detection_method=DetectionMethod.PATTERN_INFERENCE,
                confidence=min(inferred, cfg.suspicious_confidence_cap),
                total_score=total,
                behavior_reasons=reasons,
                **base,
            )

        return ClassificationResult(
            is_human=True,
            crawler_name="Human",
            crawler_type=CrawlerType.HUMAN,
            detection_method=DetectionMethod.HUMAN_DEFAULT,
            confidence=cfg.human_confidence,
            total_score=total,
            behavior_reasons=reasons,
            **base,
        )


def honeypot_result(ip: str, user_agent: str) -> ClassificationResult:
    """Verdict for a hit on the hidden honeypot link.

    Only markup-parsing agents follow a link invisible to humans, so the
    hit is recorded as AI without scoring.

    Args:
        ip: Source IP address.
        user_agent: The lowercased User-Agent.

    Returns:
        A ClassificationResult with confidence 99.
    """
    return ClassificationResult(
        is_ai=True,
        crawler_name=UNKNOWN_AI,
        crawler_type=CrawlerType.AI,
        detection_method=DetectionMethod.HONEYPOT,
        confidence=HONEYPOT_CONFIDENCE,
        total_score=HONEYPOT_CONFIDENCE,
        session_id=make_session_id(ip, user_agent),
    )
