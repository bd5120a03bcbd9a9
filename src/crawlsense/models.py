"""Core data models for crawlsense."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field


class CrawlerPurpose(enum.StrEnum):
    """What a known AI crawler fetches pages for."""

    TRAINING = "training"
    REALTIME = "realtime"
    SEARCH_SUMMARY = "search-summary"
    ACADEMIC = "academic"
    UNKNOWN = "unknown"


class CrawlerType(enum.StrEnum):
    """Coarse traffic category stored with every visit."""

    AI = "ai"
    SEARCH_ENGINE = "search-engine"
    HUMAN = "human"
    UNKNOWN = "unknown"


class DetectionMethod(enum.StrEnum):
    """Which signal produced a classification."""

    SEARCH_ENGINE_UA = "search-engine-ua"
    USER_AGENT = "user-agent"
    IP_RANGE = "ip-range"
    USER_AGENT_IP_RANGE = "user-agent+ip-range"
    PATTERN_INFERENCE = "pattern-inference"
    PATTERN_INFERENCE_RAPID = "pattern-inference+rapid"
    HUMAN_DEFAULT = "human-default"
    HONEYPOT = "honeypot"


class CrawlerDefinition(BaseModel):
    """A registered AI crawler.

    Definitions are loaded once and never mutated; ``ua_patterns`` are
    lowercase substrings matched against the lowercased User-Agent.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Display name, e.g. 'GPTBot'")
    purpose: CrawlerPurpose = Field(description="Why the vendor fetches pages")
    ua_patterns: tuple[str, ...] = Field(
        default=(), description="Lowercase User-Agent substrings"
    )
    official_domains: tuple[str, ...] = Field(
        default=(), description="Vendor domains that may appear in the Referer"
    )
    ipv4_ranges: tuple[str, ...] = Field(
        default=(), description="Published IPv4 CIDR blocks"
    )


class RequestSignals(BaseModel):
    """Normalized request fields consumed by the classifier.

    Every header value is a string; absent headers are empty. All fields
    except ``ip``, ``method`` and ``path`` are lowercased.
    """

    model_config = ConfigDict(frozen=True)

    user_agent: str = ""
    ip: str = ""
    referrer: str = ""
    accept: str = ""
    accept_encoding: str = ""
    accept_language: str = ""
    sec_ch_ua: str = ""
    connection: str = ""
    method: str = "GET"
    path: str = "/"


class BehaviorScore(BaseModel):
    """Output of the behavioral heuristic scorer."""

    model_config = ConfigDict(frozen=True)

    score: int = Field(default=0, ge=0)
    reasons: tuple[str, ...] = ()


class ClassificationResult(BaseModel):
    """The verdict for one inbound request. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    is_ai: bool = False
    is_search_engine: bool = False
    is_human: bool = False
    crawler_name: str = "Unknown"
    crawler_type: CrawlerType = CrawlerType.UNKNOWN
    purpose: CrawlerPurpose = CrawlerPurpose.UNKNOWN
    detection_method: DetectionMethod
    confidence: int = Field(ge=0, le=99)
    total_score: int = 0
    is_rapid: bool = False
    had_robots_access: bool = False
    is_html_only: bool = False
    session_id: str = ""
    behavior_reasons: tuple[str, ...] = Field(
        default=(), description="Heuristics that fired; for debugging only"
    )


class Visit(BaseModel):
    """A persisted visit row.

    Carries every ClassificationResult field plus request metadata. The
    batch mimicry pass is the only writer of ``mimic_score``/``is_mimic``.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    site_id: str
    visited_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ip_address: str = ""
    user_agent: str = ""
    referrer: str = ""
    page_path: str = "/"
    method: str = "GET"
    session_id: str = ""
    is_ai: bool = False
    is_search_engine: bool = False
    is_human: bool = False
    crawler_name: str = "Unknown"
    crawler_type: CrawlerType = CrawlerType.UNKNOWN
    purpose: CrawlerPurpose = CrawlerPurpose.UNKNOWN
    detection_method: DetectionMethod = DetectionMethod.HUMAN_DEFAULT
    confidence: int = Field(default=0, ge=0, le=99)
    total_score: int = 0
    is_rapid: bool = False
    had_robots_access: bool = False
    is_html_only: bool = False
    behavior_reasons: list[str] = Field(default_factory=list)
    mimic_score: int | None = Field(default=None, ge=0, le=100)
    is_mimic: bool = False

    @classmethod
    def from_result(
        cls,
        result: ClassificationResult,
        *,
        site_id: str,
        ip_address: str,
        user_agent: str,
        referrer: str = "",
        page_path: str = "/",
        method: str = "GET",
    ) -> Visit:
        """Build a visit row from a verdict and the raw request fields."""
        fields = result.model_dump()
        fields["behavior_reasons"] = list(result.behavior_reasons)
        return cls(
            site_id=site_id,
            ip_address=ip_address,
            user_agent=user_agent,
            referrer=referrer,
            page_path=page_path,
            method=method,
            **fields,
        )


class MimicVerdict(BaseModel):
    """Batch mimicry score for one stored visit."""

    visit_id: str
    ip_address: str = ""
    user_agent: str = ""
    score: int = Field(ge=0, le=100)
    is_mimic: bool
    reasons: list[str] = Field(default_factory=list)


class MimicRunReport(BaseModel):
    """Summary returned by a batch mimicry run."""

    processed: int = 0
    mimic_detected: int = 0
    normal: int = 0
    updated: int = 0
    dry_run: bool = False
    failed_ids: list[str] = Field(default_factory=list)
    details: list[MimicVerdict] | None = None

    def to_response(self) -> dict[str, object]:
        """Render the report in the HTTP response shape."""
        body: dict[str, object] = {
            "processed": self.processed,
            "mimic_detected": self.mimic_detected,
            "normal": self.normal,
            "updated": self.updated,
            "dryRun": self.dry_run,
        }
        if self.failed_ids:
            body["failed_ids"] = self.failed_ids
        if self.details is not None:
            body["details"] = [
                {
                    "id": d.visit_id,
                    "ip_address": d.ip_address,
                    "score": d.score,
                    "reasons": d.reasons,
                    "user_agent": d.user_agent[:80],
                }
                for d in self.details
            ]
        return body
