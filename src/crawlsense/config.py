"""Configuration loading and validation for crawlsense."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class ScoringConfig(BaseModel):
    """Weights, thresholds and windows of the real-time classifier."""

    ua_match_score: int = Field(default=40, ge=0, description="Score for a crawler UA match")
    ip_corroborated_score: int = Field(
        default=30, ge=0, description="IP range match for the crawler already matched by UA"
    )
    ip_only_score: int = Field(default=20, ge=0, description="IP range match without a UA match")
    behavior_cap: int = Field(default=28, ge=0, description="Ceiling of the behavioral score")
    rapid_bonus: int = Field(default=10, ge=0, description="Score for a rapid repeat request")
    rapid_window_ms: int = Field(default=300, ge=1)
    robots_window_seconds: float = Field(
        default=5.0, gt=0, description="robots.txt fetched this recently counts as robots-first"
    )
    ai_threshold: int = Field(default=70, description="Total score for pattern-inferred AI")
    suspicious_threshold: int = Field(default=40, description="Total score for suspicious AI")

    search_engine_confidence: int = Field(default=95, ge=0, le=99)
    human_confidence: int = Field(default=70, ge=0, le=99)
    confidence_ceiling: int = Field(default=99, ge=0, le=99)
    matched_rapid_confidence_bonus: int = Field(default=5, ge=0)
    inference_confidence_base: int = Field(default=50, ge=0)
    inference_behavior_multiplier: int = Field(default=3, ge=0)
    inference_rapid_bonus: int = Field(default=10, ge=0)
    inference_confidence_cap: int = Field(default=85, ge=0, le=99)
    suspicious_confidence_cap: int = Field(default=65, ge=0, le=99)

    html_only_min_requests: int = Field(default=10, ge=1)
    html_only_ratio: float = Field(default=0.95, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_thresholds(self) -> ScoringConfig:
        if self.suspicious_threshold > self.ai_threshold:
            raise ValueError("suspicious_threshold must not exceed ai_threshold")
        return self


class BehaviorStoreConfig(BaseModel):
    """Bounds of the in-memory per-IP behavior store."""

    capacity: int = Field(
        default=10_000, ge=1, description="Maximum entries across all three sub-maps"
    )
    access_max_age_seconds: float = Field(default=60.0, gt=0)
    robots_max_age_seconds: float = Field(default=30.0, gt=0)
    counter_prune_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Share of its entries the counter map keeps when trimmed",
    )


class MimicConfig(BaseModel):
    """Configuration for the batch mimicry re-scorer."""

    window_days: int = Field(default=7, ge=1)
    max_rows: int = Field(default=5000, ge=1)
    threshold: int = Field(default=50, ge=0)
    extreme_burst_visits: int = 5
    extreme_burst_minutes: float = 5.0
    fast_burst_visits: int = 10
    fast_burst_minutes: float = 30.0
    night_hours_utc: tuple[int, int] = Field(
        default=(15, 20), description="Inclusive UTC hour range scored as night traffic"
    )
    deadline_seconds: float = Field(default=30.0, gt=0)
    details_limit: int = Field(default=20, ge=0)
    top_ips_limit: int = Field(default=10, ge=1)
    rotation_min_distinct: int = Field(default=5, ge=1)
    periodic_min_intervals: int = Field(default=4, ge=2)


class RangesConfig(BaseModel):
    """Configuration for published crawler IP ranges."""

    overlay_file: str | None = Field(
        default=None, description="YAML file of extra CIDRs per crawler name"
    )
    timeout_seconds: float = Field(default=5.0, gt=0)


class ServerConfig(BaseModel):
    """Configuration for the FastAPI server."""

    host: str = "0.0.0.0"
    port: int = 8080


class StorageConfig(BaseModel):
    """Configuration for visit storage."""

    database: str = "./data/crawlsense.db"
    log_file: str | None = "./data/visits.jsonl"
    record_search_engines: bool = False
    durable_robots_window_minutes: int = Field(default=5, ge=0)
    retention_days: int = Field(default=7, ge=1)


class LoggingConfig(BaseModel):
    """Configuration for logging output."""

    level: str = "info"
    output: str = "stdout"


class CrawlSenseConfig(BaseModel):
    """Top-level crawlsense configuration."""

    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    behavior_store: BehaviorStoreConfig = Field(default_factory=BehaviorStoreConfig)
    mimic: MimicConfig = Field(default_factory=MimicConfig)
    ranges: RangesConfig = Field(default_factory=RangesConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path | None = None) -> CrawlSenseConfig:
    """Load crawlsense configuration from a YAML file.

    Args:
        path: Path to the YAML config file. If None, uses 'crawlsense.yaml'
              in the current directory, falling back to defaults.

    Returns:
        A validated CrawlSenseConfig instance.
    """
    path = Path("crawlsense.yaml") if path is None else Path(path)

    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return CrawlSenseConfig.model_validate(raw)

    return CrawlSenseConfig()
