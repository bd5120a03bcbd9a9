"""Tests for the core data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from crawlsense.models import (
    ClassificationResult,
    CrawlerType,
    DetectionMethod,
    MimicRunReport,
    MimicVerdict,
    Visit,
)


def test_detection_method_values() -> None:
    """Detection methods should serialize to their wire names."""
    assert DetectionMethod.USER_AGENT_IP_RANGE.value == "user-agent+ip-range"
    assert DetectionMethod.PATTERN_INFERENCE_RAPID.value == "pattern-inference+rapid"
    assert CrawlerType.SEARCH_ENGINE.value == "search-engine"


def test_classification_result_is_frozen() -> None:
    """A verdict may not be mutated after creation."""
    result = ClassificationResult(detection_method=DetectionMethod.HUMAN_DEFAULT, confidence=70)
    with pytest.raises(ValidationError):
        result.confidence = 10  # type: ignore[misc]


def test_confidence_bounds() -> None:
    """Confidence must stay within 0..99."""
    with pytest.raises(ValidationError):
        ClassificationResult(detection_method=DetectionMethod.HONEYPOT, confidence=100)


def test_visit_from_result() -> None:
    """A visit should carry every verdict field plus request metadata."""
    result = ClassificationResult(
        is_ai=True,
        crawler_name="GPTBot",
        crawler_type=CrawlerType.AI,
        detection_method=DetectionMethod.USER_AGENT,
        confidence=40,
        total_score=52,
        session_id="abc",
        behavior_reasons=("no-referer",),
    )
    visit = Visit.from_result(
        result, site_id="site1", ip_address="10.0.0.1", user_agent="gptbot", page_path="/x"
    )
    assert visit.crawler_name == "GPTBot"
    assert visit.total_score == 52
    assert visit.session_id == "abc"
    assert visit.behavior_reasons == ["no-referer"]
    assert visit.page_path == "/x"
    assert visit.mimic_score is None
    assert visit.is_mimic is False
    assert len(visit.id) == 32


def test_mimic_score_bounds() -> None:
    """Mimic scores must stay within 0..100."""
    with pytest.raises(ValidationError):
        MimicVerdict(visit_id="x", score=101, is_mimic=True)


def test_report_response_shape() -> None:
    """Dry-run details should be truncated to the response shape."""
    report = MimicRunReport(
        processed=2,
        mimic_detected=1,
        normal=1,
        dry_run=True,
        details=[
            MimicVerdict(
                visit_id="v1",
                ip_address="10.0.0.1",
                user_agent="x" * 200,
                score=95,
                is_mimic=True,
                reasons=["extreme-burst"],
            )
        ],
    )
    body = report.to_response()
    assert body["dryRun"] is True
    assert "failed_ids" not in body
    [detail] = body["details"]  # type: ignore[misc]
    assert detail == {
        "id": "v1",
        "ip_address": "10.0.0.1",
        "score": 95,
        "reasons": ["extreme-burst"],
        "user_agent": "x" * 80,
    }


def test_report_failed_ids() -> None:
    """Failed IDs should be reported when present."""
    body = MimicRunReport(processed=1, failed_ids=["bad"]).to_response()
    assert body["failed_ids"] == ["bad"]
