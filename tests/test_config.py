"""Tests for configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from crawlsense.config import CrawlSenseConfig, ScoringConfig, load_config


def test_default_config() -> None:
    """Loading with no file should produce valid defaults."""
    config = load_config(Path("/nonexistent/crawlsense.yaml"))
    assert config.server.port == 8080
    assert config.scoring.ai_threshold == 70
    assert config.scoring.suspicious_threshold == 40
    assert config.storage.record_search_engines is False


def test_load_config_from_yaml(tmp_path: Path) -> None:
    """Configuration should load from a YAML file."""
    path = tmp_path / "crawlsense.yaml"
    path.write_text(
        """
server:
  port: 9090
  host: 127.0.0.1
scoring:
  rapid_bonus: 15
mimic:
  threshold: 60
  night_hours_utc: [14, 22]
storage:
  record_search_engines: true
"""
    )
    config = load_config(path)

    assert config.server.port == 9090
    assert config.server.host == "127.0.0.1"
    assert config.scoring.rapid_bonus == 15
    assert config.scoring.ua_match_score == 40
    assert config.mimic.threshold == 60
    assert config.mimic.night_hours_utc == (14, 22)
    assert config.storage.record_search_engines is True


def test_empty_yaml(tmp_path: Path) -> None:
    """An empty file should yield defaults."""
    path = tmp_path / "crawlsense.yaml"
    path.write_text("")
    assert load_config(path) == CrawlSenseConfig()


def test_scoring_defaults() -> None:
    """ScoringConfig should carry the documented weights."""
    scoring = ScoringConfig()
    assert scoring.ua_match_score == 40
    assert scoring.ip_corroborated_score == 30
    assert scoring.ip_only_score == 20
    assert scoring.behavior_cap == 28
    assert scoring.rapid_bonus == 10
    assert scoring.rapid_window_ms == 300
    assert scoring.search_engine_confidence == 95
    assert scoring.human_confidence == 70


def test_thresholds_validated() -> None:
    """The suspicious threshold may not exceed the AI threshold."""
    with pytest.raises(ValidationError):
        ScoringConfig(ai_threshold=30, suspicious_threshold=40)


def test_invalid_value_rejected(tmp_path: Path) -> None:
    """Out-of-range values should fail at load time."""
    path = tmp_path / "crawlsense.yaml"
    path.write_text("behavior_store:\n  capacity: 0\n")
    with pytest.raises(ValidationError):
        load_config(path)
