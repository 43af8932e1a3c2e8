"""Tests for configuration loading and validation."""

import json
import sys
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrflow.classifier import BurstDetection
from mrflow.config import load_config, load_hybrid_reviewers
from mrflow.errors import AuthenticationError, ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("GITLAB_TOKEN", raising=False)
    monkeypatch.delenv("MRFLOW_AI_BOTS", raising=False)


def test_load_config_reads_token_and_normalizes_url(monkeypatch):
    """Verify the token comes from the environment and the URL loses its trailing slash."""
    monkeypatch.setenv("GITLAB_TOKEN", "  glpat-secret  ")

    config = load_config("https://gitlab.example.com/", "group/project")

    assert config.token == "glpat-secret"
    assert config.base_url == "https://gitlab.example.com"
    assert config.project == "group/project"
    assert config.batch_size == 10
    assert config.mr_type_threshold_hours == 2.0


def test_load_config_missing_token_raises_authentication_error():
    """Verify a missing token is an authentication failure."""
    with pytest.raises(AuthenticationError):
        load_config("https://gitlab.example.com", "group/project")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_url": "", "project": "group/project"},
        {"base_url": "https://gitlab.example.com", "project": "  "},
        {"base_url": "https://gitlab.example.com", "project": "p", "mr_type_threshold_hours": 0},
        {"base_url": "https://gitlab.example.com", "project": "p", "batch_size": 0},
    ],
)
def test_load_config_invalid_values_raise_configuration_error(monkeypatch, kwargs):
    """Verify invalid settings are configuration errors."""
    monkeypatch.setenv("GITLAB_TOKEN", "token")

    with pytest.raises(ConfigurationError):
        load_config(**kwargs)


def test_load_config_merges_ai_bots_from_environment(monkeypatch):
    """Verify explicit and environment AI bot names are merged without duplicates."""
    monkeypatch.setenv("GITLAB_TOKEN", "token")
    monkeypatch.setenv("MRFLOW_AI_BOTS", "review-helper, duo ,")

    config = load_config("https://gitlab.example.com", "p", ai_bots=["duo", ""])

    assert config.ai_bot_usernames == ("duo", "review-helper")


def test_load_hybrid_reviewers_parses_entries(tmp_path):
    """Verify the hybrid reviewer file is parsed with defaults applied."""
    path = tmp_path / "hybrid.json"
    path.write_text(
        json.dumps(
            [
                {
                    "username": "helper",
                    "timeThresholdSeconds": 300,
                    "treatAsHumanIfOtherAIReviewExists": False,
                    "burstDetection": {"minReviewCount": 4, "timeWindowSeconds": 30},
                },
                {"username": "plain"},
            ]
        ),
        encoding="utf-8",
    )

    reviewers = load_hybrid_reviewers(path)

    assert reviewers[0].username == "helper"
    assert reviewers[0].time_threshold_seconds == 300
    assert reviewers[0].treat_as_human_if_other_ai_review_exists is False
    assert reviewers[0].burst_detection == BurstDetection(4, 30)
    assert reviewers[1].time_threshold_seconds == 480
    assert reviewers[1].treat_as_human_if_other_ai_review_exists is True
    assert reviewers[1].burst_detection is None


def test_load_config_with_hybrid_file(monkeypatch, tmp_path):
    """Verify hybrid reviewers are attached to the configuration."""
    monkeypatch.setenv("GITLAB_TOKEN", "token")
    path = tmp_path / "hybrid.json"
    path.write_text('[{"username": "helper"}]', encoding="utf-8")

    config = load_config("https://gitlab.example.com", "p", hybrid_config_path=path)

    assert [reviewer.username for reviewer in config.hybrid_reviewers] == ["helper"]


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        '{"username": "helper"}',
        '[{"timeThresholdSeconds": 10}]',
        '[{"username": "helper", "timeThresholdSeconds": -5}]',
        '[{"username": "helper", "timeThresholdSeconds": "soon"}]',
        '[{"username": "helper", "burstDetection": {"minReviewCount": 0}}]',
    ],
)
def test_load_hybrid_reviewers_rejects_malformed_files(tmp_path, content):
    """Verify malformed hybrid files are configuration errors."""
    path = tmp_path / "hybrid.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_hybrid_reviewers(path)


def test_load_hybrid_reviewers_missing_file(tmp_path):
    """Verify an unreadable file is a configuration error."""
    with pytest.raises(ConfigurationError):
        load_hybrid_reviewers(tmp_path / "missing.json")
