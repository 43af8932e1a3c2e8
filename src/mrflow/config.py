"""Configuration parsing and validation for the GitLab MR flow analyzer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .classifier import (
    DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS,
    DEFAULT_BURST_MIN_REVIEW_COUNT,
    DEFAULT_BURST_TIME_WINDOW_SECONDS,
    BurstDetection,
    HybridReviewerConfig,
)
from .errors import AuthenticationError, ConfigurationError

TOKEN_ENV_VAR = "GITLAB_TOKEN"
AI_BOTS_ENV_VAR = "MRFLOW_AI_BOTS"

DEFAULT_MR_TYPE_THRESHOLD_HOURS = 2.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used by the analyzer."""

    base_url: str
    project: str
    token: str
    ai_bot_usernames: Tuple[str, ...] = ()
    hybrid_reviewers: Tuple[HybridReviewerConfig, ...] = ()
    mr_type_threshold_hours: float = DEFAULT_MR_TYPE_THRESHOLD_HOURS
    batch_size: int = DEFAULT_BATCH_SIZE
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS


def _parse_hybrid_entry(entry: Any, position: int) -> HybridReviewerConfig:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Hybrid reviewer entry #{position} must be an object.")

    username = str(entry.get("username") or "").strip()
    if not username:
        raise ConfigurationError(f"Hybrid reviewer entry #{position} is missing 'username'.")

    try:
        threshold = float(entry.get("timeThresholdSeconds", DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS))
        burst: Optional[BurstDetection] = None
        raw_burst = entry.get("burstDetection")
        if raw_burst is not None:
            if not isinstance(raw_burst, dict):
                raise ConfigurationError(
                    f"Hybrid reviewer '{username}': 'burstDetection' must be an object."
                )
            burst = BurstDetection(
                min_review_count=int(raw_burst.get("minReviewCount", DEFAULT_BURST_MIN_REVIEW_COUNT)),
                time_window_seconds=float(
                    raw_burst.get("timeWindowSeconds", DEFAULT_BURST_TIME_WINDOW_SECONDS)
                ),
            )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Hybrid reviewer '{username}' has a non-numeric threshold."
        ) from exc

    if threshold <= 0:
        raise ConfigurationError(
            f"Hybrid reviewer '{username}': 'timeThresholdSeconds' must be greater than 0."
        )
    if burst is not None and (burst.min_review_count <= 0 or burst.time_window_seconds <= 0):
        raise ConfigurationError(
            f"Hybrid reviewer '{username}': burst detection values must be greater than 0."
        )

    return HybridReviewerConfig(
        username=username,
        time_threshold_seconds=threshold,
        treat_as_human_if_other_ai_review_exists=bool(
            entry.get("treatAsHumanIfOtherAIReviewExists", True)
        ),
        burst_detection=burst,
    )


def load_hybrid_reviewers(path: Path) -> Tuple[HybridReviewerConfig, ...]:
    """Read hybrid reviewer settings from a JSON file.

    The file holds a list of objects::

        [{"username": "review-helper", "timeThresholdSeconds": 480,
          "treatAsHumanIfOtherAIReviewExists": true,
          "burstDetection": {"minReviewCount": 5, "timeWindowSeconds": 60}}]

    Raises:
        ConfigurationError: If the file cannot be read or has the wrong shape.
    """
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read hybrid reviewer file '{path}': {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Hybrid reviewer file '{path}' is not valid JSON.") from exc

    if not isinstance(payload, list):
        raise ConfigurationError(f"Hybrid reviewer file '{path}' must contain a JSON list.")

    return tuple(_parse_hybrid_entry(entry, index) for index, entry in enumerate(payload, start=1))


def _merge_bot_names(explicit: Iterable[str]) -> Tuple[str, ...]:
    names: List[str] = [name.strip() for name in explicit if name and name.strip()]
    for name in os.getenv(AI_BOTS_ENV_VAR, "").split(","):
        name = name.strip()
        if name and name not in names:
            names.append(name)
    return tuple(names)


def load_config(
    base_url: str,
    project: str,
    ai_bots: Sequence[str] = (),
    hybrid_config_path: Optional[Path] = None,
    mr_type_threshold_hours: float = DEFAULT_MR_TYPE_THRESHOLD_HOURS,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Config:
    """Build and validate application configuration.

    Args:
        base_url: GitLab instance URL, e.g. ``https://gitlab.example.com``.
        project: Project path (``group/name``) or numeric project id.
        ai_bots: Usernames to always treat as AI reviewers.
        hybrid_config_path: Optional JSON file with hybrid reviewer settings.
        mr_type_threshold_hours: Active development threshold in hours.
        batch_size: Number of merge requests fetched concurrently.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If any value is missing or out of range.
        AuthenticationError: If ``GITLAB_TOKEN`` is not configured.
    """
    base_url = (base_url or "").strip().rstrip("/")
    if not base_url:
        raise ConfigurationError("Invalid value for 'url': a GitLab base URL is required.")
    project = (project or "").strip()
    if not project:
        raise ConfigurationError("Invalid value for 'project': a project path or id is required.")
    if mr_type_threshold_hours <= 0:
        raise ConfigurationError(
            "Invalid value for 'mr_type_threshold_hours': expected a number greater than 0."
        )
    if batch_size <= 0:
        raise ConfigurationError("Invalid value for 'batch_size': expected an integer greater than 0.")

    token: str = os.getenv(TOKEN_ENV_VAR, "").strip()
    if not token:
        raise AuthenticationError(
            "Missing required GitLab access token. "
            f"Set the '{TOKEN_ENV_VAR}' environment variable before running the analyzer."
        )

    hybrid_reviewers: Tuple[HybridReviewerConfig, ...] = ()
    if hybrid_config_path is not None:
        hybrid_reviewers = load_hybrid_reviewers(hybrid_config_path)

    return Config(
        base_url=base_url,
        project=project,
        token=token,
        ai_bot_usernames=_merge_bot_names(ai_bots),
        hybrid_reviewers=hybrid_reviewers,
        mr_type_threshold_hours=mr_type_threshold_hours,
        batch_size=batch_size,
    )
